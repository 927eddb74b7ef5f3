# pardini_sync/services/hospital_store.py

from typing import Callable, List, Optional

from config import Settings, get_readonly_conn
from db import rquery, rscalar
from logger import get_logger
from models import ArtifactKind, PendingItem

log = get_logger("hospital_store")


def _opt_int(v) -> Optional[int]:
    if v is None or str(v).strip() == "":
        return None
    return int(v)


class HospitalStore:
    """Read side of MV2000: what is pending, who it belongs to, what is already attached."""

    def __init__(self, settings: Settings, connect: Optional[Callable[[], object]] = None):
        self.settings = settings
        self._connect = connect or (lambda: get_readonly_conn(settings))

    def list_pending(self, limit: int) -> List[PendingItem]:
        # ITPED_LAB carries one row per exam; DISTINCT collapses to the order
        sql = """
        SELECT DISTINCT
            i.CD_PED_LAB,
            i.SN_ASSINADO,
            p.CD_ATENDIMENTO,
            a.CD_PACIENTE
        FROM ITPED_LAB i
        LEFT JOIN PED_LAB p ON p.CD_PED_LAB = i.CD_PED_LAB
        LEFT JOIN ATENDIME a ON a.CD_ATENDIMENTO = p.CD_ATENDIMENTO
        WHERE i.SN_ASSINADO = 'N'
          AND i.CD_PED_LAB IS NOT NULL
        ORDER BY i.CD_PED_LAB
        FETCH FIRST ? ROWS ONLY
        """
        conn = self._connect()
        try:
            rows = rquery(conn, sql, (int(limit),))
        finally:
            conn.close()

        out: List[PendingItem] = []
        seen = set()
        for r in rows:
            code = str(r.get("cd_ped_lab") or "").strip()
            if not code or code in seen:
                continue
            seen.add(code)
            out.append(PendingItem(
                local_order_code=code,
                signed_flag=(r.get("sn_assinado") or "N").strip(),
                attendance_id=_opt_int(r.get("cd_atendimento")),
                patient_id=_opt_int(r.get("cd_paciente")),
            ))

        log.info(f"ITPED_LAB pending (SN_ASSINADO='N'): {len(out)}")
        return out

    def encounter_exists(self, attendance_id: int) -> bool:
        conn = self._connect()
        try:
            return bool(rquery(conn, "SELECT 1 AS ok FROM ATENDIME WHERE CD_ATENDIMENTO = ?", (attendance_id,)))
        finally:
            conn.close()

    def patient_for_encounter(self, attendance_id: int) -> Optional[int]:
        conn = self._connect()
        try:
            return _opt_int(rscalar(conn, "SELECT CD_PACIENTE FROM ATENDIME WHERE CD_ATENDIMENTO = ?",
                                    (attendance_id,)))
        finally:
            conn.close()

    def document_type_for(self, kind: ArtifactKind) -> int:
        if kind == ArtifactKind.GRAFICO:
            return self.settings.doc_type_graphic
        return self.settings.doc_type_report

    def hash_exists(self, content_hash: Optional[str], kind: ArtifactKind) -> bool:
        if not content_hash:
            return False

        sql = """
        SELECT COUNT(*)
        FROM ARQUIVO_ATENDIMENTO
        WHERE CD_TIPO_DOCUMENTO = ?
          AND DS_DESCRICAO LIKE ?
        """
        conn = self._connect()
        try:
            cnt = rscalar(conn, sql, (self.document_type_for(kind), f"%[HASH:{content_hash}]%"))
        finally:
            conn.close()
        return int(cnt or 0) > 0
