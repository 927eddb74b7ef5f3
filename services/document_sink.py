# pardini_sync/services/document_sink.py

from typing import Callable, Optional

from config import Settings, get_db_conn
from db import rexec, rscalar
from exceptions import PersistenceError
from logger import get_logger, get_audit_logger

log = get_logger("document_sink")
audit = get_audit_logger()


def _next_id(conn, sequence: str, table: str, column: str) -> int:
    """SEQ_x.NEXTVAL when the sequence exists, else MAX+1 (same transaction)."""
    try:
        val = rscalar(conn, f"SELECT {sequence}.NEXTVAL FROM DUAL")
        if val is not None:
            return int(val)
    except Exception as e:
        log.debug(f"{sequence} not usable ({e}); falling back to MAX({column})+1")

    val = rscalar(conn, f"SELECT NVL(MAX({column}), 0) + 1 FROM {table}")
    if val is None:
        raise PersistenceError(f"Could not obtain next id for {table}")
    return int(val)


class DocumentSink:
    """
    Writes one artifact into MV2000 as ARQUIVO_DOCUMENTO (the blob) plus an
    ARQUIVO_ATENDIMENTO row linking it to the encounter. Both or neither.
    """

    def __init__(self, settings: Settings, connect: Optional[Callable[[], object]] = None):
        self.settings = settings
        self._connect = connect or (lambda: get_db_conn(settings))

    def attach(
        self,
        content: bytes,
        extension: str,
        attendance_id: int,
        patient_id: Optional[int],
        description: str,
        file_name: str,
        document_type_code: int,
    ) -> int:
        if not content:
            raise ValueError("Document content cannot be empty")

        conn = self._connect()
        try:
            doc_id = _next_id(conn, "SEQ_ARQUIVO_DOCUMENTO", "ARQUIVO_DOCUMENTO", "CD_ARQUIVO_DOCUMENTO")
            rexec(conn, """
            INSERT INTO ARQUIVO_DOCUMENTO (
                CD_ARQUIVO_DOCUMENTO,
                LO_ARQUIVO_DOCUMENTO,
                TP_EXTENSAO,
                DS_AUTOR,
                DS_ORIGEM,
                DT_DOCUMENTO,
                DS_NOME_ARQUIVO
            ) VALUES (?, ?, ?, ?, ?, SYSDATE, ?)
            """, (
                doc_id,
                content,
                (extension or "").upper(),
                self.settings.integration_user,
                self.settings.document_origin,
                file_name,
            ))

            link_id = _next_id(conn, "SEQ_ARQUIVO_ATENDIMENTO", "ARQUIVO_ATENDIMENTO", "CD_ARQUIVO_ATENDIMENTO")
            rexec(conn, """
            INSERT INTO ARQUIVO_ATENDIMENTO (
                CD_ARQUIVO_ATENDIMENTO,
                CD_ARQUIVO_DOCUMENTO,
                CD_ATENDIMENTO,
                CD_PACIENTE,
                CD_TIPO_DOCUMENTO,
                DH_CRIACAO,
                NM_USUARIO,
                DS_DESCRICAO
            ) VALUES (?, ?, ?, ?, ?, SYSDATE, ?, ?)
            """, (
                link_id,
                doc_id,
                attendance_id,
                patient_id,
                document_type_code,
                self.settings.integration_user,
                description,
            ))

            conn.commit()
        except Exception as e:
            try:
                conn.rollback()
                log.error(f"Rollback after attach failure for encounter {attendance_id}: {e}")
            except Exception as rb:
                log.error(f"Rollback failed: {rb}")
            raise PersistenceError(f"Attach failed for encounter {attendance_id} ({file_name}): {e}") from e
        finally:
            conn.close()

        audit.info(f"ATTACH|{doc_id}|{attendance_id}|{patient_id}|{extension}|{len(content)} bytes|{file_name}")
        log.info(f"Document attached: CD_ARQUIVO_DOCUMENTO={doc_id}, encounter={attendance_id}, "
                 f"{len(content)} bytes")
        return doc_id
