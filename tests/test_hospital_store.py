from models import ArtifactKind
from services.hospital_store import HospitalStore


class RowsCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []

    def execute(self, sql, params=()):
        self.conn.executed.append((" ".join(sql.split()), params))
        cols, rows = self.conn.answer(sql)
        self.description = [(c,) for c in cols]
        self._rows = rows

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None


class RowsConnection:
    def __init__(self, answers):
        self.answers = answers
        self.executed = []
        self.closed = False

    def answer(self, sql):
        for needle, result in self.answers.items():
            if needle in sql:
                return result
        return ["X"], []

    def cursor(self):
        return RowsCursor(self)

    def close(self):
        self.closed = True


def test_list_pending_dedups_and_reads_encounter(settings):
    conn = RowsConnection({
        "FROM ITPED_LAB": (
            ["CD_PED_LAB", "SN_ASSINADO", "CD_ATENDIMENTO", "CD_PACIENTE"],
            [(5001, "N", 3001, 9001), (5001, "N", 3001, 9001), (5002, "N", None, None)],
        ),
    })
    items = HospitalStore(settings, connect=lambda: conn).list_pending(50)

    assert [i.local_order_code for i in items] == ["5001", "5002"]
    assert items[0].attendance_id == 3001 and items[0].patient_id == 9001
    assert items[1].attendance_id is None
    assert conn.executed[0][1] == (50,)
    assert "FETCH FIRST ? ROWS ONLY" in conn.executed[0][0]
    assert conn.closed


def test_encounter_and_patient_lookups(settings):
    conn = RowsConnection({"FROM ATENDIME": (["CD_PACIENTE"], [(9001,)])})
    store = HospitalStore(settings, connect=lambda: conn)
    assert store.encounter_exists(3001) is True
    assert store.patient_for_encounter(3001) == 9001

    empty = HospitalStore(settings, connect=lambda: RowsConnection({}))
    assert empty.encounter_exists(1) is False
    assert empty.patient_for_encounter(1) is None


def test_hash_exists_filters_by_document_type(state_db):
    from config import Settings

    settings = Settings(state_db_path=state_db, doc_type_report=841, doc_type_graphic=842)
    conn = RowsConnection({"FROM ARQUIVO_ATENDIMENTO": (["CNT"], [(1,)])})
    store = HospitalStore(settings, connect=lambda: conn)

    assert store.hash_exists("abc", ArtifactKind.GRAFICO) is True
    assert conn.executed[-1][1] == (842, "%[HASH:abc]%")
    assert store.hash_exists(None, ArtifactKind.PDF) is False
