import pytest

from exceptions import PersistenceError
from services.document_sink import DocumentSink

from conftest import PDF_BYTES


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0
        self._row = None
        self.description = [("X",)]

    def execute(self, sql, params=()):
        sql_norm = " ".join(sql.split())
        self.conn.executed.append((sql_norm, params))

        for needle, exc in self.conn.fail_on.items():
            if needle in sql_norm:
                raise exc

        if ".NEXTVAL" in sql_norm:
            self._row = (self.conn.next_seq(),)
        elif "MAX(" in sql_norm:
            self._row = (self.conn.max_plus_one,)
        else:
            self.rowcount = 1
            self._row = None

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, fail_on=None, max_plus_one=500):
        self.fail_on = fail_on or {}
        self.max_plus_one = max_plus_one
        self.executed = []
        self.committed = False
        self.rolled_back = False
        self.closed = False
        self._seq = 100

    def next_seq(self):
        self._seq += 1
        return self._seq

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True

    def inserts(self, table):
        return [p for sql, p in self.executed if sql.startswith(f"INSERT INTO {table} ")]


def _attach(sink):
    return sink.attach(PDF_BYTES, "pdf", 3001, None, "Laudo [HASH:abc]", "LAUDO_1.PDF", 841)


def test_attach_inserts_document_and_link(settings):
    conn = FakeConnection()
    doc_id = _attach(DocumentSink(settings, connect=lambda: conn))

    assert doc_id == 101
    [doc] = conn.inserts("ARQUIVO_DOCUMENTO")
    assert doc == (101, PDF_BYTES, "PDF", "RERONO_API", "HERMES PARDINI - HPWS", "LAUDO_1.PDF")
    [link] = conn.inserts("ARQUIVO_ATENDIMENTO")
    assert link == (102, 101, 3001, None, 841, "RERONO_API", "Laudo [HASH:abc]")
    assert conn.committed and conn.closed and not conn.rolled_back


def test_missing_sequence_falls_back_to_max_plus_one(settings):
    conn = FakeConnection(fail_on={"SEQ_ARQUIVO_DOCUMENTO.NEXTVAL": RuntimeError("ORA-02289")}, max_plus_one=77)
    doc_id = _attach(DocumentSink(settings, connect=lambda: conn))
    assert doc_id == 77
    assert conn.inserts("ARQUIVO_ATENDIMENTO")[0][0] == 101


def test_link_failure_rolls_back_and_raises(settings):
    conn = FakeConnection(fail_on={"INSERT INTO ARQUIVO_ATENDIMENTO": RuntimeError("ORA-02291")})
    with pytest.raises(PersistenceError) as exc:
        _attach(DocumentSink(settings, connect=lambda: conn))

    assert isinstance(exc.value.__cause__, RuntimeError)
    assert conn.rolled_back and conn.closed and not conn.committed


def test_empty_content_rejected(settings):
    conn = FakeConnection()
    with pytest.raises(ValueError):
        DocumentSink(settings, connect=lambda: conn).attach(b"", "pdf", 1, None, "d", "f", 841)
    assert conn.executed == []
