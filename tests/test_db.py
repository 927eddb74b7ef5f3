from db import (
    attachment_exists,
    close_run,
    count_mappings,
    init_state_db,
    last_run_start_ts,
    mark_run,
    mark_run_item,
    record_attachment,
    state_conn,
    upsert_mappings,
)
from models import RemoteMapping


def test_init_is_idempotent_and_migrates(tmp_path):
    path = str(tmp_path / "old.db")
    conn = state_conn(path)
    conn.execute("CREATE TABLE workflow_runs (run_id TEXT PRIMARY KEY, start_ts TEXT, end_ts TEXT, env TEXT, "
                 "pending_count INTEGER, processed_count INTEGER, failed_count INTEGER, log_file_path TEXT)")
    conn.commit()
    conn.close()

    init_state_db(path)
    init_state_db(path)

    conn = state_conn(path)
    cols = {r[1] for r in conn.execute("PRAGMA table_info(workflow_runs)")}
    conn.close()
    assert {"deferred_count", "mapped_count"} <= cols


def test_run_lifecycle(state_db):
    mark_run(state_db, "r1", "2025-01-01T10:00:00Z", "TEST", "logs/x.log")
    mark_run_item(state_db, "r1", "5001", "FAILED", "ContentUnavailable", "x" * 5000)
    mark_run_item(state_db, "r1", "5001", "SUCCESS", "ATTACHED")
    close_run(state_db, "r1", "2025-01-01T10:01:00Z", 1, 1, 0, 0, 3)

    conn = state_conn(state_db)
    run = conn.execute("SELECT * FROM workflow_runs WHERE run_id='r1'").fetchone()
    items = conn.execute("SELECT * FROM run_items").fetchall()
    conn.close()

    assert run["mapped_count"] == 3 and run["end_ts"] == "2025-01-01T10:01:00Z"
    assert len(items) == 1 and items[0]["status"] == "SUCCESS" and items[0]["message"] is None
    assert last_run_start_ts(state_db) == "2025-01-01T10:00:00Z"


def test_upsert_mappings_counts_rows(state_db):
    assert upsert_mappings(state_db, [RemoteMapping("1", "A", 2025), RemoteMapping("2", "B")]) == 2
    assert upsert_mappings(state_db, [RemoteMapping("1", "C")]) == 1
    assert count_mappings(state_db) == 2


def test_attachment_ledger_ignores_duplicates(state_db):
    kwargs = dict(content_hash="h1", kind="PDF", document_id=10, local_order_code="1", remote_order_code="A",
                  order_year=2025, attendance_id=3001, patient_id=None, file_name="LAUDO_A.PDF")
    record_attachment(state_db, **kwargs)
    record_attachment(state_db, **dict(kwargs, document_id=11))

    assert attachment_exists(state_db, "h1", "PDF")
    assert not attachment_exists(state_db, "h1", "GRAFICO")

    conn = state_conn(state_db)
    rows = conn.execute("SELECT document_id FROM attached_artifacts").fetchall()
    conn.close()
    assert [r["document_id"] for r in rows] == [10]
