# db.py

import sqlite3
from datetime import datetime, timezone
from typing import Any, Iterable, List, Dict, Optional, Tuple

from models import RemoteMapping
from logger import get_logger


log = get_logger("db")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------- MV2000 (ODBC) Helpers ----------
def fetchall_dict(cur) -> List[Dict[str, Any]]:
    cols = [c[0] for c in cur.description]
    out = []
    for row in cur.fetchall():
        d = dict(zip(cols, row))

        # Oracle returns upper-case column names; add lowercase aliases
        for k, v in list(d.items()):
            lk = str(k).lower()
            if lk not in d:
                d[lk] = v

        out.append(d)
    return out


def rquery(conn, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(sql, params)
    return fetchall_dict(cur)


def rexec(conn, sql: str, params: Tuple[Any, ...] = ()) -> int:
    cur = conn.cursor()
    cur.execute(sql, params)
    return cur.rowcount


def rscalar(conn, sql: str, params: Tuple[Any, ...] = ()) -> Any:
    cur = conn.cursor()
    cur.execute(sql, params)
    row = cur.fetchone()
    return row[0] if row else None


# ---------- Local State DB ----------
def _table_columns(cur: sqlite3.Cursor, table: str) -> set[str]:
    cur.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cur.fetchall()}


def _ensure_column(cur: sqlite3.Cursor, table: str, column: str, col_type: str) -> None:
    cols = _table_columns(cur, table)
    if column not in cols:
        log.info(f"DB MIGRATION: adding column {table}.{column} {col_type}")
        cur.execute(f'ALTER TABLE {table} ADD COLUMN "{column}" {col_type}')


def state_conn(db_path: str) -> sqlite3.Connection:
    # worker threads write concurrently; wait for the file lock instead of failing
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_state_db(db_path: str) -> None:
    conn = state_conn(db_path)
    cur = conn.cursor()

    cur.execute("""
    CREATE TABLE IF NOT EXISTS workflow_runs (
        run_id TEXT PRIMARY KEY,
        start_ts TEXT,
        end_ts TEXT,
        env TEXT,
        pending_count INTEGER,
        processed_count INTEGER,
        failed_count INTEGER,
        log_file_path TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS run_items (
        run_id TEXT,
        local_order_code TEXT,
        status TEXT,
        last_step TEXT,
        message TEXT,
        updated_ts TEXT,
        PRIMARY KEY (run_id, local_order_code)
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS pardini_map (
        local_order_code TEXT PRIMARY KEY,
        remote_order_code TEXT NOT NULL,
        order_year INTEGER,
        updated_ts TEXT
    )
    """)

    cur.execute("""
    CREATE TABLE IF NOT EXISTS attached_artifacts (
        content_hash TEXT,
        kind TEXT,
        document_id INTEGER,
        local_order_code TEXT,
        remote_order_code TEXT,
        order_year INTEGER,
        attendance_id INTEGER,
        patient_id INTEGER,
        file_name TEXT,
        attached_ts TEXT,
        PRIMARY KEY (content_hash, kind)
    )
    """)

    # ---- MIGRATIONS / SAFE UPGRADES ----
    _ensure_column(cur, "workflow_runs", "deferred_count", "INTEGER")
    _ensure_column(cur, "workflow_runs", "mapped_count", "INTEGER")

    conn.commit()
    conn.close()

    ensure_state_indexes(db_path)


def ensure_state_indexes(db_path: str) -> None:
    conn = state_conn(db_path)
    conn.executescript("""
    CREATE INDEX IF NOT EXISTS idx_run_items_run_id ON run_items(run_id);
    CREATE INDEX IF NOT EXISTS idx_run_items_local_order_code ON run_items(local_order_code);
    CREATE INDEX IF NOT EXISTS idx_pardini_map_remote ON pardini_map(remote_order_code);
    CREATE INDEX IF NOT EXISTS idx_attached_artifacts_order ON attached_artifacts(local_order_code);

    CREATE INDEX IF NOT EXISTS idx_workflow_runs_start_ts ON workflow_runs(start_ts);
    """)
    conn.commit()
    conn.close()


# ---------- Runs ----------
def mark_run(db_path: str, run_id: str, start_ts: str, env: str, log_file_path: str) -> None:
    conn = state_conn(db_path)
    conn.execute("""
    INSERT INTO workflow_runs (run_id, start_ts, env, pending_count, processed_count, failed_count,
                               deferred_count, mapped_count, log_file_path)
    VALUES (?, ?, ?, 0, 0, 0, 0, 0, ?)
    """, (run_id, start_ts, env, log_file_path))
    conn.commit()
    conn.close()


def close_run(
    db_path: str,
    run_id: str,
    end_ts: str,
    pending: int,
    processed: int,
    failed: int,
    deferred: int,
    mapped: int,
) -> None:
    conn = state_conn(db_path)
    conn.execute("""
    UPDATE workflow_runs
    SET end_ts=?, pending_count=?, processed_count=?, failed_count=?, deferred_count=?, mapped_count=?
    WHERE run_id=?
    """, (end_ts, pending, processed, failed, deferred, mapped, run_id))
    conn.commit()
    conn.close()


def mark_run_item(db_path: str, run_id: str, local_order_code: str, status: str, last_step: str,
                  message: Optional[str] = None) -> None:
    conn = state_conn(db_path)
    conn.execute("""
    INSERT INTO run_items (run_id, local_order_code, status, last_step, message, updated_ts)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(run_id, local_order_code) DO UPDATE SET
        status=excluded.status,
        last_step=excluded.last_step,
        message=excluded.message,
        updated_ts=excluded.updated_ts
    """, (run_id, local_order_code, status, last_step, (message or "")[:4000] or None, _now()))
    conn.commit()
    conn.close()


def last_run_start_ts(db_path: str) -> Optional[str]:
    conn = state_conn(db_path)
    row = conn.execute("SELECT start_ts FROM workflow_runs ORDER BY start_ts DESC LIMIT 1").fetchone()
    conn.close()
    return row["start_ts"] if row else None


# ---------- Pardini mapping ----------
def upsert_mappings(db_path: str, mappings: Iterable[RemoteMapping]) -> int:
    """Update-on-conflict by local code, else insert. Returns rows affected."""
    now = _now()
    total = 0
    conn = state_conn(db_path)
    try:
        cur = conn.cursor()
        for m in mappings:
            cur.execute("""
            INSERT INTO pardini_map (local_order_code, remote_order_code, order_year, updated_ts)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(local_order_code) DO UPDATE SET
                remote_order_code=excluded.remote_order_code,
                order_year=excluded.order_year,
                updated_ts=excluded.updated_ts
            """, (m.local_order_code, m.remote_order_code, m.order_year, now))
            total += max(cur.rowcount, 0)
        conn.commit()
    finally:
        conn.close()
    return total


def get_mapping(db_path: str, local_order_code: str) -> Optional[RemoteMapping]:
    conn = state_conn(db_path)
    row = conn.execute("""
    SELECT local_order_code, remote_order_code, order_year, updated_ts
    FROM pardini_map
    WHERE local_order_code = ?
    ORDER BY updated_ts DESC
    LIMIT 1
    """, (local_order_code,)).fetchone()
    conn.close()
    if not row:
        return None
    return RemoteMapping(
        local_order_code=row["local_order_code"],
        remote_order_code=row["remote_order_code"],
        order_year=row["order_year"],
        updated_at=row["updated_ts"],
    )


def count_mappings(db_path: str) -> int:
    conn = state_conn(db_path)
    row = conn.execute("SELECT COUNT(*) AS cnt FROM pardini_map").fetchone()
    conn.close()
    return int(row["cnt"])


# ---------- Attachment ledger ----------
def record_attachment(
    db_path: str,
    *,
    content_hash: str,
    kind: str,
    document_id: int,
    local_order_code: str,
    remote_order_code: str,
    order_year: Optional[int],
    attendance_id: Optional[int],
    patient_id: Optional[int],
    file_name: str,
) -> None:
    conn = state_conn(db_path)
    conn.execute("""
    INSERT INTO attached_artifacts (
        content_hash, kind, document_id, local_order_code, remote_order_code, order_year,
        attendance_id, patient_id, file_name, attached_ts
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(content_hash, kind) DO NOTHING
    """, (
        content_hash, kind, document_id, local_order_code, remote_order_code, order_year,
        attendance_id, patient_id, file_name, _now(),
    ))
    conn.commit()
    conn.close()


def attachment_exists(db_path: str, content_hash: str, kind: str) -> bool:
    conn = state_conn(db_path)
    row = conn.execute(
        "SELECT 1 FROM attached_artifacts WHERE content_hash=? AND kind=?",
        (content_hash, kind),
    ).fetchone()
    conn.close()
    return row is not None
