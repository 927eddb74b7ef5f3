from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from flask import Flask, abort, jsonify, render_template, request

from config import Settings, load_settings
from db import count_mappings, init_state_db, last_run_start_ts, state_conn
from logger import get_logger

log = get_logger("admin")


def _to_dt_utc(value):
    # value can be ISO string or datetime
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_ts(value):
    if not value:
        return None
    try:
        return _to_dt_utc(value)
    except ValueError:
        return None


def duration_s(start_ts, end_ts):
    s = _parse_ts(start_ts)
    e = _parse_ts(end_ts)
    if not s or not e:
        return None
    return int((e - s).total_seconds())


def create_app(settings: Optional[Settings] = None) -> Flask:
    """
    Read-only dashboard over the local state DB.

    waitress: waitress-serve --call admin:create_app
    """
    settings = settings or load_settings()
    db_path = settings.state_db_path
    local_tz = ZoneInfo(settings.admin_tz)

    # waitress never runs __main__, so the schema is ensured here
    init_state_db(db_path)

    app = Flask(__name__)
    app.config["SETTINGS"] = settings

    def format_local(value, fmt="%d/%m/%Y %H:%M"):
        dt_utc = _parse_ts(value)
        if not dt_utc:
            return ""
        return dt_utc.astimezone(local_tz).strftime(fmt)

    app.jinja_env.filters["local"] = format_local
    app.jinja_env.filters["duration_s"] = duration_s

    @app.route("/")
    def dashboard():
        q = (request.args.get("q") or "").strip()

        conn = state_conn(db_path)
        if not q:
            runs = conn.execute(
                "SELECT * FROM workflow_runs ORDER BY start_ts DESC LIMIT 25"
            ).fetchall()
            match_count = None
        else:
            like = f"%{q}%"
            runs = conn.execute("""
                SELECT DISTINCT wr.*
                FROM workflow_runs wr
                JOIN run_items ri ON ri.run_id = wr.run_id
                WHERE ri.local_order_code LIKE ?
                ORDER BY wr.start_ts DESC
                LIMIT 100
            """, (like,)).fetchall()
            match_count = len(runs)
        conn.close()

        return render_template(
            "dashboard.html",
            runs=runs,
            q=q,
            match_count=match_count,
            mapping_count=count_mappings(db_path),
            env=settings.env,
            db_path=db_path,
        )

    @app.route("/run/<run_id>")
    def run_detail(run_id):
        conn = state_conn(db_path)
        run = conn.execute("SELECT * FROM workflow_runs WHERE run_id = ?", (run_id,)).fetchone()
        if run is None:
            conn.close()
            abort(404)

        items = conn.execute("""
            SELECT
                ri.local_order_code,
                ri.status,
                ri.last_step,
                ri.message,
                ri.updated_ts,
                pm.remote_order_code,
                pm.order_year
            FROM run_items ri
            LEFT JOIN pardini_map pm
              ON pm.local_order_code = ri.local_order_code
            WHERE ri.run_id = ?
            ORDER BY ri.local_order_code
        """, (run_id,)).fetchall()
        conn.close()

        return render_template("run_detail.html", run=run, items=items)

    @app.route("/order/<code>")
    def order_detail(code):
        conn = state_conn(db_path)
        mapping = conn.execute(
            "SELECT * FROM pardini_map WHERE local_order_code = ?", (code,)
        ).fetchone()
        attachments = conn.execute("""
            SELECT * FROM attached_artifacts
            WHERE local_order_code = ?
            ORDER BY attached_ts DESC
        """, (code,)).fetchall()
        history = conn.execute("""
            SELECT ri.*, wr.start_ts
            FROM run_items ri
            JOIN workflow_runs wr ON wr.run_id = ri.run_id
            WHERE ri.local_order_code = ?
            ORDER BY wr.start_ts DESC
            LIMIT 50
        """, (code,)).fetchall()
        conn.close()

        if mapping is None and not attachments and not history:
            abort(404)

        return render_template(
            "order_detail.html",
            code=code,
            mapping=mapping,
            attachments=attachments,
            history=history,
        )

    @app.route("/health")
    def health():
        return jsonify({
            "env": settings.env,
            "last_run_start": last_run_start_ts(db_path),
            "mappings": count_mappings(db_path),
        })

    return app


if __name__ == "__main__":
    # For local dev only. Waitress uses --call admin:create_app
    log.info("===== ADMIN START: dev server =====")
    try:
        create_app().run(host="0.0.0.0", port=5050, debug=True)
    finally:
        log.info("===== ADMIN EXIT: dev server =====")
