# pardini_sync/config.py

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Mapping, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULTS = {
    "TEST": {
        "HPWS_ENDPOINT": "",
        "DSN": "MV2000_Test64",
    },
    "LIVE": {
        "HPWS_ENDPOINT": "",
        "DSN": "MV2000_Live64",
    },
}

SOAP_ACTION_GET_RESULTADO_PEDIDO = "http://hermespardini.com.br/b2b/apoio/schemas/HPWS.XMLServer.getResultadoPedido"
SOAP_ACTION_GET_RESULTADO = "http://hermespardini.com.br/b2b/apoio/schemas/HPWS.XMLServer.getResultado"

# ---------------- Paths (stable, absolute) ----------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Logging
LOG_DIR = os.getenv("LOG_DIR", os.path.join(BASE_DIR, "logs"))
LOG_FILE = os.getenv("LOG_FILE", "pardini_sync.log")
AUDIT_LOG_FILE = os.getenv("AUDIT_LOG_FILE", "pardini_audit.log")

# Email (admin notifications)
EMAIL_CONFIG = {
    "smtp_server": os.getenv("SMTP_SERVER", "smtp.office365.com"),
    "smtp_port": int(os.getenv("SMTP_PORT", 587)),
    "smtp_username": os.getenv("SMTP_USERNAME", ""),
    "smtp_password": os.getenv("SMTP_PASSWORD", ""),  # set via ENV
    "from_addr": os.getenv("FROM_EMAIL", ""),
}


def _split_emails(raw: str) -> List[str]:
    return [e.strip() for e in (raw or "").split(",") if e.strip()]


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = (env.get(key) or "").strip()
    return int(raw) if raw else default


def _opt_int(env: Mapping[str, str], key: str) -> Optional[int]:
    raw = (env.get(key) or "").strip()
    return int(raw) if raw else None


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = (env.get(key) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "s", "sim")


@dataclass(frozen=True)
class Settings:
    """Everything the worker needs, resolved once at start-up and passed down."""
    env: str = "TEST"

    # HPWS (Hermes Pardini)
    hpws_endpoint: str = ""
    hpws_login: str = ""
    hpws_passwd: str = field(default="", repr=False)
    action_get_resultado_pedido: str = SOAP_ACTION_GET_RESULTADO_PEDIDO
    action_get_resultado: str = SOAP_ACTION_GET_RESULTADO
    connect_timeout: float = 30.0
    read_timeout: float = 60.0
    probe_timeout: float = 8.0
    output_dir: Optional[str] = None

    # MV2000 (ODBC)
    dsn: str = ""
    db_user: str = ""
    db_pass: str = field(default="", repr=False)

    # Worker behavior
    batch_size: int = 50
    pool_size: int = 5
    item_timeout_seconds: int = 300
    period_window_hours: int = 24
    period_include_graphics: int = 1
    default_year: Optional[int] = None
    fallback_years: int = 2
    prefer_mapped_year: bool = False
    run_every_minutes: int = 5

    # MV2000 document metadata
    doc_type_report: int = 841
    doc_type_graphic: int = 841
    integration_user: str = "RERONO_API"
    document_origin: str = "HERMES PARDINI - HPWS"

    # Local state DB (SQLite)
    state_db_path: str = os.path.join(BASE_DIR, "state.db")

    admin_emails: List[str] = field(default_factory=list)
    admin_tz: str = "America/Sao_Paulo"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    env_name = (env.get("ENV") or "TEST").upper()
    cfg = DEFAULTS["LIVE"] if env_name == "LIVE" else DEFAULTS["TEST"]

    return Settings(
        env=env_name,
        hpws_endpoint=(env.get("HPWS_ENDPOINT") or cfg["HPWS_ENDPOINT"]).strip(),
        hpws_login=(env.get("HPWS_LOGIN") or "").strip(),
        hpws_passwd=(env.get("HPWS_PASSWD") or "").strip(),
        action_get_resultado_pedido=(
            env.get("HPWS_SOAP_ACTION_GET_RESULTADO_PEDIDO") or SOAP_ACTION_GET_RESULTADO_PEDIDO
        ).strip(),
        action_get_resultado=(env.get("HPWS_SOAP_ACTION_GET_RESULTADO") or SOAP_ACTION_GET_RESULTADO).strip(),
        connect_timeout=float(env.get("HPWS_CONNECT_TIMEOUT") or 30),
        read_timeout=float(env.get("HPWS_READ_TIMEOUT") or 60),
        probe_timeout=float(env.get("HPWS_PROBE_TIMEOUT") or 8),
        output_dir=(env.get("HPWS_OUTPUT_DIR") or "").strip() or None,
        dsn=(env.get("DSN") or cfg["DSN"]).strip(),
        db_user=(env.get("DB_USER") or "").strip(),
        db_pass=env.get("DB_PASS") or "",
        batch_size=_int(env, "WORKER_BATCH_SIZE", 50),
        pool_size=_int(env, "WORKER_POOL_SIZE", 5),
        item_timeout_seconds=_int(env, "WORKER_ITEM_TIMEOUT_SECONDS", 300),
        period_window_hours=_int(env, "WORKER_PERIOD_WINDOW_HOURS", 24),
        period_include_graphics=1 if _bool(env, "WORKER_PERIOD_INCLUDE_GRAPHICS", True) else 0,
        default_year=_opt_int(env, "WORKER_DEFAULT_YEAR"),
        fallback_years=_int(env, "WORKER_FALLBACK_YEARS", 2),
        prefer_mapped_year=_bool(env, "WORKER_PREFER_MAPPED_YEAR", False),
        run_every_minutes=_int(env, "RUN_EVERY_MINUTES", 5),
        doc_type_report=_int(env, "MV_DOC_TYPE_REPORT", 841),
        doc_type_graphic=_int(env, "MV_DOC_TYPE_GRAPHIC", 841),
        integration_user=(env.get("MV_INTEGRATION_USER") or "RERONO_API").strip(),
        document_origin=(env.get("MV_DOCUMENT_ORIGIN") or "HERMES PARDINI - HPWS").strip(),
        state_db_path=env.get("STATE_DB_PATH") or os.path.join(BASE_DIR, "state.db"),
        admin_emails=_split_emails(env.get("ADMIN_EMAILS", "")),
        admin_tz=(env.get("ADMIN_TZ") or "America/Sao_Paulo").strip(),
    )


# -------------- DB Helpers --------------
# pyodbc needs the unixODBC runtime; only import it where a connection is opened.
def _odbc_conn_str(settings: Settings) -> str:
    return f"DSN={settings.dsn};UID={settings.db_user};PWD={settings.db_pass}"


def get_db_conn(settings: Settings):
    import pyodbc

    return pyodbc.connect(_odbc_conn_str(settings), autocommit=False, timeout=30)


def get_readonly_conn(settings: Settings):
    import pyodbc

    return pyodbc.connect(_odbc_conn_str(settings), autocommit=True, timeout=30)


# -------------- HTTP Session --------------
def build_session(settings: Settings) -> requests.Session:
    # Only connection establishment is retried here. A request that reached
    # HPWS is never replayed within the cycle; any status is returned as-is.
    session = requests.Session()
    retries = Retry(
        total=2,
        connect=2,
        read=0,
        status=0,
        backoff_factor=2.0,
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
