import os, sys
from datetime import datetime, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from api import ProtocolClient
from config import load_settings
from db import init_state_db, count_mappings
from services.reconciliation import ReconciliationMapper

# Usage: refresh_mapping.py [hours]
settings = load_settings()
hours = int(sys.argv[1]) if len(sys.argv) > 1 else settings.period_window_hours

init_state_db(settings.state_db_path)

end = datetime.now()
start = end - timedelta(hours=hours)

raw = ProtocolClient(settings).fetch_period_results(start, end, settings.period_include_graphics)
if raw is None:
    print("getResultado failed; see log")
    sys.exit(1)

affected = ReconciliationMapper(settings.state_db_path).refresh(raw)
print(f"{affected} row(s) upserted; {count_mappings(settings.state_db_path)} mapping(s) total")
