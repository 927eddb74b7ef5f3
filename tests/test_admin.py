import pytest

from admin import create_app
from db import mark_run, mark_run_item, record_attachment, upsert_mappings
from models import RemoteMapping


@pytest.fixture
def client(settings):
    db = settings.state_db_path
    mark_run(db, "run-1", "2025-01-14T13:00:00+00:00", "TEST", "logs/pardini_sync.log")
    mark_run_item(db, "run-1", "5001", "SUCCESS", "ATTACHED", "1 document(s) attached")
    mark_run_item(db, "run-1", "5002", "DEFERRED", "MAPPING")
    upsert_mappings(db, [RemoteMapping("5001", "900001", 2025)])
    record_attachment(db, content_hash="ab" * 32, kind="PDF", document_id=77, local_order_code="5001",
                      remote_order_code="900001", order_year=2025, attendance_id=3001, patient_id=9001,
                      file_name="LAUDO_900001.PDF")

    app = create_app(settings)
    app.config["TESTING"] = True
    return app.test_client()


def test_dashboard_lists_runs(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert b"/run/run-1" in resp.data
    assert b"1 mapped order(s)" in resp.data


def test_dashboard_search_by_order(client):
    assert b"/run/run-1" in client.get("/?q=5002").data
    assert b"/run/run-1" not in client.get("/?q=9999").data


def test_run_detail(client):
    resp = client.get("/run/run-1")
    assert resp.status_code == 200
    assert b"900001" in resp.data and b"DEFERRED" in resp.data
    assert client.get("/run/missing").status_code == 404


def test_order_detail(client):
    resp = client.get("/order/5001")
    assert resp.status_code == 200
    assert b"LAUDO_900001.PDF" in resp.data
    assert client.get("/order/nope").status_code == 404


def test_health(client):
    data = client.get("/health").get_json()
    assert data == {"env": "TEST", "last_run_start": "2025-01-14T13:00:00+00:00", "mappings": 1}
