import os
import tempfile

# keep test runs from writing into the project's logs/ directory
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="pardini_sync_logs_"))

import base64

import pytest

from config import Settings
from db import init_state_db

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def state_db(tmp_path):
    path = str(tmp_path / "state.db")
    init_state_db(path)
    return path


@pytest.fixture
def settings(state_db):
    return Settings(
        env="TEST",
        hpws_endpoint="http://hpws.test/hpws.php",
        hpws_login="user",
        hpws_passwd="s3cret",
        state_db_path=state_db,
        default_year=2025,
        fallback_years=2,
        pool_size=3,
        item_timeout_seconds=10,
    )


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.content = text.encode("utf-8")


class FakeSession:
    """Records every call; answers from a queue."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.posts = []
        self.gets = []

    def _next(self):
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else FakeResponse(200, "")

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({"url": url, "data": data.decode("utf-8"), "headers": headers, "timeout": timeout})
        return self._next()

    def get(self, url, timeout=None):
        self.gets.append({"url": url, "timeout": timeout})
        return self._next()
