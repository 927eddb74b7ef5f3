from datetime import datetime

from models import Artifact, RemoteResult
from services.artifact_store import ArtifactStore

from conftest import PDF_BYTES


def test_base_name_is_filesystem_safe(tmp_path):
    store = ArtifactStore(str(tmp_path))
    name = store.base_name("getResultado", "202501010000-202501020000", datetime(2025, 1, 2, 3, 4, 5))
    assert name == "hpws-getResultado-202501010000-202501020000-20250102-030405"
    assert store.base_name("op", "a/b c", datetime(2025, 1, 1)).startswith("hpws-op-a_b_c-")


def test_write_failure_is_swallowed(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    result = RemoteResult("1", 2025, pdf_artifacts=[Artifact(content=PDF_BYTES, sha256="h")])
    assert ArtifactStore(str(blocker)).save("getResultadoPedido", "2025-1", "<xml/>", result) == []
