# pardini_sync/services/artifact_store.py

import os
import re
from datetime import datetime
from typing import List, Optional

from models import RemoteResult
from logger import get_logger

log = get_logger("artifact_store")

_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]+")


def _safe(part) -> str:
    return _UNSAFE.sub("_", str(part)).strip("_") or "x"


class ArtifactStore:
    """
    Optional on-disk copy of what HPWS sent us:

        hpws-getResultadoPedido-2025-1419652-20250114-101500.xml
        hpws-getResultadoPedido-2025-1419652-20250114-101500-pdf01.pdf
        hpws-getResultadoPedido-2025-1419652-20250114-101500-grafico01.png

    Never raises; a full disk must not fail an order.
    """

    def __init__(self, output_dir: str, prefix: str = "hpws"):
        self.output_dir = output_dir
        self.prefix = prefix

    def base_name(self, operation: str, key: str, when: Optional[datetime] = None) -> str:
        ts = (when or datetime.now()).strftime("%Y%m%d-%H%M%S")
        return f"{_safe(self.prefix)}-{_safe(operation)}-{_safe(key)}-{ts}"

    def save(self, operation: str, key: str, raw_response: str,
             result: Optional[RemoteResult] = None, when: Optional[datetime] = None) -> List[str]:
        written: List[str] = []
        try:
            os.makedirs(self.output_dir, exist_ok=True)
            base = os.path.join(self.output_dir, self.base_name(operation, key, when))

            self._write(f"{base}.xml", (raw_response or "").encode("utf-8"), written)

            if result is not None:
                for i, art in enumerate(result.pdf_artifacts, start=1):
                    self._write(f"{base}-pdf{i:02d}.pdf", art.content, written)
                for i, art in enumerate(result.graphic_artifacts, start=1):
                    self._write(f"{base}-grafico{i:02d}.{art.extension}", art.content, written)
        except OSError as e:
            log.warning(f"Could not save HPWS artifacts for {operation} {key}: {e}")

        return written

    @staticmethod
    def _write(path: str, data: bytes, written: List[str]) -> None:
        with open(path, "wb") as f:
            f.write(data)
        written.append(path)
        log.debug(f"Saved {len(data)} bytes -> {path}")
