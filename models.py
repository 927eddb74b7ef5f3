#models.py
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List

from codec import FileType, extension_for


class CycleState(str, Enum):
    IDLE = "IDLE"
    REFRESHING_MAP = "REFRESHING_MAP"
    FETCHING_PENDING = "FETCHING_PENDING"
    DISPATCHING = "DISPATCHING"
    AWAITING = "AWAITING"
    DONE = "DONE"


class ArtifactKind(str, Enum):
    PDF = "PDF"
    GRAFICO = "GRAFICO"


@dataclass(frozen=True)
class PendingItem:
    local_order_code: str
    signed_flag: str = "N"          # SN_ASSINADO: Y/N
    attendance_id: Optional[int] = None
    patient_id: Optional[int] = None


@dataclass(frozen=True)
class RemoteMapping:
    local_order_code: str
    remote_order_code: str
    order_year: Optional[int] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class Artifact:
    content: bytes = field(repr=False)
    sha256: str
    file_type: FileType = FileType.BIN

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return extension_for(self.file_type)


@dataclass
class RemoteResult:
    remote_order_code: str
    order_year: Optional[int]
    local_order_code: Optional[str] = None
    success: bool = False
    fault: bool = False
    error_message: Optional[str] = None
    return_code: Optional[str] = None
    pdf_artifacts: List[Artifact] = field(default_factory=list)
    graphic_artifacts: List[Artifact] = field(default_factory=list)
    raw_response: str = field(default="", repr=False)

    @property
    def has_pdf(self) -> bool:
        return bool(self.pdf_artifacts)

    @property
    def has_graphic(self) -> bool:
        return bool(self.graphic_artifacts)

    @property
    def has_artifacts(self) -> bool:
        return self.has_pdf or self.has_graphic

    @property
    def key(self) -> str:
        return f"{self.order_year}-{self.remote_order_code}"


@dataclass
class AttachedDocument:
    document_id: int
    attendance_id: int
    patient_id: Optional[int]
    content_hash: str
    document_type: int
    description: str
    file_name: str


@dataclass
class CycleOutcome:
    run_id: str
    pending: int = 0
    processed: int = 0
    errors: int = 0
    deferred: int = 0


class Counter:
    """int counter shared by the pool threads."""
    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        with self._lock:
            return self._value
