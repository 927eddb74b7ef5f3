# pardini_sync/codec.py

import base64
import binascii
import hashlib
import re
from enum import Enum
from typing import Optional

from exceptions import DecodeError
from logger import get_logger

log = get_logger("codec")

BOM = "\ufeff"
_WS_RE = re.compile(r"\s+")

PDF_MAGIC = b"%PDF-"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPEG_MAGIC = b"\xff\xd8\xff"


class FileType(str, Enum):
    PDF = "PDF"
    PNG = "PNG"
    JPG = "JPG"
    BIN = "BIN"


def normalize(value: Optional[str]) -> str:
    """Drop every whitespace char (HPWS wraps base64 at 76 cols) and a leading BOM."""
    if value is None:
        return ""
    s = _WS_RE.sub("", value)
    if s.startswith(BOM):
        s = s[1:]
    return s.strip()


def decode_base64(value: Optional[str]) -> bytes:
    if value is None or not value.strip():
        return b""

    normalized = normalize(value)
    if not normalized:
        log.warning("Base64 string empty after normalization")
        return b""

    # padding is optional on the wire
    padded = normalized + "=" * (-len(normalized) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 content ({len(normalized)} chars): {e}") from e

    log.debug(f"Base64 decoded: {len(normalized)} chars -> {len(decoded)} bytes")
    return decoded


def encode_base64(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return base64.b64encode(data).decode("ascii")


def is_valid_base64(value: Optional[str]) -> bool:
    if not value or not value.strip():
        return False
    try:
        decode_base64(value)
        return True
    except DecodeError:
        return False


def sha256_hex(data: Optional[bytes]) -> Optional[str]:
    if not data:
        return None
    return hashlib.sha256(data).hexdigest()


def is_pdf(data: Optional[bytes]) -> bool:
    return bool(data) and data.startswith(PDF_MAGIC)


def is_png(data: Optional[bytes]) -> bool:
    return bool(data) and data.startswith(PNG_MAGIC)


def is_jpeg(data: Optional[bytes]) -> bool:
    return bool(data) and data.startswith(JPEG_MAGIC)


def classify(data: Optional[bytes]) -> FileType:
    if is_pdf(data):
        return FileType.PDF
    if is_png(data):
        return FileType.PNG
    if is_jpeg(data):
        return FileType.JPG
    return FileType.BIN


def extension_for(file_type: FileType) -> str:
    return file_type.value.lower()
