# pardini_sync/exceptions.py


class PardiniSyncError(Exception):
    """Base class for everything raised by the sync worker."""


class ConfigError(PardiniSyncError):
    """Required setting missing. Fatal for the component that checks it."""
    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class TransportError(PardiniSyncError):
    """Network/timeout talking to HPWS. Next cycle retries; we don't retry in-cycle."""
    def __init__(self, message: str, *, endpoint: str | None = None, operation: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.operation = operation


class ProtocolFault(PardiniSyncError):
    """
    Raised when HPWS answers with a SOAP fault. Carries the structured fault
    fields so the item failure (and the audit line) keeps the remote message.
    """
    def __init__(
        self,
        message: str,
        *,
        fault_code: str | None = None,
        fault_string: str | None = None,
        raw_response_text: str | None = None,
    ):
        super().__init__(message)
        self.fault_code = fault_code
        self.fault_string = fault_string
        self.raw_response_text = raw_response_text


class ParseError(PardiniSyncError):
    """Payload could not be read. Logged and treated as zero extraction."""


class DecodeError(ParseError):
    """Malformed base64 content."""


class MappingNotFound(PardiniSyncError):
    """Order not reconciled yet (not a failure). The item is retried next cycle."""
    def __init__(self, local_order_code: str):
        super().__init__(f"Order {local_order_code} not yet reconciled with HPWS")
        self.local_order_code = local_order_code


class ItemProcessingError(PardiniSyncError):
    """Hard failure for one pending item. Other items keep going."""


class ContentUnavailable(ItemProcessingError):
    """Every year in the fallback sequence was tried without usable content."""
    def __init__(self, message: str, *, years_tried: list[int] | None = None, last_error: str | None = None):
        super().__init__(message)
        self.years_tried = years_tried or []
        self.last_error = last_error


class ItemCancelled(ItemProcessingError):
    """Per-item deadline passed; the task stops at its next checkpoint."""


class PersistenceError(PardiniSyncError):
    """Write to the hospital store failed and was rolled back."""
