"""Error types shared by the local store, the recorder and the sync engine."""
from typing import Optional


class PosError(Exception):
    pass


class LocalValidationError(PosError, ValueError):
    """Input rejected before anything was written locally."""


class RecordNotFound(LocalValidationError):
    pass


class LocalStorageError(PosError):
    """A local transaction failed and was rolled back as a whole."""

    def __init__(self, message: str = "Failed to save locally", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SyncDeferred(PosError):
    """Transient failure talking to the server; the entry stays queued."""


class ServerRejected(PosError):
    """The server refused a queued mutation (4xx); needs attention."""

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"http {status_code}: {detail}".strip().rstrip(":"))
        self.status_code = status_code
        self.detail = detail
