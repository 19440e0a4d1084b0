class UploadError(Exception):
    """Base class for protocol errors; carries the HTTP status and wire error code."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def payload(self) -> dict:
        return {"detail": self.detail, "error_code": self.error_code}


class ValidationError(UploadError):
    status_code = 400
    error_code = "validation_error"


class NotFound(UploadError):
    status_code = 404
    error_code = "not_found"


class Conflict(UploadError):
    status_code = 409
    error_code = "conflict"


class Incomplete(UploadError):
    status_code = 409
    error_code = "incomplete"

    def __init__(self, pending_count: int, detail: str | None = None) -> None:
        super().__init__(detail or f"cannot finalize, {pending_count} chunks pending")
        self.pending_count = pending_count

    def payload(self) -> dict:
        return {**super().payload(), "pending_count": self.pending_count}


class StorageIOError(UploadError):
    status_code = 500
    error_code = "storage_error"


class TransientError(UploadError):
    """Network-level failure seen by the client; safe to retry."""

    status_code = 503
    error_code = "transient"

class ProtocolError(UploadError):
    """The server answered with a body the client cannot interpret; not retried."""

    status_code = 502
    error_code = "bad_response"
