"""Domain exceptions. Rendered as ErrorResponse bodies by the handlers in app.main."""

from __future__ import annotations

from typing import Any


class DocumentServiceError(Exception):
    """Base class for every error a service raises on purpose."""

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        field: str | None = None,
    ) -> None:
        self.message = message
        self.field = field
        if error_code:
            self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error_code": self.error_code, "message": self.message}


class ValidationFailed(DocumentServiceError):
    status_code = 400
    error_code = "INVALID_REQUEST"


class PayloadTooLarge(DocumentServiceError):
    status_code = 413
    error_code = "FILE_TOO_LARGE"


class NotFound(DocumentServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class Conflict(DocumentServiceError):
    """Stale version numbers, illegal status transitions, concurrent digest writes."""

    status_code = 409
    error_code = "CONFLICT"


class ArchiveFailed(DocumentServiceError):
    status_code = 500
    error_code = "ARCHIVE_FAILED"


class UpstreamError(DocumentServiceError):
    status_code = 502
    error_code = "UPSTREAM_ERROR"


class ExtractionError(DocumentServiceError):
    """Raised inside the processing hook; recorded on the digest, never returned as-is."""

    status_code = 422
    error_code = "EXTRACTION_FAILED"


class ChunkIndexingError(DocumentServiceError):
    """Chunking or embedding failed after embedding_status was recorded as failed."""

    status_code = 502
    error_code = "CHUNK_INDEXING_FAILED"
