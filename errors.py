"""Error kinds shared by the stores, the sync pipeline and the HTTP layer."""

from __future__ import annotations

from typing import Optional


class NotebookError(Exception):
    """Base class; ``kind`` and ``status_code`` are surfaced to API clients."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"error": self.kind, "detail": self.message}


class ValidationError(NotebookError, ValueError):
    """A required field is missing or malformed. Never retried."""

    kind = "validation_error"
    status_code = 400


class StorageError(NotebookError):
    """The local database failed."""

    kind = "storage_error"
    status_code = 500


class AuthError(NotebookError):
    """The external token is missing, invalid or expired."""

    kind = "auth_error"
    status_code = 401


class UpstreamError(NotebookError):
    """The game platform was unreachable or answered with a non-2xx status."""

    kind = "upstream_error"
    status_code = 502

    def __init__(self, message: str = "", *, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
