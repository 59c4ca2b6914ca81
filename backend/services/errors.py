"""
Error taxonomy for the coordination core.
Every failure carries a machine-readable code for collaborators and a
human-readable detail for logs and UIs.
"""
from typing import Optional


class CoreError(Exception):
    """Base class. Subclasses fix the HTTP status the API layer maps to."""
    status_code = 500
    default_code = "ERROR"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"ok": False, "code": self.code, "detail": self.detail}


class ValidationError(CoreError):
    """Malformed or missing input. Nothing was written."""
    status_code = 400
    default_code = "VALIDATION"


class ForbiddenError(CoreError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(CoreError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(CoreError):
    """
    Lost a race or hit a logical limit (already taken, already transferred,
    extension limit). The caller should re-query; the core never retries these.
    """
    status_code = 409
    default_code = "CONFLICT"


class TransientStoreError(CoreError):
    """Infrastructure failure during an all-or-nothing write. Safe to retry."""
    status_code = 503
    default_code = "STORE_UNAVAILABLE"
