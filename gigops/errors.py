"""
Error taxonomy for gig scheduling operations.

Every error is local to one call. Only WriteConflict is safe to retry
(after re-fetching the gig); ConflictDetected is a decision for the caller.
"""
from typing import Any, Dict, List, Optional


class GigOpsError(Exception):
    status_code = 400
    code = "error"
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code, "retryable": self.retryable}


class NotAuthenticated(GigOpsError):
    status_code = 401
    code = "not_authenticated"

    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(detail)


class AccessDenied(GigOpsError):
    status_code = 403
    code = "access_denied"


class NotFound(GigOpsError):
    status_code = 404
    code = "not_found"


class ValidationError(GigOpsError):
    status_code = 422
    code = "validation_error"


class StaleReference(GigOpsError):
    """An id in a desired collection no longer exists (only raised in strict mode)."""
    status_code = 409
    code = "stale_reference"


class WriteConflict(GigOpsError):
    status_code = 409
    code = "write_conflict"
    retryable = True


class ConflictDetected(GigOpsError):
    """Equipment double-booking discovered inside a write transaction."""
    status_code = 409
    code = "conflict_detected"

    def __init__(self, detail: str, conflicts: Optional[List[Any]] = None):
        super().__init__(detail)
        self.conflicts = conflicts or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["conflicts"] = [c.to_dict() for c in self.conflicts]
        return data
