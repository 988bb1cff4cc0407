# errors.py — Domain error taxonomy for WorkHub
#
# Services raise these; the HTTP layer maps them to status codes in main.py.
# Authorization and invariant failures are deterministic and never retried.
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base class for every failure the core surfaces to callers"""

    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out = {"error": self.code, "detail": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(DomainError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        message = f"{entity} not found"
        super().__init__(message, {"entity": entity, "id": entity_id} if entity_id else None)
        self.entity = entity
        self.entity_id = entity_id


class PermissionDenied(DomainError):
    # One message for every cause so callers cannot probe for roles
    code = "permission_denied"
    status_code = 403
    MESSAGE = "You do not have permission to perform this action"

    def __init__(self):
        super().__init__(self.MESSAGE)


class InvariantViolation(DomainError):
    code = "invariant_violation"
    status_code = 409


class ConflictError(InvariantViolation):
    """Uniqueness clash: duplicate slug, project key or membership"""

    code = "conflict"
    status_code = 409


class ValidationFailure(DomainError):
    code = "validation_failed"
    status_code = 422


class StorageUnavailable(DomainError):
    code = "storage_unavailable"
    status_code = 503

    def __init__(self, message: str = "Storage is temporarily unavailable", attempts: int = 0):
        super().__init__(message, {"attempts": attempts} if attempts else None)
        self.attempts = attempts
