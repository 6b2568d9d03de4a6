from __future__ import annotations

from collections.abc import Iterable


class CRMError(Exception):
    """Base class for failures raised by the CRM core."""


class AccessDenied(CRMError):
    """An authorization check failed. Never retried."""

    def __init__(self, action: str, resource: str, reason: str = "not permitted") -> None:
        self.action = action
        self.resource = resource
        self.reason = reason
        super().__init__(f"Access denied: cannot {action} {resource} ({reason})")


class ValidationFailed(CRMError):
    """A structural or business rule was violated."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        self.errors: dict[str, list[str]] = {field: [reason]}
        super().__init__(f"Validation failed for field '{field}': {reason}")


class ConflictDetected(CRMError):
    """The requested time overlaps existing appointments of a participant."""

    def __init__(self, conflicting_ids: Iterable[str], user_ids: Iterable[str] = ()) -> None:
        self.conflicting_ids = sorted({str(item) for item in conflicting_ids})
        self.user_ids = sorted({str(item) for item in user_ids})
        super().__init__(f"Scheduling conflict with appointments: {', '.join(self.conflicting_ids)}")


class NotFound(CRMError):
    def __init__(self, resource: str, resource_id: object | None = None) -> None:
        self.resource = resource
        self.resource_id = None if resource_id is None else str(resource_id)
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message)
