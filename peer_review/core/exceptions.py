"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Expected evaluation failures (a checklist rule that is not yet satisfied)
are NOT exceptions. The rule engine returns them as ``ValidationResult``
data so callers can render them.

Usage:
    from peer_review.core.exceptions import NotFoundError, PermissionDeniedError

    raise NotFoundError(resource="Review", resource_id=42)
    raise PermissionDeniedError("Only coordinators can override checklist items")
"""


class NotFoundError(Exception):
    """Raised when a requested reviewer, organization, review, item or plan does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Review", "ChecklistItem").
        resource_id: The key that was looked up. Included in logs and the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidOverrideError(ValidationError):
    """Raised for a rejected override request.

    Covers a justification below the minimum length, an override aimed at a
    HARD_BLOCK conflict, or an override on a pair with nothing to override.
    """


class ConflictError(Exception):
    """Raised when an operation would duplicate an active record.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field combination that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PermissionDeniedError(Exception):
    """Raised when the acting user's role lacks the required capability.

    Maps to HTTP 403. Raised before any write, so state is unchanged.
    """

    def __init__(self, message: str, required_roles: list[str] | None = None) -> None:
        self.required_roles = sorted(required_roles or [])
        super().__init__(message)


class InvalidTransitionError(Exception):
    """Raised for a CAP status or review phase change outside the allowed graph.

    Maps to HTTP 409.

    Args:
        entity: "CorrectiveActionPlan" | "Review".
        current: Current status/phase.
        requested: Requested target status/phase.
        details: Optional extra payload (e.g. remaining gate blockers).
    """

    def __init__(
        self,
        entity: str,
        current: str,
        requested: str,
        message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.entity = entity
        self.current = current
        self.requested = requested
        self.details = details or {}
        super().__init__(message or f"Invalid {entity} transition: {current} → {requested}")
