"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and get
consistent HTTP status codes everywhere.  Engine functions (composer,
condition evaluator, level calculator, field expander) never raise them for
well-typed input: dangling references resolve to "no match" instead.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Checklist", resource_id="3f2c...")
    raise ValidationError("rejection_reason is required", details={"rejection_reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "Template", "Checklist").
        resource_id: The key that was looked up.
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
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TransitionError(ValidationError):
    """Raised when a response or checklist transition is not allowed from its current state."""

    def __init__(self, action: str, current_status: str, allowed_from: list[str] | None = None) -> None:
        self.action = action
        self.current_status = current_status
        self.allowed_from = list(allowed_from or [])
        super().__init__(
            f"Cannot '{action}' from status '{current_status}'",
            details={"action": action, "status": current_status, "allowed_from": self.allowed_from},
        )


class ConflictError(Exception):
    """Raised when an operation collides with existing state.

    Covers duplicate unique keys (default message) and state conflicts such
    as finalizing an already finalized checklist (pass ``message``).

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field or state attribute in conflict.
        value: The conflicting value.
        message: Optional explicit message replacing the duplicate-key wording.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class OpenChildrenError(ConflictError):
    """Raised when a checklist is finalized while child checklists are still open."""

    def __init__(self, checklist_id: str, open_child_ids: list[str]) -> None:
        self.checklist_id = checklist_id
        self.open_child_ids = list(open_child_ids)
        super().__init__(
            "Checklist",
            "children",
            ",".join(self.open_child_ids),
            message=(
                f"Checklist id={checklist_id} has {len(self.open_child_ids)} "
                f"child checklist(s) not yet finalized"
            ),
        )


class ExternalServiceError(Exception):
    """Raised when an external collaborator (AI provider, object store) fails.

    Maps to HTTP 502 when surfaced; the finalize orchestrator and the item
    analyst recover from it locally.
    """

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")
