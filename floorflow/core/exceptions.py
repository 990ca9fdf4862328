"""
Orchestrator-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Usage:
    from floorflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="FloorplanPipeline", resource_id=42)
    raise ValidationError("rejection_notes required", details={"rejection_notes": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "FloorplanPipeline").
        resource_id: The PK that was looked up.
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

    Maps to HTTP 422 in blueprint error handlers, or 409 when ``status`` says
    so (phase mismatches are a state conflict, not bad input).

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        status:  HTTP status override.
    """

    def __init__(self, message: str, details: dict | None = None, status: int = 422) -> None:
        self.details = details or {}
        self.status = status
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write loses a race or would duplicate a unique key.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that conflicted.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class OutdatedTransitionError(Exception):
    """A stale client asked to advance from a step the workflow already left.

    Maps to HTTP 409 with ``blocked_reason=outdated_step``.
    """

    blocked_reason = "outdated_step"

    def __init__(self, from_step: int, current_step: int, current_phase: str) -> None:
        self.from_step = from_step
        self.current_step = current_step
        self.current_phase = current_phase
        super().__init__(
            f"Outdated transition: requested from_step={from_step} "
            f"but pipeline is already at step {current_step} ({current_phase})"
        )

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": str(self),
            "blocked_reason": self.blocked_reason,
            "from_step": self.from_step,
            "current_step": self.current_step,
            "current_phase": self.current_phase,
        }


class ApprovalIncompleteError(Exception):
    """Not every required unit of the step is locked-approved yet. HTTP 409."""

    blocked_reason = "approval_incomplete"

    def __init__(self, step: int, asset_type: str, approved: int, required: int) -> None:
        self.step = step
        self.asset_type = asset_type
        self.approved = approved
        self.required = required
        super().__init__(
            f"Cannot advance from step {step}: {approved}/{required} {asset_type}s approved"
        )

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": str(self),
            "blocked_reason": self.blocked_reason,
            "step": self.step,
            "asset_type": self.asset_type,
            "approved": self.approved,
            "required": self.required,
        }


class GenerationDispatchError(Exception):
    """The Generator did not accept a job. The unit has been marked ``failed``.

    Maps to HTTP 502.
    """

    def __init__(self, message: str, asset_type: str | None = None, asset_id: int | None = None,
                 status_code: int | None = None) -> None:
        self.asset_type = asset_type
        self.asset_id = asset_id
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "asset_type": self.asset_type,
            "asset_id": self.asset_id,
            "upstream_status": self.status_code,
        }


class RetryBudgetExhausted(Exception):
    """A unit used its last automatic retry and now needs a human.

    Raised inside the rejection engine and converted to the
    ``blocked_for_human`` outcome; it never reaches a blueprint.
    """

    def __init__(self, attempt_count: int, max_attempts: int) -> None:
        self.attempt_count = attempt_count
        self.max_attempts = max_attempts
        super().__init__(f"Retry budget exhausted ({attempt_count}/{max_attempts})")
