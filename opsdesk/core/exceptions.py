"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes and error bodies everywhere.

Usage:
    from opsdesk.core.exceptions import NotFoundError, PrerequisitesUnmet

    raise NotFoundError(resource="OperationTask", resource_id=42)
    raise PrerequisitesUnmet(blocking=[{"id": 7, "title": "Collect bank statements"}])
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "OperationCycle").
        resource_id: The PK that was looked up. Included in logs and message.
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

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule. Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION_CONSTRAINT"
    http_status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Operations checklist ─────────────────────────────────────────────────────


class OperationsError(ValidationError):
    """Base class for checklist generation and task-lifecycle rule violations."""


class InvalidPeriod(OperationsError):
    """Manual generation requested with period_end before period_start."""

    code = "ERR_INVALID_PERIOD"

    def __init__(self, period_start, period_end) -> None:
        super().__init__(
            "Period end must be on or after period start",
            details={
                "period_start": period_start.isoformat() if period_start else None,
                "period_end": period_end.isoformat() if period_end else None,
            },
        )


class AssignmentNotEligible(OperationsError):
    """Generation attempted against a paused assignment, an inactive
    template, or a template without active tasks."""

    code = "ERR_ASSIGNMENT_NOT_ELIGIBLE"


class MalformedTemplateGraph(OperationsError):
    """Template prerequisite links contain a cycle or a dangling reference."""

    code = "ERR_MALFORMED_TEMPLATE_GRAPH"

    def __init__(self, message: str, template_task_ids: list[int] | None = None) -> None:
        super().__init__(message, details={"template_task_ids": template_task_ids or []})


class PrerequisitesUnmet(OperationsError):
    """Task cannot enter in_progress/done while prerequisites are not done.

    Args:
        blocking: ``[{"id", "title", "status"}]`` of the prerequisite tasks
                  that are not yet done, in display order.
    """

    code = "ERR_PREREQUISITES_UNMET"
    http_status = 409

    def __init__(self, blocking: list[dict]) -> None:
        self.blocking = blocking
        titles = [b["title"] for b in blocking]
        super().__init__(
            "waiting on: " + ", ".join(titles),
            details={"waiting_on": titles, "unmet_prerequisites": blocking},
        )


class EvidenceRequired(OperationsError):
    """Evidence-required task completed without a non-empty evidence note."""

    code = "ERR_EVIDENCE_REQUIRED"

    def __init__(self, task_id: int | None = None) -> None:
        super().__init__(
            "An evidence note is required to complete this task",
            details={"task_id": task_id, "field": "evidence_note"},
        )


class InvalidTransition(OperationsError):
    """Status change that is not an edge of the lifecycle."""

    code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(self, old_status: str, new_status: str, resource: str = "Task") -> None:
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(
            f"Invalid transition: {old_status} → {new_status}",
            details={"resource": resource, "from": old_status, "to": new_status},
        )
