"""
Operations Checklist — Cycle Generator.

Turns (assignment, template, period) into a concrete OperationCycle with its
OperationTasks, either on the scheduled run or on demand.

    generate_due_cycles(run_date)     scheduled entry point, idempotent per period
    generate_cycle(client_id, ...)    manual on-demand generation
    list_cycles / get_cycle           reads
    set_cycle_status                  active ⇄ completed, any → archived

Idempotence: auto cycles carry ``auto_period_key``; the unique
(assignment, auto_period_key) constraint makes the existence check and the
insert atomic. A run that loses a race sees IntegrityError, finds the period
key taken and counts a skip; any other IntegrityError is an error entry.

Isolation: each assignment is processed inside its own SAVEPOINT, so one
failing assignment (policy, graph or persistence fault) never rolls back
another's cycle or aborts the run.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from opsdesk.core.exceptions import (
    AssignmentNotEligible,
    InvalidPeriod,
    InvalidTransition,
    MalformedTemplateGraph,
    NotFoundError,
    OperationsError,
    ValidationError,
)
from opsdesk.models import db
from opsdesk.models.operations import (
    OPERATION_CYCLE_STATUSES,
    ClientOperationAssignment,
    OperationCycle,
    OperationTask,
    OperationTemplate,
    validate_cycle_transition,
)
from opsdesk.services import recurrence
from opsdesk.services.checklist_query import paginate
from opsdesk.services.template_service import (
    check_prerequisite_graph,
    get_assignment,
    get_client,
    get_template,
    require_staff,
    template_graph,
)
from opsdesk.utils.errors import E

logger = logging.getLogger(__name__)

DEFAULT_MAX_TEMPLATE_TASKS = 500


def _error_code(exc):
    if isinstance(exc, OperationsError):
        return exc.code
    if isinstance(exc, SQLAlchemyError):
        return E.DATABASE
    return E.INTERNAL


@dataclass
class GenerationResult:
    generated_count: int = 0
    skipped_count: int = 0
    errors: list = field(default_factory=list)
    cycle_ids: list = field(default_factory=list)

    def record_error(self, assignment, exc):
        self.errors.append({
            "assignment_ref": assignment.id,
            "client_id": assignment.client_id,
            "reason": str(exc),
            "code": _error_code(exc),
        })

    def to_dict(self):
        return {
            "generated_count": self.generated_count,
            "skipped_count": self.skipped_count,
            "errors": list(self.errors),
            "cycle_ids": list(self.cycle_ids),
        }


# ═════════════════════════════════════════════════════════════════════════════
# Eligibility
# ═════════════════════════════════════════════════════════════════════════════


def eligible_assignments_query(run_date: date):
    """Assignments the scheduled run should consider on ``run_date``, in id order."""
    return (
        ClientOperationAssignment.query
        .join(OperationTemplate, ClientOperationAssignment.operation_template_id == OperationTemplate.id)
        .filter(
            ClientOperationAssignment.assignment_status == "active",
            ClientOperationAssignment.auto_generate.is_(True),
            OperationTemplate.is_active.is_(True),
            OperationTemplate.auto_generate.is_(True),
            db.or_(ClientOperationAssignment.starts_on.is_(None),
                   ClientOperationAssignment.starts_on <= run_date),
            db.or_(ClientOperationAssignment.ends_on.is_(None),
                   ClientOperationAssignment.ends_on >= run_date),
        )
        .order_by(ClientOperationAssignment.id)
    )


def _cycle_exists(assignment, period):
    return db.session.query(
        OperationCycle.query.filter(
            OperationCycle.client_operation_assignment_id == assignment.id,
            OperationCycle.period_start == period.start,
            OperationCycle.period_end == period.end,
        ).exists()
    ).scalar()


def _period_key_taken(assignment, period):
    return db.session.query(
        OperationCycle.query.filter(
            OperationCycle.client_operation_assignment_id == assignment.id,
            OperationCycle.auto_period_key == period.key,
        ).exists()
    ).scalar()


def _log_failure(assignment, exc):
    extra = {"assignment_id": assignment.id, "client_id": assignment.client_id}
    if isinstance(exc, OperationsError):
        logger.warning(
            "Cycle generation failed assignment_id=%s client_id=%s: %s",
            assignment.id, assignment.client_id, exc, extra=extra,
        )
    else:
        logger.exception(
            "Unexpected fault generating cycle assignment_id=%s", assignment.id, extra=extra,
        )


# ═════════════════════════════════════════════════════════════════════════════
# Scheduled generation
# ═════════════════════════════════════════════════════════════════════════════


def generate_due_cycles(run_date: date | None = None, triggered_by: int | None = None) -> GenerationResult:
    """Create the current-period cycle for every eligible assignment.

    Safe to run repeatedly for the same date: existing (assignment, period)
    cycles are skipped. Failures are recorded per assignment and never abort
    the run.

    Args:
        run_date: Date whose period is generated. Defaults to today.
        triggered_by: StaffMember id when triggered manually.

    Returns:
        GenerationResult with counts and per-assignment errors.

    Raises:
        ValidationError: triggered_by is not a known staff member.
    """
    run_date = run_date or date.today()
    triggered_by = require_staff(triggered_by, "triggered_by")
    result = GenerationResult()

    assignments = eligible_assignments_query(run_date).all()
    for assignment in assignments:
        template = assignment.template
        period = None
        savepoint = db.session.begin_nested()
        try:
            period = recurrence.period_for(run_date, template, assignment)
            if period is None or _cycle_exists(assignment, period):
                cycle = None
            else:
                cycle = _instantiate(
                    template,
                    client_id=assignment.client_id,
                    period=period,
                    assignment=assignment,
                    generation_mode="auto",
                    triggered_by=triggered_by,
                )
            savepoint.commit()
        except IntegrityError as exc:
            savepoint.rollback()
            if period is not None and _period_key_taken(assignment, period):
                logger.info(
                    "OperationCycle already generated by a concurrent run assignment_id=%s period=%s",
                    assignment.id, period.key,
                    extra={"assignment_id": assignment.id, "client_id": assignment.client_id},
                )
                result.skipped_count += 1
            else:
                _log_failure(assignment, exc)
                result.record_error(assignment, exc)
            continue
        except Exception as exc:
            savepoint.rollback()
            _log_failure(assignment, exc)
            result.record_error(assignment, exc)
            continue

        if cycle is None:
            result.skipped_count += 1
            continue
        result.generated_count += 1
        result.cycle_ids.append(cycle.id)

    db.session.commit()
    logger.info(
        "Cycle generation run_date=%s generated=%d skipped=%d errors=%d",
        run_date.isoformat(), result.generated_count,
        result.skipped_count, len(result.errors),
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Manual generation
# ═════════════════════════════════════════════════════════════════════════════


def generate_cycle(
    client_id: int,
    template_id: int,
    period_start: date,
    period_end: date,
    *,
    assignment_id: int | None = None,
    triggered_by: int | None = None,
) -> OperationCycle:
    """Create a cycle for an explicit period, bypassing the existence gate.

    Raises:
        InvalidPeriod: period_end before period_start.
        AssignmentNotEligible: paused assignment, inactive template, or a
            template without active tasks.
        MalformedTemplateGraph: prerequisite links are broken.
    """
    if period_start is None or period_end is None:
        raise ValidationError("period_start and period_end are required",
                              details={"period_start": "required", "period_end": "required"})
    if period_end < period_start:
        raise InvalidPeriod(period_start, period_end)

    get_client(client_id)
    template = get_template(template_id)
    triggered_by = require_staff(triggered_by, "triggered_by")

    assignment = None
    if assignment_id is not None:
        assignment = get_assignment(assignment_id)
        if assignment.client_id != client_id or assignment.operation_template_id != template.id:
            raise AssignmentNotEligible(
                "Assignment does not bind this client to this template",
                details={"assignment_id": assignment_id},
            )
    else:
        assignment = ClientOperationAssignment.query.filter_by(
            client_id=client_id, operation_template_id=template.id,
        ).first()

    if assignment is not None and assignment.is_paused:
        raise AssignmentNotEligible(
            "Cannot generate a cycle for a paused assignment",
            details={"assignment_id": assignment.id},
        )
    if not template.is_active:
        raise AssignmentNotEligible(
            "Cannot generate a cycle from an inactive template",
            details={"operation_template_id": template.id},
        )

    period = recurrence.Period(
        start=period_start,
        end=period_end,
        label=recurrence.period_label(period_start, period_end),
    )
    try:
        cycle = _instantiate(
            template,
            client_id=client_id,
            period=period,
            assignment=assignment,
            generation_mode="manual",
            triggered_by=triggered_by,
        )
        db.session.commit()
    except (OperationsError, SQLAlchemyError):
        db.session.rollback()
        raise

    logger.info(
        "OperationCycle created id=%s client_id=%s template_id=%s mode=manual",
        cycle.id, client_id, template.id,
        extra={"cycle_id": cycle.id, "client_id": client_id},
    )
    return cycle


# ═════════════════════════════════════════════════════════════════════════════
# Instantiation
# ═════════════════════════════════════════════════════════════════════════════


def compute_due_at(template_task, period_start: date, period_end: date):
    """Resolve a template task's due offset against the cycle's period.

    ``cycle_start`` is 00:00 UTC on period_start; ``cycle_end`` is the last
    instant of period_end. Returns None when the task has no offset.
    """
    if not template_task.has_due_offset:
        return None
    if template_task.due_offset_from == "cycle_end":
        base = datetime.combine(period_end, time.max, tzinfo=timezone.utc).replace(microsecond=0)
    else:
        base = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
    if template_task.due_offset_unit == "hours":
        return base + timedelta(hours=template_task.due_offset_value)
    return base + timedelta(days=template_task.due_offset_value)


def _max_template_tasks():
    try:
        return current_app.config.get("OPERATIONS_MAX_TEMPLATE_TASKS", DEFAULT_MAX_TEMPLATE_TASKS)
    except RuntimeError:
        return DEFAULT_MAX_TEMPLATE_TASKS


def _instantiate(template, *, client_id, period, assignment, generation_mode, triggered_by):
    """Create the cycle row, its tasks, and the remapped prerequisite links.

    Flushes but does not commit; the caller owns the transaction.
    """
    source_tasks = template.active_tasks()
    if not source_tasks:
        raise AssignmentNotEligible(
            "Template has no active tasks",
            details={"operation_template_id": template.id},
        )
    if len(source_tasks) > _max_template_tasks():
        raise MalformedTemplateGraph(
            f"Template has more than {_max_template_tasks()} active tasks",
            [t.id for t in source_tasks],
        )

    # Prerequisites on inactive or foreign tasks are dangling here.
    check_prerequisite_graph(template_graph(template))

    cycle = OperationCycle(
        client_id=client_id,
        operation_template_id=template.id,
        client_operation_assignment_id=assignment.id if assignment else None,
        cycle_label=period.label,
        period_start=period.start,
        period_end=period.end,
        status="active",
        generation_mode=generation_mode,
        auto_period_key=period.key if generation_mode == "auto" else None,
        generated_at=datetime.now(timezone.utc),
        generated_by_id=triggered_by,
    )
    db.session.add(cycle)
    db.session.flush()

    by_source = {}
    for source in sorted(source_tasks, key=lambda t: (t.position, t.id)):
        task = OperationTask(
            operation_cycle_id=cycle.id,
            operation_template_task_id=source.id,
            client_id=client_id,
            title=source.title,
            description=source.description,
            position=source.position,
            status="not_started",
            evidence_required=source.evidence_required,
            assigned_to_id=source.default_assignee_id,
            due_at=compute_due_at(source, period.start, period.end),
        )
        db.session.add(task)
        by_source[source.id] = task
    db.session.flush()

    for source in source_tasks:
        if source.prerequisites:
            by_source[source.id].prerequisites = [by_source[p.id] for p in source.prerequisites]
    db.session.flush()

    if generation_mode == "auto":
        logger.info(
            "OperationCycle created id=%s client_id=%s template_id=%s period=%s mode=auto",
            cycle.id, client_id, template.id, period.key,
            extra={"cycle_id": cycle.id, "client_id": client_id,
                   "assignment_id": assignment.id if assignment else None},
        )
    return cycle


# ═════════════════════════════════════════════════════════════════════════════
# Reads & cycle status
# ═════════════════════════════════════════════════════════════════════════════


def list_cycles(client_id: int, page: int = 1, per_page: int = 100):
    """Client's cycles, most recent period first.

    Returns:
        (cycles, meta) where meta is the standard pagination dict.
    """
    get_client(client_id)
    query = (
        OperationCycle.query
        .filter_by(client_id=client_id)
        .order_by(OperationCycle.period_start.desc(), OperationCycle.id.desc())
    )
    return paginate(query, page, per_page)


def get_cycle(cycle_id: int) -> OperationCycle:
    cycle = db.session.get(OperationCycle, cycle_id)
    if not cycle:
        raise NotFoundError(resource="OperationCycle", resource_id=cycle_id)
    return cycle


def set_cycle_status(cycle: OperationCycle, new_status: str) -> OperationCycle:
    """Move a cycle through active ⇄ completed → archived."""
    if new_status not in OPERATION_CYCLE_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(OPERATION_CYCLE_STATUSES)}",
            details={"status": new_status},
        )
    if new_status == cycle.status:
        return cycle
    if not validate_cycle_transition(cycle.status, new_status):
        raise InvalidTransition(cycle.status, new_status, resource="OperationCycle")

    old_status = cycle.status
    cycle.status = new_status
    db.session.commit()
    logger.info(
        "OperationCycle status id=%s %s -> %s", cycle.id, old_status, new_status,
        extra={"cycle_id": cycle.id},
    )
    return cycle
