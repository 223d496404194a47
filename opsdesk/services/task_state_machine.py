"""
Operations Checklist — Task State Machine.

Every status change on an OperationTask goes through this module. The
transition table lives with the model (``TASK_TRANSITIONS``); this module
adds the gates and side effects:

    Prerequisite gate   in_progress / done need every prerequisite done
    Evidence gate       done needs a non-empty evidence note when required
    Side effects        started_at on first start; completed_at / completed_by
                        on done, cleared when the task leaves done

Guards run against persisted state. The task row is re-read with
SELECT ... FOR UPDATE (a no-op on SQLite) and prerequisite statuses are
queried from the database, so a stale client view cannot bypass a gate.
Assignee, notes and due date are unguarded: last write wins.

Derived fields (unmet_prerequisites, urgency bucket) are pure functions of
the task and an explicit ``now``.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import aliased

from opsdesk.core.exceptions import (
    ConflictError,
    EvidenceRequired,
    InvalidTransition,
    NotFoundError,
    PrerequisitesUnmet,
    ValidationError,
)
from opsdesk.models import db
from opsdesk.models.directory import StaffMember, TimeEntry
from opsdesk.models.operations import (
    GATED_TASK_STATUSES,
    OPERATION_TASK_STATUSES,
    OperationTask,
    task_prerequisites,
    validate_task_transition,
)
from opsdesk.utils.helpers import ensure_aware, parse_datetime

logger = logging.getLogger(__name__)


class UrgencyBucket(str, enum.Enum):
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    UPCOMING = "upcoming"
    NONE = "none"


# Order used by the personal ("mine") list after urgency and due date.
STATUS_PRIORITY = {
    "in_progress": 0,
    "blocked": 1,
    "not_started": 2,
    "done": 3,
}

RANK_NO_DUE_DATE = 80
RANK_DONE = 99

UPDATABLE_FIELDS = (
    "status", "assigned_to_id", "notes", "evidence_note", "due_at", "linked_time_entry_id",
)


# ── Derived fields ───────────────────────────────────────────────────────────


def unmet_prerequisites(task: OperationTask) -> list[dict]:
    """Prerequisites of ``task`` that are not done, in display order."""
    pending = [p for p in task.prerequisites if p.status != "done"]
    pending.sort(key=lambda p: (p.position, p.id))
    return [{"id": p.id, "title": p.title, "status": p.status} for p in pending]


def urgency_bucket(due_at, now: datetime) -> UrgencyBucket:
    """Classify a due date relative to ``now``.

    overdue:   due_at < now
    due_today: now <= due_at <= now + 24h
    upcoming:  later than that
    none:      no due date
    """
    if due_at is None:
        return UrgencyBucket.NONE
    due_at = ensure_aware(due_at)
    now = ensure_aware(now)
    if due_at < now:
        return UrgencyBucket.OVERDUE
    if due_at <= now + timedelta(hours=24):
        return UrgencyBucket.DUE_TODAY
    return UrgencyBucket.UPCOMING


def urgency_rank(task: OperationTask, now: datetime) -> int:
    if task.status == "done":
        return RANK_DONE
    bucket = urgency_bucket(task.due_at, now)
    if bucket is UrgencyBucket.OVERDUE:
        return 0
    if bucket is UrgencyBucket.DUE_TODAY:
        return 1
    if bucket is UrgencyBucket.NONE:
        return RANK_NO_DUE_DATE
    remaining = ensure_aware(task.due_at) - ensure_aware(now)
    if remaining <= timedelta(days=3):
        return 2
    if remaining <= timedelta(days=7):
        return 3
    return 4


def _iso(value):
    return value.isoformat() if value else None


def task_to_dict(task: OperationTask, now: datetime | None = None) -> dict:
    """Serialise a task with its derived fields.

    ``can_start`` / ``can_complete`` are UI hints only; the gates in
    ``update_task`` are authoritative.
    """
    now = now or datetime.now(timezone.utc)
    unmet = unmet_prerequisites(task)
    evidence_ok = not task.evidence_required or bool((task.evidence_note or "").strip())
    cycle = task.cycle
    return {
        "id": task.id,
        "operation_cycle_id": task.operation_cycle_id,
        "operation_template_task_id": task.operation_template_task_id,
        "cycle_label": cycle.cycle_label if cycle else None,
        "client_id": task.client_id,
        "client_name": task.client.name if task.client else None,
        "title": task.title,
        "description": task.description,
        "position": task.position,
        "status": task.status,
        "assigned_to_id": task.assigned_to_id,
        "assigned_to": task.assigned_to.to_summary() if task.assigned_to else None,
        "due_at": _iso(ensure_aware(task.due_at)),
        "started_at": _iso(ensure_aware(task.started_at)),
        "completed_at": _iso(ensure_aware(task.completed_at)),
        "completed_by": task.completed_by.to_summary() if task.completed_by else None,
        "evidence_required": task.evidence_required,
        "evidence_note": task.evidence_note,
        "notes": task.notes,
        "prerequisite_ids": task.prerequisite_ids,
        "unmet_prerequisites": unmet,
        "urgency_bucket": urgency_bucket(task.due_at, now).value,
        "can_start": task.status in ("not_started", "blocked") and not unmet,
        "can_complete": task.status != "done" and not unmet and evidence_ok,
        "linked_time_entry_id": task.linked_time_entry_id,
        "linked_time_entry": (
            task.linked_time_entry.to_summary() if task.linked_time_entry else None
        ),
        "updated_at": _iso(ensure_aware(task.updated_at)),
    }


# ── Loading ──────────────────────────────────────────────────────────────────


def get_task(task_id: int) -> OperationTask:
    task = db.session.get(OperationTask, task_id)
    if not task:
        raise NotFoundError(resource="OperationTask", resource_id=task_id)
    return task


def _lock_task(task_id: int) -> OperationTask:
    """Re-read the task row from the database under a row lock."""
    stmt = (
        select(OperationTask)
        .where(OperationTask.id == task_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    task = db.session.execute(stmt).scalar_one_or_none()
    if not task:
        raise NotFoundError(resource="OperationTask", resource_id=task_id)
    return task


def _persisted_unmet(task_id: int) -> list[dict]:
    prereq = aliased(OperationTask)
    rows = db.session.execute(
        select(prereq.id, prereq.title, prereq.status)
        .join(task_prerequisites, task_prerequisites.c.prerequisite_id == prereq.id)
        .where(task_prerequisites.c.task_id == task_id, prereq.status != "done")
        .order_by(prereq.position, prereq.id)
    ).all()
    return [{"id": r.id, "title": r.title, "status": r.status} for r in rows]


# ── Transitions ──────────────────────────────────────────────────────────────


def _apply_status(task: OperationTask, new_status: str, actor_id, now: datetime) -> None:
    old_status = task.status
    if new_status not in OPERATION_TASK_STATUSES:
        raise ValidationError(
            f"status must be one of {sorted(OPERATION_TASK_STATUSES)}",
            details={"status": new_status},
        )
    if new_status == old_status:
        return
    if not validate_task_transition(old_status, new_status):
        raise InvalidTransition(old_status, new_status)

    if new_status in GATED_TASK_STATUSES:
        blocking = _persisted_unmet(task.id)
        if blocking:
            raise PrerequisitesUnmet(blocking)
    if new_status == "done" and task.evidence_required:
        if not (task.evidence_note or "").strip():
            raise EvidenceRequired(task.id)

    task.status = new_status
    if new_status == "in_progress" and task.started_at is None:
        task.started_at = now
    if new_status == "done":
        if task.started_at is None:
            task.started_at = now
        task.completed_at = now
        task.completed_by_id = _known_actor(actor_id)
    elif old_status == "done":
        task.completed_at = None
        task.completed_by_id = None


def _known_actor(actor_id):
    if actor_id is not None and not db.session.get(StaffMember, actor_id):
        raise ValidationError("actor references an unknown staff member",
                              details={"actor_id": actor_id})
    return actor_id


def _set_assignee(task: OperationTask, staff_id) -> None:
    if staff_id is not None and not db.session.get(StaffMember, staff_id):
        raise ValidationError("assigned_to_id references an unknown staff member",
                              details={"assigned_to_id": staff_id})
    task.assigned_to_id = staff_id


def _set_time_entry(task: OperationTask, time_entry_id) -> None:
    if time_entry_id is None:
        task.linked_time_entry_id = None
        return
    entry = db.session.get(TimeEntry, time_entry_id)
    if not entry:
        raise NotFoundError(resource="TimeEntry", resource_id=time_entry_id)
    holder = OperationTask.query.filter(
        OperationTask.linked_time_entry_id == time_entry_id,
        OperationTask.id != task.id,
    ).first()
    if holder:
        raise ConflictError(resource="OperationTask", field="linked_time_entry_id",
                            value=str(time_entry_id))
    task.linked_time_entry_id = time_entry_id


def update_task(task_id: int, patch: dict, *, actor_id=None, now: datetime | None = None,
                expect_status: str | None = None) -> OperationTask:
    """Apply a partial update to a task.

    ``expect_status`` is checked against the locked row before anything is
    applied; a mismatch raises InvalidTransition.

    Unguarded fields are applied first so an evidence note sent together with
    ``status: done`` satisfies the evidence gate. Any guard failure rolls the
    whole update back.

    Raises:
        InvalidTransition, PrerequisitesUnmet, EvidenceRequired,
        ValidationError, NotFoundError, ConflictError.
    """
    now = now or datetime.now(timezone.utc)
    try:
        task = _lock_task(task_id)
        old_status = task.status
        if expect_status is not None and old_status != expect_status:
            raise InvalidTransition(old_status, patch.get("status") or old_status)

        if "assigned_to_id" in patch:
            _set_assignee(task, patch["assigned_to_id"])
        if "notes" in patch:
            task.notes = patch["notes"] or ""
        if "evidence_note" in patch:
            task.evidence_note = patch["evidence_note"]
        if "due_at" in patch:
            try:
                task.due_at = parse_datetime(patch["due_at"])
            except ValueError:
                raise ValidationError("due_at must be an ISO-8601 datetime",
                                      details={"due_at": patch["due_at"]})
        if "linked_time_entry_id" in patch:
            _set_time_entry(task, patch["linked_time_entry_id"])
        if patch.get("status") is not None:
            _apply_status(task, patch["status"], actor_id, now)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if task.status != old_status:
        logger.info(
            "OperationTask status id=%s %s -> %s actor=%s",
            task.id, old_status, task.status, actor_id,
            extra={"task_id": task.id, "cycle_id": task.operation_cycle_id},
        )
    else:
        logger.info("OperationTask updated id=%s fields=%s", task.id,
                    sorted(k for k in patch if k in UPDATABLE_FIELDS),
                    extra={"task_id": task.id})
    return task


def complete_task(task_id: int, evidence_note: str | None = None, *,
                  actor_id=None, now: datetime | None = None) -> OperationTask:
    """Move a task to done, optionally recording the evidence note."""
    patch = {"status": "done"}
    if evidence_note is not None:
        patch["evidence_note"] = evidence_note
    return update_task(task_id, patch, actor_id=actor_id, now=now)


def reopen_task(task_id: int, *, actor_id=None) -> OperationTask:
    """Move a done task back to not_started. Notes and evidence are kept."""
    return update_task(task_id, {"status": "not_started"}, actor_id=actor_id,
                       expect_status="done")


def link_time_entry(task_id: int, time_entry_id: int) -> OperationTask:
    """Attach a logged time entry to a task (one entry per task, one task per entry)."""
    return update_task(task_id, {"linked_time_entry_id": time_entry_id})


def unlink_time_entry(task_id: int) -> OperationTask:
    return update_task(task_id, {"linked_time_entry_id": None})
