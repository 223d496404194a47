"""
Operations Checklist — query / board layer.

Read-side filtering, sorting and grouping over OperationTasks. Filter state
is a closed set of enumerations parsed once at the boundary
(``TaskFilters.from_args``); everything below works on typed values.

Urgency filters use the same bucketing function as the task serialiser, so
the board and the task payload always agree for a given ``now``.
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from opsdesk.core.exceptions import ValidationError
from opsdesk.models.operations import OperationCycle, OperationTask, TaskStatus
from opsdesk.services.task_state_machine import (
    STATUS_PRIORITY,
    UrgencyBucket,
    urgency_bucket,
    urgency_rank,
)
from opsdesk.utils.helpers import ensure_aware, parse_bool

logger = logging.getLogger(__name__)

MAX_SAVED_FILTERS = 8

# "upcoming" due filter looks this far past the due-today window.
UPCOMING_WINDOW = timedelta(days=14)

UNKNOWN_CLIENT_LABEL = "Unknown client"
UNASSIGNED_LABEL = "Unassigned"

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


class DueFilter(str, enum.Enum):
    ALL = "all"
    OVERDUE = "overdue"
    TODAY = "today"
    UPCOMING = "upcoming"


class GroupBy(str, enum.Enum):
    NONE = "none"
    STATUS = "status"
    CLIENT = "client"
    ASSIGNEE = "assignee"


class Scope(str, enum.Enum):
    TEAM = "team"
    MINE = "mine"


def _enum_value(enum_cls, raw, field_name, default=None):
    if raw is None or raw == "":
        return default
    try:
        return enum_cls(raw)
    except ValueError:
        raise ValidationError(
            f"{field_name} must be one of {[m.value for m in enum_cls]}",
            details={field_name: raw},
        )


def _int_or_none(raw, field_name):
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer", details={field_name: raw})


@dataclass
class TaskFilters:
    scope: Scope = Scope.TEAM
    assigned_to_id: int | None = None
    status: TaskStatus | None = None
    client_id: int | None = None
    due_filter: DueFilter = DueFilter.ALL
    include_done: bool = False
    group_by: GroupBy = GroupBy.NONE

    @classmethod
    def from_args(cls, args) -> "TaskFilters":
        """Build filters from a query-string style mapping.

        Raises:
            ValidationError: on an unknown enum value or a non-integer id.
        """
        return cls(
            scope=_enum_value(Scope, args.get("scope"), "scope", Scope.TEAM),
            assigned_to_id=_int_or_none(args.get("assigned_to_id"), "assigned_to_id"),
            status=_enum_value(TaskStatus, args.get("status"), "status"),
            client_id=_int_or_none(args.get("client_id"), "client_id"),
            due_filter=_enum_value(DueFilter, args.get("due"), "due", DueFilter.ALL),
            include_done=parse_bool(args.get("include_done")),
            group_by=_enum_value(GroupBy, args.get("group_by"), "group_by", GroupBy.NONE),
        )

    def to_dict(self) -> dict:
        return {
            "scope": self.scope.value,
            "assigned_to_id": self.assigned_to_id,
            "status": self.status.value if self.status else None,
            "client_id": self.client_id,
            "due": self.due_filter.value,
            "include_done": self.include_done,
            "group_by": self.group_by.value,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Listing
# ═════════════════════════════════════════════════════════════════════════════


def _matches_due(task, due_filter: DueFilter, now: datetime) -> bool:
    if due_filter is DueFilter.ALL:
        return True
    bucket = urgency_bucket(task.due_at, now)
    if due_filter is DueFilter.OVERDUE:
        return bucket is UrgencyBucket.OVERDUE and task.status != "done"
    if due_filter is DueFilter.TODAY:
        return bucket is UrgencyBucket.DUE_TODAY
    # upcoming
    if bucket is not UrgencyBucket.UPCOMING:
        return False
    return ensure_aware(task.due_at) <= now + timedelta(hours=24) + UPCOMING_WINDOW


def list_tasks(filters: TaskFilters, *, actor_id: int | None = None,
               now: datetime | None = None) -> list[OperationTask]:
    """Return tasks matching ``filters``.

    ``mine`` scope restricts to ``actor_id`` and uses the personal sort;
    ``team`` scope keeps cycle order (cycle, position, id).
    """
    now = ensure_aware(now) if now else datetime.now(timezone.utc)

    q = OperationTask.query.join(OperationCycle, OperationTask.operation_cycle_id == OperationCycle.id)
    if filters.scope is Scope.MINE:
        if actor_id is None:
            raise ValidationError("The mine scope needs an acting staff member",
                                  details={"scope": "mine"})
        q = q.filter(OperationTask.assigned_to_id == actor_id)
    elif filters.assigned_to_id is not None:
        q = q.filter(OperationTask.assigned_to_id == filters.assigned_to_id)

    if filters.status is not None:
        q = q.filter(OperationTask.status == filters.status.value)
    elif not filters.include_done:
        q = q.filter(OperationTask.status != TaskStatus.DONE.value)
    if filters.client_id is not None:
        q = q.filter(OperationTask.client_id == filters.client_id)

    tasks = q.order_by(
        OperationTask.operation_cycle_id, OperationTask.position, OperationTask.id,
    ).all()
    tasks = [t for t in tasks if _matches_due(t, filters.due_filter, now)]

    if filters.scope is Scope.MINE:
        tasks = sort_for_mine(tasks, now)
    return tasks


def sort_for_mine(tasks, now: datetime) -> list[OperationTask]:
    """Personal list order: urgency, due date, status priority, title."""
    def key(task):
        due = ensure_aware(task.due_at) if task.due_at else _FAR_FUTURE
        return (
            urgency_rank(task, now),
            due,
            STATUS_PRIORITY.get(task.status, len(STATUS_PRIORITY)),
            task.title or "",
            task.id or 0,
        )
    return sorted(tasks, key=key)


# ═════════════════════════════════════════════════════════════════════════════
# Grouping
# ═════════════════════════════════════════════════════════════════════════════


def group_key(task, group_by: GroupBy) -> str:
    match group_by:
        case GroupBy.STATUS:
            return task.status.replace("_", " ")
        case GroupBy.CLIENT:
            return task.client.name if task.client else UNKNOWN_CLIENT_LABEL
        case GroupBy.ASSIGNEE:
            return task.assigned_to.name if task.assigned_to else UNASSIGNED_LABEL
        case GroupBy.NONE:
            return ""
    raise ValueError(f"Unhandled group_by {group_by!r}")


def group_tasks(tasks, group_by: GroupBy) -> list[tuple[str, list]]:
    """Group tasks by key; groups sorted lexically, task order preserved."""
    if group_by is GroupBy.NONE:
        return [("", list(tasks))]
    groups: dict[str, list] = {}
    for task in tasks:
        groups.setdefault(group_key(task, group_by), []).append(task)
    return sorted(groups.items(), key=lambda item: item[0])


# ═════════════════════════════════════════════════════════════════════════════
# Saved filter sets
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class SavedFilterSet:
    name: str
    filters: TaskFilters = field(default_factory=TaskFilters)

    def to_dict(self) -> dict:
        return {"name": self.name, "filters": self.filters.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "SavedFilterSet":
        return cls(name=data["name"], filters=TaskFilters.from_args(data.get("filters") or {}))


def push_saved_filter(saved: list, new: SavedFilterSet) -> list:
    """Put ``new`` first, drop any older set with the same name, keep at most 8."""
    kept = [s for s in saved if s.name != new.name]
    return [new, *kept][:MAX_SAVED_FILTERS]


# ═════════════════════════════════════════════════════════════════════════════
# Pagination
# ═════════════════════════════════════════════════════════════════════════════


def paginate(items, page: int = 1, per_page: int = 200):
    """Slice a query or list into one page.

    Returns:
        (page_items, meta) with meta = {current_page, per_page, total_count, total_pages}.
    """
    page = max(int(page or 1), 1)
    per_page = max(int(per_page or 1), 1)
    if isinstance(items, list):
        total = len(items)
        page_items = items[(page - 1) * per_page: page * per_page]
    else:
        total = items.count()
        page_items = items.limit(per_page).offset((page - 1) * per_page).all()
    meta = {
        "current_page": page,
        "per_page": per_page,
        "total_count": total,
        "total_pages": max(math.ceil(total / per_page), 1),
    }
    return page_items, meta


def board(filters: TaskFilters, *, actor_id=None, now=None):
    """Tasks for the board view, grouped by ``filters.group_by``."""
    tasks = list_tasks(filters, actor_id=actor_id, now=now)
    return group_tasks(tasks, filters.group_by)


def task_counts(tasks, now: datetime) -> dict:
    counts = {s.value: 0 for s in TaskStatus}
    overdue = 0
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
        if task.status != "done" and urgency_bucket(task.due_at, now) is UrgencyBucket.OVERDUE:
            overdue += 1
    counts["overdue"] = overdue
    counts["total"] = len(tasks)
    return counts

