"""
Operations Checklist — Template Store & Assignment Registry service layer.

Business logic for:
    - Template CRUD:            name uniqueness, recurrence validation
    - Template task CRUD:       position defaulting, due-offset consistency
    - Prerequisite links:       same-template, no self-loop, DAG enforcement
    - Graph checks:             bounded topological pass shared with the cycle generator
    - Assignment CRUD:          one assignment per (client, template), date window
"""

import logging
from collections import deque

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from opsdesk.core.exceptions import (
    ConflictError,
    MalformedTemplateGraph,
    NotFoundError,
    ValidationError,
)
from opsdesk.models import db
from opsdesk.models.directory import Client, StaffMember
from opsdesk.models.operations import (
    ASSIGNMENT_STATUSES,
    DUE_OFFSET_FROM_OPTIONS,
    DUE_OFFSET_UNITS,
    TEMPLATE_CATEGORIES,
    ClientOperationAssignment,
    OperationTemplate,
    OperationTemplateTask,
)
from opsdesk.services import recurrence
from opsdesk.utils.helpers import parse_bool, parse_date_input

logger = logging.getLogger(__name__)


# ── Prerequisite graph ───────────────────────────────────────────────────────


def check_prerequisite_graph(edges: dict[int, set[int]]) -> list[int]:
    """Validate a prerequisite graph and return its nodes in dependency order.

    ``edges`` maps each node id to the set of node ids it depends on. Every
    referenced id must itself be a key of ``edges``.

    Uses Kahn's algorithm, so the work is bounded by nodes + edges and a
    cyclic graph terminates instead of looping.

    Raises:
        MalformedTemplateGraph: on a self-reference, a dangling reference,
            or a cycle. The exception lists the offending node ids.
    """
    for node, deps in edges.items():
        if node in deps:
            raise MalformedTemplateGraph(
                f"Task {node} lists itself as a prerequisite", [node],
            )
        dangling = sorted(d for d in deps if d not in edges)
        if dangling:
            raise MalformedTemplateGraph(
                f"Task {node} references unknown or inactive prerequisites {dangling}",
                [node, *dangling],
            )

    remaining = {node: len(deps) for node, deps in edges.items()}
    dependants: dict[int, list[int]] = {node: [] for node in edges}
    for node, deps in edges.items():
        for dep in deps:
            dependants[dep].append(node)

    ready = deque(sorted(n for n, count in remaining.items() if count == 0))
    order = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for child in sorted(dependants[node]):
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)

    if len(order) != len(edges):
        stuck = sorted(n for n, count in remaining.items() if count > 0)
        raise MalformedTemplateGraph(
            f"Prerequisite cycle detected among tasks {stuck}", stuck,
        )
    return order


def template_graph(template: OperationTemplate, active_only: bool = True) -> dict[int, set[int]]:
    """Build the prerequisite edge map for a template's tasks."""
    tasks = template.active_tasks() if active_only else list(template.tasks)
    return {t.id: {p.id for p in t.prerequisites} for t in tasks}


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_template(template_id: int) -> OperationTemplate:
    template = db.session.get(OperationTemplate, template_id)
    if not template:
        raise NotFoundError(resource="OperationTemplate", resource_id=template_id)
    return template


def get_template_task(template_task_id: int) -> OperationTemplateTask:
    task = db.session.get(OperationTemplateTask, template_task_id)
    if not task:
        raise NotFoundError(resource="OperationTemplateTask", resource_id=template_task_id)
    return task


def get_client(client_id: int) -> Client:
    client = db.session.get(Client, client_id)
    if not client:
        raise NotFoundError(resource="Client", resource_id=client_id)
    return client


def get_assignment(assignment_id: int) -> ClientOperationAssignment:
    assignment = db.session.get(ClientOperationAssignment, assignment_id)
    if not assignment:
        raise NotFoundError(resource="ClientOperationAssignment", resource_id=assignment_id)
    return assignment


def require_staff(staff_id, field):
    if staff_id is None:
        return None
    if not db.session.get(StaffMember, staff_id):
        raise ValidationError(f"{field} references an unknown staff member",
                              details={field: staff_id})
    return staff_id


# ── OperationTemplate CRUD ───────────────────────────────────────────────────


def list_templates(active_only: bool = False) -> list[OperationTemplate]:
    """Return templates ordered by name, optionally only active ones."""
    q = OperationTemplate.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(OperationTemplate.name).all()


def _validate_template_fields(template: OperationTemplate) -> None:
    if not (template.name or "").strip():
        raise ValidationError("Name is required", details={"name": "required"})
    if template.category not in TEMPLATE_CATEGORIES:
        raise ValidationError(
            f"category must be one of {sorted(TEMPLATE_CATEGORIES)}",
            details={"category": template.category},
        )
    policies = recurrence.get_registered_policies()
    if template.recurrence_type not in policies:
        raise ValidationError(
            f"recurrence_type must be one of {sorted(policies)}",
            details={"recurrence_type": template.recurrence_type},
        )
    interval = template.recurrence_interval
    if interval is not None and (not isinstance(interval, int) or interval <= 0):
        raise ValidationError(
            "recurrence_interval must be a positive integer",
            details={"recurrence_interval": interval},
        )
    if template.recurrence_type == "custom" and not interval:
        raise ValidationError(
            "recurrence_interval is required when recurrence type is custom",
            details={"recurrence_interval": "required"},
        )


def _ensure_unique_template_name(name: str, exclude_id: int | None = None) -> None:
    q = select(OperationTemplate.id).where(OperationTemplate.name == name)
    if exclude_id is not None:
        q = q.where(OperationTemplate.id != exclude_id)
    if db.session.execute(q).first():
        raise ConflictError(resource="OperationTemplate", field="name", value=name)


def create_template(data: dict) -> OperationTemplate:
    """Create an OperationTemplate.

    Args:
        data: Input dict with at least ``name``.

    Returns:
        The persisted OperationTemplate.
    """
    name = (data.get("name") or "").strip()
    template = OperationTemplate(
        name=name,
        description=data.get("description", ""),
        category=data.get("category", "general"),
        recurrence_type=data.get("recurrence_type", "monthly"),
        recurrence_interval=data.get("recurrence_interval"),
        recurrence_anchor=parse_date_input(data.get("recurrence_anchor")),
        auto_generate=parse_bool(data.get("auto_generate"), default=True),
        is_active=parse_bool(data.get("is_active"), default=True),
    )
    _validate_template_fields(template)
    _ensure_unique_template_name(name)
    db.session.add(template)
    db.session.commit()
    logger.info("OperationTemplate created id=%s name=%s", template.id, template.name)
    return template


def update_template(template: OperationTemplate, data: dict) -> OperationTemplate:
    """Update mutable fields on a template.

    Recurrence changes only affect cycles generated afterwards.
    """
    # Name check first: the query autoflushes pending attribute changes.
    if "name" in data:
        name = (data["name"] or "").strip()
        _ensure_unique_template_name(name, exclude_id=template.id)
        template.name = name
    for f in ("description", "category", "recurrence_type", "recurrence_interval"):
        if f in data:
            setattr(template, f, data[f])
    if "recurrence_anchor" in data:
        template.recurrence_anchor = parse_date_input(data["recurrence_anchor"])
    for f in ("auto_generate", "is_active"):
        if f in data:
            setattr(template, f, parse_bool(data[f]))
    try:
        _validate_template_fields(template)
    except ValidationError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("OperationTemplate updated id=%s", template.id)
    return template


# ── OperationTemplateTask CRUD ───────────────────────────────────────────────


def _validate_due_offset(task: OperationTemplateTask) -> None:
    fields = (task.due_offset_value, task.due_offset_unit, task.due_offset_from)
    if all(f is None for f in fields):
        return
    if any(f is None for f in fields):
        raise ValidationError(
            "due offset value, unit, and reference point must all be provided together",
            details={"due_offset": "incomplete"},
        )
    if not isinstance(task.due_offset_value, int) or task.due_offset_value <= 0:
        raise ValidationError("due_offset_value must be a positive integer",
                              details={"due_offset_value": task.due_offset_value})
    if task.due_offset_unit not in DUE_OFFSET_UNITS:
        raise ValidationError(f"due_offset_unit must be one of {sorted(DUE_OFFSET_UNITS)}",
                              details={"due_offset_unit": task.due_offset_unit})
    if task.due_offset_from not in DUE_OFFSET_FROM_OPTIONS:
        raise ValidationError(
            f"due_offset_from must be one of {sorted(DUE_OFFSET_FROM_OPTIONS)}",
            details={"due_offset_from": task.due_offset_from},
        )


def _next_position(template_id: int) -> int:
    current = (
        db.session.query(func.max(OperationTemplateTask.position))
        .filter(OperationTemplateTask.operation_template_id == template_id)
        .scalar()
    )
    return (current or 0) + 1


def create_template_task(template: OperationTemplate, data: dict) -> OperationTemplateTask:
    """Add a task blueprint to a template.

    Position defaults to one past the current maximum. Prerequisites passed
    as ``prerequisite_ids`` are validated like ``set_template_task_prerequisites``.
    """
    title = (data.get("title") or "").strip()
    if not title:
        raise ValidationError("Title is required", details={"title": "required"})
    duplicate = OperationTemplateTask.query.filter_by(
        operation_template_id=template.id, title=title,
    ).first()
    if duplicate:
        raise ConflictError(resource="OperationTemplateTask", field="title", value=title)

    task = OperationTemplateTask(
        operation_template_id=template.id,
        title=title,
        description=data.get("description", ""),
        position=data.get("position") or _next_position(template.id),
        evidence_required=parse_bool(data.get("evidence_required")),
        is_active=parse_bool(data.get("is_active"), default=True),
        default_assignee_id=require_staff(data.get("default_assignee_id"), "default_assignee_id"),
        due_offset_value=data.get("due_offset_value"),
        due_offset_unit=data.get("due_offset_unit"),
        due_offset_from=data.get("due_offset_from"),
    )
    _validate_due_offset(task)
    db.session.add(task)
    db.session.flush()

    if data.get("prerequisite_ids"):
        try:
            _apply_prerequisites(task, data["prerequisite_ids"])
        except ValidationError:
            db.session.rollback()
            raise

    db.session.commit()
    logger.info("OperationTemplateTask created id=%s template_id=%s", task.id, template.id)
    return task


def update_template_task(task: OperationTemplateTask, data: dict) -> OperationTemplateTask:
    """Update a task blueprint. Already-generated tasks are not touched."""
    try:
        if "title" in data:
            title = (data["title"] or "").strip()
            if not title:
                raise ValidationError("Title is required", details={"title": "required"})
            clash = OperationTemplateTask.query.filter(
                OperationTemplateTask.operation_template_id == task.operation_template_id,
                OperationTemplateTask.title == title,
                OperationTemplateTask.id != task.id,
            ).first()
            if clash:
                raise ConflictError(resource="OperationTemplateTask", field="title", value=title)
            task.title = title
        for f in ("description", "position", "due_offset_value",
                  "due_offset_unit", "due_offset_from"):
            if f in data:
                setattr(task, f, data[f])
        for f in ("evidence_required", "is_active"):
            if f in data:
                setattr(task, f, parse_bool(data[f]))
        if "default_assignee_id" in data:
            task.default_assignee_id = require_staff(
                data["default_assignee_id"], "default_assignee_id",
            )
        _validate_due_offset(task)
        if "prerequisite_ids" in data:
            _apply_prerequisites(task, data["prerequisite_ids"] or [])
    except (ValidationError, ConflictError):
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("OperationTemplateTask updated id=%s", task.id)
    return task


def set_template_task_prerequisites(task: OperationTemplateTask, prerequisite_ids) -> OperationTemplateTask:
    """Replace a blueprint's prerequisite set, rejecting edits that break the DAG."""
    try:
        _apply_prerequisites(task, prerequisite_ids)
    except ValidationError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("OperationTemplateTask prerequisites set id=%s prerequisites=%s",
                task.id, task.prerequisite_ids)
    return task


def _apply_prerequisites(task: OperationTemplateTask, prerequisite_ids) -> None:
    try:
        normalized = sorted({int(pid) for pid in prerequisite_ids})
    except (TypeError, ValueError):
        raise ValidationError("prerequisite_ids must be a list of integers",
                              details={"prerequisite_ids": prerequisite_ids})

    if task.id in normalized:
        raise MalformedTemplateGraph("A task cannot be its own prerequisite", [task.id])

    siblings = {
        t.id: t for t in OperationTemplateTask.query.filter(
            OperationTemplateTask.operation_template_id == task.operation_template_id,
            OperationTemplateTask.id.in_(normalized),
        ).all()
    } if normalized else {}
    invalid = [pid for pid in normalized if pid not in siblings]
    if invalid:
        raise MalformedTemplateGraph(
            f"Prerequisites contain invalid task references {invalid}", invalid,
        )

    edges = {
        t.id: {p.id for p in t.prerequisites}
        for t in OperationTemplateTask.query.filter_by(
            operation_template_id=task.operation_template_id,
        ).all()
    }
    edges[task.id] = set(normalized)
    check_prerequisite_graph(edges)

    task.prerequisites = [siblings[pid] for pid in normalized]


# ── ClientOperationAssignment CRUD ───────────────────────────────────────────


def list_assignments(client_id: int) -> list[ClientOperationAssignment]:
    """Return a client's assignments, newest first."""
    get_client(client_id)
    return (
        ClientOperationAssignment.query
        .filter_by(client_id=client_id)
        .order_by(ClientOperationAssignment.created_at.desc(), ClientOperationAssignment.id.desc())
        .all()
    )


def _validate_assignment(assignment: ClientOperationAssignment) -> None:
    if assignment.assignment_status not in ASSIGNMENT_STATUSES:
        raise ValidationError(
            f"assignment_status must be one of {sorted(ASSIGNMENT_STATUSES)}",
            details={"assignment_status": assignment.assignment_status},
        )
    if assignment.starts_on and assignment.ends_on and assignment.ends_on < assignment.starts_on:
        raise ValidationError("ends_on must be on or after starts_on",
                              details={"ends_on": assignment.ends_on.isoformat()})


def create_assignment(client_id: int, data: dict, created_by_id: int | None = None) -> ClientOperationAssignment:
    """Bind a client to a template. Raises ConflictError on a duplicate pair."""
    get_client(client_id)
    template_id = data.get("operation_template_id")
    if not template_id:
        raise ValidationError("operation_template_id is required",
                              details={"operation_template_id": "required"})
    template = get_template(template_id)

    assignment = ClientOperationAssignment(
        client_id=client_id,
        operation_template_id=template.id,
        assignment_status=data.get("assignment_status", "active"),
        auto_generate=parse_bool(data.get("auto_generate"), default=True),
        starts_on=parse_date_input(data.get("starts_on")),
        ends_on=parse_date_input(data.get("ends_on")),
        created_by_id=require_staff(created_by_id, "created_by_id"),
    )
    _validate_assignment(assignment)

    existing = ClientOperationAssignment.query.filter_by(
        client_id=client_id, operation_template_id=template.id,
    ).first()
    if existing:
        raise ConflictError(resource="ClientOperationAssignment",
                            field="operation_template_id", value=str(template.id))

    db.session.add(assignment)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(resource="ClientOperationAssignment",
                            field="operation_template_id", value=str(template.id))
    logger.info("ClientOperationAssignment created id=%s client_id=%s template_id=%s",
                assignment.id, client_id, template.id)
    return assignment


def update_assignment(assignment: ClientOperationAssignment, data: dict) -> ClientOperationAssignment:
    """Update status, auto-generate flag, or date window of an assignment."""
    if "assignment_status" in data:
        assignment.assignment_status = data["assignment_status"]
    if "auto_generate" in data:
        assignment.auto_generate = parse_bool(data["auto_generate"])
    for f in ("starts_on", "ends_on"):
        if f in data:
            setattr(assignment, f, parse_date_input(data[f]))
    try:
        _validate_assignment(assignment)
    except ValidationError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("ClientOperationAssignment updated id=%s status=%s",
                assignment.id, assignment.assignment_status)
    return assignment
