"""
Operations Desk
Operations Checklist domain models.

Models:
    - OperationTemplate:           reusable recurring checklist definition
    - OperationTemplateTask:       ordered task blueprint inside a template
    - ClientOperationAssignment:   binds a client to a template (active / paused, auto-generate)
    - OperationCycle:              one instantiated period of a template for a client
    - OperationTask:               one checklist item inside a cycle

Architecture:
    OperationTemplate ──1:N──▶ OperationTemplateTask
    OperationTemplateTask ──N:M──▶ OperationTemplateTask  (prerequisites, same template)
    Client ──1:N──▶ ClientOperationAssignment ──N:1──▶ OperationTemplate
    ClientOperationAssignment ──1:N──▶ OperationCycle ──1:N──▶ OperationTask
    OperationTask ──N:M──▶ OperationTask  (prerequisites, same cycle)
    OperationTask ──0..1──▶ TimeEntry     (weak, ON DELETE SET NULL)

Lifecycle states:
    ClientOperationAssignment: active ⇄ paused
    OperationCycle:            active → completed → archived  (active → archived allowed)
    OperationTask:             not_started → in_progress → done
                               not_started | in_progress → blocked → not_started | in_progress
                               not_started → done
                               done → not_started  (reopen)
"""

import enum
from datetime import datetime, timezone

from opsdesk.models import db


# ── Constants ────────────────────────────────────────────────────────────────


class TaskStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class CycleStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


OPERATION_TASK_STATUSES = {s.value for s in TaskStatus}

OPERATION_CYCLE_STATUSES = {s.value for s in CycleStatus}

ASSIGNMENT_STATUSES = {"active", "paused"}

GENERATION_MODES = {"auto", "manual"}

TEMPLATE_CATEGORIES = {"payroll", "bookkeeping", "compliance", "general", "custom"}

DUE_OFFSET_UNITS = {"hours", "days"}

DUE_OFFSET_FROM_OPTIONS = {"cycle_start", "cycle_end"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

TASK_TRANSITIONS = {
    "not_started": ["in_progress", "blocked", "done"],
    "in_progress": ["blocked", "done"],
    "blocked":     ["not_started", "in_progress"],
    "done":        ["not_started"],
}

CYCLE_TRANSITIONS = {
    "active":    ["completed", "archived"],
    "completed": ["active", "archived"],
    "archived":  [],
}

# Statuses that require every prerequisite to be done first.
GATED_TASK_STATUSES = {"in_progress", "done"}


def validate_task_transition(old_status, new_status):
    """Return True if OperationTask status transition is valid."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def validate_cycle_transition(old_status, new_status):
    """Return True if OperationCycle status transition is valid."""
    return new_status in CYCLE_TRANSITIONS.get(old_status, [])


def _iso(value):
    return value.isoformat() if value else None


# ── Association tables ───────────────────────────────────────────────────────

template_task_prerequisites = db.Table(
    "operation_template_task_prerequisites",
    db.Column(
        "template_task_id", db.Integer,
        db.ForeignKey("operation_template_tasks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "prerequisite_id", db.Integer,
        db.ForeignKey("operation_template_tasks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.CheckConstraint(
        "template_task_id != prerequisite_id",
        name="ck_tpl_task_prereq_no_self_loop",
    ),
)

task_prerequisites = db.Table(
    "operation_task_prerequisites",
    db.Column(
        "task_id", db.Integer,
        db.ForeignKey("operation_tasks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "prerequisite_id", db.Integer,
        db.ForeignKey("operation_tasks.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.CheckConstraint(
        "task_id != prerequisite_id",
        name="ck_op_task_prereq_no_self_loop",
    ),
)


# ═════════════════════════════════════════════════════════════════════════════
# 1. OperationTemplate
# ═════════════════════════════════════════════════════════════════════════════


class OperationTemplate(db.Model):
    """
    Reusable recurring checklist definition (e.g. "Monthly Bookkeeping Close").
    The recurrence fields feed the pluggable period policies in
    ``opsdesk.services.recurrence``.
    """

    __tablename__ = "operation_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), unique=True, nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(
        db.String(30), nullable=False, default="general",
        comment="payroll | bookkeeping | compliance | general | custom",
    )
    recurrence_type = db.Column(
        db.String(20), nullable=False, default="monthly",
        comment="Registered recurrence policy name (weekly, monthly, ...)",
    )
    recurrence_interval = db.Column(
        db.Integer, nullable=True,
        comment="Period length in days; required when recurrence_type = custom",
    )
    recurrence_anchor = db.Column(
        db.Date, nullable=True,
        comment="First day of any period for biweekly/custom cadences",
    )
    auto_generate = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "recurrence_interval IS NULL OR recurrence_interval > 0",
            name="ck_operation_template_interval_positive",
        ),
    )

    tasks = db.relationship(
        "OperationTemplateTask", backref="template",
        cascade="all, delete-orphan",
        order_by="[OperationTemplateTask.position, OperationTemplateTask.id]",
    )

    def active_tasks(self):
        return [t for t in self.tasks if t.is_active]

    def to_dict(self, include_tasks=False):
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "recurrence_type": self.recurrence_type,
            "recurrence_interval": self.recurrence_interval,
            "recurrence_anchor": _iso(self.recurrence_anchor),
            "auto_generate": self.auto_generate,
            "is_active": self.is_active,
            "task_count": len(self.tasks),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_tasks:
            result["tasks"] = [t.to_dict() for t in self.tasks]
        return result

    def __repr__(self):
        return f"<OperationTemplate {self.id}: {self.name} [{self.recurrence_type}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. OperationTemplateTask
# ═════════════════════════════════════════════════════════════════════════════


class OperationTemplateTask(db.Model):
    """
    Ordered task blueprint. Title, description, evidence flag and position are
    copied onto each generated OperationTask; later edits here do not touch
    tasks that were already generated.
    """

    __tablename__ = "operation_template_tasks"

    id = db.Column(db.Integer, primary_key=True)
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    position = db.Column(db.Integer, nullable=False, default=0)
    evidence_required = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    default_assignee_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Due offset: all three set or none
    due_offset_value = db.Column(db.Integer, nullable=True)
    due_offset_unit = db.Column(db.String(10), nullable=True, comment="hours | days")
    due_offset_from = db.Column(
        db.String(20), nullable=True, comment="cycle_start | cycle_end",
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "operation_template_id", "title",
            name="uq_operation_template_task_title",
        ),
        db.Index(
            "ix_operation_template_tasks_order",
            "operation_template_id", "position",
        ),
    )

    prerequisites = db.relationship(
        "OperationTemplateTask",
        secondary=template_task_prerequisites,
        primaryjoin=lambda: OperationTemplateTask.id == template_task_prerequisites.c.template_task_id,
        secondaryjoin=lambda: OperationTemplateTask.id == template_task_prerequisites.c.prerequisite_id,
        lazy="selectin",
    )
    default_assignee = db.relationship("StaffMember", foreign_keys=[default_assignee_id])

    @property
    def prerequisite_ids(self):
        return sorted(p.id for p in self.prerequisites)

    @property
    def has_due_offset(self):
        return self.due_offset_value is not None

    def to_dict(self):
        return {
            "id": self.id,
            "operation_template_id": self.operation_template_id,
            "title": self.title,
            "description": self.description,
            "position": self.position,
            "evidence_required": self.evidence_required,
            "is_active": self.is_active,
            "default_assignee_id": self.default_assignee_id,
            "due_offset_value": self.due_offset_value,
            "due_offset_unit": self.due_offset_unit,
            "due_offset_from": self.due_offset_from,
            "prerequisite_ids": self.prerequisite_ids,
        }

    def __repr__(self):
        return f"<OperationTemplateTask {self.id}: #{self.position} {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. ClientOperationAssignment
# ═════════════════════════════════════════════════════════════════════════════


class ClientOperationAssignment(db.Model):
    """
    Binding of a client to a template. One per (client, template).
    Paused assignments never generate cycles.
    """

    __tablename__ = "client_operation_assignments"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    assignment_status = db.Column(
        db.String(20), nullable=False, default="active", comment="active | paused",
    )
    auto_generate = db.Column(db.Boolean, nullable=False, default=True)
    starts_on = db.Column(db.Date, nullable=True)
    ends_on = db.Column(db.Date, nullable=True)
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint(
            "client_id", "operation_template_id",
            name="uq_client_operation_assignment",
        ),
        db.CheckConstraint(
            "assignment_status IN ('active','paused')",
            name="ck_assignment_status",
        ),
        db.CheckConstraint(
            "starts_on IS NULL OR ends_on IS NULL OR ends_on >= starts_on",
            name="ck_assignment_window",
        ),
    )

    client = db.relationship("Client")
    template = db.relationship("OperationTemplate", backref="assignments")

    @property
    def is_paused(self):
        return self.assignment_status == "paused"

    def to_dict(self):
        return {
            "id": self.id,
            "client_id": self.client_id,
            "operation_template_id": self.operation_template_id,
            "operation_template_name": self.template.name if self.template else None,
            "assignment_status": self.assignment_status,
            "auto_generate": self.auto_generate,
            "starts_on": _iso(self.starts_on),
            "ends_on": _iso(self.ends_on),
            "created_by_id": self.created_by_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return (
            f"<ClientOperationAssignment {self.id}: client={self.client_id} "
            f"template={self.operation_template_id} [{self.assignment_status}]>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# 4. OperationCycle
# ═════════════════════════════════════════════════════════════════════════════


class OperationCycle(db.Model):
    """
    One instantiated occurrence of a template for a client over a period.

    ``auto_period_key`` is only set by the scheduled generator. Together with
    the assignment id it is unique, which turns the generator's
    check-and-create into an atomic insert. Manual cycles leave it NULL and
    may overlap freely.
    """

    __tablename__ = "operation_cycles"

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    operation_template_id = db.Column(
        db.Integer, db.ForeignKey("operation_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    client_operation_assignment_id = db.Column(
        db.Integer, db.ForeignKey("client_operation_assignments.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )

    cycle_label = db.Column(db.String(200), nullable=False)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="active",
        comment="active | completed | archived",
    )
    generation_mode = db.Column(
        db.String(10), nullable=False, default="manual", comment="auto | manual",
    )
    auto_period_key = db.Column(
        db.String(40), nullable=True,
        comment="YYYY-MM-DD:YYYY-MM-DD for auto cycles; NULL for manual",
    )
    generated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    generated_by_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('active','completed','archived')",
            name="ck_operation_cycle_status",
        ),
        db.CheckConstraint(
            "generation_mode IN ('auto','manual')",
            name="ck_operation_cycle_generation_mode",
        ),
        db.CheckConstraint(
            "period_end >= period_start",
            name="ck_operation_cycle_period",
        ),
        db.UniqueConstraint(
            "client_operation_assignment_id", "auto_period_key",
            name="uq_operation_cycle_auto_period",
        ),
        db.Index(
            "ix_operation_cycles_assignment_period",
            "client_operation_assignment_id", "period_start", "period_end",
        ),
    )

    tasks = db.relationship(
        "OperationTask", backref="cycle",
        cascade="all, delete-orphan",
        order_by="[OperationTask.position, OperationTask.id]",
    )
    client = db.relationship("Client")
    template = db.relationship("OperationTemplate")
    assignment = db.relationship("ClientOperationAssignment", backref="cycles")
    generated_by = db.relationship("StaffMember", foreign_keys=[generated_by_id])

    def to_dict(self, include_tasks=False, now=None):
        result = {
            "id": self.id,
            "client_id": self.client_id,
            "operation_template_id": self.operation_template_id,
            "operation_template_name": self.template.name if self.template else None,
            "client_operation_assignment_id": self.client_operation_assignment_id,
            "cycle_label": self.cycle_label,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "status": self.status,
            "generation_mode": self.generation_mode,
            "generated_at": _iso(self.generated_at),
            "generated_by": self.generated_by.to_summary() if self.generated_by else None,
            "task_count": len(self.tasks),
            "done_count": sum(1 for t in self.tasks if t.status == "done"),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_tasks:
            # task_state_machine imports this module
            from opsdesk.services.task_state_machine import task_to_dict
            result["tasks"] = [task_to_dict(t, now=now) for t in self.tasks]
        return result

    def __repr__(self):
        return f"<OperationCycle {self.id}: {self.cycle_label} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 5. OperationTask
# ═════════════════════════════════════════════════════════════════════════════


class OperationTask(db.Model):
    """
    One checklist item inside a cycle. Status changes go through
    ``opsdesk.services.task_state_machine``; assignee and free-text fields
    are unguarded.
    """

    __tablename__ = "operation_tasks"

    id = db.Column(db.Integer, primary_key=True)
    operation_cycle_id = db.Column(
        db.Integer, db.ForeignKey("operation_cycles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    operation_template_task_id = db.Column(
        db.Integer, db.ForeignKey("operation_template_tasks.id", ondelete="SET NULL"),
        nullable=True, comment="Lineage back-reference for display/audit",
    )
    client_id = db.Column(
        db.Integer, db.ForeignKey("clients.id", ondelete="CASCADE"),
        nullable=False, comment="Denormalised from the cycle for board filters",
    )

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    position = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.String(20), nullable=False, default="not_started",
        comment="not_started | in_progress | blocked | done",
    )

    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
    )
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by_id = db.Column(
        db.Integer, db.ForeignKey("staff_members.id", ondelete="SET NULL"),
        nullable=True,
    )

    evidence_required = db.Column(db.Boolean, nullable=False, default=False)
    evidence_note = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, default="")

    linked_time_entry_id = db.Column(
        db.Integer, db.ForeignKey("time_entries.id", ondelete="SET NULL"),
        nullable=True, unique=True,
    )

    created_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('not_started','in_progress','blocked','done')",
            name="ck_operation_task_status",
        ),
        db.Index("ix_operation_tasks_order", "operation_cycle_id", "position"),
        db.Index("ix_operation_tasks_status_due", "status", "due_at"),
        db.Index("ix_operation_tasks_assignee_status", "assigned_to_id", "status"),
        db.Index("ix_operation_tasks_client_status", "client_id", "status"),
    )

    prerequisites = db.relationship(
        "OperationTask",
        secondary=task_prerequisites,
        primaryjoin=lambda: OperationTask.id == task_prerequisites.c.task_id,
        secondaryjoin=lambda: OperationTask.id == task_prerequisites.c.prerequisite_id,
        lazy="selectin",
    )
    template_task = db.relationship("OperationTemplateTask")
    client = db.relationship("Client")
    assigned_to = db.relationship("StaffMember", foreign_keys=[assigned_to_id])
    completed_by = db.relationship("StaffMember", foreign_keys=[completed_by_id])
    linked_time_entry = db.relationship(
        "TimeEntry", backref=db.backref("operation_task", uselist=False),
    )

    @property
    def is_done(self):
        return self.status == "done"

    @property
    def prerequisite_ids(self):
        return sorted(p.id for p in self.prerequisites)

    def __repr__(self):
        return f"<OperationTask {self.id}: #{self.position} {self.title[:40]} [{self.status}]>"
