"""operations_checklist

Creates the Operations Checklist tables:
  - clients, staff_members, time_entries      — reference data read by the checklist
  - operation_templates, operation_template_tasks (+ prerequisite links)
  - client_operation_assignments
  - operation_cycles, operation_tasks (+ prerequisite links)
  - scheduled_jobs                            — job registry + run history

Tables are created conditionally so the revision can run against databases
that already received them via db.create_all() in development.

Revision ID: 0001_operations_checklist
Revises:
Create Date: 2025-01-06 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "0001_operations_checklist"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Reference data ────────────────────────────────────────────────────
    if "clients" not in existing:
        op.create_table(
            "clients",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )

    if "staff_members" not in existing:
        op.create_table(
            "staff_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True, unique=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="employee",
                      comment="admin | employee"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("role IN ('admin','employee')", name="ck_staff_member_role"),
        )

    if "time_entries" not in existing:
        op.create_table(
            "time_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("staff_member_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="CASCADE"), nullable=False),
            sa.Column("work_date", sa.Date(), nullable=False),
            sa.Column("hours", sa.Numeric(5, 2), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_time_entries_staff_member_id", "time_entries", ["staff_member_id"])

    # ── Templates ─────────────────────────────────────────────────────────
    if "operation_templates" not in existing:
        op.create_table(
            "operation_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=200), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="general",
                      comment="payroll | bookkeeping | compliance | general | custom"),
            sa.Column("recurrence_type", sa.String(length=20), nullable=False,
                      server_default="monthly",
                      comment="Registered recurrence policy name (weekly, monthly, ...)"),
            sa.Column("recurrence_interval", sa.Integer(), nullable=True),
            sa.Column("recurrence_anchor", sa.Date(), nullable=True),
            sa.Column("auto_generate", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.CheckConstraint(
                "recurrence_interval IS NULL OR recurrence_interval > 0",
                name="ck_operation_template_interval_positive",
            ),
        )
        op.create_index("ix_operation_templates_is_active", "operation_templates", ["is_active"])

    if "operation_template_tasks" not in existing:
        op.create_table(
            "operation_template_tasks",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("operation_template_id", sa.Integer(),
                      sa.ForeignKey("operation_templates.id", ondelete="CASCADE"), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("evidence_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("default_assignee_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True),
            sa.Column("due_offset_value", sa.Integer(), nullable=True),
            sa.Column("due_offset_unit", sa.String(length=10), nullable=True, comment="hours | days"),
            sa.Column("due_offset_from", sa.String(length=20), nullable=True,
                      comment="cycle_start | cycle_end"),
            *_timestamps(),
            sa.UniqueConstraint("operation_template_id", "title",
                                name="uq_operation_template_task_title"),
        )
        op.create_index("ix_operation_template_tasks_operation_template_id",
                        "operation_template_tasks", ["operation_template_id"])
        op.create_index("ix_operation_template_tasks_order",
                        "operation_template_tasks", ["operation_template_id", "position"])

    if "operation_template_task_prerequisites" not in existing:
        op.create_table(
            "operation_template_task_prerequisites",
            sa.Column("template_task_id", sa.Integer(),
                      sa.ForeignKey("operation_template_tasks.id", ondelete="CASCADE"),
                      primary_key=True),
            sa.Column("prerequisite_id", sa.Integer(),
                      sa.ForeignKey("operation_template_tasks.id", ondelete="CASCADE"),
                      primary_key=True),
            sa.CheckConstraint("template_task_id != prerequisite_id",
                               name="ck_tpl_task_prereq_no_self_loop"),
        )

    # ── Assignments ───────────────────────────────────────────────────────
    if "client_operation_assignments" not in existing:
        op.create_table(
            "client_operation_assignments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("client_id", sa.Integer(),
                      sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
            sa.Column("operation_template_id", sa.Integer(),
                      sa.ForeignKey("operation_templates.id", ondelete="CASCADE"), nullable=False),
            sa.Column("assignment_status", sa.String(length=20), nullable=False,
                      server_default="active", comment="active | paused"),
            sa.Column("auto_generate", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("starts_on", sa.Date(), nullable=True),
            sa.Column("ends_on", sa.Date(), nullable=True),
            sa.Column("created_by_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("client_id", "operation_template_id",
                                name="uq_client_operation_assignment"),
            sa.CheckConstraint("assignment_status IN ('active','paused')",
                               name="ck_assignment_status"),
            sa.CheckConstraint("starts_on IS NULL OR ends_on IS NULL OR ends_on >= starts_on",
                               name="ck_assignment_window"),
        )
        op.create_index("ix_client_operation_assignments_client_id",
                        "client_operation_assignments", ["client_id"])
        op.create_index("ix_client_operation_assignments_operation_template_id",
                        "client_operation_assignments", ["operation_template_id"])

    # ── Cycles & tasks ────────────────────────────────────────────────────
    if "operation_cycles" not in existing:
        op.create_table(
            "operation_cycles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("client_id", sa.Integer(),
                      sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
            sa.Column("operation_template_id", sa.Integer(),
                      sa.ForeignKey("operation_templates.id", ondelete="CASCADE"), nullable=False),
            sa.Column("client_operation_assignment_id", sa.Integer(),
                      sa.ForeignKey("client_operation_assignments.id", ondelete="SET NULL"),
                      nullable=True),
            sa.Column("cycle_label", sa.String(length=200), nullable=False),
            sa.Column("period_start", sa.Date(), nullable=False),
            sa.Column("period_end", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active",
                      comment="active | completed | archived"),
            sa.Column("generation_mode", sa.String(length=10), nullable=False,
                      server_default="manual", comment="auto | manual"),
            sa.Column("auto_period_key", sa.String(length=40), nullable=True),
            sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("generated_by_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True),
            *_timestamps(),
            sa.CheckConstraint("status IN ('active','completed','archived')",
                               name="ck_operation_cycle_status"),
            sa.CheckConstraint("generation_mode IN ('auto','manual')",
                               name="ck_operation_cycle_generation_mode"),
            sa.CheckConstraint("period_end >= period_start", name="ck_operation_cycle_period"),
            sa.UniqueConstraint("client_operation_assignment_id", "auto_period_key",
                                name="uq_operation_cycle_auto_period"),
        )
        op.create_index("ix_operation_cycles_client_id", "operation_cycles", ["client_id"])
        op.create_index("ix_operation_cycles_operation_template_id",
                        "operation_cycles", ["operation_template_id"])
        op.create_index("ix_operation_cycles_client_operation_assignment_id",
                        "operation_cycles", ["client_operation_assignment_id"])
        op.create_index("ix_operation_cycles_assignment_period", "operation_cycles",
                        ["client_operation_assignment_id", "period_start", "period_end"])

    if "operation_tasks" not in existing:
        op.create_table(
            "operation_tasks",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("operation_cycle_id", sa.Integer(),
                      sa.ForeignKey("operation_cycles.id", ondelete="CASCADE"), nullable=False),
            sa.Column("operation_template_task_id", sa.Integer(),
                      sa.ForeignKey("operation_template_tasks.id", ondelete="SET NULL"),
                      nullable=True),
            sa.Column("client_id", sa.Integer(),
                      sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False,
                      server_default="not_started",
                      comment="not_started | in_progress | blocked | done"),
            sa.Column("assigned_to_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_by_id", sa.Integer(),
                      sa.ForeignKey("staff_members.id", ondelete="SET NULL"), nullable=True),
            sa.Column("evidence_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("evidence_note", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("linked_time_entry_id", sa.Integer(),
                      sa.ForeignKey("time_entries.id", ondelete="SET NULL"),
                      nullable=True, unique=True),
            *_timestamps(),
            sa.CheckConstraint("status IN ('not_started','in_progress','blocked','done')",
                               name="ck_operation_task_status"),
        )
        op.create_index("ix_operation_tasks_operation_cycle_id", "operation_tasks",
                        ["operation_cycle_id"])
        op.create_index("ix_operation_tasks_order", "operation_tasks",
                        ["operation_cycle_id", "position"])
        op.create_index("ix_operation_tasks_status_due", "operation_tasks", ["status", "due_at"])
        op.create_index("ix_operation_tasks_assignee_status", "operation_tasks",
                        ["assigned_to_id", "status"])
        op.create_index("ix_operation_tasks_client_status", "operation_tasks",
                        ["client_id", "status"])

    if "operation_task_prerequisites" not in existing:
        op.create_table(
            "operation_task_prerequisites",
            sa.Column("task_id", sa.Integer(),
                      sa.ForeignKey("operation_tasks.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("prerequisite_id", sa.Integer(),
                      sa.ForeignKey("operation_tasks.id", ondelete="CASCADE"), primary_key=True),
            sa.CheckConstraint("task_id != prerequisite_id", name="ck_op_task_prereq_no_self_loop"),
        )

    # ── Scheduler ─────────────────────────────────────────────────────────
    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=100), nullable=False, unique=True),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            *_timestamps(),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "operation_task_prerequisites",
        "operation_tasks",
        "operation_cycles",
        "client_operation_assignments",
        "operation_template_task_prerequisites",
        "operation_template_tasks",
        "operation_templates",
        "time_entries",
        "staff_members",
        "clients",
    ):
        op.drop_table(table)
