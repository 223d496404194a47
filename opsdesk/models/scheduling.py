"""
Operations Desk
Scheduled job registry model.

Models:
    - ScheduledJob: persisted job config and run history for the in-process scheduler
"""

from datetime import datetime, timezone

from opsdesk.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"active", "paused", "failed"}
JOB_RUN_STATUSES = {"success", "failed", "skipped"}


class ScheduledJob(db.Model):
    """
    One row per registered job function.

    ``record_run`` keeps the latest outcome plus run and error counters; the
    generation job stores its GenerationResult summary in ``last_run_result``.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="Registry key, e.g. auto_generate_operation_cycles")
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="cron",
                              comment="cron, interval, once")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="Cron fields for the external trigger")
    status = db.Column(db.String(20), default="active",
                       comment="active, paused, failed")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        self.last_run_at = datetime.now(timezone.utc)
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
