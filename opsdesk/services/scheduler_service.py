"""
Operations Desk
Scheduler Service.

In-process job registry with persisted run history. The process does not
run its own clock: an external trigger (cron, platform scheduler, or an
operator) calls ``run_job`` through the API or the CLI, and every run is
recorded on the job's ScheduledJob row.

Architecture:
    - register_job: decorator that adds a job function to the registry
    - SchedulerService: registration sync, execution, listing, enable/disable
    - ScheduledJob: persisted config + last-run outcome
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask

from opsdesk.models import db
from opsdesk.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("auto_generate_operation_cycles")
        def auto_generate_operation_cycles(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Executes registered jobs inside the Flask app context and keeps the
    ScheduledJob table in sync with the registry.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for name, fn in _job_registry.items():
            if ScheduledJob.query.filter_by(job_name=name).first():
                continue
            job = ScheduledJob(
                job_name=name,
                description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                schedule_type="cron",
                schedule_config=_get_default_schedule(name, cls._app),
                status="active",
                is_enabled=True,
                run_count=0,
                error_count=0,
            )
            db.session.add(job)
            created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = True, **job_kwargs) -> dict:
        """
        Execute a single job by name.

        Args:
            job_name: Registry key.
            force: Run even when the job is disabled. Scheduled triggers pass
                   False so a paused job is skipped and the skip is recorded.
            job_kwargs: Passed through to the job function (e.g. run_date).

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._app.app_context():
            cls.ensure_jobs_registered()
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if not force and job_record and not job_record.is_enabled:
                job_record.record_run(status="skipped", result={"reason": "disabled"})
                db.session.commit()
                logger.info("Job %s skipped (disabled)", job_name, extra={"job_name": job_name})
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app, **job_kwargs)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        with cls._app.app_context():
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()

        logger.info("Job %s finished status=%s duration_ms=%d", job_name, status, duration_ms,
                    extra={"job_name": job_name})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in sorted(_job_registry):
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job. Returns None for unknown jobs."""
        if job_name not in _job_registry:
            return None
        cls.ensure_jobs_registered()
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if enabled else "paused",
                    extra={"job_name": job_name})
        return job_record.to_dict()


def _get_default_schedule(job_name: str, app: Flask | None = None) -> dict:
    """Return default schedule config for known job types."""
    hour = "5"
    if app is not None:
        hour = str(app.config.get("SCHEDULER_GENERATE_CYCLES_HOUR", hour))
    defaults = {
        "auto_generate_operation_cycles": {
            "hour": hour, "minute": "0", "description": f"Daily at {hour.zfill(2)}:00",
        },
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0",
                                    "description": "Daily at midnight"})
