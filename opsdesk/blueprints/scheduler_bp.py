"""
Scheduler Blueprint — job listing, manual trigger, enable/disable.

Endpoints:
  GET   /scheduler/jobs
  GET   /scheduler/jobs/<job_name>
  POST  /scheduler/jobs/<job_name>/trigger   body: {"run_date": "YYYY-MM-DD"?, "force": bool?}
  PATCH /scheduler/jobs/<job_name>/toggle    body: {"enabled": bool}
"""

from flask import Blueprint, jsonify, request

from opsdesk.blueprints import register_error_handlers
from opsdesk.models.scheduling import ScheduledJob
from opsdesk.services.scheduler_service import SchedulerService
from opsdesk.utils.errors import E, api_error
from opsdesk.utils.helpers import parse_bool, parse_date_input

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1/scheduler")

register_error_handlers(scheduler_bp)


@scheduler_bp.route("/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their persisted status."""
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    SchedulerService.ensure_jobs_registered()
    job = ScheduledJob.query.filter_by(job_name=job_name).first()
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job.to_dict())


@scheduler_bp.route("/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Run a job now. A paused job only runs when force is true (the default)."""
    data = request.get_json(silent=True) or {}
    kwargs = {}
    if data.get("run_date"):
        try:
            kwargs["run_date"] = parse_date_input(data["run_date"])
        except ValueError as exc:
            return api_error(E.VALIDATION_INVALID, f"run_date: {exc}")
    result = SchedulerService.run_job(job_name, force=parse_bool(data.get("force"), default=True), **kwargs)
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return api_error(E.NOT_FOUND, result["error"])
    return jsonify(result)


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, parse_bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
