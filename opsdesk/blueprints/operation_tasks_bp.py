"""
Operation Tasks Blueprint — task board, personal list and state changes.

Endpoints:
  GET   /operation-tasks              team list (filters + pagination)
  GET   /operation-tasks/mine         acting staff member's tasks, urgency-sorted
  GET   /operation-tasks/board        grouped view (group_by=status|client|assignee)
  GET   /operation-tasks/<id>
  PATCH /operation-tasks/<id>         status / assignee / notes / evidence / due date / time entry
  POST  /operation-tasks/<id>/complete
  POST  /operation-tasks/<id>/reopen

Filter query params: scope, assigned_to_id, status, client_id,
due (all|overdue|today|upcoming), include_done, group_by.
"""

import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from opsdesk.blueprints import current_staff_id, json_body, page_args, register_error_handlers
from opsdesk.core.exceptions import ValidationError
from opsdesk.services import checklist_query, task_state_machine
from opsdesk.services.checklist_query import Scope, TaskFilters
from opsdesk.utils.errors import E, api_error
from opsdesk.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

operation_tasks_bp = Blueprint("operation_tasks", __name__, url_prefix="/api/v1/operation-tasks")

register_error_handlers(operation_tasks_bp)


def _now():
    """Evaluation time for urgency; ?now=ISO overrides the clock."""
    raw = request.args.get("now")
    if raw:
        try:
            return parse_datetime(raw), None
        except ValueError:
            return None, api_error(E.VALIDATION_INVALID, "now must be an ISO-8601 datetime")
    return datetime.now(timezone.utc), None


def _filters(**overrides):
    try:
        filters = TaskFilters.from_args(request.args)
    except ValidationError as exc:
        return None, api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)
    for key, value in overrides.items():
        setattr(filters, key, value)
    return filters, None


def _serialize(tasks, now):
    return [task_state_machine.task_to_dict(t, now=now) for t in tasks]


@operation_tasks_bp.route("", methods=["GET"])
def list_tasks():
    filters, err = _filters()
    if err:
        return err
    now, err = _now()
    if err:
        return err
    page, per_page = page_args()
    tasks = checklist_query.list_tasks(filters, actor_id=current_staff_id(), now=now)
    page_items, meta = checklist_query.paginate(tasks, page, per_page)
    return jsonify({
        "items": _serialize(page_items, now),
        "meta": meta,
        "filters": filters.to_dict(),
    })


@operation_tasks_bp.route("/mine", methods=["GET"])
def my_tasks():
    staff_id = current_staff_id()
    if staff_id is None:
        return api_error(E.VALIDATION_REQUIRED, "X-Staff-Id header is required")
    filters, err = _filters(scope=Scope.MINE)
    if err:
        return err
    now, err = _now()
    if err:
        return err
    page, per_page = page_args()
    tasks = checklist_query.list_tasks(filters, actor_id=staff_id, now=now)
    page_items, meta = checklist_query.paginate(tasks, page, per_page)
    return jsonify({
        "items": _serialize(page_items, now),
        "meta": meta,
        "counts": checklist_query.task_counts(tasks, now),
        "filters": filters.to_dict(),
    })


@operation_tasks_bp.route("/board", methods=["GET"])
def board():
    filters, err = _filters()
    if err:
        return err
    now, err = _now()
    if err:
        return err
    groups = checklist_query.board(filters, actor_id=current_staff_id(), now=now)
    return jsonify({
        "groups": [
            {"key": key, "count": len(tasks), "items": _serialize(tasks, now)}
            for key, tasks in groups
        ],
        "filters": filters.to_dict(),
    })


@operation_tasks_bp.route("/<int:task_id>", methods=["GET"])
def get_task(task_id):
    now, err = _now()
    if err:
        return err
    task = task_state_machine.get_task(task_id)
    return jsonify(task_state_machine.task_to_dict(task, now=now))


@operation_tasks_bp.route("/<int:task_id>", methods=["PATCH"])
def update_task(task_id):
    """Partial update; unknown keys are ignored."""
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    patch = {k: v for k, v in data.items() if k in task_state_machine.UPDATABLE_FIELDS}
    if "status" in patch and not isinstance(patch["status"], str):
        return api_error(E.VALIDATION_INVALID, "status must be a string")
    task = task_state_machine.update_task(task_id, patch, actor_id=current_staff_id())
    return jsonify(task_state_machine.task_to_dict(task))


@operation_tasks_bp.route("/<int:task_id>/complete", methods=["POST"])
def complete_task(task_id):
    """Body: {"evidence_note": "..."} (required when the task needs evidence)"""
    data = json_body()
    if data is None:
        return api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    task = task_state_machine.complete_task(
        task_id, data.get("evidence_note"), actor_id=current_staff_id(),
    )
    return jsonify(task_state_machine.task_to_dict(task))


@operation_tasks_bp.route("/<int:task_id>/reopen", methods=["POST"])
def reopen_task(task_id):
    task = task_state_machine.reopen_task(task_id, actor_id=current_staff_id())
    return jsonify(task_state_machine.task_to_dict(task))
