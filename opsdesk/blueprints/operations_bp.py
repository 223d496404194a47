"""
Operations Checklist Blueprint — templates, assignments and cycles.

Endpoints:
  OperationTemplate:          GET/POST /operation-templates, GET/PATCH /operation-templates/<id>
  OperationTemplateTask:      POST /operation-templates/<id>/tasks
                              PATCH /operation-template-tasks/<id>
                              PUT  /operation-template-tasks/<id>/prerequisites
  ClientOperationAssignment:  GET/POST /clients/<client_id>/operation-assignments
                              PATCH /operation-assignments/<id>
  OperationCycle:             GET  /clients/<client_id>/operation-cycles
                              POST /clients/<client_id>/operation-cycles/generate
                              GET  /operation-cycles/<id>
                              POST /operation-cycles/<id>/status
                              POST /operation-cycles/generate-due

Acting staff member comes from the X-Staff-Id header.
Service layer owns all business logic and commits.
"""

import logging
from datetime import date

from flask import Blueprint, jsonify, request

from opsdesk.blueprints import current_staff_id, json_body, page_args, register_error_handlers
from opsdesk.services import cycle_generator, template_service
from opsdesk.utils.errors import E, api_error
from opsdesk.utils.helpers import parse_bool, parse_date_input

logger = logging.getLogger(__name__)

operations_bp = Blueprint("operations", __name__, url_prefix="/api/v1")

register_error_handlers(operations_bp)


def _body():
    data = json_body()
    if data is None:
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


def _dates(data, *fields):
    """Parse date fields in-place; returns an error response on bad input."""
    for f in fields:
        if f in data:
            try:
                data[f] = parse_date_input(data[f])
            except ValueError as exc:
                return api_error(E.VALIDATION_INVALID, f"{f}: {exc}", details={"field": f})
    return None


# ═════════════════════════════════════════════════════════════════════════════
# OperationTemplate
# ═════════════════════════════════════════════════════════════════════════════


@operations_bp.route("/operation-templates", methods=["GET"])
def list_templates():
    """List templates. Query: active_only=true to hide inactive ones."""
    items = template_service.list_templates(active_only=parse_bool(request.args.get("active_only")))
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)})


@operations_bp.route("/operation-templates", methods=["POST"])
def create_template():
    data, err = _body()
    if err:
        return err
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    err = _dates(data, "recurrence_anchor")
    if err:
        return err
    template = template_service.create_template(data)
    return jsonify(template.to_dict(include_tasks=True)), 201


@operations_bp.route("/operation-templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    template = template_service.get_template(template_id)
    return jsonify(template.to_dict(include_tasks=True))


@operations_bp.route("/operation-templates/<int:template_id>", methods=["PATCH"])
def update_template(template_id):
    template = template_service.get_template(template_id)
    data, err = _body()
    if err:
        return err
    err = _dates(data, "recurrence_anchor")
    if err:
        return err
    template = template_service.update_template(template, data)
    return jsonify(template.to_dict(include_tasks=True))


# ═════════════════════════════════════════════════════════════════════════════
# OperationTemplateTask
# ═════════════════════════════════════════════════════════════════════════════


@operations_bp.route("/operation-templates/<int:template_id>/tasks", methods=["POST"])
def create_template_task(template_id):
    template = template_service.get_template(template_id)
    data, err = _body()
    if err:
        return err
    if not (data.get("title") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    task = template_service.create_template_task(template, data)
    return jsonify(task.to_dict()), 201


@operations_bp.route("/operation-template-tasks/<int:template_task_id>", methods=["PATCH"])
def update_template_task(template_task_id):
    task = template_service.get_template_task(template_task_id)
    data, err = _body()
    if err:
        return err
    task = template_service.update_template_task(task, data)
    return jsonify(task.to_dict())


@operations_bp.route("/operation-template-tasks/<int:template_task_id>/prerequisites", methods=["PUT"])
def set_template_task_prerequisites(template_task_id):
    """Replace the prerequisite set. Body: {"prerequisite_ids": [..]}"""
    task = template_service.get_template_task(template_task_id)
    data, err = _body()
    if err:
        return err
    if not isinstance(data.get("prerequisite_ids"), list):
        return api_error(E.VALIDATION_REQUIRED, "prerequisite_ids must be a list")
    task = template_service.set_template_task_prerequisites(task, data["prerequisite_ids"])
    return jsonify(task.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# ClientOperationAssignment
# ═════════════════════════════════════════════════════════════════════════════


@operations_bp.route("/clients/<int:client_id>/operation-assignments", methods=["GET"])
def list_assignments(client_id):
    items = template_service.list_assignments(client_id)
    return jsonify({"items": [a.to_dict() for a in items], "total": len(items)})


@operations_bp.route("/clients/<int:client_id>/operation-assignments", methods=["POST"])
def create_assignment(client_id):
    data, err = _body()
    if err:
        return err
    if not data.get("operation_template_id"):
        return api_error(E.VALIDATION_REQUIRED, "operation_template_id is required")
    err = _dates(data, "starts_on", "ends_on")
    if err:
        return err
    assignment = template_service.create_assignment(client_id, data, created_by_id=current_staff_id())
    return jsonify(assignment.to_dict()), 201


@operations_bp.route("/operation-assignments/<int:assignment_id>", methods=["PATCH"])
def update_assignment(assignment_id):
    assignment = template_service.get_assignment(assignment_id)
    data, err = _body()
    if err:
        return err
    err = _dates(data, "starts_on", "ends_on")
    if err:
        return err
    assignment = template_service.update_assignment(assignment, data)
    return jsonify(assignment.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# OperationCycle
# ═════════════════════════════════════════════════════════════════════════════


@operations_bp.route("/clients/<int:client_id>/operation-cycles", methods=["GET"])
def list_cycles(client_id):
    """Client's cycles, newest period first. Query: page, per_page."""
    page, per_page = page_args("OPERATIONS_CYCLES_PER_PAGE_DEFAULT", "OPERATIONS_CYCLES_PER_PAGE_MAX")
    cycles, meta = cycle_generator.list_cycles(client_id, page, per_page)
    return jsonify({"items": [c.to_dict() for c in cycles], "meta": meta})


@operations_bp.route("/clients/<int:client_id>/operation-cycles/generate", methods=["POST"])
def generate_cycle(client_id):
    """Manual generation.

    Body: {operation_template_id, period_start, period_end, client_operation_assignment_id?}
    """
    data, err = _body()
    if err:
        return err
    missing = [f for f in ("operation_template_id", "period_start", "period_end") if not data.get(f)]
    if missing:
        return api_error(E.VALIDATION_REQUIRED, f"{', '.join(missing)} required",
                         details={"missing": missing})
    err = _dates(data, "period_start", "period_end")
    if err:
        return err
    cycle = cycle_generator.generate_cycle(
        client_id,
        data["operation_template_id"],
        data["period_start"],
        data["period_end"],
        assignment_id=data.get("client_operation_assignment_id"),
        triggered_by=current_staff_id(),
    )
    return jsonify(cycle.to_dict(include_tasks=True)), 201


@operations_bp.route("/operation-cycles/<int:cycle_id>", methods=["GET"])
def get_cycle(cycle_id):
    cycle = cycle_generator.get_cycle(cycle_id)
    return jsonify(cycle.to_dict(include_tasks=True))


@operations_bp.route("/operation-cycles/<int:cycle_id>/status", methods=["POST"])
def set_cycle_status(cycle_id):
    """Body: {"status": "active" | "completed" | "archived"}"""
    cycle = cycle_generator.get_cycle(cycle_id)
    data, err = _body()
    if err:
        return err
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    cycle = cycle_generator.set_cycle_status(cycle, data["status"])
    return jsonify(cycle.to_dict())


@operations_bp.route("/operation-cycles/generate-due", methods=["POST"])
def generate_due():
    """Run the scheduled generation now. Body: {"run_date": "YYYY-MM-DD"?}"""
    data, err = _body()
    if err:
        return err
    err = _dates(data, "run_date")
    if err:
        return err
    run_date = data.get("run_date") or date.today()
    result = cycle_generator.generate_due_cycles(run_date, triggered_by=current_staff_id())
    payload = result.to_dict()
    payload["run_date"] = run_date.isoformat()
    return jsonify(payload)
