"""
Operations Desk
Blueprint helpers shared by the API modules.
"""

import logging

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from opsdesk.core.exceptions import ConflictError, NotFoundError, ValidationError
from opsdesk.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

STAFF_HEADER = "X-Staff-Id"


def page_args(default_key="OPERATIONS_PER_PAGE_DEFAULT", max_key="OPERATIONS_PER_PAGE_MAX"):
    """Read page/per_page from the query string.

    Query params:
        page      — 1-based page number (default 1)
        per_page  — page size (config default, capped at the config max)

    Returns:
        (page, per_page)
    """
    default_per_page = current_app.config.get(default_key, 200)
    max_per_page = current_app.config.get(max_key, 500)
    try:
        page = max(int(request.args.get("page", 1)), 1)
    except (ValueError, TypeError):
        page = 1
    try:
        per_page = min(max(int(request.args.get("per_page", default_per_page)), 1), max_per_page)
    except (ValueError, TypeError):
        per_page = default_per_page
    return page, per_page


def current_staff_id():
    """Acting staff member from the X-Staff-Id header, or None.

    Authentication happens upstream; the header is trusted as-is.
    """
    raw = request.headers.get(STAFF_HEADER)
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def json_body():
    """Request JSON as a dict; None when the body is missing or not an object."""
    data = request.get_json(silent=True)
    if data is None and not request.data:
        return {}
    return data if isinstance(data, dict) else None


def register_error_handlers(bp):
    """Map platform exceptions raised by services to JSON error responses."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return error_response(error)

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error):
        return error_response(error)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error):
        return error_response(error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({"error": error.description}), error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
