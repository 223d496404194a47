"""Standardised API error responses.

Usage
-----
    from opsdesk.utils.errors import api_error, error_response, E

    return api_error(E.NOT_FOUND, "OperationTask not found")
    return api_error(E.VALIDATION_REQUIRED, "period_start is required")
    return error_response(exc)          # any opsdesk.core.exceptions error
"""

from __future__ import annotations

from flask import jsonify

from opsdesk.core.exceptions import ConflictError, NotFoundError, ValidationError


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ERR_ prefix for every application error.
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Checklist rules
    INVALID_PERIOD = "ERR_INVALID_PERIOD"
    ASSIGNMENT_NOT_ELIGIBLE = "ERR_ASSIGNMENT_NOT_ELIGIBLE"
    MALFORMED_TEMPLATE_GRAPH = "ERR_MALFORMED_TEMPLATE_GRAPH"
    PREREQUISITES_UNMET = "ERR_PREREQUISITES_UNMET"
    EVIDENCE_REQUIRED = "ERR_EVIDENCE_REQUIRED"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.INVALID_PERIOD: 422,
    E.ASSIGNMENT_NOT_ELIGIBLE: 422,
    E.MALFORMED_TEMPLATE_GRAPH: 422,
    E.PREREQUISITES_UNMET: 409,
    E.EVIDENCE_REQUIRED: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (blocking task titles, offending ids, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def error_response(exc: Exception):
    """Map a platform exception to its standard JSON error response."""
    if isinstance(exc, NotFoundError):
        return api_error(E.NOT_FOUND, str(exc))
    if isinstance(exc, ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})
    if isinstance(exc, ValidationError):
        return api_error(exc.code, str(exc), status=exc.http_status, details=exc.details)
    return api_error(E.INTERNAL, "Internal server error")
