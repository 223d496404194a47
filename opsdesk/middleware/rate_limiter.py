"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in opsdesk/__init__.py with no default limits; this module applies
limits per route category.

Usage:
    from opsdesk.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"
TRIGGER_LIMIT = "10/minute"


def rate_limit_key():
    """Acting staff member when known, else remote IP."""
    staff_id = flask_request.headers.get("X-Staff-Id")
    if staff_id:
        return f"staff:{staff_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per staff member or remote IP):
        - Scheduler triggers:       10/minute
        - Template / cycle admin:   60/minute
        - Task board and updates:   200/minute
        - Health check:             exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("scheduler")
    if bp:
        limiter.limit(TRIGGER_LIMIT)(bp)

    bp = app.blueprints.get("operations")
    if bp:
        limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("operation_tasks")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — scheduler: %s, operations: %s, tasks: %s",
        TRIGGER_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
