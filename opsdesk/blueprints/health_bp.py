"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database check plus checklist table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from opsdesk.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

_CHECKLIST_TABLES = ("operation_templates", "client_operation_assignments",
                     "operation_cycles", "operation_tasks")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    # ── Checklist tables ─────────────────────────────────────────────
    if overall:
        tables = {}
        for tbl in _CHECKLIST_TABLES:
            try:
                tables[tbl] = db.session.execute(db.text(f"SELECT COUNT(*) FROM {tbl}")).scalar()
            except Exception as exc:
                db.session.rollback()
                tables[tbl] = None
                overall = False
                logger.error("Health check — table %s failed: %s", tbl, exc)
        checks["tables"] = tables

    checks["app"] = {
        "name": "Operations Desk",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
