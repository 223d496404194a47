"""
Operations Desk
Flask Application Factory.

Usage:
    from opsdesk import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os
from datetime import date

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_migrate import Migrate

from opsdesk.config import config
from opsdesk.models import db
from opsdesk.middleware.logging_config import configure_logging
from opsdesk.middleware.rate_limiter import init_rate_limits, rate_limit_key
from opsdesk.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=rate_limit_key,
    default_limits=[],                     # per-blueprint limits only
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from opsdesk.models import directory as _directory_models     # noqa: F401
    from opsdesk.models import operations as _operations_models   # noqa: F401
    from opsdesk.models import scheduling as _scheduling_models   # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from opsdesk.blueprints.health_bp import health_bp
    from opsdesk.blueprints.operations_bp import operations_bp
    from opsdesk.blueprints.operation_tasks_bp import operation_tasks_bp
    from opsdesk.blueprints.scheduler_bp import scheduler_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(operations_bp)
    app.register_blueprint(operation_tasks_bp)
    app.register_blueprint(scheduler_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("generate-cycles")
    @click.option("--date", "run_date", default=None, help="Run date (YYYY-MM-DD), default today.")
    def generate_cycles_cmd(run_date):
        """Generate due operation cycles for every eligible assignment."""
        from opsdesk.services.cycle_generator import generate_due_cycles
        from opsdesk.utils.helpers import parse_date_input

        try:
            parsed = parse_date_input(run_date) or date.today()
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--date")
        result = generate_due_cycles(parsed)
        click.echo(
            f"generated={result.generated_count} skipped={result.skipped_count} "
            f"errors={len(result.errors)}"
        )
        for err in result.errors:
            click.echo(f"  assignment={err['assignment_ref']} client={err['client_id']} "
                       f"[{err['code']}] {err['reason']}")

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("opsdesk.services.scheduled_jobs")  # registers @register_job handlers
    from opsdesk.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
