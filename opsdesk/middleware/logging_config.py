"""
Structured logging configuration.

- Production: JSON lines, one object per record, checklist ids as fields
- Development: colored single line with a ``{cycle=.. task=..}`` suffix
- LOG_LEVEL / LOG_FORMAT config keys override the per-environment defaults

Services attach ids through ``extra=``::

    logger.info("OperationCycle created id=%s", cycle.id,
                extra={"cycle_id": cycle.id, "client_id": client_id})
"""

import json
import logging
import sys
from datetime import datetime, timezone

# Request fields set by the timing middleware.
REQUEST_FIELDS = ("method", "path", "status", "duration_ms", "remote_addr", "request_id")

# Checklist ids, in the order the readable suffix shows them.
CHECKLIST_FIELDS = (
    ("staff_id", "staff"),
    ("client_id", "client"),
    ("assignment_id", "assignment"),
    ("cycle_id", "cycle"),
    ("task_id", "task"),
    ("job_name", "job"),
)

QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic", "flask_limiter")


def record_context(record: logging.LogRecord) -> dict:
    """Checklist ids carried on ``record``, skipping unset ones."""
    return {
        key: getattr(record, key)
        for key, _ in CHECKLIST_FIELDS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        for key in REQUEST_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored one-liner for the dev console."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"{ts} {level} {record.name}: {record.getMessage()}"

        context = record_context(record)
        if context:
            labels = dict(CHECKLIST_FIELDS)
            line += " {" + " ".join(f"{labels[k]}={v}" for k, v in context.items()) + "}"
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            line += f" [{duration:.0f}ms]"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def build_formatter(app) -> logging.Formatter:
    is_prod = not app.config.get("DEBUG", False) and not app.config.get("TESTING", False)
    fmt = (app.config.get("LOG_FORMAT") or ("json" if is_prod else "readable")).lower()
    if fmt == "json":
        return JSONFormatter()
    if fmt != "readable":
        raise ValueError(f"LOG_FORMAT must be 'json' or 'readable', got {fmt!r}")
    return ReadableFormatter(color=sys.stderr.isatty())


def configure_logging(app):
    """
    Install a single stderr handler on the root logger.

    Level comes from LOG_LEVEL, else INFO in production and DEBUG elsewhere.
    Repeated calls (one per create_app in tests) replace the handler.
    """
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing

    level_name = (app.config.get("LOG_LEVEL") or ("INFO" if is_prod else "DEBUG")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(app))
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, type(handler.formatter).__name__)
