"""Shared parsing utilities used by services and blueprints.

parse_date:        returns None on bad input
parse_date_input:  raises ValueError on bad input (blueprints turn it into 400)
parse_datetime:    ISO string → timezone-aware UTC datetime
parse_bool:        query-string / JSON truthiness
"""
from datetime import date, datetime, timezone


_TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Same as parse_date() but raises ValueError instead of returning None.
    Empty input still returns None so callers can tell "missing" from "bad".
    """
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.")
    return parsed


def parse_datetime(value):
    """Convert an ISO-format string to a timezone-aware UTC datetime.

    Naive values are taken to be UTC. Returns None for empty input and
    raises ValueError for unparseable strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def ensure_aware(value):
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES
