"""
Operations Desk
Recurrence policies — period boundaries for recurring checklist cycles.

A policy is a pure function ``(run_date, template, assignment) -> Period | None``
registered under a ``recurrence_type`` name. The cycle generator looks the
policy up by the template's recurrence type, so new cadences are added by
registering another function, not by editing the generator.

Built-in policies:
    - weekly:     ISO week (Mon–Sun) containing run_date
    - biweekly:   14-day window anchored on the assignment / template anchor
    - monthly:    calendar month
    - quarterly:  calendar quarter
    - custom:     N-day window (template.recurrence_interval) on the same anchor

Usage:
    @register_policy("fiscal_month")
    def fiscal_month(run_date, template, assignment):
        ...

    period = period_for(run_date, template, assignment)
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable

logger = logging.getLogger(__name__)

# Fallback anchor for anchored cadences (a Monday).
DEFAULT_ANCHOR = date(2024, 1, 1)


@dataclass(frozen=True)
class Period:
    start: date
    end: date
    label: str

    @property
    def key(self) -> str:
        return f"{self.start.isoformat()}:{self.end.isoformat()}"


# ═══════════════════════════════════════════════════════════════════════════
#  Policy Registry
# ═══════════════════════════════════════════════════════════════════════════

_policy_registry: dict[str, Callable] = {}


def register_policy(name: str):
    """Decorator to register a recurrence policy under ``name``."""
    def decorator(fn: Callable) -> Callable:
        _policy_registry[name] = fn
        return fn
    return decorator


def get_registered_policies() -> dict[str, Callable]:
    """Return all registered recurrence policies."""
    return dict(_policy_registry)


def period_for(run_date: date, template, assignment=None) -> Period | None:
    """Return the period containing ``run_date`` for the template's cadence.

    Returns None when the template has no usable policy (unknown type,
    custom cadence without an interval).
    """
    policy = _policy_registry.get(template.recurrence_type)
    if policy is None:
        logger.warning(
            "No recurrence policy for type=%s (template id=%s)",
            template.recurrence_type, template.id,
        )
        return None
    return policy(run_date, template, assignment)


# ═══════════════════════════════════════════════════════════════════════════
#  Labels
# ═══════════════════════════════════════════════════════════════════════════


def period_label(start: date, end: date) -> str:
    """Human label for a period: "Jan 2025", "Q1 2025", "Week of Jan 06, 2025"
    or a date range."""
    last_of_month = calendar.monthrange(end.year, end.month)[1]
    month_aligned = start.day == 1 and end.day == last_of_month

    if month_aligned and start.year == end.year and start.month == end.month:
        return start.strftime("%b %Y")
    if (
        month_aligned
        and start.year == end.year
        and start.month in (1, 4, 7, 10)
        and end.month == start.month + 2
    ):
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    if start.weekday() == 0 and end == start + timedelta(days=6):
        return f"Week of {start.strftime('%b %d, %Y')}"
    if start.year == end.year:
        return f"{start.strftime('%b %d')} – {end.strftime('%b %d, %Y')}"
    return f"{start.strftime('%b %d, %Y')} – {end.strftime('%b %d, %Y')}"


def _make(start: date, end: date) -> Period:
    return Period(start=start, end=end, label=period_label(start, end))


def _anchor(template, assignment) -> date:
    if assignment is not None and assignment.starts_on:
        return assignment.starts_on
    anchor = getattr(template, "recurrence_anchor", None)
    return anchor or DEFAULT_ANCHOR


def _anchored_window(run_date: date, anchor: date, length_days: int) -> Period:
    offset = (run_date - anchor).days % length_days
    start = run_date - timedelta(days=offset)
    return _make(start, start + timedelta(days=length_days - 1))


# ═══════════════════════════════════════════════════════════════════════════
#  Built-in policies
# ═══════════════════════════════════════════════════════════════════════════


@register_policy("weekly")
def weekly_period(run_date, template, assignment=None):
    start = run_date - timedelta(days=run_date.weekday())
    return _make(start, start + timedelta(days=6))


@register_policy("biweekly")
def biweekly_period(run_date, template, assignment=None):
    return _anchored_window(run_date, _anchor(template, assignment), 14)


@register_policy("monthly")
def monthly_period(run_date, template, assignment=None):
    last = calendar.monthrange(run_date.year, run_date.month)[1]
    return _make(run_date.replace(day=1), run_date.replace(day=last))


@register_policy("quarterly")
def quarterly_period(run_date, template, assignment=None):
    first_month = 3 * ((run_date.month - 1) // 3) + 1
    last_month = first_month + 2
    last = calendar.monthrange(run_date.year, last_month)[1]
    return _make(
        date(run_date.year, first_month, 1),
        date(run_date.year, last_month, last),
    )


@register_policy("custom")
def custom_period(run_date, template, assignment=None):
    interval = template.recurrence_interval
    if not interval or interval <= 0:
        return None
    return _anchored_window(run_date, _anchor(template, assignment), interval)
