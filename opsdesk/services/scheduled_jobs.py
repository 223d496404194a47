"""
Operations Desk
Scheduled Jobs.

Jobs:
    - auto_generate_operation_cycles: creates the current-period cycle for
      every eligible client assignment
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from opsdesk.services.cycle_generator import generate_due_cycles
from opsdesk.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job: Operation cycle generation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("auto_generate_operation_cycles")
def auto_generate_operation_cycles(app, run_date: date | None = None) -> dict[str, Any]:
    """Generate due operation cycles for all active auto-generating assignments."""
    run_date = run_date or date.today()
    result = generate_due_cycles(run_date)
    summary = result.to_dict()
    summary["run_date"] = run_date.isoformat()
    logger.info(
        "auto_generate_operation_cycles generated=%d skipped=%d errors=%d",
        result.generated_count, result.skipped_count, len(result.errors),
        extra={"job_name": "auto_generate_operation_cycles"},
    )
    return summary
