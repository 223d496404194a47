"""
Tests: cycle generation (scheduled and manual) and cycle status.

Scheduled runs commit through their own transaction; assertions reload rows
from the database.
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from opsdesk.core.exceptions import (
    AssignmentNotEligible,
    InvalidPeriod,
    InvalidTransition,
    MalformedTemplateGraph,
    ValidationError,
)
from opsdesk.models import db
from opsdesk.models.operations import OperationCycle, OperationTask, template_task_prerequisites
from opsdesk.services import cycle_generator as gen
from opsdesk.services import recurrence
from opsdesk.services import template_service as tpl
from opsdesk.services.scheduler_service import SchedulerService, get_registered_jobs
from opsdesk.utils.helpers import ensure_aware

RUN_DATE = date(2025, 3, 10)


def _make_template(name="Monthly Close", **kw):
    return tpl.create_template({"name": name, **kw})


def _make_task(template, title, **kw):
    return tpl.create_template_task(template, {"title": title, **kw})


def _make_close_template(name="Monthly Close", **kw):
    """Two-step template: Collect statements -> Reconcile bank (evidence)."""
    template = _make_template(name, **kw)
    collect = _make_task(template, "Collect statements",
                         due_offset_value=2, due_offset_unit="days",
                         due_offset_from="cycle_start")
    _make_task(template, "Reconcile bank", evidence_required=True,
               prerequisite_ids=[collect.id],
               due_offset_value=3, due_offset_unit="days",
               due_offset_from="cycle_end")
    return template


def _assign(client, template, **kw):
    return tpl.create_assignment(client.id, {"operation_template_id": template.id, **kw})


def _cycles():
    db.session.expire_all()
    return OperationCycle.query.order_by(OperationCycle.id).all()


class TestScheduledGeneration:
    def test_generates_current_period(self, acme):
        template = _make_close_template()
        assignment = _assign(acme, template)

        result = gen.generate_due_cycles(RUN_DATE)

        assert result.generated_count == 1
        assert result.skipped_count == 0
        assert result.errors == []
        (cycle,) = _cycles()
        assert cycle.client_operation_assignment_id == assignment.id
        assert (cycle.period_start, cycle.period_end) == (date(2025, 3, 1), date(2025, 3, 31))
        assert cycle.cycle_label == "Mar 2025"
        assert cycle.generation_mode == "auto"
        assert cycle.status == "active"
        assert cycle.auto_period_key == "2025-03-01:2025-03-31"
        assert result.cycle_ids == [cycle.id]

    def test_second_run_is_skipped(self, acme):
        _assign(acme, _make_close_template())

        first = gen.generate_due_cycles(RUN_DATE)
        second = gen.generate_due_cycles(date(2025, 3, 25))

        assert (first.generated_count, first.skipped_count) == (1, 0)
        assert (second.generated_count, second.skipped_count) == (0, 1)
        assert len(_cycles()) == 1

    def test_next_period_generates_again(self, acme):
        _assign(acme, _make_close_template())
        gen.generate_due_cycles(RUN_DATE)
        result = gen.generate_due_cycles(date(2025, 4, 2))
        assert result.generated_count == 1
        assert [c.cycle_label for c in _cycles()] == ["Mar 2025", "Apr 2025"]

    def test_tasks_copied_in_order_with_remapped_prerequisites(self, acme, staff):
        template = _make_close_template()
        tpl.create_template_task(template, {"title": "File report", "default_assignee_id": staff.id})
        _assign(acme, template)

        gen.generate_due_cycles(RUN_DATE)

        (cycle,) = _cycles()
        titles = [t.title for t in cycle.tasks]
        assert titles == ["Collect statements", "Reconcile bank", "File report"]
        collect, reconcile, report = cycle.tasks
        assert reconcile.prerequisite_ids == [collect.id]
        assert collect.prerequisite_ids == []
        assert reconcile.evidence_required is True
        assert report.assigned_to_id == staff.id
        assert all(t.status == "not_started" for t in cycle.tasks)
        assert all(t.client_id == acme.id for t in cycle.tasks)
        assert collect.operation_template_task_id is not None

    def test_due_at_from_offsets(self, acme):
        _assign(acme, _make_close_template())
        gen.generate_due_cycles(RUN_DATE)

        (cycle,) = _cycles()
        collect, reconcile = cycle.tasks
        assert ensure_aware(collect.due_at) == datetime(2025, 3, 3, tzinfo=timezone.utc)
        assert ensure_aware(reconcile.due_at) == datetime(2025, 4, 3, 23, 59, 59, tzinfo=timezone.utc)

    def test_inactive_template_tasks_not_copied(self, acme):
        template = _make_close_template()
        extra = _make_task(template, "Optional review")
        tpl.update_template_task(extra, {"is_active": False})
        _assign(acme, template)

        gen.generate_due_cycles(RUN_DATE)

        (cycle,) = _cycles()
        assert "Optional review" not in [t.title for t in cycle.tasks]

    @pytest.mark.parametrize("assignment_kw,template_kw", [
        ({"assignment_status": "paused"}, {}),
        ({"auto_generate": False}, {}),
        ({}, {"auto_generate": False}),
        ({}, {"is_active": False}),
    ])
    def test_ineligible_assignments_are_ignored(self, acme, assignment_kw, template_kw):
        _assign(acme, _make_close_template(**template_kw), **assignment_kw)

        result = gen.generate_due_cycles(RUN_DATE)

        assert result.to_dict() == {
            "generated_count": 0, "skipped_count": 0, "errors": [], "cycle_ids": [],
        }
        assert _cycles() == []

    @pytest.mark.parametrize("starts_on,ends_on", [
        (date(2025, 1, 1), date(2025, 2, 15)),
        (date(2025, 3, 20), None),
        (None, date(2025, 3, 5)),
    ])
    def test_run_date_outside_assignment_window_is_ineligible(self, acme, starts_on, ends_on):
        # The period overlaps the window in the last two cases; run_date does not.
        _assign(acme, _make_close_template(), starts_on=starts_on, ends_on=ends_on)
        result = gen.generate_due_cycles(RUN_DATE)
        assert (result.generated_count, result.skipped_count, result.errors) == (0, 0, [])
        assert _cycles() == []

    def test_run_date_on_window_edges_generates(self, acme):
        _assign(acme, _make_close_template(), starts_on=RUN_DATE, ends_on=RUN_DATE)
        assert gen.generate_due_cycles(RUN_DATE).generated_count == 1

    def test_custom_without_policy_period_is_skipped(self, acme):
        template = _make_close_template()
        # Bypass validation to simulate a row written before the interval rule.
        template.recurrence_type = "custom"
        template.recurrence_interval = None
        db.session.commit()
        _assign(acme, template)

        result = gen.generate_due_cycles(RUN_DATE)
        assert result.skipped_count == 1

    def test_failure_is_isolated_per_assignment(self, acme):
        _assign(acme, _make_close_template())
        broken = _make_template("Broken")
        first = _make_task(broken, "First")
        _make_task(broken, "Second", prerequisite_ids=[first.id])
        tpl.update_template_task(first, {"is_active": False})
        broken_assignment = _assign(acme, broken)
        _assign(acme, _make_close_template("Payroll"))

        result = gen.generate_due_cycles(RUN_DATE)

        assert (result.generated_count, result.skipped_count) == (2, 0)
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error["assignment_ref"] == broken_assignment.id
        assert error["client_id"] == acme.id
        assert error["code"] == "ERR_MALFORMED_TEMPLATE_GRAPH"
        cycles = _cycles()
        assert len(cycles) == 2
        assert broken.id not in [c.operation_template_id for c in cycles]

    def test_cyclic_template_graph_is_reported(self, acme):
        template = _make_template("Looping")
        first = _make_task(template, "First")
        second = _make_task(template, "Second", prerequisite_ids=[first.id])
        # Written around the service checks, as a bad import would.
        db.session.execute(template_task_prerequisites.insert().values(
            template_task_id=first.id, prerequisite_id=second.id,
        ))
        db.session.commit()
        db.session.expire_all()
        assignment = _assign(acme, template)
        _assign(acme, _make_close_template())

        result = gen.generate_due_cycles(RUN_DATE)

        assert (result.generated_count, result.skipped_count) == (1, 0)
        assert [(e["assignment_ref"], e["code"]) for e in result.errors] == [
            (assignment.id, "ERR_MALFORMED_TEMPLATE_GRAPH"),
        ]
        assert template.id not in [c.operation_template_id for c in _cycles()]
        with pytest.raises(MalformedTemplateGraph):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))

    def test_policy_fault_is_recorded_and_run_continues(self, acme, monkeypatch):
        def _no_calendar(run_date, template, assignment=None):
            raise ValueError("firm calendar missing")

        weekly = _assign(acme, _make_close_template("Weekly Payroll", recurrence_type="weekly"))
        _assign(acme, _make_close_template())
        monkeypatch.setitem(recurrence._policy_registry, "weekly", _no_calendar)

        result = gen.generate_due_cycles(RUN_DATE)

        assert (result.generated_count, result.skipped_count) == (1, 0)
        assert result.errors == [{
            "assignment_ref": weekly.id,
            "client_id": acme.id,
            "reason": "firm calendar missing",
            "code": "ERR_INTERNAL",
        }]
        assert [c.cycle_label for c in _cycles()] == ["Mar 2025"]

    def test_registered_policy_drives_generation(self, acme, monkeypatch):
        def _fiscal_month(run_date, template, assignment=None):
            start = run_date.replace(day=6)
            if run_date.day < 6:
                start = (run_date.replace(day=1) - timedelta(days=1)).replace(day=6)
            end = (start + timedelta(days=31)).replace(day=5)
            return recurrence.Period(start=start, end=end, label=recurrence.period_label(start, end))

        monkeypatch.setitem(recurrence._policy_registry, "fiscal_month", _fiscal_month)
        template = _make_close_template("Fiscal Close", recurrence_type="fiscal_month")
        _assign(acme, template)

        result = gen.generate_due_cycles(RUN_DATE)

        assert result.generated_count == 1
        (cycle,) = _cycles()
        assert (cycle.period_start, cycle.period_end) == (date(2025, 3, 6), date(2025, 4, 5))
        assert cycle.cycle_label == "Mar 06 – Apr 05, 2025"

    def test_template_without_active_tasks_is_reported(self, acme):
        _assign(acme, _make_template("Empty"))
        result = gen.generate_due_cycles(RUN_DATE)
        assert result.generated_count == 0
        assert result.errors[0]["code"] == "ERR_ASSIGNMENT_NOT_ELIGIBLE"

    def test_lost_insert_race_counts_as_skip(self, acme):
        """A concurrent run already holds the period key; the insert must not duplicate it."""
        template = _make_close_template()
        assignment = _assign(acme, template)
        db.session.add(OperationCycle(
            client_id=acme.id,
            operation_template_id=template.id,
            client_operation_assignment_id=assignment.id,
            cycle_label="Mar 2025",
            period_start=date(2025, 3, 2),
            period_end=date(2025, 3, 30),
            generation_mode="auto",
            auto_period_key="2025-03-01:2025-03-31",
        ))
        db.session.commit()

        result = gen.generate_due_cycles(RUN_DATE)

        assert (result.generated_count, result.skipped_count) == (0, 1)
        assert result.errors == []
        assert len(_cycles()) == 1
        assert OperationTask.query.count() == 0

    def test_other_integrity_error_is_recorded_not_skipped(self, acme, monkeypatch):
        payroll = _assign(acme, _make_close_template("Payroll"))
        _assign(acme, _make_close_template())
        instantiate = gen._instantiate

        def _payroll_check_fails(template, **kw):
            if template.name == "Payroll":
                raise IntegrityError("INSERT INTO operation_cycles", {},
                                     Exception("CHECK constraint failed"))
            return instantiate(template, **kw)

        monkeypatch.setattr(gen, "_instantiate", _payroll_check_fails)

        result = gen.generate_due_cycles(RUN_DATE)

        assert (result.generated_count, result.skipped_count) == (1, 0)
        assert len(result.errors) == 1
        assert result.errors[0]["assignment_ref"] == payroll.id
        assert result.errors[0]["code"] == "ERR_DATABASE"
        assert payroll.id not in [c.client_operation_assignment_id for c in _cycles()]

    def test_unknown_trigger_actor_rejected(self, acme):
        _assign(acme, _make_close_template())
        with pytest.raises(ValidationError):
            gen.generate_due_cycles(RUN_DATE, triggered_by=9999)
        assert _cycles() == []

    def test_trigger_actor_recorded(self, acme, staff):
        _assign(acme, _make_close_template())
        gen.generate_due_cycles(RUN_DATE, triggered_by=staff.id)
        (cycle,) = _cycles()
        assert cycle.generated_by_id == staff.id


class TestManualGeneration:
    def test_creates_cycle_for_explicit_period(self, acme, staff):
        template = _make_close_template()
        cycle = gen.generate_cycle(acme.id, template.id, date(2025, 3, 3), date(2025, 3, 16),
                                   triggered_by=staff.id)
        assert cycle.generation_mode == "manual"
        assert cycle.auto_period_key is None
        assert cycle.cycle_label == "Mar 03 – Mar 16, 2025"
        assert cycle.generated_by_id == staff.id
        assert len(cycle.tasks) == 2

    def test_calendar_month_bounds_use_month_label(self, acme):
        template = _make_close_template()
        cycle = gen.generate_cycle(acme.id, template.id, date(2025, 1, 1), date(2025, 1, 31))
        assert cycle.cycle_label == "Jan 2025"

    def test_no_existence_gate(self, acme):
        template = _make_close_template()
        gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))
        gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))
        assert len(_cycles()) == 2

    def test_links_existing_assignment(self, acme):
        template = _make_close_template()
        assignment = _assign(acme, template)
        cycle = gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))
        assert cycle.client_operation_assignment_id == assignment.id

    def test_end_before_start_rejected(self, acme):
        template = _make_close_template()
        with pytest.raises(InvalidPeriod):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 31), date(2025, 3, 1))
        assert _cycles() == []

    def test_missing_dates_rejected(self, acme):
        template = _make_close_template()
        with pytest.raises(ValidationError):
            gen.generate_cycle(acme.id, template.id, None, date(2025, 3, 1))

    def test_paused_assignment_rejected(self, acme):
        template = _make_close_template()
        assignment = _assign(acme, template, assignment_status="paused")
        with pytest.raises(AssignmentNotEligible):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31),
                               assignment_id=assignment.id)

    def test_inactive_template_rejected(self, acme):
        template = _make_close_template(is_active=False)
        with pytest.raises(AssignmentNotEligible):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))

    def test_template_without_tasks_rejected(self, acme):
        template = _make_template("Empty")
        with pytest.raises(AssignmentNotEligible):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))
        assert _cycles() == []

    def test_assignment_for_other_template_rejected(self, acme):
        template = _make_close_template()
        other = _assign(acme, _make_close_template("Payroll"))
        with pytest.raises(AssignmentNotEligible):
            gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31),
                               assignment_id=other.id)


class TestCycleStatus:
    def _cycle(self, acme):
        template = _make_close_template()
        return gen.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))

    def test_complete_and_reactivate(self, acme):
        cycle = self._cycle(acme)
        gen.set_cycle_status(cycle, "completed")
        assert cycle.status == "completed"
        gen.set_cycle_status(cycle, "active")
        assert cycle.status == "active"

    def test_archived_is_final(self, acme):
        cycle = self._cycle(acme)
        gen.set_cycle_status(cycle, "archived")
        with pytest.raises(InvalidTransition):
            gen.set_cycle_status(cycle, "active")

    def test_unknown_status_rejected(self, acme):
        cycle = self._cycle(acme)
        with pytest.raises(ValidationError):
            gen.set_cycle_status(cycle, "closed")


class TestListCycles:
    def test_recent_first_with_meta(self, acme):
        template = _make_close_template()
        gen.generate_cycle(acme.id, template.id, date(2025, 1, 1), date(2025, 1, 31))
        gen.generate_cycle(acme.id, template.id, date(2025, 2, 1), date(2025, 2, 28))
        cycles, meta = gen.list_cycles(acme.id, page=1, per_page=1)
        assert [c.cycle_label for c in cycles] == ["Feb 2025"]
        assert meta == {"current_page": 1, "per_page": 1, "total_count": 2, "total_pages": 2}


class TestComputeDueAt:
    def test_no_offset(self):
        template = _make_template()
        task = _make_task(template, "No deadline")
        assert gen.compute_due_at(task, date(2025, 3, 1), date(2025, 3, 31)) is None

    def test_hours_from_start(self):
        template = _make_template()
        task = _make_task(template, "Kickoff", due_offset_value=12,
                          due_offset_unit="hours", due_offset_from="cycle_start")
        assert gen.compute_due_at(task, date(2025, 3, 1), date(2025, 3, 31)) == datetime(
            2025, 3, 1, 12, tzinfo=timezone.utc)


class TestSchedulerJob:
    def test_job_registered(self):
        assert "auto_generate_operation_cycles" in get_registered_jobs()

    def test_job_generates_cycles(self, acme):
        _assign(acme, _make_close_template())

        outcome = SchedulerService.run_job("auto_generate_operation_cycles", run_date=RUN_DATE)

        assert outcome["status"] == "success"
        assert outcome["result"]["generated_count"] == 1
        assert outcome["result"]["run_date"] == "2025-03-10"
        assert len(_cycles()) == 1

    def test_disabled_job_skips_unless_forced(self, acme):
        _assign(acme, _make_close_template())
        SchedulerService.toggle_job("auto_generate_operation_cycles", False)

        outcome = SchedulerService.run_job("auto_generate_operation_cycles",
                                           force=False, run_date=RUN_DATE)

        assert outcome["status"] == "skipped"
        assert _cycles() == []

    def test_unknown_job(self):
        outcome = SchedulerService.run_job("does_not_exist")
        assert outcome["status"] == "error"
        assert "Unknown job" in outcome["error"]
