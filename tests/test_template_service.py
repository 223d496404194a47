"""
Tests: template store and assignment registry.

Covers:
    - Prerequisite graph checks (self-loop, foreign task, cycle, dependency order)
    - Template name / task title uniqueness
    - Due-offset consistency and position defaulting
    - One assignment per (client, template)
"""

from datetime import date

import pytest

from opsdesk.core.exceptions import (
    ConflictError,
    MalformedTemplateGraph,
    NotFoundError,
    ValidationError,
)
from opsdesk.services import recurrence
from opsdesk.services import template_service as svc


def _make_template(name="Monthly Close", **kw):
    return svc.create_template({"name": name, **kw})


def _make_task(template, title, **kw):
    return svc.create_template_task(template, {"title": title, **kw})


class TestPrerequisiteGraph:
    def test_returns_dependency_order(self):
        order = svc.check_prerequisite_graph({1: set(), 2: {1}, 3: {1, 2}})
        assert order == [1, 2, 3]

    def test_rejects_self_reference(self):
        with pytest.raises(MalformedTemplateGraph) as exc:
            svc.check_prerequisite_graph({1: {1}})
        assert exc.value.details["template_task_ids"] == [1]

    def test_rejects_dangling_reference(self):
        with pytest.raises(MalformedTemplateGraph) as exc:
            svc.check_prerequisite_graph({1: set(), 2: {9}})
        assert 9 in exc.value.details["template_task_ids"]

    def test_rejects_cycle(self):
        with pytest.raises(MalformedTemplateGraph) as exc:
            svc.check_prerequisite_graph({1: {3}, 2: {1}, 3: {2}, 4: set()})
        assert exc.value.details["template_task_ids"] == [1, 2, 3]

    def test_empty_graph(self):
        assert svc.check_prerequisite_graph({}) == []


class TestTemplateCrud:
    def test_create_defaults(self):
        t = _make_template()
        assert t.id is not None
        assert t.category == "general"
        assert t.recurrence_type == "monthly"
        assert t.auto_generate is True
        assert t.is_active is True

    def test_duplicate_name_conflicts(self):
        _make_template("Payroll Run")
        with pytest.raises(ConflictError):
            _make_template("Payroll Run")

    def test_custom_requires_interval(self):
        with pytest.raises(ValidationError):
            _make_template("Odd cadence", recurrence_type="custom")

    def test_unknown_recurrence_rejected(self):
        with pytest.raises(ValidationError):
            _make_template("Yearly", recurrence_type="yearly")

    def test_registered_policy_accepted(self, monkeypatch):
        monkeypatch.setitem(recurrence._policy_registry, "yearly", recurrence.monthly_period)
        t = _make_template("Yearly", recurrence_type="yearly")
        assert t.recurrence_type == "yearly"

    def test_update_rename_conflict(self):
        _make_template("A")
        b = _make_template("B")
        with pytest.raises(ConflictError):
            svc.update_template(b, {"name": "A"})

    def test_list_active_only(self):
        _make_template("Active one")
        _make_template("Retired one", is_active=False)
        names = [t.name for t in svc.list_templates(active_only=True)]
        assert names == ["Active one"]

    def test_get_missing_template(self):
        with pytest.raises(NotFoundError):
            svc.get_template(999)


class TestTemplateTasks:
    def test_position_defaults_to_next(self):
        t = _make_template()
        first = _make_task(t, "Reconcile bank")
        second = _make_task(t, "Review AP")
        assert (first.position, second.position) == (1, 2)

    def test_duplicate_title_conflicts(self):
        t = _make_template()
        _make_task(t, "Reconcile bank")
        with pytest.raises(ConflictError):
            _make_task(t, "Reconcile bank")

    def test_partial_due_offset_rejected(self):
        t = _make_template()
        with pytest.raises(ValidationError):
            _make_task(t, "Send report", due_offset_value=2)

    def test_full_due_offset_accepted(self):
        t = _make_template()
        task = _make_task(t, "Send report", due_offset_value=2,
                          due_offset_unit="days", due_offset_from="cycle_end")
        assert task.has_due_offset

    def test_prerequisites_on_create(self):
        t = _make_template()
        a = _make_task(t, "Collect statements")
        b = _make_task(t, "Reconcile", prerequisite_ids=[a.id])
        assert b.prerequisite_ids == [a.id]

    def test_self_loop_rejected(self):
        t = _make_template()
        a = _make_task(t, "Collect statements")
        with pytest.raises(MalformedTemplateGraph):
            svc.set_template_task_prerequisites(a, [a.id])

    def test_foreign_template_prerequisite_rejected(self):
        t1 = _make_template("One")
        t2 = _make_template("Two")
        a = _make_task(t1, "Collect statements")
        b = _make_task(t2, "Reconcile")
        with pytest.raises(MalformedTemplateGraph):
            svc.set_template_task_prerequisites(b, [a.id])

    def test_cycle_rejected_and_graph_unchanged(self):
        t = _make_template()
        a = _make_task(t, "A")
        b = _make_task(t, "B", prerequisite_ids=[a.id])
        c = _make_task(t, "C", prerequisite_ids=[b.id])
        with pytest.raises(MalformedTemplateGraph):
            svc.set_template_task_prerequisites(a, [c.id])
        assert svc.get_template_task(a.id).prerequisite_ids == []

    def test_clear_prerequisites(self):
        t = _make_template()
        a = _make_task(t, "A")
        b = _make_task(t, "B", prerequisite_ids=[a.id])
        svc.set_template_task_prerequisites(b, [])
        assert b.prerequisite_ids == []

    def test_unknown_default_assignee_rejected(self):
        t = _make_template()
        with pytest.raises(ValidationError):
            _make_task(t, "Review", default_assignee_id=424242)


class TestAssignments:
    def test_create_and_list(self, acme, staff):
        t = _make_template()
        a = svc.create_assignment(acme.id, {"operation_template_id": t.id},
                                  created_by_id=staff.id)
        assert a.assignment_status == "active"
        assert a.auto_generate is True
        assert [x.id for x in svc.list_assignments(acme.id)] == [a.id]

    def test_unknown_creator_rejected(self, acme):
        t = _make_template()
        with pytest.raises(ValidationError):
            svc.create_assignment(acme.id, {"operation_template_id": t.id}, created_by_id=4242)
        assert svc.list_assignments(acme.id) == []

    def test_duplicate_pair_conflicts(self, acme):
        t = _make_template()
        svc.create_assignment(acme.id, {"operation_template_id": t.id})
        with pytest.raises(ConflictError):
            svc.create_assignment(acme.id, {"operation_template_id": t.id})

    def test_window_must_be_ordered(self, acme):
        t = _make_template()
        with pytest.raises(ValidationError):
            svc.create_assignment(acme.id, {
                "operation_template_id": t.id,
                "starts_on": date(2025, 6, 1),
                "ends_on": date(2025, 5, 1),
            })

    def test_pause_and_resume(self, acme):
        t = _make_template()
        a = svc.create_assignment(acme.id, {"operation_template_id": t.id})
        svc.update_assignment(a, {"assignment_status": "paused"})
        assert a.is_paused
        svc.update_assignment(a, {"assignment_status": "active"})
        assert not a.is_paused

    def test_bad_status_rejected(self, acme):
        t = _make_template()
        a = svc.create_assignment(acme.id, {"operation_template_id": t.id})
        with pytest.raises(ValidationError):
            svc.update_assignment(a, {"assignment_status": "deleted"})

    def test_unknown_client(self):
        t = _make_template()
        with pytest.raises(NotFoundError):
            svc.create_assignment(999, {"operation_template_id": t.id})
