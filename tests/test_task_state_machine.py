"""
Tests: OperationTask lifecycle — transitions, gates, side effects, time links.

Fixture cycle (manual, March 2025):
    #1 Collect statements
    #2 Reconcile bank        needs #1, evidence required
    #3 File report
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.orm.attributes import set_committed_value

from opsdesk.core.exceptions import (
    ConflictError,
    EvidenceRequired,
    InvalidTransition,
    NotFoundError,
    PrerequisitesUnmet,
    ValidationError,
)
from opsdesk.models import db
from opsdesk.models.directory import TimeEntry
from opsdesk.services import cycle_generator
from opsdesk.services import task_state_machine as sm
from opsdesk.services import template_service as tpl
from opsdesk.services.task_state_machine import UrgencyBucket
from opsdesk.utils.helpers import ensure_aware

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def cycle(acme):
    template = tpl.create_template({"name": "Monthly Close"})
    collect = tpl.create_template_task(template, {"title": "Collect statements"})
    tpl.create_template_task(template, {
        "title": "Reconcile bank", "evidence_required": True,
        "prerequisite_ids": [collect.id],
    })
    tpl.create_template_task(template, {"title": "File report"})
    return cycle_generator.generate_cycle(acme.id, template.id, date(2025, 3, 1), date(2025, 3, 31))


@pytest.fixture()
def tasks(cycle):
    collect, reconcile, report = cycle.tasks
    return collect.id, reconcile.id, report.id


def _reload(task_id):
    db.session.expire_all()
    return sm.get_task(task_id)


def _make_time_entry(staff, hours=1.5):
    entry = TimeEntry(staff_member_id=staff.id, work_date=date(2025, 3, 10), hours=hours)
    db.session.add(entry)
    db.session.commit()
    return entry


class TestPrerequisiteGate:
    def test_start_blocked_until_prerequisite_done(self, tasks):
        collect_id, reconcile_id, _ = tasks
        with pytest.raises(PrerequisitesUnmet) as exc:
            sm.update_task(reconcile_id, {"status": "in_progress"}, now=NOW)
        assert str(exc.value) == "waiting on: Collect statements"
        assert exc.value.details["waiting_on"] == ["Collect statements"]
        assert exc.value.details["unmet_prerequisites"][0]["id"] == collect_id

        task = _reload(reconcile_id)
        assert task.status == "not_started"
        assert task.started_at is None

    def test_start_allowed_once_prerequisite_done(self, tasks):
        collect_id, reconcile_id, _ = tasks
        sm.complete_task(collect_id, now=NOW)
        task = sm.update_task(reconcile_id, {"status": "in_progress"}, now=NOW)
        assert task.status == "in_progress"
        assert ensure_aware(task.started_at) == NOW

    def test_blocked_is_not_gated(self, tasks):
        _, reconcile_id, _ = tasks
        task = sm.update_task(reconcile_id, {"status": "blocked"}, now=NOW)
        assert task.status == "blocked"

    def test_guard_failure_discards_other_fields(self, tasks):
        _, reconcile_id, _ = tasks
        with pytest.raises(PrerequisitesUnmet):
            sm.update_task(reconcile_id, {"status": "done", "notes": "tried early",
                                          "evidence_note": "stmt.pdf"}, now=NOW)
        task = _reload(reconcile_id)
        assert task.notes == ""
        assert task.evidence_note is None


class TestEvidenceGate:
    def _unlock(self, tasks):
        sm.complete_task(tasks[0], now=NOW)
        return tasks[1]

    def test_done_without_note_rejected(self, tasks):
        reconcile_id = self._unlock(tasks)
        with pytest.raises(EvidenceRequired):
            sm.update_task(reconcile_id, {"status": "done"}, now=NOW)
        assert _reload(reconcile_id).status == "not_started"

    def test_blank_note_rejected(self, tasks):
        reconcile_id = self._unlock(tasks)
        with pytest.raises(EvidenceRequired):
            sm.complete_task(reconcile_id, "   ", now=NOW)

    def test_note_in_same_request_counts(self, tasks, staff):
        reconcile_id = self._unlock(tasks)
        task = sm.complete_task(reconcile_id, "Bank rec saved to drive", actor_id=staff.id, now=NOW)
        assert task.status == "done"
        assert task.evidence_note == "Bank rec saved to drive"
        assert ensure_aware(task.completed_at) == NOW
        assert task.completed_by_id == staff.id

    def test_note_saved_earlier_counts(self, tasks):
        reconcile_id = self._unlock(tasks)
        sm.update_task(reconcile_id, {"evidence_note": "rec.xlsx"})
        assert sm.complete_task(reconcile_id, now=NOW).status == "done"


class TestTransitions:
    def test_not_started_straight_to_done(self, tasks, staff):
        _, _, report_id = tasks
        task = sm.complete_task(report_id, actor_id=staff.id, now=NOW)
        assert task.status == "done"
        assert ensure_aware(task.started_at) == NOW

    def test_started_at_kept_on_later_moves(self, tasks):
        _, _, report_id = tasks
        sm.update_task(report_id, {"status": "in_progress"}, now=NOW)
        later = NOW + timedelta(hours=3)
        sm.update_task(report_id, {"status": "blocked"}, now=later)
        task = sm.update_task(report_id, {"status": "in_progress"}, now=later)
        assert ensure_aware(task.started_at) == NOW

    @pytest.mark.parametrize("path,bad", [
        (["in_progress"], "not_started"),
        (["blocked"], "done"),
        (["done"], "in_progress"),
        (["done"], "blocked"),
    ])
    def test_invalid_edges(self, tasks, path, bad):
        _, _, report_id = tasks
        for status in path:
            sm.update_task(report_id, {"status": status}, now=NOW)
        with pytest.raises(InvalidTransition) as exc:
            sm.update_task(report_id, {"status": bad}, now=NOW)
        assert exc.value.details["to"] == bad
        assert _reload(report_id).status == path[-1]

    def test_unknown_status_rejected(self, tasks):
        with pytest.raises(ValidationError):
            sm.update_task(tasks[2], {"status": "finished"})

    def test_same_status_applies_other_fields(self, tasks):
        task = sm.update_task(tasks[2], {"status": "not_started", "notes": "waiting on client"})
        assert task.status == "not_started"
        assert task.notes == "waiting on client"

    def test_unknown_patch_keys_ignored(self, tasks):
        task = sm.update_task(tasks[2], {"title": "Renamed", "notes": "ok"})
        assert task.title == "File report"

    def test_missing_task(self):
        with pytest.raises(NotFoundError):
            sm.update_task(9999, {"status": "done"})


class TestReopen:
    def test_reopen_clears_completion_keeps_text(self, tasks, staff):
        collect_id, reconcile_id, _ = tasks
        sm.complete_task(collect_id, now=NOW)
        sm.update_task(reconcile_id, {"notes": "Two accounts"})
        sm.complete_task(reconcile_id, "rec.pdf", actor_id=staff.id, now=NOW)

        task = sm.reopen_task(reconcile_id, actor_id=staff.id)

        assert task.status == "not_started"
        assert task.completed_at is None
        assert task.completed_by_id is None
        assert task.evidence_note == "rec.pdf"
        assert task.notes == "Two accounts"
        assert ensure_aware(task.started_at) == NOW

    def test_reopen_requires_done(self, tasks):
        with pytest.raises(InvalidTransition):
            sm.reopen_task(tasks[2])

    def test_reopen_not_gated_by_prerequisites(self, tasks):
        collect_id, reconcile_id, _ = tasks
        sm.complete_task(collect_id, now=NOW)
        sm.complete_task(reconcile_id, "rec.pdf", now=NOW)
        sm.reopen_task(collect_id)
        assert sm.reopen_task(reconcile_id).status == "not_started"

    def test_reopen_checks_persisted_status(self, tasks):
        report_id = tasks[2]
        sm.complete_task(report_id, now=NOW)
        db.session.execute(
            text("UPDATE operation_tasks SET status = 'blocked', completed_at = NULL WHERE id = :id"),
            {"id": report_id},
        )
        db.session.commit()
        # Session copy still reads done.
        set_committed_value(sm.get_task(report_id), "status", "done")

        with pytest.raises(InvalidTransition):
            sm.reopen_task(report_id)
        assert _reload(report_id).status == "blocked"

    def test_patch_to_not_started_is_reopen(self, tasks):
        report_id = tasks[2]
        sm.complete_task(report_id, now=NOW)
        task = sm.update_task(report_id, {"status": "not_started"})
        assert task.completed_at is None


class TestUnguardedFields:
    def test_assign_and_unassign(self, tasks, staff):
        task = sm.update_task(tasks[0], {"assigned_to_id": staff.id})
        assert task.assigned_to_id == staff.id
        task = sm.update_task(tasks[0], {"assigned_to_id": None})
        assert task.assigned_to_id is None

    def test_unknown_assignee_rejected(self, tasks):
        with pytest.raises(ValidationError):
            sm.update_task(tasks[0], {"assigned_to_id": 4242})

    def test_unknown_completing_actor_rejected(self, tasks):
        report_id = tasks[2]
        with pytest.raises(ValidationError):
            sm.complete_task(report_id, actor_id=9999, now=NOW)
        task = _reload(report_id)
        assert task.status == "not_started"
        assert task.completed_by_id is None

    def test_due_at_parsed(self, tasks):
        task = sm.update_task(tasks[0], {"due_at": "2025-03-12T17:00:00Z"})
        assert ensure_aware(task.due_at) == datetime(2025, 3, 12, 17, tzinfo=timezone.utc)

    def test_bad_due_at_rejected(self, tasks):
        with pytest.raises(ValidationError):
            sm.update_task(tasks[0], {"due_at": "next tuesday"})


class TestTimeEntryLink:
    def test_link_and_unlink(self, tasks, staff):
        entry = _make_time_entry(staff)
        task = sm.link_time_entry(tasks[0], entry.id)
        assert task.linked_time_entry_id == entry.id
        assert sm.task_to_dict(task)["linked_time_entry"]["user_name"] == "Dana Park"
        task = sm.unlink_time_entry(tasks[0])
        assert task.linked_time_entry_id is None

    def test_entry_linked_to_one_task_only(self, tasks, staff):
        entry = _make_time_entry(staff)
        sm.link_time_entry(tasks[0], entry.id)
        with pytest.raises(ConflictError):
            sm.link_time_entry(tasks[1], entry.id)

    def test_unknown_entry(self, tasks):
        with pytest.raises(NotFoundError):
            sm.link_time_entry(tasks[0], 777)

    def test_deleting_entry_nulls_link(self, tasks, staff):
        entry = _make_time_entry(staff)
        sm.link_time_entry(tasks[0], entry.id)
        db.session.delete(db.session.get(TimeEntry, entry.id))
        db.session.commit()
        task = _reload(tasks[0])
        assert task.linked_time_entry_id is None
        assert task.status == "not_started"


class TestDerivedFields:
    @pytest.mark.parametrize("due,bucket", [
        (None, UrgencyBucket.NONE),
        (NOW - timedelta(seconds=1), UrgencyBucket.OVERDUE),
        (NOW, UrgencyBucket.DUE_TODAY),
        (NOW + timedelta(hours=24), UrgencyBucket.DUE_TODAY),
        (NOW + timedelta(hours=24, seconds=1), UrgencyBucket.UPCOMING),
    ])
    def test_urgency_bucket_boundaries(self, due, bucket):
        assert sm.urgency_bucket(due, NOW) is bucket

    def test_naive_due_treated_as_utc(self):
        naive = datetime(2025, 3, 10, 8, 0)
        assert sm.urgency_bucket(naive, NOW) is UrgencyBucket.OVERDUE

    def test_unmet_prerequisites_and_hints(self, tasks):
        collect_id, reconcile_id, _ = tasks
        reconcile = sm.get_task(reconcile_id)
        assert sm.unmet_prerequisites(reconcile) == [
            {"id": collect_id, "title": "Collect statements", "status": "not_started"},
        ]
        payload = sm.task_to_dict(reconcile, now=NOW)
        assert payload["can_start"] is False
        assert payload["can_complete"] is False
        assert payload["urgency_bucket"] == "none"
        assert payload["cycle_label"] == "Mar 2025"
        assert payload["client_name"] == "Acme Bakery"

    def test_can_complete_needs_evidence(self, tasks):
        sm.complete_task(tasks[0], now=NOW)
        payload = sm.task_to_dict(_reload(tasks[1]), now=NOW)
        assert payload["can_start"] is True
        assert payload["can_complete"] is False
