"""
Escalation detection and the scheduled escalation job.

The detector is a pure read; the job records one CapEscalationDelivery per
dedupe key so a second run on the same day dispatches nothing.
"""

from datetime import date, timedelta

import pytest

from factories import make_cap, make_finding, make_milestone, make_org, make_review, make_user
from peer_review.models.cap import CapEscalationDelivery
from peer_review.models.notification import Notification
from peer_review.services import scheduled_jobs
from peer_review.services.cap_deadline import detect_escalation_events
from peer_review.services.notification import NotificationService

TODAY = date(2026, 10, 18)


@pytest.fixture()
def host():
    org = make_org("Host ANSP", "HST")
    return {
        "org": org,
        "owner": make_user(role="QUALITY_MANAGER", org=org),
        "safety": make_user(role="SAFETY_MANAGER", org=org),
        "admin": make_user(role="ANSP_ADMIN", org=org),
        "staff": make_user(role="STAFF", org=org),
    }


def _cap(host, offset, status="IN_PROGRESS", assigned=True):
    review = make_review(host["org"], status="REPORT_DRAFTING", phase="REPORTING")
    finding = make_finding(review, severity="CRITICAL")
    return make_cap(
        finding, status=status, due_date=TODAY + timedelta(days=offset),
        assigned_to=host["owner"] if assigned else None,
    )


def _by_cap(events):
    return {(e["cap_id"], e["milestone_id"]): e for e in events}


# ── Detection ────────────────────────────────────────────────────────────────


class TestDetect:
    @pytest.mark.parametrize("offset,expected", [
        (7, "7_DAYS_BEFORE"),
        (1, "1_DAY_BEFORE"),
        (0, "DUE_TODAY"),
        (-3, "OVERDUE"),
    ])
    def test_threshold_days(self, session, host, offset, expected):
        cap = _cap(host, offset)
        events = detect_escalation_events(session, today=TODAY)["events"]
        assert [(e["cap_id"], e["type"]) for e in events] == [(cap.id, expected)]

    @pytest.mark.parametrize("offset", [2, 6, 8, 30])
    def test_off_threshold_days_are_silent(self, session, host, offset):
        _cap(host, offset)
        assert detect_escalation_events(session, today=TODAY)["events"] == []

    def test_overdue_event_payload(self, session, host):
        cap = _cap(host, -3)
        event = detect_escalation_events(session, today=TODAY)["events"][0]
        assert event["days_overdue"] == 3
        assert event["finding"]["severity"] == "CRITICAL"
        assert event["organization"] == {"id": host["org"].id, "name": "Host ANSP"}
        assert event["cap_id"] == cap.id
        assert event["milestone_id"] is None

    def test_recipients_are_owner_and_focal_points(self, session, host):
        _cap(host, 0)
        event = detect_escalation_events(session, today=TODAY)["events"][0]
        assert event["recipient_ids"] == [host["owner"].id, host["safety"].id, host["admin"].id]
        assert host["staff"].id not in event["recipient_ids"]

    def test_recipients_without_owner(self, session, host):
        _cap(host, 0, assigned=False)
        event = detect_escalation_events(session, today=TODAY)["events"][0]
        assert event["recipient_ids"] == [host["safety"].id, host["admin"].id]

    def test_finished_plans_are_ignored(self, session, host):
        _cap(host, -3, status="VERIFIED")
        _cap(host, -3, status="CLOSED")
        assert detect_escalation_events(session, today=TODAY)["events"] == []

    def test_milestone_overdue(self, session, host):
        cap = _cap(host, 30)
        ms = make_milestone(cap, TODAY - timedelta(days=2), title="Revise LoA")
        make_milestone(cap, TODAY - timedelta(days=2), status="COMPLETED")

        events = detect_escalation_events(session, today=TODAY)["events"]
        assert len(events) == 1
        event = events[0]
        assert event["type"] == "MILESTONE_OVERDUE"
        assert event["milestone_id"] == ms.id
        assert event["milestone_title"] == "Revise LoA"
        assert event["days_overdue"] == 2

    def test_detection_writes_nothing(self, session, host):
        _cap(host, 0)
        detect_escalation_events(session, today=TODAY)
        assert session.query(CapEscalationDelivery).count() == 0
        assert session.query(Notification).count() == 0


# ── Job ──────────────────────────────────────────────────────────────────────


class TestEscalationJob:
    def test_dispatches_and_notifies(self, app, session, host):
        _cap(host, 0)
        result = scheduled_jobs.run_cap_deadline_escalation(app, session=session, today=TODAY)
        assert result["detected"] == 1
        assert result["dispatched"] == 1
        assert result["skipped"] == 0
        assert result["notifications_created"] == 3

        notes = session.query(Notification).filter_by(recipient_id=host["owner"].id).all()
        assert len(notes) == 1
        assert notes[0].category == "deadline"
        assert "due today" in notes[0].title

    def test_second_run_same_day_is_skipped(self, app, session, host):
        _cap(host, -1)
        scheduled_jobs.run_cap_deadline_escalation(app, session=session, today=TODAY)
        result = scheduled_jobs.run_cap_deadline_escalation(app, session=session, today=TODAY)
        assert result["dispatched"] == 0
        assert result["skipped"] == 1
        assert session.query(CapEscalationDelivery).count() == 1
        assert session.query(Notification).count() == 3

    def test_next_day_dispatches_again(self, app, session, host):
        _cap(host, -1)
        scheduled_jobs.run_cap_deadline_escalation(app, session=session, today=TODAY)
        result = scheduled_jobs.run_cap_deadline_escalation(
            app, session=session, today=TODAY + timedelta(days=1),
        )
        assert result["dispatched"] == 1
        assert session.query(CapEscalationDelivery).count() == 2

    def test_dedupe_key_is_stable(self):
        a = scheduled_jobs.escalation_dedupe_key(1, None, "OVERDUE", TODAY)
        b = scheduled_jobs.escalation_dedupe_key(1, None, "OVERDUE", TODAY)
        c = scheduled_jobs.escalation_dedupe_key(1, 5, "MILESTONE_OVERDUE", TODAY)
        assert a == b
        assert a != c
        assert len(a) == 32

    def test_registry(self):
        jobs = scheduled_jobs.get_registered_jobs()
        assert {"cap_deadline_escalation", "cap_milestone_sweep"} <= set(jobs)

    def test_run_job_unknown(self, app):
        with pytest.raises(KeyError):
            scheduled_jobs.run_job(app, "does_not_exist")

    def test_run_job_milestone_sweep(self, app, session, host):
        cap = _cap(host, 30)
        make_milestone(cap, TODAY - timedelta(days=1))
        result = scheduled_jobs.run_job(app, "cap_milestone_sweep", today=TODAY)
        assert result == {"milestones_marked_overdue": 1}


# ── Notification collaborator ────────────────────────────────────────────────


def test_list_for_recipient(session, host):
    NotificationService.broadcast(
        recipient_ids=[host["owner"].id, host["owner"].id], title="Hello", session=session,
    )
    items, total = NotificationService.list_for_recipient(host["owner"].id, session=session)
    assert total == 1
    assert items[0].title == "Hello"
