"""
CAP deadline tracker tests.

Covers:
    - Pure deadline classification at the threshold boundaries
    - Milestone progress and suggested due dates
    - Deadline queries and statistics
    - Milestone sweep
"""

from datetime import date, timedelta

import pytest

from factories import make_cap, make_finding, make_milestone, make_org, make_review, utc
from peer_review.core.exceptions import NotFoundError
from peer_review.models.audit import AuditLog
from peer_review.models.cap import CapMilestone
from peer_review.services import cap_deadline

TODAY = date(2026, 10, 18)


@pytest.fixture()
def finding():
    review = make_review(make_org(), status="REPORT_DRAFTING", phase="REPORTING")
    return make_finding(review, severity="MAJOR", status="CAP_REQUIRED")


def _new_finding(org=None):
    review = make_review(org or make_org(), status="REPORT_DRAFTING", phase="REPORTING")
    return make_finding(review)


# ═════════════════════════════════════════════════════════════════════════════
# Pure classification
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("offset,urgency,overdue,due_today,due_soon", [
    (-1, "overdue", True, False, False),
    (0, "critical", False, True, False),
    (1, "critical", False, False, True),
    (2, "warning", False, False, True),
    (7, "warning", False, False, True),
    (8, "normal", False, False, False),
])
def test_deadline_classification(offset, urgency, overdue, due_today, due_soon):
    info = cap_deadline.calculate_deadline_info(TODAY + timedelta(days=offset), "IN_PROGRESS", today=TODAY)
    assert info["days_remaining"] == offset
    assert info["urgency_level"] == urgency
    assert info["is_overdue"] is overdue
    assert info["is_due_today"] is due_today
    assert info["is_due_soon"] is due_soon


def test_percentage_from_milestones():
    info = cap_deadline.calculate_deadline_info(TODAY, "IN_PROGRESS", 1, 3, today=TODAY)
    assert info["percentage_complete"] == 33


def test_percentage_from_status_without_milestones():
    info = cap_deadline.calculate_deadline_info(TODAY, "ACCEPTED", today=TODAY)
    assert info["percentage_complete"] == 30


def test_custom_thresholds():
    info = cap_deadline.calculate_deadline_info(
        TODAY + timedelta(days=10), "DRAFT", today=TODAY, warning_days=14, critical_days=3,
    )
    assert info["urgency_level"] == "warning"


@pytest.mark.parametrize("severity,days", [
    ("CRITICAL", 30), ("MAJOR", 60), ("MINOR", 90), ("OBSERVATION", 180), ("UNKNOWN", 90),
])
def test_suggested_due_date(severity, days):
    assert cap_deadline.get_suggested_due_date(severity, today=TODAY) == TODAY + timedelta(days=days)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


class TestQueries:
    def test_single_cap_deadline(self, session, finding):
        cap = make_cap(finding, status="IN_PROGRESS", due_date=TODAY + timedelta(days=3))
        make_milestone(cap, TODAY - timedelta(days=2), title="Train staff")
        make_milestone(cap, TODAY + timedelta(days=2), status="COMPLETED", title="Update manual")

        data = cap_deadline.get_cap_deadline(session, cap.id, today=TODAY)
        assert data["finding"]["reference_number"] == finding.reference_number
        assert data["deadline_info"]["urgency_level"] == "warning"
        assert data["deadline_info"]["percentage_complete"] == 50
        assert data["milestone_progress"] == {
            "total": 2, "completed": 1, "overdue": 1, "upcoming": 0, "in_progress": 0,
        }
        assert len(data["cap"]["milestones"]) == 2

    def test_missing_cap(self, session):
        with pytest.raises(NotFoundError):
            cap_deadline.get_cap_deadline(session, 9999, today=TODAY)

    def test_list_excludes_finished_by_default(self, session):
        make_cap(_new_finding(), status="IN_PROGRESS", due_date=TODAY + timedelta(days=5))
        make_cap(_new_finding(), status="CLOSED", due_date=TODAY - timedelta(days=5))
        make_cap(_new_finding(), status="DRAFT", due_date=TODAY - timedelta(days=1))

        rows = cap_deadline.get_caps_with_deadline_info(session, today=TODAY)
        assert [r["cap"]["status"] for r in rows] == ["DRAFT", "IN_PROGRESS"]

        rows = cap_deadline.get_caps_with_deadline_info(session, include_completed=True, today=TODAY)
        assert len(rows) == 3

        rows = cap_deadline.get_caps_with_deadline_info(session, overdue_only=True, today=TODAY)
        assert [r["cap"]["status"] for r in rows] == ["DRAFT"]

    def test_filter_by_organization(self, session):
        org = make_org()
        mine = make_cap(_new_finding(org), due_date=TODAY)
        make_cap(_new_finding(), due_date=TODAY)
        rows = cap_deadline.get_caps_with_deadline_info(session, organization_id=org.id, today=TODAY)
        assert [r["cap"]["id"] for r in rows] == [mine.id]

    def test_due_within_days_is_inclusive(self, session):
        today_cap = make_cap(_new_finding(), due_date=TODAY)
        edge_cap = make_cap(_new_finding(), due_date=TODAY + timedelta(days=7))
        make_cap(_new_finding(), due_date=TODAY + timedelta(days=8))
        make_cap(_new_finding(), due_date=TODAY - timedelta(days=1))

        rows = cap_deadline.get_caps_due_within_days(session, 7, today=TODAY)
        assert [r["cap"]["id"] for r in rows] == [today_cap.id, edge_cap.id]

    def test_overdue_milestones(self, session, finding):
        cap = make_cap(finding, status="IN_PROGRESS")
        late = make_milestone(cap, TODAY - timedelta(days=4))
        make_milestone(cap, TODAY - timedelta(days=4), status="COMPLETED")
        make_milestone(cap, TODAY)

        rows = cap_deadline.get_overdue_milestones(session, today=TODAY)
        assert [r["id"] for r in rows] == [late.id]
        assert rows[0]["days_overdue"] == 4
        assert rows[0]["cap_status"] == "IN_PROGRESS"
        assert rows[0]["finding_reference"] == finding.reference_number

    def test_milestones_of_finished_plans_ignored(self, session, finding):
        cap = make_cap(finding, status="VERIFIED")
        make_milestone(cap, TODAY - timedelta(days=4))
        assert cap_deadline.get_overdue_milestones(session, today=TODAY) == []


# ═════════════════════════════════════════════════════════════════════════════
# Statistics + sweep
# ═════════════════════════════════════════════════════════════════════════════


def test_statistics(session):
    make_cap(_new_finding(), status="IN_PROGRESS", due_date=TODAY - timedelta(days=1))
    make_cap(_new_finding(), status="SUBMITTED", due_date=TODAY + timedelta(days=7))
    make_cap(_new_finding(), status="DRAFT", due_date=TODAY + timedelta(days=30))
    make_cap(
        _new_finding(), status="CLOSED", due_date=date(2026, 9, 30),
        created_at=utc(2026, 9, 1), closed_at=utc(2026, 9, 21),
    )
    make_cap(
        _new_finding(), status="CLOSED", due_date=date(2026, 9, 10),
        created_at=utc(2026, 9, 1), closed_at=utc(2026, 9, 21),
    )

    stats = cap_deadline.get_cap_statistics(session, today=TODAY)
    assert stats["total"] == 5
    assert stats["by_status"]["CLOSED"] == 2
    assert stats["by_status"]["VERIFIED"] == 0
    assert stats["overdue"] == 1
    assert stats["due_soon"] == 1
    assert stats["average_days_to_close"] == 20
    assert stats["on_time_completion_rate"] == 50


def test_statistics_without_closed_plans(session):
    stats = cap_deadline.get_cap_statistics(session, today=TODAY)
    assert stats["total"] == 0
    assert stats["average_days_to_close"] is None
    assert stats["on_time_completion_rate"] is None


def test_milestone_sweep(session, finding):
    cap = make_cap(finding, status="IN_PROGRESS")
    late = make_milestone(cap, TODAY - timedelta(days=1), status="IN_PROGRESS")
    on_time = make_milestone(cap, TODAY)

    assert cap_deadline.update_milestone_statuses(session, today=TODAY) == 1
    session.expire_all()
    assert session.get(CapMilestone, late.id).status == "OVERDUE"
    assert session.get(CapMilestone, on_time.id).status == "PENDING"
    assert session.query(AuditLog).filter_by(action="cap_milestone.overdue").count() == 1

    # Already OVERDUE, nothing left to sweep.
    assert cap_deadline.update_milestone_statuses(session, today=TODAY) == 0
