"""
Exhaustive CAP status machine tests.

CorrectiveActionPlan (CAP_STATUS_TRANSITIONS) -- 9 states, 11 valid edges
    - DRAFT -> SUBMITTED
    - SUBMITTED -> UNDER_REVIEW | DRAFT
    - UNDER_REVIEW -> ACCEPTED | REJECTED
    - REJECTED -> DRAFT
    - ACCEPTED -> IN_PROGRESS
    - IN_PROGRESS -> COMPLETED
    - COMPLETED -> VERIFIED | IN_PROGRESS
    - VERIFIED -> CLOSED
    - CLOSED -> (terminal)

For every valid edge the transition succeeds for an actor allowed to take
it; every structurally invalid edge raises InvalidTransitionError.
"""

from datetime import date, timedelta

import pytest

from factories import make_cap, make_finding, make_org, make_review, make_user, utc
from peer_review.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import AuditLog
from peer_review.models.cap import CAP_STATUS_TRANSITIONS, CAP_STATUSES
from peer_review.models.evidence import Finding
from peer_review.services import cap_status

NOW = utc(2026, 10, 18)
TODAY = NOW.date()


# ═════════════════════════════════════════════════════════════════════════════
# Parametrize helpers
# ═════════════════════════════════════════════════════════════════════════════


def _valid_transitions():
    return [(src, tgt) for src, targets in CAP_STATUS_TRANSITIONS.items() for tgt in targets]


def _invalid_transitions():
    return [
        (src, tgt)
        for src, targets in CAP_STATUS_TRANSITIONS.items()
        for tgt in CAP_STATUSES
        if tgt != src and tgt not in targets
    ]


@pytest.fixture()
def world():
    host = make_org("Host ANSP", "HST")
    review = make_review(host, status="REPORT_DRAFTING", phase="REPORTING")
    finding = make_finding(review, severity="MAJOR", status="CAP_REQUIRED")
    return {
        "host": host,
        "review": review,
        "finding": finding,
        "host_user": make_user(role="SAFETY_MANAGER", org=host),
        "outsider": make_user(role="SAFETY_MANAGER", org=make_org()),
        "coordinator": make_user(role="PROGRAMME_COORDINATOR"),
        "peer": make_user(role="PEER_REVIEWER"),
    }


def _actor_for(world, src, tgt):
    if src == "COMPLETED" and tgt == "IN_PROGRESS":
        return world["peer"]
    if tgt in cap_status.VERIFY_TARGETS:
        return world["peer"]
    if tgt in cap_status.REVIEW_TARGETS:
        return world["coordinator"]
    return world["host_user"]


# ═════════════════════════════════════════════════════════════════════════════
# Graph
# ═════════════════════════════════════════════════════════════════════════════


def test_edge_count():
    assert len(_valid_transitions()) == 11


@pytest.mark.parametrize("src,tgt", _valid_transitions())
def test_valid_transition(session, world, src, tgt):
    cap = make_cap(world["finding"], status=src)
    data = cap_status.transition_cap(session, _actor_for(world, src, tgt), cap.id, tgt, now=NOW)
    assert data["status"] == tgt


@pytest.mark.parametrize("src,tgt", _invalid_transitions())
def test_invalid_transition(session, world, src, tgt):
    cap = make_cap(world["finding"], status=src)
    with pytest.raises(InvalidTransitionError) as exc:
        cap_status.transition_cap(session, world["coordinator"], cap.id, tgt, now=NOW)
    assert exc.value.details["allowed"] == CAP_STATUS_TRANSITIONS[src]
    session.expire_all()
    assert cap_status.get_cap(session, cap.id).status == src


def test_same_status_is_noop(session, world):
    cap = make_cap(world["finding"], status="ACCEPTED")
    data = cap_status.transition_cap(session, world["host_user"], cap.id, "ACCEPTED", now=NOW)
    assert data["status"] == "ACCEPTED"
    assert session.query(AuditLog).filter_by(action="cap.transition").count() == 0


def test_unknown_status(session, world):
    cap = make_cap(world["finding"])
    with pytest.raises(ValidationError):
        cap_status.transition_cap(session, world["host_user"], cap.id, "DONE", now=NOW)


def test_unknown_cap(session, world):
    with pytest.raises(NotFoundError):
        cap_status.transition_cap(session, world["host_user"], 9999, "SUBMITTED", now=NOW)


def test_allowed_next_statuses():
    assert cap_status.get_allowed_next_statuses("COMPLETED") == ["VERIFIED", "IN_PROGRESS"]
    assert cap_status.get_allowed_next_statuses("CLOSED") == []
    assert cap_status.is_valid_transition("DRAFT", "DRAFT") is True
    assert cap_status.is_valid_transition("DRAFT", "CLOSED") is False


# ═════════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════════


class TestRoles:
    def test_outsider_cannot_submit(self, session, world):
        cap = make_cap(world["finding"])
        with pytest.raises(PermissionDeniedError):
            cap_status.transition_cap(session, world["outsider"], cap.id, "SUBMITTED", now=NOW)

    def test_host_cannot_accept(self, session, world):
        cap = make_cap(world["finding"], status="UNDER_REVIEW")
        with pytest.raises(PermissionDeniedError):
            cap_status.transition_cap(session, world["host_user"], cap.id, "ACCEPTED", now=NOW)

    def test_peer_reviewer_cannot_accept(self, session, world):
        cap = make_cap(world["finding"], status="UNDER_REVIEW")
        with pytest.raises(PermissionDeniedError):
            cap_status.transition_cap(session, world["peer"], cap.id, "ACCEPTED", now=NOW)

    def test_host_cannot_verify(self, session, world):
        cap = make_cap(world["finding"], status="COMPLETED")
        with pytest.raises(PermissionDeniedError):
            cap_status.transition_cap(session, world["host_user"], cap.id, "VERIFIED", now=NOW)

    def test_super_admin_acts_as_host(self, session, world):
        cap = make_cap(world["finding"])
        admin = make_user(role="SUPER_ADMIN")
        data = cap_status.transition_cap(session, admin, cap.id, "SUBMITTED", now=NOW)
        assert data["status"] == "SUBMITTED"


# ═════════════════════════════════════════════════════════════════════════════
# Side effects
# ═════════════════════════════════════════════════════════════════════════════


class TestSideEffects:
    def test_submit_sets_timestamp_and_mirrors_finding(self, session, world):
        cap = make_cap(world["finding"])
        data = cap_status.transition_cap(session, world["host_user"], cap.id, "SUBMITTED", now=NOW)
        assert data["submitted_at"] is not None
        assert session.get(Finding, world["finding"].id).status == "CAP_SUBMITTED"

    def test_accept_records_comments(self, session, world):
        cap = make_cap(world["finding"], status="UNDER_REVIEW")
        data = cap_status.transition_cap(
            session, world["coordinator"], cap.id, "ACCEPTED", comments="Looks complete", now=NOW,
        )
        assert data["review_comments"] == "Looks complete"
        assert data["accepted_at"] is not None
        assert session.get(Finding, world["finding"].id).status == "CAP_ACCEPTED"

    def test_failed_verification_keeps_notes(self, session, world):
        cap = make_cap(world["finding"], status="COMPLETED")
        data = cap_status.transition_cap(
            session, world["peer"], cap.id, "IN_PROGRESS", comments="Evidence missing", now=NOW,
        )
        assert data["status"] == "IN_PROGRESS"
        assert data["verification_notes"] == "Evidence missing"

    def test_close_mirrors_finding(self, session, world):
        cap = make_cap(world["finding"], status="VERIFIED")
        data = cap_status.transition_cap(session, world["coordinator"], cap.id, "CLOSED", now=NOW)
        assert data["closed_at"] is not None
        assert session.get(Finding, world["finding"].id).status == "CLOSED"

    def test_transition_is_audited(self, session, world):
        cap = make_cap(world["finding"])
        cap_status.transition_cap(session, world["host_user"], cap.id, "SUBMITTED", now=NOW)
        log = session.query(AuditLog).filter_by(action="cap.transition").one()
        assert log.review_id == world["review"].id
        assert log.actor_user_id == world["host_user"].id


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_creates_draft_with_severity_due_date(self, session, world):
        data = cap_status.create_cap(
            session, world["host_user"], world["finding"].id,
            root_cause="Outdated procedure", corrective_action="Revise SOP",
            milestones=[{"title": "Draft SOP", "target_date": "2026-11-15"}],
            today=TODAY,
        )
        assert data["status"] == "DRAFT"
        assert data["due_date"] == (TODAY + timedelta(days=60)).isoformat()
        assert [m["title"] for m in data["milestones"]] == ["Draft SOP"]
        assert data["created_by_id"] == world["host_user"].id

    def test_explicit_due_date(self, session, world):
        data = cap_status.create_cap(
            session, world["host_user"], world["finding"].id, due_date="2027-01-31", today=TODAY,
        )
        assert data["due_date"] == "2027-01-31"

    def test_bad_due_date(self, session, world):
        with pytest.raises(ValidationError):
            cap_status.create_cap(session, world["host_user"], world["finding"].id, due_date="soon")

    def test_milestone_needs_target_date(self, session, world):
        with pytest.raises(ValidationError):
            cap_status.create_cap(
                session, world["host_user"], world["finding"].id,
                milestones=[{"title": "No date"}], today=TODAY,
            )

    def test_duplicate(self, session, world):
        cap_status.create_cap(session, world["host_user"], world["finding"].id, today=TODAY)
        with pytest.raises(ConflictError):
            cap_status.create_cap(session, world["host_user"], world["finding"].id, today=TODAY)

    def test_finding_without_cap_requirement(self, session, world):
        finding = make_finding(world["review"], severity="OBSERVATION", cap_required=False)
        with pytest.raises(ValidationError):
            cap_status.create_cap(session, world["host_user"], finding.id, today=TODAY)

    def test_outsider_cannot_create(self, session, world):
        with pytest.raises(PermissionDeniedError):
            cap_status.create_cap(session, world["outsider"], world["finding"].id, today=TODAY)

    def test_reviewer_role_cannot_create(self, session, world):
        with pytest.raises(PermissionDeniedError):
            cap_status.create_cap(session, world["coordinator"], world["finding"].id, today=TODAY)

    def test_unknown_finding(self, session, world):
        with pytest.raises(NotFoundError):
            cap_status.create_cap(session, world["host_user"], 9999, today=TODAY)

    def test_deadline_defaults_match_severity(self, session, world):
        finding = make_finding(world["review"], severity="CRITICAL")
        data = cap_status.create_cap(session, world["host_user"], finding.id, today=date(2026, 1, 1))
        assert data["due_date"] == "2026-01-31"
