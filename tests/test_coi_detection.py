"""
Conflict detector + registry tests.

Covers:
    - HOME_ORGANIZATION (hard block) and RECENT_REVIEW (soft warning) detection
    - Cooldown boundary and non-qualifying review statuses
    - sync_auto_detected_cois: creation, idempotence, retirement on roster change
    - Manual declaration / deactivation rules
    - Eligibility evaluation for a single reviewer and a team
"""

from datetime import date, timedelta

import pytest

from factories import add_team_member, make_org, make_review, make_reviewer, make_user
from peer_review.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import AuditLog
from peer_review.models.coi import ReviewerCOI
from peer_review.services import coi_detection, coi_eligibility

TODAY = date(2026, 10, 18)


@pytest.fixture()
def roster():
    """Reviewer employed by ``home`` who reviewed ``visited`` 400 days ago."""
    home = make_org("Home ANSP", "HOME")
    visited = make_org("Visited ANSP", "VIS")
    neutral = make_org("Neutral ANSP", "NEU")
    reviewer = make_reviewer(home_org=home)
    review = make_review(visited, status="COMPLETED", phase="CLOSED",
                         actual_end_date=TODAY - timedelta(days=400))
    add_team_member(review, reviewer)
    return {"home": home, "visited": visited, "neutral": neutral, "reviewer": reviewer}


# ── Detection ────────────────────────────────────────────────────────────────


class TestDetectConflicts:
    def test_home_organization_is_hard_block(self, session, roster):
        conflicts = coi_detection.detect_conflicts(
            session, roster["reviewer"], roster["home"].id, today=TODAY,
        )
        assert [c["type"] for c in conflicts] == ["HOME_ORGANIZATION"]
        assert conflicts[0]["severity"] == "HARD_BLOCK"
        assert conflicts[0]["is_auto_detected"] is True

    def test_recent_review_is_soft_warning(self, session, roster):
        conflicts = coi_detection.detect_conflicts(
            session, roster["reviewer"], roster["visited"].id, today=TODAY,
        )
        assert len(conflicts) == 1
        assert conflicts[0]["type"] == "RECENT_REVIEW"
        assert conflicts[0]["severity"] == "SOFT_WARNING"
        assert conflicts[0]["last_review_date"] == (TODAY - timedelta(days=400)).isoformat()

    def test_no_conflict_with_unrelated_org(self, session, roster):
        assert coi_detection.detect_conflicts(
            session, roster["reviewer"], roster["neutral"].id, today=TODAY,
        ) == []

    def test_review_outside_cooldown_is_ignored(self, session, roster):
        conflicts = coi_detection.detect_conflicts(
            session, roster["reviewer"], roster["visited"].id, today=TODAY, cooldown_days=365,
        )
        assert conflicts == []

    def test_unfinished_review_does_not_count(self, session):
        org = make_org()
        reviewer = make_reviewer()
        review = make_review(org, status="IN_PROGRESS", actual_end_date=TODAY - timedelta(days=10))
        add_team_member(review, reviewer)
        assert coi_detection.detect_conflicts(session, reviewer, org.id, today=TODAY) == []

    def test_detection_does_not_write(self, session, roster):
        coi_detection.detect_conflicts(session, roster["reviewer"], roster["home"].id, today=TODAY)
        assert session.query(ReviewerCOI).count() == 0

    def test_stored_manual_conflict_is_merged(self, session, roster):
        admin = make_user(role="SYSTEM_ADMIN")
        coi_detection.declare_conflict(
            session, admin,
            reviewer_profile_id=roster["reviewer"].id,
            organization_id=roster["neutral"].id,
            coi_type="FAMILY_RELATIONSHIP",
            reason="Sibling works in the ATC unit",
            start_date=TODAY - timedelta(days=1),
        )
        conflicts = coi_detection.detect_conflicts(
            session, roster["reviewer"], roster["neutral"].id, today=TODAY,
        )
        assert [(c["type"], c["severity"]) for c in conflicts] == [("FAMILY_RELATIONSHIP", "HARD_BLOCK")]


# ── Sync ─────────────────────────────────────────────────────────────────────


class TestSyncAutoDetected:
    def test_first_sync_creates_records(self, session, roster):
        result = coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        assert result == {"created": 2, "deactivated": 0}
        types = {r.coi_type for r in session.query(ReviewerCOI).filter_by(is_active=True)}
        assert types == {"HOME_ORGANIZATION", "RECENT_REVIEW"}

    def test_second_sync_is_noop(self, session, roster):
        coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        result = coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        assert result == {"created": 0, "deactivated": 0}
        assert session.query(ReviewerCOI).count() == 2

    def test_home_change_retires_old_record(self, session, roster):
        coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        reviewer = roster["reviewer"]
        reviewer.home_organization_id = roster["neutral"].id
        session.commit()

        result = coi_detection.sync_auto_detected_cois(session, reviewer.id, today=TODAY)
        assert result == {"created": 1, "deactivated": 1}
        old = session.query(ReviewerCOI).filter_by(
            coi_type="HOME_ORGANIZATION", organization_id=roster["home"].id,
        ).one()
        assert old.is_active is False
        assert old.end_date == TODAY
        assert old.deactivation_reason == "Home organization changed"

    def test_recent_review_retired_after_cooldown(self, session, roster):
        coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        later = TODAY + timedelta(days=400)

        result = coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=later)
        assert result == {"created": 0, "deactivated": 1}
        record = session.query(ReviewerCOI).filter_by(coi_type="RECENT_REVIEW").one()
        assert record.is_active is False
        assert record.end_date == later
        assert record.deactivation_reason == "Outside recent review cooldown"
        home = session.query(ReviewerCOI).filter_by(coi_type="HOME_ORGANIZATION").one()
        assert home.is_active is True

        result = coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=later)
        assert result == {"created": 0, "deactivated": 0}

    def test_sync_writes_audit(self, session, roster):
        coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        actions = [a.action for a in session.query(AuditLog).all()]
        assert actions.count("coi.auto_detected") == 2

    def test_unknown_reviewer(self, session):
        with pytest.raises(NotFoundError):
            coi_detection.sync_auto_detected_cois(session, 9999, today=TODAY)


# ── Declaration ──────────────────────────────────────────────────────────────


class TestDeclareConflict:
    def test_reviewer_may_declare_own_conflict(self, session, roster):
        reviewer = roster["reviewer"]
        data = coi_detection.declare_conflict(
            session, reviewer.user,
            reviewer_profile_id=reviewer.id,
            organization_id=roster["neutral"].id,
            coi_type="BUSINESS_INTEREST",
            reason="Holds shares in the supplier",
        )
        assert data["severity"] == "SOFT_WARNING"
        assert data["is_auto_detected"] is False
        assert data["declared_by_id"] == reviewer.user_id

    def test_other_reviewer_cannot_declare(self, session, roster):
        stranger = make_user(role="PEER_REVIEWER")
        with pytest.raises(PermissionDeniedError):
            coi_detection.declare_conflict(
                session, stranger,
                reviewer_profile_id=roster["reviewer"].id,
                organization_id=roster["neutral"].id,
                coi_type="OTHER",
                reason="Some long enough reason",
            )

    @pytest.mark.parametrize("coi_type", ["HOME_ORGANIZATION", "RECENT_REVIEW"])
    def test_auto_types_cannot_be_declared(self, session, roster, coi_type):
        admin = make_user(role="SUPER_ADMIN")
        with pytest.raises(ValidationError):
            coi_detection.declare_conflict(
                session, admin,
                reviewer_profile_id=roster["reviewer"].id,
                organization_id=roster["neutral"].id,
                coi_type=coi_type,
                reason="Some long enough reason",
            )

    def test_short_reason_rejected(self, session, roster):
        admin = make_user(role="SUPER_ADMIN")
        with pytest.raises(ValidationError):
            coi_detection.declare_conflict(
                session, admin,
                reviewer_profile_id=roster["reviewer"].id,
                organization_id=roster["neutral"].id,
                coi_type="OTHER",
                reason="too short",
            )

    def test_duplicate_active_declaration(self, session, roster):
        admin = make_user(role="SUPER_ADMIN")
        kwargs = dict(
            reviewer_profile_id=roster["reviewer"].id,
            organization_id=roster["neutral"].id,
            coi_type="FORMER_EMPLOYEE",
            reason="Worked there until 2023",
        )
        coi_detection.declare_conflict(session, admin, **kwargs)
        with pytest.raises(ConflictError):
            coi_detection.declare_conflict(session, admin, **kwargs)

    def test_deactivate_then_deactivate_again(self, session, roster):
        admin = make_user(role="PROGRAMME_COORDINATOR")
        data = coi_detection.declare_conflict(
            session, admin,
            reviewer_profile_id=roster["reviewer"].id,
            organization_id=roster["neutral"].id,
            coi_type="OTHER",
            reason="Personal friendship with the CEO",
        )
        retired = coi_detection.deactivate_conflict(
            session, admin, data["id"], reason="Resolved", today=TODAY,
        )
        assert retired["is_active"] is False
        assert retired["deactivation_reason"] == "Resolved"
        with pytest.raises(ValidationError):
            coi_detection.deactivate_conflict(session, admin, data["id"], today=TODAY)

    def test_reviewer_cannot_retire_auto_detected(self, session, roster):
        reviewer = roster["reviewer"]
        coi_detection.sync_auto_detected_cois(session, reviewer.id, today=TODAY)
        record = session.query(ReviewerCOI).filter_by(coi_type="HOME_ORGANIZATION").one()
        with pytest.raises(PermissionDeniedError):
            coi_detection.deactivate_conflict(session, reviewer.user, record.id, today=TODAY)


# ── Eligibility ──────────────────────────────────────────────────────────────


class TestEligibility:
    def test_single_reviewer_flags(self, session, roster):
        result = coi_eligibility.check_reviewer_coi(
            session, roster["reviewer"].id, roster["visited"].id, today=TODAY,
        )
        assert result["has_conflict"] is True
        assert result["has_hard_block"] is False
        assert result["has_soft_warning"] is True
        assert result["can_proceed_with_override"] is False
        assert result["active_override"] is None

    def test_team_blocked_by_home_member(self, session, roster):
        other = make_reviewer()
        result = coi_eligibility.check_team_coi(
            session, [roster["reviewer"].id, other.id], roster["home"].id, today=TODAY,
        )
        assert result["can_proceed"] is False
        assert result["blocked_reviewer_ids"] == [roster["reviewer"].id]
        assert result["summary"]["blocked"] == 1
        assert result["summary"]["eligible"] == 1
        assert result["summary"]["total"] == 2

    def test_team_with_warning_can_proceed(self, session, roster):
        result = coi_eligibility.check_team_coi(
            session, [roster["reviewer"].id], roster["visited"].id, today=TODAY,
        )
        assert result["can_proceed"] is True
        assert result["warning_reviewer_ids"] == [roster["reviewer"].id]

    def test_team_order_does_not_matter(self, session, roster):
        other = make_reviewer()
        ids = [roster["reviewer"].id, other.id]
        forward = coi_eligibility.check_team_coi(session, ids, roster["home"].id, today=TODAY)
        backward = coi_eligibility.check_team_coi(session, ids[::-1], roster["home"].id, today=TODAY)
        assert forward["summary"] == backward["summary"]
        assert forward["can_proceed"] == backward["can_proceed"]

    def test_stats(self, session, roster):
        coi_detection.sync_auto_detected_cois(session, roster["reviewer"].id, today=TODAY)
        stats = coi_eligibility.get_coi_stats(session, reviewer_profile_id=roster["reviewer"].id)
        assert stats["total"] == 2
        assert stats["active"] == 2
        assert stats["by_severity"] == {"HARD_BLOCK": 1, "SOFT_WARNING": 1}
        assert stats["auto_detected"] == 2
        assert stats["manually_declared"] == 0
        assert stats["active_overrides"] == 0
