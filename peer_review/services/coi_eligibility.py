"""
Eligibility Evaluator — go/no-go decisions for reviewers and teams.

Combines the conflict detector with the override authority.  Every function
here is a pure read: conflicts are recomputed, nothing is synced or written.
"""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import func

from peer_review.models.coi import COI_SEVERITIES, COI_TYPES, ReviewerCOI
from peer_review.services.coi_detection import (
    DEFAULT_COOLDOWN_DAYS,
    detect_conflicts,
    get_organization,
    get_reviewer,
)
from peer_review.services.coi_override import count_active_overrides, find_active_override

ELIGIBILITY_STATUSES = ("eligible", "warning", "override_active", "blocked")


def check_reviewer_coi(session, reviewer_profile_id: int, organization_id: int,
                       review_id: int | None = None, *,
                       today: date | None = None, now: datetime | None = None,
                       cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> dict:
    """Evaluate one reviewer against a target organization.

    ``can_proceed_with_override`` holds only when there is no HARD_BLOCK,
    at least one SOFT_WARNING, and a valid override covering the scope.
    """
    now = now or datetime.now(timezone.utc)
    today = today or now.date()
    reviewer = get_reviewer(session, reviewer_profile_id)
    get_organization(session, organization_id)

    conflicts = detect_conflicts(
        session, reviewer, organization_id, today=today, cooldown_days=cooldown_days,
    )
    hard_blocks = [c for c in conflicts if c["severity"] == "HARD_BLOCK"]
    soft_warnings = [c for c in conflicts if c["severity"] == "SOFT_WARNING"]
    active_override = find_active_override(
        session, reviewer.id, organization_id, review_id, now=now,
    )

    return {
        "reviewer_profile_id": reviewer.id,
        "reviewer_name": reviewer.display_name,
        "organization_id": organization_id,
        "review_id": review_id,
        "has_conflict": bool(conflicts),
        "has_hard_block": bool(hard_blocks),
        "has_soft_warning": bool(soft_warnings),
        "can_proceed_with_override": (
            not hard_blocks and bool(soft_warnings) and active_override is not None
        ),
        "conflicts": conflicts,
        "hard_blocks": hard_blocks,
        "soft_warnings": soft_warnings,
        "active_override": active_override,
    }


def classify_eligibility(result: dict) -> str:
    if result["has_hard_block"]:
        return "blocked"
    if result["can_proceed_with_override"]:
        return "override_active"
    if result["has_soft_warning"]:
        return "warning"
    return "eligible"


def check_team_coi(session, reviewer_profile_ids, organization_id: int,
                   review_id: int | None = None, *,
                   today: date | None = None, now: datetime | None = None,
                   cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> dict:
    """Evaluate every proposed team member independently.

    The team can proceed iff no member is ``blocked``.  Members are
    evaluated in isolation, so the outcome does not depend on order.
    """
    now = now or datetime.now(timezone.utc)
    today = today or now.date()
    org = get_organization(session, organization_id)

    reviewers = []
    summary = {status: 0 for status in ELIGIBILITY_STATUSES}
    blocked_ids, warning_ids = [], []
    for reviewer_id in dict.fromkeys(reviewer_profile_ids):
        result = check_reviewer_coi(
            session, reviewer_id, organization_id, review_id,
            today=today, now=now, cooldown_days=cooldown_days,
        )
        status = classify_eligibility(result)
        summary[status] += 1
        if status == "blocked":
            blocked_ids.append(reviewer_id)
        elif status == "warning":
            warning_ids.append(reviewer_id)
        reviewers.append({
            "reviewer_profile_id": reviewer_id,
            "reviewer_name": result["reviewer_name"],
            "status": status,
            "check_result": result,
        })

    summary["total"] = len(reviewers)
    return {
        "organization_id": organization_id,
        "organization_name": org.name,
        "review_id": review_id,
        "reviewers": reviewers,
        "summary": summary,
        "can_proceed": summary["blocked"] == 0,
        "blocked_reviewer_ids": blocked_ids,
        "warning_reviewer_ids": warning_ids,
    }


def get_coi_stats(session, *, reviewer_profile_id: int | None = None,
                  organization_id: int | None = None, now: datetime | None = None) -> dict:
    """Aggregate counts over the conflict registry and override log."""
    filters = []
    if reviewer_profile_id is not None:
        filters.append(ReviewerCOI.reviewer_profile_id == reviewer_profile_id)
    if organization_id is not None:
        filters.append(ReviewerCOI.organization_id == organization_id)

    def _count(*extra):
        return session.query(func.count(ReviewerCOI.id)).filter(*filters, *extra).scalar() or 0

    total = _count()
    active = _count(ReviewerCOI.is_active.is_(True))
    auto_detected = _count(ReviewerCOI.is_auto_detected.is_(True))

    by_type = {t: 0 for t in COI_TYPES}
    for coi_type, n in (
        session.query(ReviewerCOI.coi_type, func.count(ReviewerCOI.id))
        .filter(*filters).group_by(ReviewerCOI.coi_type).all()
    ):
        by_type[coi_type] = n

    by_severity = {s: 0 for s in COI_SEVERITIES}
    for severity, n in (
        session.query(ReviewerCOI.severity, func.count(ReviewerCOI.id))
        .filter(*filters).group_by(ReviewerCOI.severity).all()
    ):
        by_severity[severity] = n

    return {
        "total": total,
        "active": active,
        "inactive": total - active,
        "by_type": by_type,
        "by_severity": by_severity,
        "auto_detected": auto_detected,
        "manually_declared": total - auto_detected,
        "active_overrides": count_active_overrides(
            session, reviewer_profile_id=reviewer_profile_id,
            organization_id=organization_id, now=now,
        ),
    }
