"""
Conflict Detector + Conflict Registry operations.

Derives auto-detectable conflicts from the roster (home organization,
recent review history), reconciles them into ``reviewer_cois`` and handles
manual declaration / retirement of the remaining conflict types.

Design decisions:
    - ``detect_conflicts`` is a pure read.  It recomputes HOME_ORGANIZATION
      and RECENT_REVIEW from live roster data and merges in stored manual
      records; it never writes.
    - ``sync_auto_detected_cois`` only looks at ACTIVE auto-detected records,
      so a second run with unchanged roster data creates and retires nothing.
    - All functions take the SQLAlchemy session explicitly.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from peer_review.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import write_audit
from peer_review.models.coi import (
    AUTO_DETECTED_TYPES,
    COI_SEVERITIES,
    MANUAL_TYPE_DEFAULT_SEVERITY,
    ReviewerCOI,
)
from peer_review.models.roster import (
    ADMIN_ROLES,
    REVIEW_RESULT_STATUSES,
    Organization,
    Review,
    ReviewerProfile,
    ReviewTeamMember,
)

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_DAYS = 730
MIN_COI_REASON_LENGTH = 10

HOME_ORGANIZATION_REASON = "Reviewer's current employer"


def _recent_review_reason(cooldown_days: int) -> str:
    return f"Reviewed this organization within the last {cooldown_days} days"


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_reviewer(session, reviewer_profile_id: int) -> ReviewerProfile:
    reviewer = session.get(ReviewerProfile, reviewer_profile_id)
    if reviewer is None:
        raise NotFoundError("ReviewerProfile", reviewer_profile_id)
    return reviewer


def get_organization(session, organization_id: int) -> Organization:
    org = session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError("Organization", organization_id)
    return org


def can_manage_coi(actor, reviewer: ReviewerProfile) -> bool:
    """Administrators manage every reviewer's conflicts; reviewers their own."""
    if actor is None:
        return False
    return actor.role in ADMIN_ROLES or reviewer.user_id == actor.id


# ── Detection (read-only) ────────────────────────────────────────────────────


def recent_review_organizations(session, reviewer_profile_id: int, *, today: date,
                                cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> dict[int, date]:
    """Map host organization id → most recent qualifying review end date.

    A review qualifies when its status is in ``REVIEW_RESULT_STATUSES`` and
    its actual end date falls after ``today - cooldown_days``.
    """
    cutoff = today - timedelta(days=cooldown_days)
    rows = (
        session.query(Review.host_organization_id, Review.actual_end_date)
        .join(ReviewTeamMember, ReviewTeamMember.review_id == Review.id)
        .filter(
            ReviewTeamMember.reviewer_profile_id == reviewer_profile_id,
            Review.status.in_(REVIEW_RESULT_STATUSES),
            Review.actual_end_date.isnot(None),
            Review.actual_end_date > cutoff,
        )
        .all()
    )
    latest: dict[int, date] = {}
    for org_id, end_date in rows:
        if org_id not in latest or end_date > latest[org_id]:
            latest[org_id] = end_date
    return latest


def _conflict_detail(record: ReviewerCOI) -> dict:
    return {
        "id": record.id,
        "type": record.coi_type,
        "severity": record.severity,
        "reason": record.reason,
        "is_auto_detected": record.is_auto_detected,
        "start_date": record.start_date.isoformat() if record.start_date else None,
        "end_date": record.end_date.isoformat() if record.end_date else None,
    }


def detect_conflicts(session, reviewer: ReviewerProfile, organization_id: int, *,
                     today: date | None = None,
                     cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> list[dict]:
    """Return every current conflict between *reviewer* and the organization.

    Auto-detectable types are computed from live data; stored auto-detected
    copies of those types are skipped so they never appear twice.
    """
    today = today or date.today()
    conflicts: list[dict] = []

    if reviewer.home_organization_id is not None and reviewer.home_organization_id == organization_id:
        conflicts.append({
            "id": f"auto-home-{reviewer.id}-{organization_id}",
            "type": "HOME_ORGANIZATION",
            "severity": "HARD_BLOCK",
            "reason": HOME_ORGANIZATION_REASON,
            "is_auto_detected": True,
            "start_date": today.isoformat(),
            "end_date": None,
        })

    recent = recent_review_organizations(
        session, reviewer.id, today=today, cooldown_days=cooldown_days,
    )
    if organization_id in recent:
        conflicts.append({
            "id": f"auto-recent-{reviewer.id}-{organization_id}",
            "type": "RECENT_REVIEW",
            "severity": "SOFT_WARNING",
            "reason": _recent_review_reason(cooldown_days),
            "is_auto_detected": True,
            "start_date": recent[organization_id].isoformat(),
            "end_date": None,
            "last_review_date": recent[organization_id].isoformat(),
        })

    stored = (
        session.query(ReviewerCOI)
        .filter_by(reviewer_profile_id=reviewer.id, organization_id=organization_id, is_active=True)
        .order_by(ReviewerCOI.id)
        .all()
    )
    for record in stored:
        if record.is_auto_detected and record.coi_type in AUTO_DETECTED_TYPES:
            continue
        if not record.is_current(today):
            continue
        conflicts.append(_conflict_detail(record))

    return conflicts


# ── Reconciliation ───────────────────────────────────────────────────────────


def _retire(record: ReviewerCOI, today: date, reason: str) -> None:
    record.is_active = False
    record.end_date = today
    record.deactivation_reason = reason


def sync_auto_detected_cois(session, reviewer_profile_id: int, *,
                            today: date | None = None,
                            cooldown_days: int = DEFAULT_COOLDOWN_DAYS) -> dict:
    """Reconcile stored auto-detected conflicts with the reviewer's roster data.

    Returns ``{"created": n, "deactivated": m}``.  Idempotent: a second call
    with no roster change returns zeros.
    """
    today = today or date.today()
    reviewer = get_reviewer(session, reviewer_profile_id)
    created = 0
    deactivated = 0

    # HOME_ORGANIZATION
    home_records = (
        session.query(ReviewerCOI)
        .filter_by(reviewer_profile_id=reviewer.id, coi_type="HOME_ORGANIZATION",
                   is_auto_detected=True, is_active=True)
        .all()
    )
    home_org_id = reviewer.home_organization_id
    has_current_home = False
    for record in home_records:
        if record.organization_id == home_org_id and not has_current_home:
            has_current_home = True
            continue
        _retire(record, today, "Home organization changed")
        deactivated += 1
        write_audit(
            entity_type="reviewer_coi", entity_id=record.id, action="coi.auto_retired",
            diff={"coi_type": "HOME_ORGANIZATION", "organization_id": record.organization_id},
            session=session,
        )
    if home_org_id is not None and not has_current_home:
        record = ReviewerCOI(
            reviewer_profile_id=reviewer.id,
            organization_id=home_org_id,
            coi_type="HOME_ORGANIZATION",
            severity="HARD_BLOCK",
            reason=HOME_ORGANIZATION_REASON,
            is_auto_detected=True,
            start_date=today,
        )
        session.add(record)
        session.flush()
        created += 1
        write_audit(
            entity_type="reviewer_coi", entity_id=record.id, action="coi.auto_detected",
            diff={"coi_type": "HOME_ORGANIZATION", "organization_id": home_org_id},
            session=session,
        )

    # RECENT_REVIEW
    recent = recent_review_organizations(
        session, reviewer.id, today=today, cooldown_days=cooldown_days,
    )
    recent_records = (
        session.query(ReviewerCOI)
        .filter_by(reviewer_profile_id=reviewer.id, coi_type="RECENT_REVIEW",
                   is_auto_detected=True, is_active=True)
        .all()
    )
    covered: set[int] = set()
    for record in recent_records:
        if record.organization_id in recent and record.organization_id not in covered:
            covered.add(record.organization_id)
            record.last_review_date = recent[record.organization_id]
            continue
        _retire(record, today, "Outside recent review cooldown")
        deactivated += 1
        write_audit(
            entity_type="reviewer_coi", entity_id=record.id, action="coi.auto_retired",
            diff={"coi_type": "RECENT_REVIEW", "organization_id": record.organization_id},
            session=session,
        )
    for org_id in sorted(set(recent) - covered):
        record = ReviewerCOI(
            reviewer_profile_id=reviewer.id,
            organization_id=org_id,
            coi_type="RECENT_REVIEW",
            severity="SOFT_WARNING",
            reason=_recent_review_reason(cooldown_days),
            is_auto_detected=True,
            start_date=recent[org_id],
            last_review_date=recent[org_id],
        )
        session.add(record)
        session.flush()
        created += 1
        write_audit(
            entity_type="reviewer_coi", entity_id=record.id, action="coi.auto_detected",
            diff={"coi_type": "RECENT_REVIEW", "organization_id": org_id},
            session=session,
        )

    session.commit()
    if created or deactivated:
        logger.info(
            "COI sync reviewer=%s created=%d deactivated=%d",
            reviewer.id, created, deactivated,
            extra={"reviewer_profile_id": reviewer.id, "event_type": "coi.sync"},
        )
    return {"created": created, "deactivated": deactivated}


# ── Manual declaration ───────────────────────────────────────────────────────


def list_conflicts(session, *, reviewer_profile_id: int | None = None,
                   organization_id: int | None = None, active_only: bool = False) -> list[dict]:
    q = session.query(ReviewerCOI)
    if reviewer_profile_id is not None:
        q = q.filter(ReviewerCOI.reviewer_profile_id == reviewer_profile_id)
    if organization_id is not None:
        q = q.filter(ReviewerCOI.organization_id == organization_id)
    if active_only:
        q = q.filter(ReviewerCOI.is_active.is_(True))
    return [r.to_dict() for r in q.order_by(ReviewerCOI.created_at.desc(), ReviewerCOI.id.desc()).all()]


def declare_conflict(session, actor, *, reviewer_profile_id: int, organization_id: int,
                     coi_type: str, reason: str, severity: str | None = None,
                     start_date: date | None = None, end_date: date | None = None) -> dict:
    """Record a manually declared conflict.

    Raises:
        PermissionDeniedError: actor is neither an administrator nor the reviewer.
        ValidationError: auto-detectable type, unknown type/severity, short reason.
        ConflictError: an active record of the same type already exists for the pair.
    """
    reviewer = get_reviewer(session, reviewer_profile_id)
    get_organization(session, organization_id)

    if not can_manage_coi(actor, reviewer):
        raise PermissionDeniedError(
            "Only administrators or the reviewer may declare conflicts",
            required_roles=list(ADMIN_ROLES),
        )
    if coi_type in AUTO_DETECTED_TYPES:
        raise ValidationError(f"{coi_type} conflicts are detected automatically and cannot be declared")
    if coi_type not in MANUAL_TYPE_DEFAULT_SEVERITY:
        raise ValidationError(f"Unknown conflict type: {coi_type}", details={"coi_type": coi_type})
    severity = severity or MANUAL_TYPE_DEFAULT_SEVERITY[coi_type]
    if severity not in COI_SEVERITIES:
        raise ValidationError(f"Unknown severity: {severity}", details={"severity": severity})
    reason = (reason or "").strip()
    if len(reason) < MIN_COI_REASON_LENGTH:
        raise ValidationError(
            f"Reason must be at least {MIN_COI_REASON_LENGTH} characters",
            details={"min_length": MIN_COI_REASON_LENGTH, "length": len(reason)},
        )
    start_date = start_date or date.today()
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date cannot be before start_date")

    existing = (
        session.query(ReviewerCOI)
        .filter_by(reviewer_profile_id=reviewer.id, organization_id=organization_id,
                   coi_type=coi_type, is_active=True)
        .first()
    )
    if existing is not None:
        raise ConflictError("ReviewerCOI", "reviewer_profile_id,organization_id,coi_type",
                            f"{reviewer.id},{organization_id},{coi_type}")

    record = ReviewerCOI(
        reviewer_profile_id=reviewer.id,
        organization_id=organization_id,
        coi_type=coi_type,
        severity=severity,
        reason=reason,
        is_auto_detected=False,
        start_date=start_date,
        end_date=end_date,
        declared_by_id=actor.id,
    )
    session.add(record)
    session.flush()
    write_audit(
        entity_type="reviewer_coi", entity_id=record.id, action="coi.declared", actor=actor,
        diff={"coi_type": coi_type, "severity": severity, "organization_id": organization_id},
        session=session,
    )
    session.commit()
    logger.info(
        "COI declared id=%s reviewer=%s org=%s type=%s severity=%s",
        record.id, reviewer.id, organization_id, coi_type, severity,
        extra={"reviewer_profile_id": reviewer.id, "organization_id": organization_id,
               "actor_id": actor.id, "event_type": "coi.declared"},
    )
    return record.to_dict()


def deactivate_conflict(session, actor, coi_id: int, *, reason: str | None = None,
                        today: date | None = None) -> dict:
    """Retire a conflict record by administrative action."""
    record = session.get(ReviewerCOI, coi_id)
    if record is None:
        raise NotFoundError("ReviewerCOI", coi_id)
    if not can_manage_coi(actor, record.reviewer):
        raise PermissionDeniedError(
            "Only administrators or the reviewer may deactivate conflicts",
            required_roles=list(ADMIN_ROLES),
        )
    if record.is_auto_detected and record.coi_type in AUTO_DETECTED_TYPES and actor.role not in ADMIN_ROLES:
        raise PermissionDeniedError(
            "Auto-detected conflicts can only be retired by administrators",
            required_roles=list(ADMIN_ROLES),
        )
    if not record.is_active:
        raise ValidationError("Conflict record is already inactive")

    _retire(record, today or date.today(), (reason or "").strip() or "Deactivated")
    record.deactivated_by_id = actor.id
    write_audit(
        entity_type="reviewer_coi", entity_id=record.id, action="coi.deactivated", actor=actor,
        diff={"is_active": {"old": True, "new": False}, "reason": record.deactivation_reason},
        session=session,
    )
    session.commit()
    logger.info(
        "COI deactivated id=%s by user=%s", record.id, actor.id,
        extra={"reviewer_profile_id": record.reviewer_profile_id,
               "organization_id": record.organization_id,
               "actor_id": actor.id, "event_type": "coi.deactivated"},
    )
    return record.to_dict()
