"""
Override Authority — time-bounded exceptions to SOFT_WARNING conflicts.

Design decisions:
    - ``coi_override_events`` is APPEND-ONLY.  Issuing writes an ``issued``
      row; revoking writes a ``revoked`` row pointing at it.  Nothing is
      updated or deleted, so the full history is reconstructable.
    - A grant is valid iff no ``revoked`` row references it and its
      ``expires_at`` is unset or still in the future.
    - The active override for a (reviewer, organization, review) scope is the
      most recently issued valid grant that names that review or no review.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from peer_review.core.exceptions import (
    ConflictError,
    InvalidOverrideError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import write_audit
from peer_review.models.coi import ConflictOverrideEvent
from peer_review.models.roster import ADMIN_ROLES, Review, ReviewerProfile
from peer_review.services.coi_detection import (
    DEFAULT_COOLDOWN_DAYS,
    detect_conflicts,
    get_organization,
    get_reviewer,
)
from peer_review.services.notification import NotificationService
from peer_review.utils.helpers import as_utc

logger = logging.getLogger(__name__)

MIN_OVERRIDE_JUSTIFICATION = 50


# ── Derived state ────────────────────────────────────────────────────────────


def _revoked_ids(session, issued_ids) -> set[int]:
    if not issued_ids:
        return set()
    rows = (
        session.query(ConflictOverrideEvent.revokes_event_id)
        .filter(
            ConflictOverrideEvent.action == "revoked",
            ConflictOverrideEvent.revokes_event_id.in_(list(issued_ids)),
        )
        .all()
    )
    return {r[0] for r in rows}


def _is_expired(event: ConflictOverrideEvent, now: datetime) -> bool:
    expires_at = as_utc(event.expires_at)
    return expires_at is not None and expires_at <= now


def is_override_valid(event: ConflictOverrideEvent, *, is_revoked: bool, now: datetime) -> bool:
    return event.action == "issued" and not is_revoked and not _is_expired(event, now)


def override_state(event: ConflictOverrideEvent, *, is_revoked: bool, now: datetime) -> dict:
    """Serialise an issued grant together with its derived state."""
    data = event.to_dict()
    data["is_revoked"] = is_revoked
    data["is_expired"] = _is_expired(event, now)
    data["is_valid"] = is_override_valid(event, is_revoked=is_revoked, now=now)
    return data


def find_active_override(session, reviewer_profile_id: int, organization_id: int,
                         review_id: int | None = None, *, now: datetime | None = None) -> dict | None:
    """Return the most recently issued non-revoked grant covering the scope.

    None when there is no such grant or when that grant has expired; an
    older grant never stands in for an expired newer one.  With
    ``review_id`` a grant for that review or a review-agnostic grant
    matches; without it only review-agnostic grants match.
    """
    now = now or datetime.now(timezone.utc)
    q = session.query(ConflictOverrideEvent).filter(
        ConflictOverrideEvent.action == "issued",
        ConflictOverrideEvent.reviewer_profile_id == reviewer_profile_id,
        ConflictOverrideEvent.organization_id == organization_id,
    )
    if review_id is not None:
        q = q.filter(or_(ConflictOverrideEvent.review_id == review_id,
                         ConflictOverrideEvent.review_id.is_(None)))
    else:
        q = q.filter(ConflictOverrideEvent.review_id.is_(None))
    grants = q.order_by(ConflictOverrideEvent.occurred_at.desc(), ConflictOverrideEvent.id.desc()).all()

    revoked = _revoked_ids(session, [g.id for g in grants])
    latest = next((g for g in grants if g.id not in revoked), None)
    if latest is None or not is_override_valid(latest, is_revoked=False, now=now):
        return None
    return override_state(latest, is_revoked=False, now=now)


def count_active_overrides(session, *, reviewer_profile_id: int | None = None,
                           organization_id: int | None = None, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    q = session.query(ConflictOverrideEvent).filter(ConflictOverrideEvent.action == "issued")
    if reviewer_profile_id is not None:
        q = q.filter(ConflictOverrideEvent.reviewer_profile_id == reviewer_profile_id)
    if organization_id is not None:
        q = q.filter(ConflictOverrideEvent.organization_id == organization_id)
    grants = q.all()
    revoked = _revoked_ids(session, [g.id for g in grants])
    return sum(1 for g in grants if is_override_valid(g, is_revoked=g.id in revoked, now=now))


def list_override_history(session, reviewer_profile_id: int,
                          organization_id: int | None = None, *, now: datetime | None = None) -> list[dict]:
    """Full event history for a reviewer, oldest first.

    Issued rows carry their derived ``is_revoked`` / ``is_expired`` /
    ``is_valid`` state.
    """
    now = now or datetime.now(timezone.utc)
    get_reviewer(session, reviewer_profile_id)
    q = session.query(ConflictOverrideEvent).filter(
        ConflictOverrideEvent.reviewer_profile_id == reviewer_profile_id,
    )
    if organization_id is not None:
        q = q.filter(ConflictOverrideEvent.organization_id == organization_id)
    events = q.order_by(ConflictOverrideEvent.occurred_at, ConflictOverrideEvent.id).all()

    revoked = {e.revokes_event_id for e in events if e.action == "revoked"}
    history = []
    for event in events:
        if event.action == "issued":
            history.append(override_state(event, is_revoked=event.id in revoked, now=now))
        else:
            history.append(event.to_dict())
    return history


# ── Issue / revoke ───────────────────────────────────────────────────────────


def _require_admin(actor, action: str) -> None:
    if actor is None or actor.role not in ADMIN_ROLES:
        raise PermissionDeniedError(
            f"Only programme administrators may {action} COI overrides",
            required_roles=list(ADMIN_ROLES),
        )


def _actor_name(actor) -> str:
    return actor.full_name or actor.email


def issue_override(session, actor, *, reviewer_profile_id: int, organization_id: int,
                   justification: str, review_id: int | None = None,
                   expires_at: datetime | None = None,
                   min_justification: int = MIN_OVERRIDE_JUSTIFICATION,
                   cooldown_days: int = DEFAULT_COOLDOWN_DAYS,
                   now: datetime | None = None) -> dict:
    """Issue an override for a reviewer's SOFT_WARNING conflicts with an organization.

    Raises:
        PermissionDeniedError: actor is not an administrator.
        InvalidOverrideError: justification too short, expiry in the past,
            nothing to override, or a HARD_BLOCK conflict is present.
        ConflictError: a valid grant already exists for the identical scope.
    """
    now = now or datetime.now(timezone.utc)
    _require_admin(actor, "issue")

    justification = (justification or "").strip()
    if len(justification) < min_justification:
        raise InvalidOverrideError(
            f"Justification must be at least {min_justification} characters",
            details={"min_length": min_justification, "length": len(justification)},
        )
    expires_at = as_utc(expires_at)
    if expires_at is not None and expires_at <= now:
        raise InvalidOverrideError("Override expiry must be in the future")

    # Row lock serialises concurrent issuance for the same reviewer.
    reviewer = (
        session.query(ReviewerProfile)
        .filter(ReviewerProfile.id == reviewer_profile_id)
        .with_for_update()
        .one_or_none()
    )
    if reviewer is None:
        raise NotFoundError("ReviewerProfile", reviewer_profile_id)
    get_organization(session, organization_id)
    if review_id is not None and session.get(Review, review_id) is None:
        raise NotFoundError("Review", review_id)

    conflicts = detect_conflicts(
        session, reviewer, organization_id, today=now.date(), cooldown_days=cooldown_days,
    )
    if not conflicts:
        raise InvalidOverrideError("Reviewer has no conflicts with this organization to override")
    hard = [c for c in conflicts if c["severity"] == "HARD_BLOCK"]
    if hard:
        raise InvalidOverrideError(
            "Cannot override HARD_BLOCK conflicts",
            details={"hard_blocks": [c["type"] for c in hard]},
        )

    existing = (
        session.query(ConflictOverrideEvent)
        .filter(
            ConflictOverrideEvent.action == "issued",
            ConflictOverrideEvent.reviewer_profile_id == reviewer.id,
            ConflictOverrideEvent.organization_id == organization_id,
            (ConflictOverrideEvent.review_id == review_id) if review_id is not None
            else ConflictOverrideEvent.review_id.is_(None),
        )
        .all()
    )
    revoked = _revoked_ids(session, [e.id for e in existing])
    if any(is_override_valid(e, is_revoked=e.id in revoked, now=now) for e in existing):
        raise ConflictError("ConflictOverride", "reviewer_profile_id,organization_id,review_id",
                            f"{reviewer.id},{organization_id},{review_id}")

    event = ConflictOverrideEvent(
        action="issued",
        reviewer_profile_id=reviewer.id,
        organization_id=organization_id,
        review_id=review_id,
        justification=justification,
        expires_at=expires_at,
        actor_id=actor.id,
        actor_name_snapshot=_actor_name(actor),
        occurred_at=now,
    )
    session.add(event)
    session.flush()
    write_audit(
        entity_type="coi_override", entity_id=event.id, action="coi_override.issued",
        actor=actor, review_id=review_id,
        diff={"reviewer_profile_id": reviewer.id, "organization_id": organization_id,
              "justification": justification, "expires_at": expires_at},
        session=session,
    )
    NotificationService.notify_coi_override(event, [reviewer.user_id], session=session, commit=False)
    session.commit()
    logger.info(
        "COI override issued id=%s reviewer=%s org=%s review=%s by user=%s",
        event.id, reviewer.id, organization_id, review_id, actor.id,
        extra={"reviewer_profile_id": reviewer.id, "organization_id": organization_id,
               "review_id": review_id, "actor_id": actor.id, "event_type": "coi_override.issued"},
    )
    return override_state(event, is_revoked=False, now=now)


def revoke_override(session, actor, override_id: int, reason: str, *,
                    now: datetime | None = None) -> dict:
    """Append a ``revoked`` event for an issued grant.

    Raises:
        PermissionDeniedError: actor is not an administrator.
        ValidationError: empty reason.
        NotFoundError: no issued grant with that id.
        InvalidOverrideError: the grant is already revoked.
    """
    now = now or datetime.now(timezone.utc)
    _require_admin(actor, "revoke")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A revocation reason is required")

    grant = (
        session.query(ConflictOverrideEvent)
        .filter(ConflictOverrideEvent.id == override_id, ConflictOverrideEvent.action == "issued")
        .with_for_update()
        .one_or_none()
    )
    if grant is None:
        raise NotFoundError("ConflictOverride", override_id)
    if _revoked_ids(session, [grant.id]):
        raise InvalidOverrideError("Override already revoked")

    event = ConflictOverrideEvent(
        action="revoked",
        reviewer_profile_id=grant.reviewer_profile_id,
        organization_id=grant.organization_id,
        review_id=grant.review_id,
        revokes_event_id=grant.id,
        justification=reason,
        actor_id=actor.id,
        actor_name_snapshot=_actor_name(actor),
        occurred_at=now,
    )
    session.add(event)
    session.flush()
    write_audit(
        entity_type="coi_override", entity_id=grant.id, action="coi_override.revoked",
        actor=actor, review_id=grant.review_id, diff={"reason": reason},
        session=session,
    )
    reviewer = session.get(ReviewerProfile, grant.reviewer_profile_id)
    NotificationService.notify_coi_override(event, [reviewer.user_id], session=session, commit=False)
    session.commit()
    logger.info(
        "COI override revoked id=%s by user=%s", grant.id, actor.id,
        extra={"reviewer_profile_id": grant.reviewer_profile_id,
               "organization_id": grant.organization_id,
               "actor_id": actor.id, "event_type": "coi_override.revoked"},
    )
    return override_state(grant, is_revoked=True, now=now)
