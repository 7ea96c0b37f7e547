"""
CAP Status Machine — creation and lifecycle transitions for corrective action plans.

Who may move a plan where:
    host side   (actor's organization owns the finding, or SUPER_ADMIN)
                → SUBMITTED, DRAFT (withdraw / revise), IN_PROGRESS (start), COMPLETED
    reviewers   (CAP_REVIEW_ROLES) → UNDER_REVIEW, ACCEPTED, REJECTED, CLOSED
    verifiers   (CAP_VERIFY_ROLES) → VERIFIED, and COMPLETED → IN_PROGRESS
                (verification failed)

The plan row is locked before the graph check so two concurrent
transitions on one plan serialise; the second re-reads the committed status.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from peer_review.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from peer_review.models.audit import write_audit
from peer_review.models.cap import (
    CAP_STATUS_TRANSITIONS,
    CAP_STATUSES,
    CapMilestone,
    CorrectiveActionPlan,
    validate_cap_transition,
)
from peer_review.models.evidence import Finding
from peer_review.models.roster import (
    CAP_CREATE_ROLES,
    CAP_REVIEW_ROLES,
    CAP_VERIFY_ROLES,
    User,
)
from peer_review.services.cap_deadline import get_suggested_due_date
from peer_review.utils.helpers import parse_date

logger = logging.getLogger(__name__)

HOST_TARGETS = frozenset({"SUBMITTED", "DRAFT", "IN_PROGRESS", "COMPLETED"})
REVIEW_TARGETS = frozenset({"UNDER_REVIEW", "ACCEPTED", "REJECTED", "CLOSED"})
VERIFY_TARGETS = frozenset({"VERIFIED"})

# CAP status → mirrored finding status
FINDING_STATUS_MIRROR = {
    "SUBMITTED": "CAP_SUBMITTED",
    "ACCEPTED": "CAP_ACCEPTED",
    "REJECTED": "CAP_REQUIRED",
    "IN_PROGRESS": "IN_PROGRESS",
    "VERIFIED": "VERIFICATION",
    "CLOSED": "CLOSED",
}


def is_valid_transition(current: str, new: str) -> bool:
    return validate_cap_transition(current, new)


def get_allowed_next_statuses(current: str) -> list[str]:
    return list(CAP_STATUS_TRANSITIONS.get(current, []))


def get_cap(session, cap_id: int, *, lock: bool = False) -> CorrectiveActionPlan:
    q = session.query(CorrectiveActionPlan).filter(CorrectiveActionPlan.id == cap_id)
    if lock:
        q = q.with_for_update()
    cap = q.one_or_none()
    if cap is None:
        raise NotFoundError("CorrectiveActionPlan", cap_id)
    return cap


def _is_host(actor, organization_id: int) -> bool:
    return actor.role == "SUPER_ADMIN" or actor.organization_id == organization_id


def _check_transition_role(actor, cap: CorrectiveActionPlan, current: str, new: str) -> None:
    if current == "COMPLETED" and new == "IN_PROGRESS":
        allowed, label = CAP_VERIFY_ROLES, "fail verification of"
    elif new in VERIFY_TARGETS:
        allowed, label = CAP_VERIFY_ROLES, "verify"
    elif new in REVIEW_TARGETS:
        allowed, label = CAP_REVIEW_ROLES, f"move to {new}"
    else:
        if not _is_host(actor, cap.organization_id):
            raise PermissionDeniedError(
                f"Only the host organization can move the CAP to {new}",
                required_roles=["SUPER_ADMIN"],
            )
        return
    if actor.role not in allowed:
        raise PermissionDeniedError(
            f"Your role cannot {label} this CAP", required_roles=list(allowed),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


def create_cap(session, actor, finding_id: int, *, root_cause: str = "",
               corrective_action: str = "", preventive_action: str = "",
               due_date=None, assigned_to_id: int | None = None,
               milestones: list[dict] | None = None,
               today: date | None = None) -> dict:
    """Create a DRAFT plan for a finding that requires one.

    ``due_date`` defaults from the finding's severity.  ``milestones`` is a
    list of ``{"title", "target_date"}``.

    Raises:
        NotFoundError, PermissionDeniedError,
        ValidationError: finding has no ``cap_required`` flag or bad input.
        ConflictError: the finding already has a plan.
    """
    if actor is None or actor.role not in CAP_CREATE_ROLES:
        raise PermissionDeniedError(
            "Your role cannot create corrective action plans",
            required_roles=list(CAP_CREATE_ROLES),
        )

    finding = (
        session.query(Finding).filter(Finding.id == finding_id).with_for_update().one_or_none()
    )
    if finding is None:
        raise NotFoundError("Finding", finding_id)
    if not _is_host(actor, finding.organization_id):
        raise PermissionDeniedError("You can only create CAPs for your organization's findings")
    if not finding.cap_required:
        raise ValidationError("This finding does not require a CAP", details={"finding_id": finding.id})
    if session.query(CorrectiveActionPlan.id).filter_by(finding_id=finding.id).first() is not None:
        raise ConflictError("CorrectiveActionPlan", "finding_id", str(finding.id))

    if due_date is not None:
        parsed = parse_date(due_date)
        if parsed is None:
            raise ValidationError("due_date must be an ISO date", details={"due_date": due_date})
        due_date = parsed
    else:
        due_date = get_suggested_due_date(finding.severity, today=today)

    if assigned_to_id is not None and session.get(User, assigned_to_id) is None:
        raise NotFoundError("User", assigned_to_id)

    cap = CorrectiveActionPlan(
        finding_id=finding.id,
        organization_id=finding.organization_id,
        status="DRAFT",
        root_cause=root_cause or "",
        corrective_action=corrective_action or "",
        preventive_action=preventive_action or "",
        due_date=due_date,
        assigned_to_id=assigned_to_id,
        created_by_id=actor.id,
    )
    for index, entry in enumerate(milestones or []):
        if not isinstance(entry, dict):
            raise ValidationError("Each milestone must be an object", details={"milestone_index": index})
        title = (entry.get("title") or "").strip()
        target = parse_date(entry.get("target_date"))
        if not title or target is None:
            raise ValidationError(
                "Each milestone needs a title and a target_date",
                details={"milestone_index": index},
            )
        cap.milestones.append(CapMilestone(title=title, target_date=target, sort_order=index))
    session.add(cap)
    session.flush()

    write_audit(
        entity_type="corrective_action_plan", entity_id=cap.id, action="cap.created",
        actor=actor, review_id=finding.review_id,
        diff={"finding_id": finding.id, "status": "DRAFT", "due_date": due_date.isoformat()},
        session=session,
    )
    session.commit()
    logger.info(
        "CAP created id=%s finding=%s due=%s by user=%s", cap.id, finding.id, due_date, actor.id,
        extra={"cap_id": cap.id, "actor_id": actor.id, "event_type": "cap.created"},
    )
    return cap.to_dict(include_milestones=True)


# ═════════════════════════════════════════════════════════════════════════════
# Transition
# ═════════════════════════════════════════════════════════════════════════════


def transition_cap(session, actor, cap_id: int, new_status: str, *,
                   comments: str | None = None, now: datetime | None = None) -> dict:
    """Move a plan along the status graph.

    A no-op (same status) returns the plan untouched.

    Raises:
        NotFoundError, ValidationError (unknown status),
        InvalidTransitionError (edge not in the graph),
        PermissionDeniedError (actor may not take this edge).
    """
    if new_status not in CAP_STATUSES:
        raise ValidationError(f"Unknown CAP status: {new_status}", details={"allowed": CAP_STATUSES})
    if actor is None:
        raise PermissionDeniedError("An authenticated actor is required")
    now = now or datetime.now(timezone.utc)

    cap = get_cap(session, cap_id, lock=True)
    current = cap.status
    if current == new_status:
        session.rollback()
        return cap.to_dict(include_milestones=True)
    if not is_valid_transition(current, new_status):
        session.rollback()
        raise InvalidTransitionError(
            "CorrectiveActionPlan", current, new_status,
            details={"allowed": get_allowed_next_statuses(current)},
        )
    _check_transition_role(actor, cap, current, new_status)

    cap.status = new_status
    if new_status == "SUBMITTED":
        cap.submitted_at = now
        cap.submitted_by_id = actor.id
    elif new_status in ("ACCEPTED", "REJECTED"):
        cap.reviewed_by_id = actor.id
        cap.review_comments = comments
        if new_status == "ACCEPTED":
            cap.accepted_at = now
    elif new_status == "COMPLETED":
        cap.completed_at = now
    elif new_status == "VERIFIED":
        cap.verified_at = now
        cap.verified_by_id = actor.id
        cap.verification_notes = comments
    elif new_status == "IN_PROGRESS" and current == "COMPLETED":
        cap.verification_notes = comments
    elif new_status == "CLOSED":
        cap.closed_at = now

    finding = session.get(Finding, cap.finding_id)
    finding_change = None
    mirrored = FINDING_STATUS_MIRROR.get(new_status)
    if finding is not None and mirrored and finding.status != mirrored:
        finding_change = {"old": finding.status, "new": mirrored}
        finding.status = mirrored

    write_audit(
        entity_type="corrective_action_plan", entity_id=cap.id, action="cap.transition",
        actor=actor, review_id=finding.review_id if finding else None,
        diff={
            "status": {"old": current, "new": new_status},
            "finding_status": finding_change,
            "comments": comments,
        },
        session=session,
    )
    session.commit()
    logger.info(
        "CAP %s transition %s → %s by user=%s", cap.id, current, new_status, actor.id,
        extra={"cap_id": cap.id, "actor_id": actor.id, "event_type": "cap.transition"},
    )
    return cap.to_dict(include_milestones=True)
