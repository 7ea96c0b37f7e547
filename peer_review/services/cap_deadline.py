"""
CAP Deadline Service — deadline classification, escalation detection, statistics.

Everything here is a read except ``update_milestone_statuses``, which the
milestone sweep job calls.  ``detect_escalation_events`` never marks an
event as sent; the escalation job owns delivery and dedupe
(see ``scheduled_jobs.run_cap_deadline_escalation``).

Calendar arithmetic is in whole days on ``date`` values.  Every function
takes ``today`` so tests and batch runs can pin the clock.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy.orm import joinedload, selectinload

from peer_review.core.exceptions import NotFoundError
from peer_review.models.audit import write_audit
from peer_review.models.cap import (
    CAP_STATUS_PROGRESS,
    CAP_STATUSES,
    DEFAULT_DUE_DAYS,
    OPEN_MILESTONE_STATUSES,
    SEVERITY_DUE_DAYS,
    TRACKABLE_CAP_STATUSES,
    CapMilestone,
    CorrectiveActionPlan,
)
from peer_review.models.roster import FOCAL_POINT_ROLES, User
from peer_review.utils.helpers import as_utc

logger = logging.getLogger(__name__)

WARNING_THRESHOLD_DAYS = 7
CRITICAL_THRESHOLD_DAYS = 1

ESCALATION_TYPES = ("7_DAYS_BEFORE", "1_DAY_BEFORE", "DUE_TODAY", "OVERDUE", "MILESTONE_OVERDUE")


# ═════════════════════════════════════════════════════════════════════════════
# Pure calculations
# ═════════════════════════════════════════════════════════════════════════════


def calculate_deadline_info(due_date: date, status: str, milestones_completed: int = 0,
                            milestones_total: int = 0, *, today: date | None = None,
                            warning_days: int = WARNING_THRESHOLD_DAYS,
                            critical_days: int = CRITICAL_THRESHOLD_DAYS) -> dict:
    """Classify a due date relative to *today*.

    urgency_level precedence: overdue > critical (due today or within
    ``critical_days``) > warning (within ``warning_days``) > normal.
    percentage_complete uses the milestone ratio when milestones exist,
    otherwise the per-status estimate.
    """
    today = today or date.today()
    days_remaining = (due_date - today).days
    is_overdue = days_remaining < 0
    is_due_today = days_remaining == 0
    is_due_soon = 0 < days_remaining <= warning_days

    if is_overdue:
        urgency = "overdue"
    elif is_due_today or 0 < days_remaining <= critical_days:
        urgency = "critical"
    elif is_due_soon:
        urgency = "warning"
    else:
        urgency = "normal"

    if milestones_total > 0:
        percentage = round(milestones_completed * 100 / milestones_total)
    else:
        percentage = CAP_STATUS_PROGRESS.get(status, 0)

    return {
        "due_date": due_date.isoformat(),
        "days_remaining": days_remaining,
        "is_overdue": is_overdue,
        "is_due_today": is_due_today,
        "is_due_soon": is_due_soon,
        "urgency_level": urgency,
        "percentage_complete": percentage,
    }


def calculate_milestone_progress(milestones, *, today: date | None = None) -> dict:
    today = today or date.today()
    return {
        "total": len(milestones),
        "completed": sum(1 for m in milestones if m.status == "COMPLETED"),
        "overdue": sum(
            1 for m in milestones
            if m.status not in ("COMPLETED", "CANCELLED") and m.target_date < today
        ),
        "upcoming": sum(1 for m in milestones if m.status == "PENDING" and m.target_date >= today),
        "in_progress": sum(1 for m in milestones if m.status == "IN_PROGRESS"),
    }


def get_suggested_due_date(severity: str, *, today: date | None = None) -> date:
    """Severity → due date: CRITICAL 30, MAJOR 60, MINOR 90, OBSERVATION 180 days."""
    today = today or date.today()
    return today + timedelta(days=SEVERITY_DUE_DAYS.get(severity, DEFAULT_DUE_DAYS))


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def _cap_query(session):
    return session.query(CorrectiveActionPlan).options(
        selectinload(CorrectiveActionPlan.milestones),
        joinedload(CorrectiveActionPlan.finding),
        joinedload(CorrectiveActionPlan.organization),
    )


def _with_deadline(cap: CorrectiveActionPlan, today: date, **thresholds) -> dict:
    progress = calculate_milestone_progress(cap.milestones, today=today)
    info = calculate_deadline_info(
        cap.due_date, cap.status, progress["completed"], progress["total"],
        today=today, **thresholds,
    )
    finding = cap.finding
    return {
        "cap": cap.to_dict(include_milestones=True),
        "finding": {
            "id": finding.id,
            "reference_number": finding.reference_number,
            "title": finding.title,
            "severity": finding.severity,
        } if finding else None,
        "organization": {
            "id": cap.organization.id,
            "name": cap.organization.name,
        } if cap.organization else None,
        "deadline_info": info,
        "milestone_progress": progress,
    }


def get_cap_deadline(session, cap_id: int, *, today: date | None = None, **thresholds) -> dict:
    cap = _cap_query(session).filter(CorrectiveActionPlan.id == cap_id).one_or_none()
    if cap is None:
        raise NotFoundError("CorrectiveActionPlan", cap_id)
    return _with_deadline(cap, today or date.today(), **thresholds)


def get_caps_with_deadline_info(session, *, organization_id: int | None = None,
                                include_completed: bool = False, overdue_only: bool = False,
                                today: date | None = None, **thresholds) -> list[dict]:
    """Plans ordered by due date with deadline info and milestone progress.

    VERIFIED/CLOSED plans are excluded unless ``include_completed``.
    """
    today = today or date.today()
    q = _cap_query(session)
    if organization_id is not None:
        q = q.filter(CorrectiveActionPlan.organization_id == organization_id)
    if not include_completed:
        q = q.filter(CorrectiveActionPlan.status.in_(TRACKABLE_CAP_STATUSES))
    results = [
        _with_deadline(cap, today, **thresholds)
        for cap in q.order_by(CorrectiveActionPlan.due_date, CorrectiveActionPlan.id).all()
    ]
    if overdue_only:
        results = [r for r in results if r["deadline_info"]["is_overdue"]]
    return results


def get_caps_due_within_days(session, days: int, *, today: date | None = None,
                             **thresholds) -> list[dict]:
    """Trackable plans due between today and today + *days*, inclusive."""
    today = today or date.today()
    caps = (
        _cap_query(session)
        .filter(
            CorrectiveActionPlan.status.in_(TRACKABLE_CAP_STATUSES),
            CorrectiveActionPlan.due_date >= today,
            CorrectiveActionPlan.due_date <= today + timedelta(days=days),
        )
        .order_by(CorrectiveActionPlan.due_date, CorrectiveActionPlan.id)
        .all()
    )
    return [_with_deadline(cap, today, **thresholds) for cap in caps]


def _overdue_milestones_query(session, today: date):
    return (
        session.query(CapMilestone)
        .join(CorrectiveActionPlan, CapMilestone.cap_id == CorrectiveActionPlan.id)
        .filter(
            CapMilestone.status.in_(OPEN_MILESTONE_STATUSES),
            CapMilestone.target_date < today,
            CorrectiveActionPlan.status.in_(TRACKABLE_CAP_STATUSES),
        )
    )


def get_overdue_milestones(session, *, today: date | None = None) -> list[dict]:
    today = today or date.today()
    rows = _overdue_milestones_query(session, today).order_by(CapMilestone.target_date, CapMilestone.id).all()
    result = []
    for m in rows:
        data = m.to_dict()
        data["days_overdue"] = (today - m.target_date).days
        data["cap_status"] = m.cap.status
        data["finding_reference"] = m.cap.finding.reference_number if m.cap.finding else None
        result.append(data)
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Escalation detection (read-only)
# ═════════════════════════════════════════════════════════════════════════════


def _focal_point_ids(session, organization_id: int, cache: dict) -> list[int]:
    if organization_id not in cache:
        cache[organization_id] = [
            uid for (uid,) in session.query(User.id)
            .filter(
                User.organization_id == organization_id,
                User.role.in_(FOCAL_POINT_ROLES),
                User.is_active.is_(True),
            )
            .order_by(User.id)
            .all()
        ]
    return cache[organization_id]


def _recipients(session, cap: CorrectiveActionPlan, cache: dict) -> list[int]:
    ids = [cap.assigned_to_id] if cap.assigned_to_id else []
    ids.extend(_focal_point_ids(session, cap.organization_id, cache))
    return list(dict.fromkeys(ids))


def _event_context(cap: CorrectiveActionPlan) -> dict:
    finding = cap.finding
    if finding is None:
        raise ValueError("plan has no finding")
    if cap.due_date is None:
        raise ValueError("plan has no due date")
    return {
        "cap_id": cap.id,
        "finding": {
            "reference_number": finding.reference_number,
            "title": finding.title,
            "severity": finding.severity,
        },
        "organization": {
            "id": cap.organization_id,
            "name": cap.organization.name if cap.organization else None,
        },
    }


def _threshold_event(days_until_due: int, warning_days: int, critical_days: int) -> str | None:
    if days_until_due < 0:
        return "OVERDUE"
    if days_until_due == 0:
        return "DUE_TODAY"
    if days_until_due == critical_days:
        return "1_DAY_BEFORE"
    if days_until_due == warning_days:
        return "7_DAYS_BEFORE"
    return None


def detect_escalation_events(session, *, today: date | None = None,
                             warning_days: int = WARNING_THRESHOLD_DAYS,
                             critical_days: int = CRITICAL_THRESHOLD_DAYS) -> dict:
    """Scan trackable plans and open milestones for threshold crossings.

    One event per plan that sits exactly on a threshold day (or is overdue)
    and one per open milestone past its target date.  A plan that cannot be
    evaluated is skipped and reported under ``errors``; the scan continues.

    Returns ``{"run_date", "events", "errors"}``.
    """
    today = today or date.today()
    events: list[dict] = []
    errors: list[dict] = []
    focal_cache: dict[int, list[int]] = {}

    caps = (
        _cap_query(session)
        .filter(CorrectiveActionPlan.status.in_(TRACKABLE_CAP_STATUSES))
        .order_by(CorrectiveActionPlan.id)
        .all()
    )
    for cap in caps:
        try:
            context = _event_context(cap)
            days_until_due = (cap.due_date - today).days
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning(
                "Skipping CAP %s during escalation scan: %s", cap.id, exc,
                extra={"cap_id": cap.id, "event_type": "cap.escalation_skipped"},
            )
            errors.append({"cap_id": cap.id, "error": str(exc)})
            continue

        event_type = _threshold_event(days_until_due, warning_days, critical_days)
        if event_type is None:
            continue
        event = {
            "type": event_type,
            "milestone_id": None,
            "recipient_ids": _recipients(session, cap, focal_cache),
            **context,
        }
        if event_type == "OVERDUE":
            event["days_overdue"] = -days_until_due
        events.append(event)

    for milestone in _overdue_milestones_query(session, today).order_by(CapMilestone.id).all():
        cap = milestone.cap
        try:
            context = _event_context(cap)
        except (ValueError, TypeError, AttributeError) as exc:
            errors.append({"cap_id": cap.id, "milestone_id": milestone.id, "error": str(exc)})
            continue
        events.append({
            "type": "MILESTONE_OVERDUE",
            "milestone_id": milestone.id,
            "milestone_title": milestone.title,
            "days_overdue": (today - milestone.target_date).days,
            "recipient_ids": _recipients(session, cap, focal_cache),
            **context,
        })

    logger.info(
        "Escalation scan run_date=%s events=%d errors=%d", today, len(events), len(errors),
        extra={"event_type": "cap.escalation_scan"},
    )
    return {"run_date": today.isoformat(), "events": events, "errors": errors}


# ═════════════════════════════════════════════════════════════════════════════
# Milestone sweep + statistics
# ═════════════════════════════════════════════════════════════════════════════


def update_milestone_statuses(session, *, today: date | None = None) -> int:
    """Mark open milestones of trackable plans past their target date as OVERDUE."""
    today = today or date.today()
    milestones = _overdue_milestones_query(session, today).with_for_update(of=CapMilestone).all()
    for milestone in milestones:
        old_status = milestone.status
        milestone.status = "OVERDUE"
        write_audit(
            entity_type="cap_milestone", entity_id=milestone.id, action="cap_milestone.overdue",
            diff={"cap_id": milestone.cap_id, "status": {"old": old_status, "new": "OVERDUE"}},
            session=session,
        )
    session.commit()
    if milestones:
        logger.info(
            "Marked %d milestone(s) overdue", len(milestones),
            extra={"event_type": "cap_milestone.overdue"},
        )
    return len(milestones)


def get_cap_statistics(session, *, organization_id: int | None = None,
                       today: date | None = None,
                       warning_days: int = WARNING_THRESHOLD_DAYS) -> dict:
    today = today or date.today()
    q = session.query(CorrectiveActionPlan)
    if organization_id is not None:
        q = q.filter(CorrectiveActionPlan.organization_id == organization_id)

    by_status = {status: 0 for status in CAP_STATUSES}
    overdue = due_soon = closed_count = on_time = total_days = 0
    caps = q.all()
    for cap in caps:
        by_status[cap.status] = by_status.get(cap.status, 0) + 1
        if cap.status in TRACKABLE_CAP_STATUSES:
            days = (cap.due_date - today).days
            if days < 0:
                overdue += 1
            elif days <= warning_days:
                due_soon += 1
        close_ts = as_utc(cap.closed_at or cap.verified_at)
        if close_ts is not None:
            closed_count += 1
            created = as_utc(cap.created_at) or close_ts
            total_days += (close_ts.date() - created.date()).days
            if close_ts.date() <= cap.due_date:
                on_time += 1

    return {
        "total": len(caps),
        "by_status": by_status,
        "overdue": overdue,
        "due_soon": due_soon,
        "average_days_to_close": round(total_days / closed_count) if closed_count else None,
        "on_time_completion_rate": round(on_time * 100 / closed_count) if closed_count else None,
    }

