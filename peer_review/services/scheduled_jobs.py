"""
Scheduled Jobs — batch entry points run from ``flask run-job <name>``.

Jobs:
    - cap_deadline_escalation: detect CAP threshold crossings and hand each
      event to the notification service once per dedupe key
    - cap_milestone_sweep: mark past-due open milestones OVERDUE

No thread or scheduler lives in the engine; cron (or any external
scheduler) invokes the CLI command once a day.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError

from peer_review.models import db
from peer_review.models.cap import CapEscalationDelivery
from peer_review.services.cap_deadline import detect_escalation_events, update_milestone_statuses
from peer_review.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("cap_milestone_sweep")
        def sweep_milestones(app, **kwargs):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def run_job(app, name: str, **kwargs) -> dict[str, Any]:
    """Run a registered job inside the app context."""
    if name not in _job_registry:
        raise KeyError(f"Unknown job: {name}")
    with app.app_context():
        started = datetime.now(timezone.utc)
        result = _job_registry[name](app, **kwargs)
        elapsed = (datetime.now(timezone.utc) - started).total_seconds() * 1000
        logger.info("Job %s finished in %.0fms: %s", name, elapsed, result)
        return result


def escalation_dedupe_key(cap_id: int, milestone_id: int | None, event_type: str, run_date: date) -> str:
    """Deterministic key for one escalation delivery.

    Format: cap-{cap_id}-{milestone_id}-{event_type}-{run_date}
    Same key → already dispatched → skip.
    """
    raw = f"cap-{cap_id}-{milestone_id or ''}-{event_type}-{run_date.isoformat()}"
    return hashlib.md5(raw.encode()).hexdigest()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: CAP deadline escalation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("cap_deadline_escalation")
def run_cap_deadline_escalation(app, *, session=None, today: date | None = None) -> dict[str, Any]:
    """Dispatch today's escalation events, each at most once."""
    session = session or db.session
    today = today or date.today()
    scan = detect_escalation_events(
        session,
        today=today,
        warning_days=app.config.get("CAP_WARNING_THRESHOLD_DAYS", 7),
        critical_days=app.config.get("CAP_CRITICAL_THRESHOLD_DAYS", 1),
    )
    results = {
        "run_date": today.isoformat(),
        "detected": len(scan["events"]),
        "dispatched": 0,
        "skipped": 0,
        "notifications_created": 0,
        "errors": list(scan["errors"]),
    }

    for event in scan["events"]:
        key = escalation_dedupe_key(event["cap_id"], event["milestone_id"], event["type"], today)
        if session.query(CapEscalationDelivery.id).filter_by(dedupe_key=key).first() is not None:
            results["skipped"] += 1
            continue
        try:
            with session.begin_nested():
                session.add(CapEscalationDelivery(
                    dedupe_key=key,
                    cap_id=event["cap_id"],
                    milestone_id=event["milestone_id"],
                    event_type=event["type"],
                    run_date=today,
                    recipient_count=len(event["recipient_ids"]),
                ))
                created = NotificationService.notify_cap_escalation(event, session=session, commit=False)
        except IntegrityError:
            # A concurrent run recorded the same key first.
            results["skipped"] += 1
            continue
        results["dispatched"] += 1
        results["notifications_created"] += len(created)
        logger.info(
            "Escalation dispatched cap=%s type=%s recipients=%d",
            event["cap_id"], event["type"], len(created),
            extra={"cap_id": event["cap_id"], "event_type": f"cap.escalation.{event['type']}"},
        )

    session.commit()
    logger.info("CAP deadline escalation: %s", results)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Milestone sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("cap_milestone_sweep")
def run_cap_milestone_sweep(app, *, session=None, today: date | None = None) -> dict[str, Any]:
    session = session or db.session
    updated = update_milestone_statuses(session, today=today)
    return {"milestones_marked_overdue": updated}
