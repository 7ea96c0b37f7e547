"""
Notification Service — the in-app notification collaborator.

Escalation events and override decisions are handed here.  Delivery
channels beyond the ``notifications`` table are out of scope.
"""

from peer_review.models import db
from peer_review.models.notification import Notification

_ESCALATION_TITLES = {
    "7_DAYS_BEFORE": ("CAP {ref} is due in 7 days", "info"),
    "1_DAY_BEFORE": ("CAP {ref} is due tomorrow", "warning"),
    "DUE_TODAY": ("CAP {ref} is due today", "warning"),
    "OVERDUE": ("CAP {ref} is {days} day(s) overdue", "error"),
    "MILESTONE_OVERDUE": ("CAP {ref} milestone is {days} day(s) overdue", "error"),
}


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def broadcast(*, recipient_ids, title, message="", category="system", severity="info",
                  entity_type="", entity_id=None, session=None, commit=True):
        """
        Create one notification per recipient.

        ``commit=False`` leaves the rows flushed so callers can bundle them
        with their own writes.

        Returns:
            List of created Notification instances.
        """
        session = session or db.session
        notifications = []
        for rid in dict.fromkeys(recipient_ids):
            notif = Notification(
                recipient_id=rid,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            session.add(notif)
            notifications.append(notif)
        if commit:
            session.commit()
        else:
            session.flush()
        return notifications

    @staticmethod
    def list_for_recipient(recipient_id, *, unread_only=False, limit=50, offset=0, session=None):
        """Notifications for a user, newest first."""
        session = session or db.session
        q = session.query(Notification).filter(Notification.recipient_id == recipient_id)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total

    # ── Engine integration helpers ────────────────────────────────────────

    @staticmethod
    def notify_cap_escalation(event, *, session=None, commit=True):
        """Render an escalation event from the deadline detector."""
        template, severity = _ESCALATION_TITLES[event["type"]]
        finding = event["finding"]
        title = template.format(ref=finding["reference_number"], days=event.get("days_overdue", 0))
        org_name = event["organization"]["name"] or ""
        if event["type"] == "MILESTONE_OVERDUE":
            message = f"{event.get('milestone_title', 'Milestone')} for {finding['title']} ({org_name})."
            entity_type, entity_id = "cap_milestone", event["milestone_id"]
        else:
            message = f"{finding['title']} ({org_name}), severity {finding['severity']}."
            entity_type, entity_id = "corrective_action_plan", event["cap_id"]
        return NotificationService.broadcast(
            recipient_ids=event["recipient_ids"],
            title=title,
            message=message,
            category="deadline",
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            session=session,
            commit=commit,
        )

    @staticmethod
    def notify_coi_override(event, recipient_ids, *, session=None, commit=True):
        """Tell the reviewer and coordinators about an override decision."""
        verb = "issued" if event.action == "issued" else "revoked"
        return NotificationService.broadcast(
            recipient_ids=recipient_ids,
            title=f"COI override {verb} for reviewer #{event.reviewer_profile_id}",
            message=event.justification or "",
            category="coi",
            severity="warning" if verb == "issued" else "info",
            entity_type="coi_override",
            entity_id=event.id,
            session=session,
            commit=commit,
        )
