"""
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for engine mutations.
"""

import json
from datetime import datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "reviewer_coi", "coi_override", "checklist_item",
    "review", "corrective_action_plan", "cap_milestone",
}

AUDIT_ACTIONS = {
    # Conflict registry
    "coi.auto_detected",
    "coi.auto_retired",
    "coi.declared",
    "coi.deactivated",
    # Override authority
    "coi_override.issued",
    "coi_override.revoked",
    # Checklist
    "checklist.initialized",
    "checklist.completed",
    "checklist.uncompleted",
    "checklist.overridden",
    "checklist.override_removed",
    "review.fieldwork_completed",
    # CAP
    "cap.created",
    "cap.transition",
    "cap_milestone.overdue",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every engine mutation.

    One row per action.  ``diff_json`` carries old→new snapshot for
    state changes plus any justification text.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_review", "review_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer,
        db.ForeignKey("reviews.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="reviewer_coi | coi_override | checklist_item | review | corrective_action_plan | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(
        db.String(60), nullable=False,
        comment="coi_override.issued | checklist.overridden | cap.transition | …",
    )
    actor = db.Column(db.String(200), nullable=False, default="system")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    actor=None,
    review_id: int | None = None,
    diff: dict | None = None,
    session=None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` is a ``User`` or None (system).  Returns the flushed AuditLog.
    """
    session = session or db.session
    log = AuditLog(
        review_id=review_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=(actor.email if actor is not None else "system"),
        actor_user_id=(actor.id if actor is not None else None),
        diff_json=json.dumps(diff or {}, default=str),
    )
    session.add(log)
    session.flush()
    return log
