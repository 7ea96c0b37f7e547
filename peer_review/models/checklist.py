"""
Fieldwork checklist domain models.

Models:
    - ChecklistItem:           one of the fourteen template items instantiated per review
    - ChecklistOverrideEvent:  append-only ledger of coordinator overrides

Business rules:
    - Items are created once per review by ``initialize_checklist`` and never
      added or removed afterwards.  (review_id, item_code) is unique.
    - ``is_completed`` records a user action; it is NOT a cached rule result.
      The rule is re-evaluated on every read.
    - ``is_overridden`` / ``override_*`` mirror the latest ledger event so
      gate queries stay a single-table read.  The ledger is the audit history.
"""

from datetime import datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CHECKLIST_PHASES = ["PRE_VISIT", "ON_SITE", "POST_VISIT"]

CHECKLIST_OVERRIDE_ACTIONS = frozenset({"overridden", "override_removed"})


def _utcnow():
    return datetime.now(timezone.utc)


class ChecklistItem(db.Model):
    __tablename__ = "fieldwork_checklist_items"
    __table_args__ = (
        db.UniqueConstraint("review_id", "item_code", name="uq_checklist_review_item"),
        db.CheckConstraint(
            "phase IN ('PRE_VISIT','ON_SITE','POST_VISIT')",
            name="ck_checklist_phase",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    item_code = db.Column(db.String(50), nullable=False)
    phase = db.Column(db.String(20), nullable=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    label = db.Column(db.String(200), nullable=False)
    guidance = db.Column(db.Text, default="")
    validation_rule = db.Column(db.JSON, nullable=True, comment="Serialised rule; see checklist_rules.parse_rule")

    # Completion (user action record)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Override (mirrors latest ChecklistOverrideEvent)
    is_overridden = db.Column(db.Boolean, nullable=False, default=False)
    override_reason = db.Column(db.Text, nullable=True)
    overridden_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    overridden_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    review = db.relationship("Review", foreign_keys=[review_id])
    override_events = db.relationship(
        "ChecklistOverrideEvent", backref="item", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ChecklistOverrideEvent.occurred_at",
    )

    @property
    def is_satisfied(self) -> bool:
        """Counts towards the fieldwork gate: completed or overridden."""
        return bool(self.is_completed or self.is_overridden)

    def to_dict(self):
        return {
            "id": self.id,
            "review_id": self.review_id,
            "item_code": self.item_code,
            "phase": self.phase,
            "sort_order": self.sort_order,
            "label": self.label,
            "guidance": self.guidance,
            "validation_rule": self.validation_rule,
            "is_completed": self.is_completed,
            "completed_by_id": self.completed_by_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "is_overridden": self.is_overridden,
            "override_reason": self.override_reason,
            "overridden_by_id": self.overridden_by_id,
            "overridden_at": self.overridden_at.isoformat() if self.overridden_at else None,
        }

    def __repr__(self):
        return f"<ChecklistItem {self.id}: review={self.review_id} {self.item_code}>"


class ChecklistOverrideEvent(db.Model):
    """Immutable override / override-removal record for a checklist item."""

    __tablename__ = "checklist_override_events"
    __table_args__ = (
        db.CheckConstraint(
            "action IN ('overridden','override_removed')",
            name="ck_checklist_override_action",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(
        db.Integer, db.ForeignKey("fieldwork_checklist_items.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(20), nullable=False)
    justification = db.Column(db.Text, nullable=True)
    actor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    actor_name_snapshot = db.Column(db.String(200), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "review_id": self.review_id,
            "action": self.action,
            "justification": self.justification,
            "actor_id": self.actor_id,
            "actor_name_snapshot": self.actor_name_snapshot,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<ChecklistOverrideEvent {self.id}: item={self.item_id} {self.action}>"
