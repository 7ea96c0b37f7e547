"""
Conflict-of-interest domain models.

Models:
    - ReviewerCOI:            conflict record for a (reviewer, organization) pair
    - ConflictOverrideEvent:  append-only override log (issued / revoked)

Business rules:
    - HOME_ORGANIZATION and RECENT_REVIEW records with ``is_auto_detected``
      are created and retired only by the detector sync.  Every other record
      changes only through explicit administrative action.
    - Override events are NEVER updated or deleted.  An ``issued`` row is the
      grant; a ``revoked`` row points at the grant it cancels.  The current
      state of a grant is derived: valid iff no revoking row exists and
      ``expires_at`` is unset or in the future.
    - An override only neutralises SOFT_WARNING conflicts.
"""

from datetime import date, datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

COI_TYPES = [
    "HOME_ORGANIZATION", "FAMILY_RELATIONSHIP", "FORMER_EMPLOYEE",
    "BUSINESS_INTEREST", "RECENT_REVIEW", "OTHER",
]

COI_SEVERITIES = ["HARD_BLOCK", "SOFT_WARNING"]

# Types derived by the detector; never declared by hand.
AUTO_DETECTED_TYPES = frozenset({"HOME_ORGANIZATION", "RECENT_REVIEW"})

# Types an administrator or the reviewer may declare, with default severity.
MANUAL_TYPE_DEFAULT_SEVERITY = {
    "FAMILY_RELATIONSHIP": "HARD_BLOCK",
    "FORMER_EMPLOYEE": "SOFT_WARNING",
    "BUSINESS_INTEREST": "SOFT_WARNING",
    "OTHER": "SOFT_WARNING",
}

OVERRIDE_ACTIONS = frozenset({"issued", "revoked"})


def _utcnow():
    return datetime.now(timezone.utc)


def _in_clause(values):
    return ",".join(f"'{v}'" for v in values)


# ═════════════════════════════════════════════════════════════════════════════
# ReviewerCOI
# ═════════════════════════════════════════════════════════════════════════════


class ReviewerCOI(db.Model):
    __tablename__ = "reviewer_cois"

    id = db.Column(db.Integer, primary_key=True)
    reviewer_profile_id = db.Column(
        db.Integer, db.ForeignKey("reviewer_profiles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    coi_type = db.Column(db.String(30), nullable=False)
    severity = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.Text, default="")
    is_auto_detected = db.Column(db.Boolean, nullable=False, default=False)

    # Validity window
    start_date = db.Column(db.Date, nullable=False, default=date.today)
    end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # RECENT_REVIEW: end date of the most recent qualifying review
    last_review_date = db.Column(db.Date, nullable=True)

    declared_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    deactivated_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    deactivation_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"coi_type IN ({_in_clause(COI_TYPES)})",
            name="ck_reviewer_coi_type",
        ),
        db.CheckConstraint(
            f"severity IN ({_in_clause(COI_SEVERITIES)})",
            name="ck_reviewer_coi_severity",
        ),
        db.Index("idx_reviewer_coi_pair", "reviewer_profile_id", "organization_id"),
    )

    reviewer = db.relationship("ReviewerProfile", foreign_keys=[reviewer_profile_id])
    organization = db.relationship("Organization", foreign_keys=[organization_id])

    def is_current(self, on_date: date) -> bool:
        """Active and inside its validity window on *on_date*."""
        if not self.is_active:
            return False
        if self.start_date and self.start_date > on_date:
            return False
        return self.end_date is None or self.end_date >= on_date

    def to_dict(self):
        return {
            "id": self.id,
            "reviewer_profile_id": self.reviewer_profile_id,
            "organization_id": self.organization_id,
            "coi_type": self.coi_type,
            "severity": self.severity,
            "reason": self.reason,
            "is_auto_detected": self.is_auto_detected,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "last_review_date": self.last_review_date.isoformat() if self.last_review_date else None,
            "is_active": self.is_active,
            "declared_by_id": self.declared_by_id,
            "deactivated_by_id": self.deactivated_by_id,
            "deactivation_reason": self.deactivation_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<ReviewerCOI {self.id}: reviewer={self.reviewer_profile_id} "
            f"org={self.organization_id} {self.coi_type}/{self.severity}>"
        )


# ═════════════════════════════════════════════════════════════════════════════
# ConflictOverrideEvent
# ═════════════════════════════════════════════════════════════════════════════


class ConflictOverrideEvent(db.Model):
    """
    Immutable override event.

    ``issued`` rows carry the scope (reviewer, organization, optional review),
    the justification, the approving actor and optional expiry.
    ``revoked`` rows carry ``revokes_event_id``, the revoking actor and the
    revocation reason.  ``review_id`` NULL on an issued row means the grant
    covers every review of that organization.
    """

    __tablename__ = "coi_override_events"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(20), nullable=False, comment="issued | revoked")

    reviewer_profile_id = db.Column(
        db.Integer, db.ForeignKey("reviewer_profiles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    revokes_event_id = db.Column(
        db.Integer, db.ForeignKey("coi_override_events.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )

    justification = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    actor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Approver for issued rows, revoker for revoked rows",
    )
    actor_name_snapshot = db.Column(db.String(200), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.CheckConstraint("action IN ('issued','revoked')", name="ck_coi_override_action"),
        db.CheckConstraint(
            "action != 'revoked' OR revokes_event_id IS NOT NULL",
            name="ck_coi_override_revoke_target",
        ),
        db.Index("idx_coi_override_pair", "reviewer_profile_id", "organization_id"),
    )

    revokes = db.relationship("ConflictOverrideEvent", remote_side=[id], foreign_keys=[revokes_event_id])

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "reviewer_profile_id": self.reviewer_profile_id,
            "organization_id": self.organization_id,
            "review_id": self.review_id,
            "revokes_event_id": self.revokes_event_id,
            "justification": self.justification,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "actor_id": self.actor_id,
            "actor_name_snapshot": self.actor_name_snapshot,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<ConflictOverrideEvent {self.id}: {self.action} reviewer={self.reviewer_profile_id}>"
