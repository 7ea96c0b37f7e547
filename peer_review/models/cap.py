"""
Corrective action plan domain models.

Models:
    - CorrectiveActionPlan:   remediation plan for one finding
    - CapMilestone:           dated step within a plan
    - CapEscalationDelivery:  dedupe ledger for escalation notifications

Architecture:
    Finding ──1:1──▶ CorrectiveActionPlan ──1:N──▶ CapMilestone
    CorrectiveActionPlan ──1:N──▶ CapEscalationDelivery

Lifecycle states:
    CorrectiveActionPlan:  DRAFT → SUBMITTED → UNDER_REVIEW → ACCEPTED → IN_PROGRESS
                           → COMPLETED → VERIFIED → CLOSED
                           SUBMITTED → DRAFT (withdraw), UNDER_REVIEW → REJECTED → DRAFT,
                           COMPLETED → IN_PROGRESS (verification failed)
    CapMilestone:          PENDING → IN_PROGRESS → COMPLETED | OVERDUE | CANCELLED
"""

from datetime import datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

CAP_STATUSES = [
    "DRAFT", "SUBMITTED", "UNDER_REVIEW", "ACCEPTED", "REJECTED",
    "IN_PROGRESS", "COMPLETED", "VERIFIED", "CLOSED",
]

MILESTONE_STATUSES = ["PENDING", "IN_PROGRESS", "COMPLETED", "OVERDUE", "CANCELLED"]

# Plans still worth chasing for deadlines
TRACKABLE_CAP_STATUSES = frozenset({
    "DRAFT", "SUBMITTED", "UNDER_REVIEW", "ACCEPTED", "REJECTED",
    "IN_PROGRESS", "COMPLETED",
})

# Plans whose remediation work is finished
FINISHED_CAP_STATUSES = frozenset({"COMPLETED", "VERIFIED", "CLOSED"})

OPEN_MILESTONE_STATUSES = frozenset({"PENDING", "IN_PROGRESS"})

# Finding severity → suggested days until the CAP is due
SEVERITY_DUE_DAYS = {
    "CRITICAL": 30,
    "MAJOR": 60,
    "MINOR": 90,
    "OBSERVATION": 180,
}
DEFAULT_DUE_DAYS = 90

# Estimated completion when a plan has no milestones
CAP_STATUS_PROGRESS = {
    "DRAFT": 10,
    "SUBMITTED": 20,
    "UNDER_REVIEW": 25,
    "REJECTED": 15,
    "ACCEPTED": 30,
    "IN_PROGRESS": 50,
    "COMPLETED": 80,
    "VERIFIED": 95,
    "CLOSED": 100,
}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

CAP_STATUS_TRANSITIONS = {
    "DRAFT":        ["SUBMITTED"],
    "SUBMITTED":    ["UNDER_REVIEW", "DRAFT"],
    "UNDER_REVIEW": ["ACCEPTED", "REJECTED"],
    "REJECTED":     ["DRAFT"],
    "ACCEPTED":     ["IN_PROGRESS"],
    "IN_PROGRESS":  ["COMPLETED"],
    "COMPLETED":    ["VERIFIED", "IN_PROGRESS"],
    "VERIFIED":     ["CLOSED"],
    "CLOSED":       [],
}


def validate_cap_transition(old_status, new_status):
    """Return True if CorrectiveActionPlan status transition is valid.

    A no-op (same status) counts as valid.
    """
    if old_status == new_status:
        return True
    return new_status in CAP_STATUS_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _in_clause(values):
    return ",".join(f"'{v}'" for v in values)


# ═════════════════════════════════════════════════════════════════════════════
# CorrectiveActionPlan
# ═════════════════════════════════════════════════════════════════════════════


class CorrectiveActionPlan(db.Model):
    __tablename__ = "corrective_action_plans"

    id = db.Column(db.Integer, primary_key=True)
    finding_id = db.Column(
        db.Integer, db.ForeignKey("findings.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(db.String(20), nullable=False, default="DRAFT")

    root_cause = db.Column(db.Text, default="")
    corrective_action = db.Column(db.Text, default="")
    preventive_action = db.Column(db.Text, default="")

    due_date = db.Column(db.Date, nullable=False)
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    # Lifecycle timestamps
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    review_comments = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"status IN ({_in_clause(CAP_STATUSES)})",
            name="ck_cap_status",
        ),
    )

    finding = db.relationship("Finding", foreign_keys=[finding_id])
    organization = db.relationship("Organization", foreign_keys=[organization_id])
    assigned_to = db.relationship("User", foreign_keys=[assigned_to_id])
    milestones = db.relationship(
        "CapMilestone", backref="cap", lazy="select",
        cascade="all, delete-orphan", order_by="CapMilestone.sort_order",
    )

    def to_dict(self, include_milestones=False):
        result = {
            "id": self.id,
            "finding_id": self.finding_id,
            "organization_id": self.organization_id,
            "status": self.status,
            "root_cause": self.root_cause,
            "corrective_action": self.corrective_action,
            "preventive_action": self.preventive_action,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "assigned_to_id": self.assigned_to_id,
            "created_by_id": self.created_by_id,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "review_comments": self.review_comments,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "verification_notes": self.verification_notes,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_milestones:
            result["milestones"] = [m.to_dict() for m in self.milestones]
        return result

    def __repr__(self):
        return f"<CorrectiveActionPlan {self.id}: finding={self.finding_id} [{self.status}]>"


class CapMilestone(db.Model):
    __tablename__ = "cap_milestones"

    id = db.Column(db.Integer, primary_key=True)
    cap_id = db.Column(
        db.Integer, db.ForeignKey("corrective_action_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    target_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="PENDING")
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"status IN ({_in_clause(MILESTONE_STATUSES)})",
            name="ck_cap_milestone_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "cap_id": self.cap_id,
            "title": self.title,
            "target_date": self.target_date.isoformat() if self.target_date else None,
            "status": self.status,
            "sort_order": self.sort_order,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<CapMilestone {self.id}: cap={self.cap_id} [{self.status}]>"


class CapEscalationDelivery(db.Model):
    """
    One row per escalation event handed to the notification collaborator.

    ``dedupe_key`` is derived from (cap_id, milestone_id, event_type, run_date);
    a second run on the same day finds the row and skips the event.
    """

    __tablename__ = "cap_escalation_deliveries"

    id = db.Column(db.Integer, primary_key=True)
    dedupe_key = db.Column(db.String(32), nullable=False, unique=True)
    cap_id = db.Column(
        db.Integer, db.ForeignKey("corrective_action_plans.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("cap_milestones.id", ondelete="CASCADE"), nullable=True,
    )
    event_type = db.Column(db.String(30), nullable=False)
    run_date = db.Column(db.Date, nullable=False)
    recipient_count = db.Column(db.Integer, nullable=False, default=0)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "dedupe_key": self.dedupe_key,
            "cap_id": self.cap_id,
            "milestone_id": self.milestone_id,
            "event_type": self.event_type,
            "run_date": self.run_date.isoformat() if self.run_date else None,
            "recipient_count": self.recipient_count,
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
        }

    def __repr__(self):
        return f"<CapEscalationDelivery {self.id}: cap={self.cap_id} {self.event_type} {self.run_date}>"
