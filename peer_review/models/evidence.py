"""
Evidence domain models — the document and finding stores.

Models:
    - Document:  file attached to a review, optionally linked to a finding as evidence
    - Finding:   observation raised during a review; may require a corrective action plan

Both are consumed read-only by the checklist rule engine.  ``Finding`` also
feeds CAP creation (severity → suggested due date) and receives status
mirroring from CAP transitions.

Lifecycle states:
    Document:  UPLOADED → UNDER_REVIEW → REVIEWED → PENDING_APPROVAL → APPROVED
               UNDER_REVIEW | PENDING_APPROVAL → REJECTED → UPLOADED (re-upload)
    Finding:   OPEN → CAP_REQUIRED → CAP_SUBMITTED → CAP_ACCEPTED → IN_PROGRESS
               → VERIFICATION → CLOSED
"""

from datetime import datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_CATEGORIES = [
    "PRE_VISIT_REQUEST", "HOST_SUBMISSION", "EVIDENCE", "INTERVIEW_NOTES",
    "DRAFT_REPORT", "FINAL_REPORT", "CAP_EVIDENCE", "CORRESPONDENCE", "OTHER",
]

DOCUMENT_STATUSES = [
    "UPLOADED", "UNDER_REVIEW", "REVIEWED", "PENDING_APPROVAL", "APPROVED", "REJECTED",
]

# A document in one of these statuses has been looked at by a reviewer.
REVIEWED_DOCUMENT_STATUSES = frozenset({"REVIEWED", "PENDING_APPROVAL", "APPROVED"})

DOCUMENT_TRANSITIONS = {
    "UPLOADED":         ["UNDER_REVIEW"],
    "UNDER_REVIEW":     ["REVIEWED", "REJECTED"],
    "REVIEWED":         ["PENDING_APPROVAL"],
    "PENDING_APPROVAL": ["APPROVED", "REJECTED"],
    "APPROVED":         [],
    "REJECTED":         ["UPLOADED"],
}

FINDING_SEVERITIES = ["CRITICAL", "MAJOR", "MINOR", "OBSERVATION"]

FINDING_STATUSES = [
    "OPEN", "CAP_REQUIRED", "CAP_SUBMITTED", "CAP_ACCEPTED",
    "IN_PROGRESS", "VERIFICATION", "CLOSED",
]


def validate_document_transition(old_status, new_status):
    """Return True if Document status transition is valid."""
    return new_status in DOCUMENT_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _in_clause(values):
    return ",".join(f"'{v}'" for v in values)


# ═════════════════════════════════════════════════════════════════════════════
# Finding
# ═════════════════════════════════════════════════════════════════════════════


class Finding(db.Model):
    __tablename__ = "findings"

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
        comment="Host organization the finding was raised against",
    )
    reference_number = db.Column(db.String(40), nullable=False, comment="e.g. PR-2026-004-F03")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), nullable=False, default="MINOR")
    status = db.Column(db.String(30), nullable=False, default="OPEN")
    cap_required = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"severity IN ({_in_clause(FINDING_SEVERITIES)})",
            name="ck_finding_severity",
        ),
        db.CheckConstraint(
            f"status IN ({_in_clause(FINDING_STATUSES)})",
            name="ck_finding_status",
        ),
    )

    review = db.relationship("Review", foreign_keys=[review_id])
    organization = db.relationship("Organization", foreign_keys=[organization_id])
    evidence_documents = db.relationship(
        "Document", lazy="select",
        primaryjoin="and_(Finding.id == Document.finding_id, Document.is_deleted == False)",
        viewonly=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "review_id": self.review_id,
            "organization_id": self.organization_id,
            "reference_number": self.reference_number,
            "title": self.title,
            "severity": self.severity,
            "status": self.status,
            "cap_required": self.cap_required,
        }

    def __repr__(self):
        return f"<Finding {self.id}: {self.reference_number} [{self.severity}/{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# Document
# ═════════════════════════════════════════════════════════════════════════════


class Document(db.Model):
    """
    Review document.

    ``finding_id`` set ⇒ the document is evidence for that finding.
    Soft-deleted rows (``is_deleted``) are invisible to rule evaluation.
    """

    __tablename__ = "documents"

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    finding_id = db.Column(
        db.Integer, db.ForeignKey("findings.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    category = db.Column(db.String(30), nullable=False, default="OTHER")
    status = db.Column(db.String(30), nullable=False, default="UPLOADED")
    file_name = db.Column(db.String(300), nullable=False)
    uploaded_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"category IN ({_in_clause(DOCUMENT_CATEGORIES)})",
            name="ck_document_category",
        ),
        db.CheckConstraint(
            f"status IN ({_in_clause(DOCUMENT_STATUSES)})",
            name="ck_document_status",
        ),
        db.Index("idx_document_review_category", "review_id", "category"),
    )

    finding = db.relationship("Finding", foreign_keys=[finding_id])

    def to_dict(self):
        return {
            "id": self.id,
            "review_id": self.review_id,
            "finding_id": self.finding_id,
            "category": self.category,
            "status": self.status,
            "file_name": self.file_name,
            "is_deleted": self.is_deleted,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Document {self.id}: {self.category} [{self.status}]>"
