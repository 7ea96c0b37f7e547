"""
Roster domain models — the identity/roster collaborator.

Models:
    - Organization:      an air navigation service provider taking part in the programme
    - User:              platform account with a single role and a home organization
    - ReviewerProfile:   reviewer pool entry; ``home_organization_id`` drives COI detection
    - Review:            a peer review hosted by one organization
    - ReviewTeamMember:  reviewer ↔ review assignment (the assignment history)

These tables are owned by the roster subsystem.  The engine reads them for
conflict detection and role checks and writes only ``Review.phase`` /
``Review.status`` through the fieldwork gate.

Architecture:
    Organization ──1:N──▶ User
    Organization ──1:N──▶ Review (host)
    User ──1:1──▶ ReviewerProfile ──1:N──▶ ReviewTeamMember ◀──N:1── Review
"""

from datetime import datetime, timezone

from peer_review.models import db


# ── Constants ────────────────────────────────────────────────────────────────

USER_ROLES = {
    "SUPER_ADMIN", "SYSTEM_ADMIN", "PROGRAMME_COORDINATOR",
    "STEERING_COMMITTEE", "LEAD_REVIEWER", "PEER_REVIEWER",
    "ANSP_ADMIN", "SAFETY_MANAGER", "QUALITY_MANAGER", "STAFF",
}

# COI administration, COI overrides, checklist override / remove-override
ADMIN_ROLES = frozenset({"SUPER_ADMIN", "SYSTEM_ADMIN", "PROGRAMME_COORDINATOR"})

FIELDWORK_COMPLETION_ROLES = frozenset({"SUPER_ADMIN", "PROGRAMME_COORDINATOR", "LEAD_REVIEWER"})

# May tick and untick checklist items
CHECKLIST_EDIT_ROLES = frozenset({
    "SUPER_ADMIN", "SYSTEM_ADMIN", "PROGRAMME_COORDINATOR", "LEAD_REVIEWER", "PEER_REVIEWER",
})

# Corrective action plans: authoring (host side), review and verification
CAP_CREATE_ROLES = frozenset({"SUPER_ADMIN", "ANSP_ADMIN", "SAFETY_MANAGER", "QUALITY_MANAGER"})
CAP_REVIEW_ROLES = frozenset({
    "SUPER_ADMIN", "SYSTEM_ADMIN", "PROGRAMME_COORDINATOR", "STEERING_COMMITTEE", "LEAD_REVIEWER",
})
CAP_VERIFY_ROLES = CAP_REVIEW_ROLES | {"PEER_REVIEWER"}

# Organization focal points receiving CAP escalations
FOCAL_POINT_ROLES = frozenset({"SAFETY_MANAGER", "ANSP_ADMIN"})

REVIEW_STATUSES = [
    "REQUESTED", "PLANNING", "SCHEDULED", "IN_PROGRESS",
    "REPORT_DRAFTING", "REPORT_REVIEW", "COMPLETED", "CANCELLED",
]

REVIEW_PHASES = [
    "PLANNING", "PREPARATION", "ON_SITE", "REPORTING", "FOLLOW_UP", "CLOSED",
]

# A review in one of these statuses has produced results, so its team is
# considered to have recently reviewed the host organization.
REVIEW_RESULT_STATUSES = frozenset({"COMPLETED", "REPORT_DRAFTING", "REPORT_REVIEW"})

TEAM_ROLES = {"LEAD_REVIEWER", "REVIEWER", "OBSERVER", "TRAINEE"}


def _utcnow():
    return datetime.now(timezone.utc)


def _in_clause(values):
    return ",".join(f"'{v}'" for v in values)


# ═════════════════════════════════════════════════════════════════════════════
# Organization / User
# ═════════════════════════════════════════════════════════════════════════════


class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=True, comment="ICAO-style short code")
    country = db.Column(db.String(100), default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "country": self.country,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<Organization {self.id}: {self.name}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    full_name = db.Column(db.String(200), default="")
    role = db.Column(db.String(30), nullable=False, default="STAFF")
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"role IN ({_in_clause(sorted(USER_ROLES))})",
            name="ck_user_role",
        ),
    )

    organization = db.relationship("Organization", foreign_keys=[organization_id])

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "organization_id": self.organization_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} [{self.role}]>"


# ═════════════════════════════════════════════════════════════════════════════
# ReviewerProfile
# ═════════════════════════════════════════════════════════════════════════════


class ReviewerProfile(db.Model):
    """
    Reviewer pool entry.

    ``home_organization_id`` is the reviewer's current employer; it is the
    source of HOME_ORGANIZATION conflicts.  Assignment history is the set of
    ``ReviewTeamMember`` rows.
    """

    __tablename__ = "reviewer_profiles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    home_organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = db.relationship("User", foreign_keys=[user_id])
    home_organization = db.relationship("Organization", foreign_keys=[home_organization_id])
    assignments = db.relationship(
        "ReviewTeamMember", back_populates="reviewer", lazy="select",
        cascade="all, delete-orphan",
    )

    @property
    def display_name(self):
        if self.user is not None:
            return self.user.full_name or self.user.email
        return f"Reviewer {self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "display_name": self.display_name,
            "home_organization_id": self.home_organization_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<ReviewerProfile {self.id}: user={self.user_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Review / ReviewTeamMember
# ═════════════════════════════════════════════════════════════════════════════


class Review(db.Model):
    """
    Peer review of a host organization.

    Lifecycle phases:
        PLANNING → PREPARATION → ON_SITE → REPORTING → FOLLOW_UP → CLOSED
    The PREPARATION/ON_SITE → REPORTING step is owned by the fieldwork gate.
    """

    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    reference_number = db.Column(db.String(30), unique=True, nullable=True, comment="e.g. PR-2026-004")
    host_organization_id = db.Column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    status = db.Column(db.String(30), nullable=False, default="REQUESTED")
    phase = db.Column(db.String(30), nullable=False, default="PLANNING")

    planned_start_date = db.Column(db.Date, nullable=True)
    planned_end_date = db.Column(db.Date, nullable=True)
    actual_start_date = db.Column(db.Date, nullable=True)
    actual_end_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.CheckConstraint(
            f"status IN ({_in_clause(REVIEW_STATUSES)})",
            name="ck_review_status",
        ),
        db.CheckConstraint(
            f"phase IN ({_in_clause(REVIEW_PHASES)})",
            name="ck_review_phase",
        ),
    )

    host_organization = db.relationship("Organization", foreign_keys=[host_organization_id])
    team_members = db.relationship(
        "ReviewTeamMember", back_populates="review", lazy="select",
        cascade="all, delete-orphan",
    )

    @property
    def end_date(self):
        """Actual end date, falling back to the planned one."""
        return self.actual_end_date or self.planned_end_date

    def to_dict(self):
        return {
            "id": self.id,
            "reference_number": self.reference_number,
            "host_organization_id": self.host_organization_id,
            "status": self.status,
            "phase": self.phase,
            "planned_start_date": self.planned_start_date.isoformat() if self.planned_start_date else None,
            "planned_end_date": self.planned_end_date.isoformat() if self.planned_end_date else None,
            "actual_start_date": self.actual_start_date.isoformat() if self.actual_start_date else None,
            "actual_end_date": self.actual_end_date.isoformat() if self.actual_end_date else None,
        }

    def __repr__(self):
        return f"<Review {self.id}: {self.reference_number} [{self.phase}/{self.status}]>"


class ReviewTeamMember(db.Model):
    __tablename__ = "review_team_members"
    __table_args__ = (
        db.UniqueConstraint("review_id", "reviewer_profile_id", name="uq_review_team_member"),
    )

    id = db.Column(db.Integer, primary_key=True)
    review_id = db.Column(
        db.Integer, db.ForeignKey("reviews.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    reviewer_profile_id = db.Column(
        db.Integer, db.ForeignKey("reviewer_profiles.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    team_role = db.Column(db.String(30), nullable=False, default="REVIEWER")
    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    review = db.relationship("Review", back_populates="team_members")
    reviewer = db.relationship("ReviewerProfile", back_populates="assignments")

    def to_dict(self):
        return {
            "id": self.id,
            "review_id": self.review_id,
            "reviewer_profile_id": self.reviewer_profile_id,
            "team_role": self.team_role,
        }

    def __repr__(self):
        return f"<ReviewTeamMember review={self.review_id} reviewer={self.reviewer_profile_id}>"
