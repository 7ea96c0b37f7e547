"""initial_gating_engine_schema

Roster, evidence, COI registry, fieldwork checklist, CAP tracking,
audit log and notification tables.

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c3e5f70001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    # ── Roster ───────────────────────────────────────────────────────────
    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("code", sa.String(length=20), nullable=True),
            sa.Column("country", sa.String(length=100), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="STAFF"),
            sa.Column("organization_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_users_organization_id", "users", ["organization_id"])

    if "reviewer_profiles" not in existing_tables:
        op.create_table(
            "reviewer_profiles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("home_organization_id", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["home_organization_id"], ["organizations.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id"),
        )
        op.create_index(
            "ix_reviewer_profiles_home_organization_id", "reviewer_profiles", ["home_organization_id"],
        )

    if "reviews" not in existing_tables:
        op.create_table(
            "reviews",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reference_number", sa.String(length=30), nullable=True),
            sa.Column("host_organization_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="REQUESTED"),
            sa.Column("phase", sa.String(length=30), nullable=False, server_default="PLANNING"),
            sa.Column("planned_start_date", sa.Date(), nullable=True),
            sa.Column("planned_end_date", sa.Date(), nullable=True),
            sa.Column("actual_start_date", sa.Date(), nullable=True),
            sa.Column("actual_end_date", sa.Date(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["host_organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reference_number"),
        )
        op.create_index("ix_reviews_host_organization_id", "reviews", ["host_organization_id"])

    if "review_team_members" not in existing_tables:
        op.create_table(
            "review_team_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=False),
            sa.Column("reviewer_profile_id", sa.Integer(), nullable=False),
            sa.Column("team_role", sa.String(length=30), nullable=False, server_default="REVIEWER"),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["reviewer_profile_id"], ["reviewer_profiles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("review_id", "reviewer_profile_id", name="uq_review_team_member"),
        )
        op.create_index("ix_review_team_members_review_id", "review_team_members", ["review_id"])
        op.create_index(
            "ix_review_team_members_reviewer_profile_id", "review_team_members", ["reviewer_profile_id"],
        )

    # ── Evidence ─────────────────────────────────────────────────────────
    if "findings" not in existing_tables:
        op.create_table(
            "findings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("reference_number", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=False, server_default="MINOR"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="OPEN"),
            sa.Column("cap_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_findings_review_id", "findings", ["review_id"])
        op.create_index("ix_findings_organization_id", "findings", ["organization_id"])

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=False),
            sa.Column("finding_id", sa.Integer(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="OTHER"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="UPLOADED"),
            sa.Column("file_name", sa.String(length=300), nullable=False),
            sa.Column("uploaded_by_id", sa.Integer(), nullable=True),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["uploaded_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_documents_review_id", "documents", ["review_id"])
        op.create_index("ix_documents_finding_id", "documents", ["finding_id"])
        op.create_index("idx_document_review_category", "documents", ["review_id", "category"])

    # ── Conflict of interest ─────────────────────────────────────────────
    if "reviewer_cois" not in existing_tables:
        op.create_table(
            "reviewer_cois",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("reviewer_profile_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("coi_type", sa.String(length=30), nullable=False),
            sa.Column("severity", sa.String(length=20), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("is_auto_detected", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_review_date", sa.Date(), nullable=True),
            sa.Column("declared_by_id", sa.Integer(), nullable=True),
            sa.Column("deactivated_by_id", sa.Integer(), nullable=True),
            sa.Column("deactivation_reason", sa.Text(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["reviewer_profile_id"], ["reviewer_profiles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["declared_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["deactivated_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("severity IN ('HARD_BLOCK','SOFT_WARNING')", name="ck_reviewer_coi_severity"),
        )
        op.create_index("ix_reviewer_cois_reviewer_profile_id", "reviewer_cois", ["reviewer_profile_id"])
        op.create_index("ix_reviewer_cois_organization_id", "reviewer_cois", ["organization_id"])
        op.create_index("idx_reviewer_coi_pair", "reviewer_cois", ["reviewer_profile_id", "organization_id"])

    if "coi_override_events" not in existing_tables:
        op.create_table(
            "coi_override_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("reviewer_profile_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=True),
            sa.Column("revokes_event_id", sa.Integer(), nullable=True),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("actor_name_snapshot", sa.String(length=200), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["reviewer_profile_id"], ["reviewer_profiles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["revokes_event_id"], ["coi_override_events.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint("action IN ('issued','revoked')", name="ck_coi_override_action"),
            sa.CheckConstraint(
                "action != 'revoked' OR revokes_event_id IS NOT NULL",
                name="ck_coi_override_revoke_target",
            ),
        )
        op.create_index("ix_coi_override_events_reviewer_profile_id", "coi_override_events", ["reviewer_profile_id"])
        op.create_index("ix_coi_override_events_organization_id", "coi_override_events", ["organization_id"])
        op.create_index("ix_coi_override_events_review_id", "coi_override_events", ["review_id"])
        op.create_index("ix_coi_override_events_revokes_event_id", "coi_override_events", ["revokes_event_id"])
        op.create_index(
            "idx_coi_override_pair", "coi_override_events", ["reviewer_profile_id", "organization_id"],
        )

    # ── Fieldwork checklist ──────────────────────────────────────────────
    if "fieldwork_checklist_items" not in existing_tables:
        op.create_table(
            "fieldwork_checklist_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=False),
            sa.Column("item_code", sa.String(length=50), nullable=False),
            sa.Column("phase", sa.String(length=20), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("label", sa.String(length=200), nullable=False),
            sa.Column("guidance", sa.Text(), nullable=True),
            sa.Column("validation_rule", sa.JSON(), nullable=True),
            sa.Column("is_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_by_id", sa.Integer(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("is_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("override_reason", sa.Text(), nullable=True),
            sa.Column("overridden_by_id", sa.Integer(), nullable=True),
            sa.Column("overridden_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["completed_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["overridden_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("review_id", "item_code", name="uq_checklist_review_item"),
            sa.CheckConstraint("phase IN ('PRE_VISIT','ON_SITE','POST_VISIT')", name="ck_checklist_phase"),
        )
        op.create_index("ix_fieldwork_checklist_items_review_id", "fieldwork_checklist_items", ["review_id"])

    if "checklist_override_events" not in existing_tables:
        op.create_table(
            "checklist_override_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("item_id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("actor_name_snapshot", sa.String(length=200), nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["item_id"], ["fieldwork_checklist_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(
                "action IN ('overridden','override_removed')", name="ck_checklist_override_action",
            ),
        )
        op.create_index("ix_checklist_override_events_item_id", "checklist_override_events", ["item_id"])
        op.create_index("ix_checklist_override_events_review_id", "checklist_override_events", ["review_id"])

    # ── Corrective action plans ──────────────────────────────────────────
    if "corrective_action_plans" not in existing_tables:
        op.create_table(
            "corrective_action_plans",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("finding_id", sa.Integer(), nullable=False),
            sa.Column("organization_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
            sa.Column("root_cause", sa.Text(), nullable=True),
            sa.Column("corrective_action", sa.Text(), nullable=True),
            sa.Column("preventive_action", sa.Text(), nullable=True),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("assigned_to_id", sa.Integer(), nullable=True),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("submitted_by_id", sa.Integer(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
            sa.Column("review_comments", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("verified_by_id", sa.Integer(), nullable=True),
            sa.Column("verification_notes", sa.Text(), nullable=True),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["submitted_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reviewed_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["verified_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("finding_id"),
        )
        op.create_index(
            "ix_corrective_action_plans_organization_id", "corrective_action_plans", ["organization_id"],
        )

    if "cap_milestones" not in existing_tables:
        op.create_table(
            "cap_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("cap_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("target_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(["cap_id"], ["corrective_action_plans.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_cap_milestones_cap_id", "cap_milestones", ["cap_id"])

    if "cap_escalation_deliveries" not in existing_tables:
        op.create_table(
            "cap_escalation_deliveries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("dedupe_key", sa.String(length=32), nullable=False),
            sa.Column("cap_id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=30), nullable=False),
            sa.Column("run_date", sa.Date(), nullable=False),
            sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["cap_id"], ["corrective_action_plans.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["cap_milestones.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dedupe_key"),
        )
        op.create_index("ix_cap_escalation_deliveries_cap_id", "cap_escalation_deliveries", ["cap_id"])

    # ── Audit + notifications ────────────────────────────────────────────
    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("review_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=200), nullable=False, server_default="system"),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_review", "audit_logs", ["review_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])


def downgrade():
    for table in (
        "notifications",
        "audit_logs",
        "cap_escalation_deliveries",
        "cap_milestones",
        "corrective_action_plans",
        "checklist_override_events",
        "fieldwork_checklist_items",
        "coi_override_events",
        "reviewer_cois",
        "documents",
        "findings",
        "review_team_members",
        "reviews",
        "reviewer_profiles",
        "users",
        "organizations",
    ):
        op.drop_table(table)
