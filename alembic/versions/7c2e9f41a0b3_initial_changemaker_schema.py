"""Initial Changemaker schema

Revision ID: 7c2e9f41a0b3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "7c2e9f41a0b3"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def _fk(column: str, target: str, *, nullable: bool = False, ondelete: str = "CASCADE"):
    return sa.Column(
        column,
        sa.String(36),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def upgrade() -> None:
    """Create every Changemaker table."""

    # --- tenants & people ---
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("active", sa.Boolean, server_default=sa.true()),
        sa.Column("published", sa.Boolean, server_default=sa.true()),
        sa.Column("tenant_id", sa.String(100), nullable=False, server_default="default"),
        sa.Column("reward_stack_enabled", sa.Boolean, server_default=sa.false()),
        sa.Column("reward_stack_environment", sa.String(20), nullable=False, server_default="QA"),
        sa.Column("reward_stack_program_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_org_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_webhook_secret", sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("supabase_user_id", sa.String(64), nullable=True, unique=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("display_name", sa.String(200), nullable=True),
        sa.Column("phone", sa.String(40), nullable=True),
        sa.Column("is_platform_super_admin", sa.Boolean, server_default=sa.false()),
        sa.Column("address_line1", sa.String(255), nullable=True),
        sa.Column("address_line2", sa.String(255), nullable=True),
        sa.Column("city", sa.String(100), nullable=True),
        sa.Column("state", sa.String(100), nullable=True),
        sa.Column("zip_code", sa.String(20), nullable=True),
        sa.Column("country", sa.String(2), nullable=True),
        sa.Column("reward_stack_participant_id", sa.String(100), nullable=True),
        sa.Column(
            "reward_stack_sync_status", sa.String(20), nullable=False, server_default="NOT_SYNCED"
        ),
        sa.Column("reward_stack_last_sync", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_users_participant_id", "users", ["reward_stack_participant_id"])

    op.create_table(
        "workspace_memberships",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("user_id", "users.id"),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("role", sa.String(20), nullable=False, server_default="PARTICIPANT"),
        sa.Column("is_primary", sa.Boolean, server_default=sa.false()),
        sa.Column("preferences", postgresql.JSONB, nullable=True),
        sa.Column(
            "joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_membership_user_workspace"),
    )
    op.create_index(
        "ix_membership_workspace_role", "workspace_memberships", ["workspace_id", "role"]
    )

    # --- challenges & activities ---
    op.create_table(
        "challenges",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enrollment_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="DRAFT"),
        sa.Column("reward_type", sa.String(20), nullable=True),
        sa.Column("reward_config", postgresql.JSONB, nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_challenges_workspace_status", "challenges", ["workspace_id", "status"])

    op.create_table(
        "challenge_assignments",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("challenge_id", "challenges.id"),
        _fk("manager_id", "users.id"),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("assigned_by", sa.String(36), nullable=True),
        sa.Column(
            "assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("challenge_id", "manager_id", name="uq_assignment_challenge_manager"),
    )

    op.create_table(
        "enrollments",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("user_id", "users.id"),
        _fk("challenge_id", "challenges.id"),
        sa.Column("status", sa.String(20), nullable=False, server_default="ENROLLED"),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("user_id", "challenge_id", name="uq_enrollment_user_challenge"),
    )

    op.create_table(
        "activity_templates",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("base_points", sa.Integer, nullable=False, server_default="10"),
        sa.Column("requires_approval", sa.Boolean, server_default=sa.true()),
        sa.Column("allow_multiple", sa.Boolean, server_default=sa.false()),
        _created_at(),
    )

    op.create_table(
        "activities",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("template_id", "activity_templates.id"),
        _fk("challenge_id", "challenges.id"),
        sa.Column("points_value", sa.Integer, nullable=False, server_default="10"),
        sa.Column("max_submissions", sa.Integer, nullable=False, server_default="1"),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_required", sa.Boolean, server_default=sa.false()),
        sa.Column("position", sa.Integer, nullable=False, server_default="0"),
        _created_at(),
    )

    op.create_table(
        "activity_submissions",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("activity_id", "activities.id"),
        _fk("user_id", "users.id"),
        _fk("enrollment_id", "enrollments.id"),
        sa.Column("text_content", sa.Text, nullable=True),
        sa.Column("file_urls", postgresql.JSONB, nullable=True),
        sa.Column("link_url", sa.String(1000), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("points_awarded", sa.Integer, nullable=True),
        sa.Column("review_notes", sa.Text, nullable=True),
        sa.Column("reviewed_by", sa.String(36), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manager_notes", sa.Text, nullable=True),
        sa.Column("manager_reviewed_by", sa.String(36), nullable=True),
        sa.Column("manager_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reward_issuance_id", sa.String(36), nullable=True, unique=True),
        sa.Column("reward_issued", sa.Boolean, server_default=sa.false()),
        sa.Column(
            "submitted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_submissions_activity_user", "activity_submissions", ["activity_id", "user_id"]
    )
    op.create_index("ix_submissions_status", "activity_submissions", ["status"])

    # --- points ---
    op.create_table(
        "points_balances",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("user_id", "users.id"),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("total_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("available_points", sa.Integer, nullable=False, server_default="0"),
        _updated_at(),
        sa.UniqueConstraint("user_id", "workspace_id", name="uq_points_user_workspace"),
    )
    op.create_index(
        "ix_points_workspace_total", "points_balances", ["workspace_id", "total_points"]
    )

    op.create_table(
        "workspace_points_budgets",
        sa.Column(
            "workspace_id",
            sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("total_budget", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allocated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_by", sa.String(36), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "challenge_points_budgets",
        sa.Column(
            "challenge_id",
            sa.String(36),
            sa.ForeignKey("challenges.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("total_budget", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allocated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_by", sa.String(36), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "points_ledger",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("challenge_id", sa.String(36), nullable=True),
        _fk("to_user_id", "users.id"),
        sa.Column("actor_user_id", sa.String(36), nullable=True),
        sa.Column("submission_id", sa.String(36), nullable=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_points_ledger_workspace_time", "points_ledger", ["workspace_id", "created_at"]
    )

    # --- invites ---
    op.create_table(
        "invite_codes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(16), nullable=False, unique=True),
        _fk("workspace_id", "workspaces.id"),
        _fk("challenge_id", "challenges.id", nullable=True, ondelete="SET NULL"),
        sa.Column("role", sa.String(20), nullable=False, server_default="PARTICIPANT"),
        sa.Column("target_email", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_uses", sa.Integer, nullable=False, server_default="1"),
        sa.Column("used_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(36), nullable=False),
        _created_at(),
    )
    op.create_index("ix_invite_codes_target_email", "invite_codes", ["target_email"])

    op.create_table(
        "invite_redemptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _fk("invite_id", "invite_codes.id"),
        _fk("user_id", "users.id"),
        sa.Column(
            "redeemed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("invite_id", "user_id", name="uq_redemption_invite_user"),
    )

    # --- audit trail ---
    op.create_table(
        "activity_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("challenge_id", sa.String(36), nullable=True),
        sa.Column("enrollment_id", sa.String(36), nullable=True),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("actor_user_id", sa.String(36), nullable=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_activity_events_workspace_time", "activity_events", ["workspace_id", "created_at"]
    )
    op.create_index("ix_activity_events_challenge", "activity_events", ["challenge_id"])

    # --- rewards ---
    op.create_table(
        "reward_issuances",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("workspace_id", "workspaces.id"),
        _fk("user_id", "users.id"),
        sa.Column("challenge_id", sa.String(36), nullable=True),
        sa.Column("submission_id", sa.String(36), nullable=True),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=True),
        sa.Column("sku_id", sa.String(100), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("reward_stack_status", sa.String(20), nullable=True, server_default="PENDING"),
        sa.Column("reward_stack_transaction_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_adjustment_id", sa.String(100), nullable=True),
        sa.Column("reward_stack_error_message", sa.Text, nullable=True),
        sa.Column("reward_stack_webhook_received", sa.Boolean, server_default=sa.false()),
        sa.Column("external_response", postgresql.JSONB, nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issued_by", sa.String(36), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_reward_issuances_workspace_status", "reward_issuances", ["workspace_id", "status"]
    )
    op.create_index(
        "ix_reward_issuances_transaction", "reward_issuances", ["reward_stack_transaction_id"]
    )
    op.create_index(
        "ix_reward_issuances_adjustment", "reward_issuances", ["reward_stack_adjustment_id"]
    )

    op.create_table(
        "workspace_skus",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("sku_id", sa.String(100), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("value", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("requires_shipping", sa.Boolean, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("workspace_id", "sku_id", name="uq_workspace_sku"),
    )

    op.create_table(
        "reward_stack_webhook_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("event_id", sa.String(100), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("processed", sa.Boolean, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_webhook_logs_workspace_event", "reward_stack_webhook_logs", ["workspace_id", "event_id"]
    )
    op.create_index(
        "ix_webhook_logs_workspace_time", "reward_stack_webhook_logs", ["workspace_id", "created_at"]
    )

    # --- email ---
    op.create_table(
        "workspace_email_settings",
        sa.Column(
            "workspace_id",
            sa.String(36),
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("from_name", sa.String(200), nullable=True),
        sa.Column("from_email", sa.String(255), nullable=True),
        sa.Column("reply_to", sa.String(255), nullable=True),
        sa.Column("footer_html", sa.Text, nullable=True),
        sa.Column("brand_color", sa.String(20), nullable=True),
        sa.Column("updated_by", sa.String(36), nullable=True),
        _updated_at(),
    )

    op.create_table(
        "workspace_email_templates",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("subject", sa.String(300), nullable=True),
        sa.Column("html", sa.Text, nullable=True),
        sa.Column("enabled", sa.Boolean, server_default=sa.true()),
        sa.Column("updated_by", sa.String(36), nullable=True),
        _updated_at(),
        sa.UniqueConstraint("workspace_id", "type", name="uq_email_template_workspace_type"),
    )

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("user_id", "users.id"),
        _fk("workspace_id", "workspaces.id"),
        sa.Column("type", sa.String(40), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("action_url", sa.String(500), nullable=True),
        sa.Column("action_text", sa.String(100), nullable=True),
        sa.Column("read", sa.Boolean, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed", sa.Boolean, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_notifications_user_workspace", "notifications", ["user_id", "workspace_id", "read"]
    )

    # --- durable throttle state ---
    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rate_limit_key_ts", "rate_limit_events", ["key", sa.text("timestamp DESC")]
    )
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    """Drop every Changemaker table in reverse dependency order."""
    for table in (
        "rate_limit_events",
        "notifications",
        "workspace_email_templates",
        "workspace_email_settings",
        "reward_stack_webhook_logs",
        "workspace_skus",
        "reward_issuances",
        "activity_events",
        "invite_redemptions",
        "invite_codes",
        "points_ledger",
        "challenge_points_budgets",
        "workspace_points_budgets",
        "points_balances",
        "activity_submissions",
        "activities",
        "activity_templates",
        "enrollments",
        "challenge_assignments",
        "challenges",
        "workspace_memberships",
        "users",
        "workspaces",
    ):
        op.drop_table(table)
