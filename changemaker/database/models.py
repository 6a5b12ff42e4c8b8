"""
changemaker.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- workspaces              — Tenant boundary + RewardSTACK integration config
- users                   — Accounts mirrored from the auth provider
- workspace_memberships   — Role of a user inside a workspace
- challenges              — Time-boxed engagement programs
- challenge_assignments   — Managers assigned to review a challenge
- enrollments             — Participant ↔ challenge link
- activity_templates      — Reusable activity definitions per workspace
- activities              — Template instances attached to a challenge
- activity_submissions    — Participant work awaiting / after review
- points_balances         — Running points per user per workspace
- workspace_points_budgets / challenge_points_budgets — Award ceilings
- points_ledger           — Append-only record of every points award
- invite_codes / invite_redemptions — Code-based onboarding
- activity_events         — Append-only audit trail
- reward_issuances        — Points/SKU grant lifecycle
- workspace_skus          — Catalog items a workspace may grant
- reward_stack_webhook_logs — Every inbound RewardSTACK webhook
- workspace_email_settings / workspace_email_templates — Outbound email
- notifications           — Per-user, per-workspace inbox
- rate_limit_events       — Durable sliding-window throttle state
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Changemaker ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Role(enum.StrEnum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    PARTICIPANT = "PARTICIPANT"


class ChallengeStatus(enum.StrEnum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class EnrollmentStatus(enum.StrEnum):
    INVITED = "INVITED"
    ENROLLED = "ENROLLED"
    WITHDRAWN = "WITHDRAWN"


class SubmissionStatus(enum.StrEnum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    MANAGER_APPROVED = "MANAGER_APPROVED"
    NEEDS_REVISION = "NEEDS_REVISION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RewardType(enum.StrEnum):
    POINTS = "points"
    SKU = "sku"


class RewardStatus(enum.StrEnum):
    """Local lifecycle of a reward grant."""
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RewardStackStatus(enum.StrEnum):
    """Fulfilment state as reported by RewardSTACK."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"


class RewardStackEnvironment(enum.StrEnum):
    QA = "QA"
    PRODUCTION = "PRODUCTION"


class RewardStackSyncStatus(enum.StrEnum):
    NOT_SYNCED = "NOT_SYNCED"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class ActivityEventType(enum.StrEnum):
    """Categories of activity recorded in activity_events."""
    INVITE_SENT = "INVITE_SENT"
    INVITE_REDEEMED = "INVITE_REDEEMED"
    EMAIL_RESENT = "EMAIL_RESENT"
    ENROLLED = "ENROLLED"
    UNENROLLED = "UNENROLLED"
    RBAC_ROLE_CHANGED = "RBAC_ROLE_CHANGED"
    SUBMISSION_CREATED = "SUBMISSION_CREATED"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    SUBMISSION_MANAGER_REVIEWED = "SUBMISSION_MANAGER_REVIEWED"
    CHALLENGE_CREATED = "CHALLENGE_CREATED"
    CHALLENGE_UPDATED = "CHALLENGE_UPDATED"
    CHALLENGE_DUPLICATED = "CHALLENGE_DUPLICATED"
    CHALLENGE_PUBLISHED = "CHALLENGE_PUBLISHED"
    CHALLENGE_UNPUBLISHED = "CHALLENGE_UNPUBLISHED"
    CHALLENGE_ARCHIVED = "CHALLENGE_ARCHIVED"
    ACTIVITY_CREATED = "ACTIVITY_CREATED"
    ACTIVITY_UPDATED = "ACTIVITY_UPDATED"
    BULK_UNENROLL = "BULK_UNENROLL"
    EMAIL_TEMPLATE_UPDATED = "EMAIL_TEMPLATE_UPDATED"
    WORKSPACE_SETTINGS_UPDATED = "WORKSPACE_SETTINGS_UPDATED"
    REWARD_ISSUED = "REWARD_ISSUED"
    REWARD_FAILED = "REWARD_FAILED"


class NotificationType(enum.StrEnum):
    SHIPPING_ADDRESS_REQUIRED = "SHIPPING_ADDRESS_REQUIRED"
    CHALLENGE_INVITED = "CHALLENGE_INVITED"
    CHALLENGE_ENROLLED = "CHALLENGE_ENROLLED"
    REWARD_ISSUED = "REWARD_ISSUED"
    SUBMISSION_APPROVED = "SUBMISSION_APPROVED"
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    ANNOUNCEMENT = "ANNOUNCEMENT"
    SYSTEM = "SYSTEM"


class EmailTemplateType(enum.StrEnum):
    INVITE = "INVITE"
    EMAIL_RESENT = "EMAIL_RESENT"
    ENROLLMENT_UPDATE = "ENROLLMENT_UPDATE"
    REMINDER = "REMINDER"
    GENERIC = "GENERIC"


# ---------------------------------------------------------------------------
# Workspace — tenant boundary
# ---------------------------------------------------------------------------
class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    published: Mapped[bool] = mapped_column(Boolean, default=True)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, default="default")

    # RewardSTACK integration
    reward_stack_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    reward_stack_environment: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStackEnvironment.QA
    )
    reward_stack_program_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_org_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_webhook_secret: Mapped[str | None] = mapped_column(String(255), default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    memberships: Mapped[list[WorkspaceMembership]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Workspace id={self.id} slug={self.slug!r}>"


# ---------------------------------------------------------------------------
# Users — mirrored from the auth provider
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    supabase_user_id: Mapped[str | None] = mapped_column(String(64), unique=True, default=None)
    first_name: Mapped[str | None] = mapped_column(String(100), default=None)
    last_name: Mapped[str | None] = mapped_column(String(100), default=None)
    display_name: Mapped[str | None] = mapped_column(String(200), default=None)
    phone: Mapped[str | None] = mapped_column(String(40), default=None)
    is_platform_super_admin: Mapped[bool] = mapped_column(Boolean, default=False)

    # Shipping address (required for SKU rewards)
    address_line1: Mapped[str | None] = mapped_column(String(255), default=None)
    address_line2: Mapped[str | None] = mapped_column(String(255), default=None)
    city: Mapped[str | None] = mapped_column(String(100), default=None)
    state: Mapped[str | None] = mapped_column(String(100), default=None)
    zip_code: Mapped[str | None] = mapped_column(String(20), default=None)
    country: Mapped[str | None] = mapped_column(String(2), default=None)

    # RewardSTACK participant mirror
    reward_stack_participant_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RewardStackSyncStatus.NOT_SYNCED
    )
    reward_stack_last_sync: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    memberships: Mapped[list[WorkspaceMembership]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_participant_id", "reward_stack_participant_id"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


# ---------------------------------------------------------------------------
# WorkspaceMembership — one row per (user, workspace)
# ---------------------------------------------------------------------------
class WorkspaceMembership(Base):
    __tablename__ = "workspace_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.PARTICIPANT)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    preferences: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="memberships")
    workspace: Mapped[Workspace] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_membership_user_workspace"),
        Index("ix_membership_workspace_role", "workspace_id", "role"),
    )

    def __repr__(self) -> str:
        return (
            f"<WorkspaceMembership user={self.user_id} ws={self.workspace_id} "
            f"role={self.role} primary={self.is_primary}>"
        )


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
class Challenge(Base):
    __tablename__ = "challenges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    enrollment_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ChallengeStatus.DRAFT
    )
    reward_type: Mapped[str | None] = mapped_column(String(20), default=None)
    reward_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    activities: Mapped[list[Activity]] = relationship(
        back_populates="challenge", cascade="all, delete-orphan",
        order_by="Activity.position",
    )

    __table_args__ = (
        Index("ix_challenges_workspace_status", "workspace_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Challenge id={self.id} title={self.title!r} status={self.status}>"


class ChallengeAssignment(Base):
    __tablename__ = "challenge_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    manager_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by: Mapped[str | None] = mapped_column(String(36), default=None)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("challenge_id", "manager_id", name="uq_assignment_challenge_manager"),
    )

    def __repr__(self) -> str:
        return f"<ChallengeAssignment challenge={self.challenge_id} manager={self.manager_id}>"


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------
class Enrollment(Base):
    __tablename__ = "enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrollmentStatus.ENROLLED
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    user: Mapped[User] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_enrollment_user_challenge"),
    )

    def __repr__(self) -> str:
        return f"<Enrollment user={self.user_id} challenge={self.challenge_id} {self.status}>"


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
class ActivityTemplate(Base):
    __tablename__ = "activity_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    base_points: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_multiple: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<ActivityTemplate id={self.id} name={self.name!r} type={self.type}>"


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    template_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activity_templates.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    points_value: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_submissions: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    template: Mapped[ActivityTemplate] = relationship()
    challenge: Mapped[Challenge] = relationship(back_populates="activities")

    def __repr__(self) -> str:
        return f"<Activity id={self.id} challenge={self.challenge_id} pts={self.points_value}>"


class ActivitySubmission(Base):
    __tablename__ = "activity_submissions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    activity_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("activities.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    enrollment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False
    )
    text_content: Mapped[str | None] = mapped_column(Text, default=None)
    file_urls: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    link_url: Mapped[str | None] = mapped_column(String(1000), default=None)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubmissionStatus.PENDING
    )
    points_awarded: Mapped[int | None] = mapped_column(Integer, default=None)

    review_notes: Mapped[str | None] = mapped_column(Text, default=None)
    reviewed_by: Mapped[str | None] = mapped_column(String(36), default=None)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    manager_notes: Mapped[str | None] = mapped_column(Text, default=None)
    manager_reviewed_by: Mapped[str | None] = mapped_column(String(36), default=None)
    manager_reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    reward_issuance_id: Mapped[str | None] = mapped_column(String(36), unique=True, default=None)
    reward_issued: Mapped[bool] = mapped_column(Boolean, default=False)

    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    activity: Mapped[Activity] = relationship()
    user: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_submissions_activity_user", "activity_id", "user_id"),
        Index("ix_submissions_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<ActivitySubmission id={self.id} user={self.user_id} {self.status}>"


# ---------------------------------------------------------------------------
# Points — balances, budgets, ledger
# ---------------------------------------------------------------------------
class PointsBalance(Base):
    __tablename__ = "points_balances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    user: Mapped[User] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_points_user_workspace"),
        Index("ix_points_workspace_total", "workspace_id", "total_points"),
    )

    def __repr__(self) -> str:
        return f"<PointsBalance user={self.user_id} total={self.total_points}>"


class WorkspacePointsBudget(Base):
    __tablename__ = "workspace_points_budgets"

    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True
    )
    total_budget: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<WorkspacePointsBudget ws={self.workspace_id} {self.allocated}/{self.total_budget}>"


class ChallengePointsBudget(Base):
    __tablename__ = "challenge_points_budgets"

    challenge_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    total_budget: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<ChallengePointsBudget ch={self.challenge_id} {self.allocated}/{self.total_budget}>"


class PointsLedger(Base):
    __tablename__ = "points_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(String(36), default=None)
    to_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    actor_user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    submission_id: Mapped[str | None] = mapped_column(String(36), default=None)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_points_ledger_workspace_time", "workspace_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PointsLedger to={self.to_user_id} amount={self.amount} {self.reason}>"


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------
class InviteCode(Base):
    __tablename__ = "invite_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.PARTICIPANT)
    target_email: Mapped[str | None] = mapped_column(String(255), default=None)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    max_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_invite_codes_target_email", "target_email"),
    )

    def __repr__(self) -> str:
        return f"<InviteCode code={self.code} uses={self.used_count}/{self.max_uses}>"


class InviteRedemption(Base):
    __tablename__ = "invite_redemptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invite_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invite_codes.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    redeemed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("invite_id", "user_id", name="uq_redemption_invite_user"),
    )

    def __repr__(self) -> str:
        return f"<InviteRedemption invite={self.invite_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# ActivityEvent — append-only audit trail
# ---------------------------------------------------------------------------
class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(String(36), default=None)
    enrollment_id: Mapped[str | None] = mapped_column(String(36), default=None)
    user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    actor_user_id: Mapped[str | None] = mapped_column(String(36), default=None)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_events_workspace_time", "workspace_id", "created_at"),
        Index("ix_activity_events_challenge", "challenge_id"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEvent id={self.id} type={self.type} ws={self.workspace_id}>"


# ---------------------------------------------------------------------------
# Rewards — issuance lifecycle + SKU catalog
# ---------------------------------------------------------------------------
class RewardIssuance(Base):
    """One points or SKU grant, mirrored against RewardSTACK.

    ``status`` tracks the local grant; ``reward_stack_status`` tracks the
    external fulfilment and is advanced by API responses and webhooks.
    """
    __tablename__ = "reward_issuances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    challenge_id: Mapped[str | None] = mapped_column(String(36), default=None)
    submission_id: Mapped[str | None] = mapped_column(String(36), default=None)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int | None] = mapped_column(Integer, default=None)
    sku_id: Mapped[str | None] = mapped_column(String(100), default=None)
    description: Mapped[str | None] = mapped_column(Text, default=None)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RewardStatus.PENDING)
    reward_stack_status: Mapped[str | None] = mapped_column(
        String(20), default=RewardStackStatus.PENDING
    )
    reward_stack_transaction_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_adjustment_id: Mapped[str | None] = mapped_column(String(100), default=None)
    reward_stack_error_message: Mapped[str | None] = mapped_column(Text, default=None)
    reward_stack_webhook_received: Mapped[bool] = mapped_column(Boolean, default=False)
    external_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)

    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    issued_by: Mapped[str | None] = mapped_column(String(36), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    user: Mapped[User] = relationship()

    __table_args__ = (
        Index("ix_reward_issuances_workspace_status", "workspace_id", "status"),
        Index("ix_reward_issuances_transaction", "reward_stack_transaction_id"),
        Index("ix_reward_issuances_adjustment", "reward_stack_adjustment_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<RewardIssuance id={self.id} type={self.type} status={self.status} "
            f"rs={self.reward_stack_status}>"
        )


class WorkspaceSku(Base):
    __tablename__ = "workspace_skus"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    sku_id: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    value: Mapped[int | None] = mapped_column(Integer, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_shipping: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "sku_id", name="uq_workspace_sku"),
    )

    def __repr__(self) -> str:
        return f"<WorkspaceSku sku={self.sku_id!r} active={self.is_active}>"


class RewardStackWebhookLog(Base):
    __tablename__ = "reward_stack_webhook_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[str | None] = mapped_column(String(100), default=None)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_webhook_logs_workspace_event", "workspace_id", "event_id"),
        Index("ix_webhook_logs_workspace_time", "workspace_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RewardStackWebhookLog id={self.id} type={self.event_type} "
            f"processed={self.processed}>"
        )


# ---------------------------------------------------------------------------
# Email — per-workspace sender settings and templates
# ---------------------------------------------------------------------------
class WorkspaceEmailSettings(Base):
    __tablename__ = "workspace_email_settings"

    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), primary_key=True
    )
    from_name: Mapped[str | None] = mapped_column(String(200), default=None)
    from_email: Mapped[str | None] = mapped_column(String(255), default=None)
    reply_to: Mapped[str | None] = mapped_column(String(255), default=None)
    footer_html: Mapped[str | None] = mapped_column(Text, default=None)
    brand_color: Mapped[str | None] = mapped_column(String(20), default=None)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<WorkspaceEmailSettings ws={self.workspace_id}>"


class WorkspaceEmailTemplate(Base):
    __tablename__ = "workspace_email_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(300), default=None)
    html: Mapped[str | None] = mapped_column(Text, default=None)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_by: Mapped[str | None] = mapped_column(String(36), default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "type", name="uq_email_template_workspace_type"),
    )

    def __repr__(self) -> str:
        return f"<WorkspaceEmailTemplate ws={self.workspace_id} type={self.type}>"


# ---------------------------------------------------------------------------
# Notifications — participant inbox
# ---------------------------------------------------------------------------
class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(500), default=None)
    action_text: Mapped[str | None] = mapped_column(String(100), default=None)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    dismissed: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_notifications_user_workspace", "user_id", "workspace_id", "read"),
    )

    def __repr__(self) -> str:
        return f"<Notification id={self.id} type={self.type} read={self.read}>"


# ---------------------------------------------------------------------------
# RateLimitEvent — durable sliding-window state
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_rate_limit_key_ts", "key", timestamp.desc()),
        Index("ix_rate_limit_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent key={self.key!r} ts={self.timestamp}>"
