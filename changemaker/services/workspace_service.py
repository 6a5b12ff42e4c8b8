"""
changemaker.services.workspace_service — Workspaces & Memberships
==================================================================

Membership invariants enforced here:
  * one membership per (user, workspace) — duplicates raise
    :class:`ValidationError` before the unique constraint would;
  * at most one ``is_primary`` membership per user — setting a new primary
    clears the previous one in the same transaction;
  * a workspace always keeps at least one ADMIN — the last admin can be
    neither demoted nor removed.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session, selectinload

from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivityEventType,
    Challenge,
    Role,
    User,
    Workspace,
    WorkspaceMembership,
)
from changemaker.engine.validation import validate_role, validate_workspace_slug
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.audit_service import log_activity_event, row_to_dict

logger = logging.getLogger(__name__)

# Columns an admin may change from the settings screen.
_EDITABLE_WORKSPACE_FIELDS = frozenset({
    "name",
    "active",
    "published",
    "reward_stack_enabled",
    "reward_stack_environment",
    "reward_stack_program_id",
    "reward_stack_org_id",
    "reward_stack_webhook_secret",
})


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def get_workspace_by_slug(session: Session, slug: str) -> Workspace | None:
    return session.scalar(select(Workspace).where(Workspace.slug == slug))


def get_membership(
    session: Session, user_id: str, workspace_id: str
) -> WorkspaceMembership | None:
    return session.scalar(
        select(WorkspaceMembership).where(
            WorkspaceMembership.user_id == user_id,
            WorkspaceMembership.workspace_id == workspace_id,
        )
    )


def get_user_workspace_role(session: Session, user: User, workspace: Workspace) -> str | None:
    """Role from membership; platform super admins act as ADMIN everywhere."""
    membership = get_membership(session, user.id, workspace.id)
    if membership is not None:
        return membership.role
    if user.is_platform_super_admin:
        return Role.ADMIN
    return None


def _admin_count(session: Session, workspace_id: str) -> int:
    return session.scalar(
        select(func.count()).select_from(WorkspaceMembership).where(
            WorkspaceMembership.workspace_id == workspace_id,
            WorkspaceMembership.role == Role.ADMIN,
        )
    ) or 0


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------
def create_workspace(
    engine: Engine,
    *,
    slug: str,
    name: str,
    creator_id: str,
    tenant_id: str = "default",
) -> Workspace:
    """Create a workspace and make *creator_id* its first ADMIN.

    The new membership becomes the creator's primary workspace when they
    don't have one yet.
    """
    slug = validate_workspace_slug(slug)
    if not name or not name.strip():
        raise ValidationError("Workspace name is required")

    with get_session(engine) as session:
        if get_workspace_by_slug(session, slug) is not None:
            raise ValidationError(f"Slug '{slug}' is already taken")

        workspace = Workspace(slug=slug, name=name.strip(), tenant_id=tenant_id)
        session.add(workspace)
        session.flush()

        has_primary = session.scalar(
            select(WorkspaceMembership.id).where(
                WorkspaceMembership.user_id == creator_id,
                WorkspaceMembership.is_primary.is_(True),
            )
        )
        session.add(WorkspaceMembership(
            user_id=creator_id,
            workspace_id=workspace.id,
            role=Role.ADMIN,
            is_primary=has_primary is None,
        ))
        logger.info("Workspace %s created by %s", slug, creator_id)
        return workspace


def update_workspace(
    engine: Engine,
    workspace_id: str,
    *,
    actor_id: str,
    **fields: Any,
) -> Workspace:
    """Apply settings changes and record before/after in the activity trail."""
    with get_session(engine) as session:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            raise ResourceNotFoundError("Workspace", workspace_id)

        before = _settings_snapshot(workspace)
        for key, value in fields.items():
            if key in _EDITABLE_WORKSPACE_FIELDS:
                setattr(workspace, key, value)
        session.flush()

        log_activity_event(
            session,
            workspace_id=workspace.id,
            actor_user_id=actor_id,
            type=ActivityEventType.WORKSPACE_SETTINGS_UPDATED,
            metadata={"before": before, "after": _settings_snapshot(workspace)},
        )
        return workspace


def _settings_snapshot(workspace: Workspace) -> dict:
    snap = row_to_dict(workspace) or {}
    if snap.get("reward_stack_webhook_secret"):
        snap["reward_stack_webhook_secret"] = "***"
    return {k: v for k, v in snap.items() if k in _EDITABLE_WORKSPACE_FIELDS}


# ---------------------------------------------------------------------------
# Memberships
# ---------------------------------------------------------------------------
def list_memberships(engine: Engine, user_id: str) -> list[WorkspaceMembership]:
    """All of a user's memberships, primary first, then by join date."""
    with Session(engine) as session:
        rows = session.scalars(
            select(WorkspaceMembership)
            .options(selectinload(WorkspaceMembership.workspace))
            .where(WorkspaceMembership.user_id == user_id)
            .order_by(WorkspaceMembership.is_primary.desc(), WorkspaceMembership.joined_at)
        ).all()
        session.expunge_all()
        return list(rows)


def list_workspace_memberships(engine: Engine, workspace_id: str) -> list[WorkspaceMembership]:
    """Workspace members, admins first."""
    with Session(engine) as session:
        rows = session.scalars(
            select(WorkspaceMembership)
            .options(selectinload(WorkspaceMembership.user))
            .where(WorkspaceMembership.workspace_id == workspace_id)
            .order_by(WorkspaceMembership.role, WorkspaceMembership.joined_at)
        ).all()
        session.expunge_all()
        return list(rows)


def add_membership(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    role: str = Role.PARTICIPANT,
    is_primary: bool = False,
) -> WorkspaceMembership:
    """Insert a membership inside an existing transaction."""
    validate_role(role)
    if get_membership(session, user_id, workspace_id) is not None:
        raise ValidationError("User is already a member of this workspace")
    if is_primary:
        _clear_primary(session, user_id)
    membership = WorkspaceMembership(
        user_id=user_id, workspace_id=workspace_id, role=role, is_primary=is_primary
    )
    session.add(membership)
    session.flush()
    return membership


def create_membership(
    engine: Engine,
    *,
    user_id: str,
    workspace_id: str,
    role: str = Role.PARTICIPANT,
    is_primary: bool = False,
) -> WorkspaceMembership:
    with get_session(engine) as session:
        return add_membership(
            session,
            user_id=user_id,
            workspace_id=workspace_id,
            role=role,
            is_primary=is_primary,
        )


def _clear_primary(session: Session, user_id: str) -> None:
    session.execute(
        update(WorkspaceMembership)
        .where(
            WorkspaceMembership.user_id == user_id,
            WorkspaceMembership.is_primary.is_(True),
        )
        .values(is_primary=False)
    )


def set_primary_membership(engine: Engine, user_id: str, workspace_id: str) -> WorkspaceMembership:
    with get_session(engine) as session:
        membership = get_membership(session, user_id, workspace_id)
        if membership is None:
            raise ResourceNotFoundError("WorkspaceMembership", f"{user_id}:{workspace_id}")
        _clear_primary(session, user_id)
        membership.is_primary = True
        return membership


def update_membership_role(
    engine: Engine,
    *,
    user_id: str,
    workspace_id: str,
    role: str,
    actor_id: str,
) -> WorkspaceMembership:
    validate_role(role)
    with get_session(engine) as session:
        membership = get_membership(session, user_id, workspace_id)
        if membership is None:
            raise ResourceNotFoundError("WorkspaceMembership", f"{user_id}:{workspace_id}")
        previous = membership.role
        if previous == Role.ADMIN and role != Role.ADMIN and _admin_count(session, workspace_id) <= 1:
            raise ValidationError("Cannot demote the last admin of a workspace")

        membership.role = role
        log_activity_event(
            session,
            workspace_id=workspace_id,
            user_id=user_id,
            actor_user_id=actor_id,
            type=ActivityEventType.RBAC_ROLE_CHANGED,
            metadata={"from": previous, "to": role},
        )
        return membership


def remove_membership(
    engine: Engine,
    *,
    user_id: str,
    workspace_id: str,
    actor_id: str,
) -> bool:
    """Remove a member; returns ``False`` when no membership existed."""
    with get_session(engine) as session:
        membership = get_membership(session, user_id, workspace_id)
        if membership is None:
            return False
        if membership.role == Role.ADMIN and _admin_count(session, workspace_id) <= 1:
            raise ValidationError("Cannot remove the last admin of a workspace")

        log_activity_event(
            session,
            workspace_id=workspace_id,
            user_id=user_id,
            actor_user_id=actor_id,
            type=ActivityEventType.RBAC_ROLE_CHANGED,
            metadata={"from": membership.role, "to": None, "removed": True},
        )
        session.delete(membership)
        return True


def membership_counts(engine: Engine, workspace_id: str) -> dict:
    with Session(engine) as session:
        rows = session.execute(
            select(WorkspaceMembership.role, func.count())
            .where(WorkspaceMembership.workspace_id == workspace_id)
            .group_by(WorkspaceMembership.role)
        ).all()
        by_role = {role: count for role, count in rows}
        challenges = session.scalar(
            select(func.count()).select_from(Challenge).where(
                Challenge.workspace_id == workspace_id
            )
        ) or 0
    return {
        "total": sum(by_role.values()),
        "admins": by_role.get(Role.ADMIN, 0),
        "managers": by_role.get(Role.MANAGER, 0),
        "participants": by_role.get(Role.PARTICIPANT, 0),
        "challenges": challenges,
    }
