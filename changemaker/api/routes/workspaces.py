"""
changemaker.api.routes.workspaces — Workspaces, members, activity feed
========================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_current_user,
    get_engine,
    require_admin,
    require_member,
)
from changemaker.api.rate_limit import rate_limited_user
from changemaker.database.models import User
from changemaker.services import audit_service, workspace_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces",
    tags=["workspaces"],
    dependencies=[Depends(rate_limited_user)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class WorkspaceCreate(BaseModel):
    slug: str
    name: str


class WorkspaceUpdate(BaseModel):
    name: str | None = None
    active: bool | None = None
    published: bool | None = None
    reward_stack_enabled: bool | None = None
    reward_stack_environment: str | None = None
    reward_stack_program_id: str | None = None
    reward_stack_org_id: str | None = None
    reward_stack_webhook_secret: str | None = None


class MemberUpdate(BaseModel):
    role: str


def _workspace_dict(workspace, role: str | None = None) -> dict:
    data = row_to_dict(workspace)
    data["reward_stack_webhook_secret"] = bool(workspace.reward_stack_webhook_secret)
    if role is not None:
        data["role"] = role
    return data


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------
@router.get("")
def list_workspaces(user: User = Depends(get_current_user), engine=Depends(get_engine)):
    """The caller's workspaces, primary first."""
    return [
        {
            **_workspace_dict(m.workspace, m.role),
            "is_primary": m.is_primary,
        }
        for m in workspace_service.list_memberships(engine, user.id)
    ]


@router.post("", status_code=201)
def create_workspace(
    body: WorkspaceCreate,
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    workspace = workspace_service.create_workspace(
        engine, slug=body.slug, name=body.name, creator_id=user.id
    )
    return _workspace_dict(workspace, "ADMIN")


@router.get("/{slug}")
def get_workspace(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return {
        **_workspace_dict(ctx.workspace, ctx.role),
        "counts": workspace_service.membership_counts(engine, ctx.workspace.id),
    }


@router.patch("/{slug}")
def update_workspace(
    body: WorkspaceUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    workspace = workspace_service.update_workspace(
        engine, ctx.workspace.id, actor_id=ctx.user.id, **body.model_dump(exclude_none=True)
    )
    return _workspace_dict(workspace, ctx.role)


@router.post("/{slug}/primary")
def set_primary(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    workspace_service.set_primary_membership(engine, ctx.user.id, ctx.workspace.id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------
@router.get("/{slug}/members")
def list_members(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return [
        {
            "user_id": m.user_id,
            "email": m.user.email,
            "display_name": m.user.display_name,
            "first_name": m.user.first_name,
            "last_name": m.user.last_name,
            "role": m.role,
            "joined_at": m.joined_at.isoformat() if m.joined_at else None,
        }
        for m in workspace_service.list_workspace_memberships(engine, ctx.workspace.id)
    ]


@router.patch("/{slug}/members/{user_id}")
def update_member(
    user_id: str,
    body: MemberUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    membership = workspace_service.update_membership_role(
        engine,
        user_id=user_id,
        workspace_id=ctx.workspace.id,
        role=body.role,
        actor_id=ctx.user.id,
    )
    return row_to_dict(membership)


@router.delete("/{slug}/members/{user_id}")
def remove_member(
    user_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    removed = workspace_service.remove_membership(
        engine, user_id=user_id, workspace_id=ctx.workspace.id, actor_id=ctx.user.id
    )
    if not removed:
        raise HTTPException(404, "Member not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Activity feed
# ---------------------------------------------------------------------------
@router.get("/{slug}/activity")
def activity_feed(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    challenge_id: str | None = None,
    type: str | None = None,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return audit_service.list_activity_events(
        engine,
        ctx.workspace.id,
        page=page,
        page_size=page_size,
        challenge_id=challenge_id,
        event_type=type,
    )
