"""
changemaker.api.routes.invites — Invite codes
===============================================
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from changemaker.api.deps import WorkspaceContext, get_current_user, get_engine, require_admin
from changemaker.api.rate_limit import rate_limited_user
from changemaker.constants import DEFAULT_INVITE_EXPIRY_DAYS
from changemaker.database.models import Role, User
from changemaker.services import invite_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(tags=["invites"], dependencies=[Depends(rate_limited_user)])


class InviteCreate(BaseModel):
    role: str = Role.PARTICIPANT
    target_email: str | None = None
    expires_in_hours: float = Field(DEFAULT_INVITE_EXPIRY_DAYS * 24, gt=0)
    max_uses: int = 1
    challenge_id: str | None = None


class RedeemRequest(BaseModel):
    code: str


@router.get("/workspaces/{slug}/invites")
def list_invites(ctx: WorkspaceContext = Depends(require_admin), engine=Depends(get_engine)):
    return invite_service.list_workspace_invites(engine, ctx.workspace.id)


@router.post("/workspaces/{slug}/invites", status_code=201)
def create_invite(
    body: InviteCreate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    invite = invite_service.create_invite(
        engine,
        workspace_id=ctx.workspace.id,
        created_by=ctx.user.id,
        role=body.role,
        target_email=body.target_email,
        expires_in=timedelta(hours=body.expires_in_hours),
        max_uses=body.max_uses,
        challenge_id=body.challenge_id,
    )
    return row_to_dict(invite)


@router.delete("/workspaces/{slug}/invites/{invite_id}")
def revoke_invite(
    invite_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    if not invite_service.revoke_invite(engine, ctx.workspace.id, invite_id):
        raise HTTPException(404, "Invite not found")
    return {"ok": True}


@router.post("/invites/redeem")
def redeem_invite(
    body: RedeemRequest,
    user: User = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return invite_service.redeem_invite(engine, body.code, user)


@router.get("/invites/pending")
def pending_invites(user: User = Depends(get_current_user), engine=Depends(get_engine)):
    """Unexpired, unexhausted invites addressed to the caller's email."""
    return invite_service.list_pending_invites(engine, user.email)
