"""
changemaker.api.routes.notifications — Per-workspace inbox
============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from changemaker.api.deps import WorkspaceContext, get_engine, require_member
from changemaker.api.rate_limit import rate_limited_user
from changemaker.services import notification_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces/{slug}/notifications",
    tags=["notifications"],
    dependencies=[Depends(rate_limited_user)],
)


class MarkRead(BaseModel):
    ids: list[str]


@router.get("")
def list_notifications(
    unread_only: bool = False,
    include_dismissed: bool = False,
    limit: int = Query(50, ge=1, le=200),
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    rows = notification_service.list_notifications(
        engine,
        ctx.user.id,
        ctx.workspace.id,
        unread_only=unread_only,
        include_dismissed=include_dismissed,
        limit=limit,
    )
    return [row_to_dict(n) for n in rows]


@router.get("/unread-count")
def unread_count(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return {"count": notification_service.unread_count(engine, ctx.user.id, ctx.workspace.id)}


@router.post("/read")
def mark_read(
    body: MarkRead,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    return {"updated": notification_service.mark_as_read(engine, ctx.user.id, body.ids)}


@router.post("/read-all")
def mark_all_read(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return {"updated": notification_service.mark_all_as_read(engine, ctx.user.id, ctx.workspace.id)}


@router.post("/{notification_id}/read")
def mark_one_read(
    notification_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    return {"updated": notification_service.mark_as_read(engine, ctx.user.id, [notification_id])}


@router.post("/{notification_id}/dismiss")
def dismiss(
    notification_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    if not notification_service.dismiss_notification(engine, ctx.user.id, notification_id):
        raise HTTPException(404, "Notification not found")
    return {"ok": True}
