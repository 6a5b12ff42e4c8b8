"""
changemaker.api.routes.templates — Activity template endpoints
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from changemaker.api.deps import WorkspaceContext, get_engine, require_admin, require_member
from changemaker.api.rate_limit import rate_limited_user
from changemaker.constants import DEFAULT_BASE_POINTS
from changemaker.services import challenge_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces/{slug}/activity-templates",
    tags=["activity-templates"],
    dependencies=[Depends(rate_limited_user)],
)


class TemplateCreate(BaseModel):
    name: str
    type: str
    description: str = ""
    base_points: int = DEFAULT_BASE_POINTS
    requires_approval: bool = True
    allow_multiple: bool = False


class TemplateUpdate(BaseModel):
    name: str | None = None
    type: str | None = None
    description: str | None = None
    base_points: int | None = None
    requires_approval: bool | None = None
    allow_multiple: bool | None = None


@router.get("")
def list_templates(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return [row_to_dict(t) for t in challenge_service.list_templates(engine, ctx.workspace.id)]


@router.post("", status_code=201)
def create_template(
    body: TemplateCreate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return row_to_dict(challenge_service.create_template(engine, ctx.workspace.id, **body.model_dump()))


@router.patch("/{template_id}")
def update_template(
    template_id: str,
    body: TemplateUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    template = challenge_service.update_template(
        engine, ctx.workspace.id, template_id, **body.model_dump(exclude_none=True)
    )
    if template is None:
        raise HTTPException(404, "Template not found")
    return row_to_dict(template)


@router.delete("/{template_id}")
def delete_template(
    template_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    if not challenge_service.delete_template(engine, ctx.workspace.id, template_id):
        raise HTTPException(404, "Template not found")
    return {"ok": True}
