"""
changemaker.api.routes.points — Balances, leaderboard, budgets
================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from changemaker.api.deps import WorkspaceContext, get_engine, require_admin, require_member
from changemaker.api.rate_limit import rate_limited_user
from changemaker.services import points_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces/{slug}/points",
    tags=["points"],
    dependencies=[Depends(rate_limited_user)],
)


class BudgetUpdate(BaseModel):
    total_budget: int = Field(ge=0)


@router.get("/me")
def my_points(ctx: WorkspaceContext = Depends(require_member), engine=Depends(get_engine)):
    return {
        **points_service.get_balance(engine, ctx.user.id, ctx.workspace.id),
        "history": [
            row_to_dict(row)
            for row in points_service.get_ledger(engine, ctx.workspace.id, user_id=ctx.user.id)
        ],
    }


@router.get("/leaderboard")
def leaderboard(
    limit: int = Query(10, ge=1, le=100),
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    return points_service.get_leaderboard(engine, ctx.workspace.id, limit=limit)


@router.get("/budget")
def get_budget(ctx: WorkspaceContext = Depends(require_admin), engine=Depends(get_engine)):
    return points_service.get_workspace_budget(engine, ctx.workspace.id)


@router.put("/budget")
def set_budget(
    body: BudgetUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return points_service.upsert_workspace_budget(
        engine, ctx.workspace.id, body.total_budget, updated_by=ctx.user.id
    )
