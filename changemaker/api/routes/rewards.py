"""
changemaker.api.routes.rewards — Rewards and RewardSTACK administration
=======================================================================

Admin-only apart from the marketplace SSO link.  Endpoints that call
RewardSTACK are ``async`` and reach the database through
:func:`~changemaker.database.engine.run_db`.  Their outbound transport comes
from :func:`~changemaker.api.deps.get_rewardstack_transport`.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_config,
    get_engine,
    get_rewardstack_transport,
    require_admin,
    require_member,
)
from changemaker.api.rate_limit import rate_limited_user
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.database.models import RewardStatus
from changemaker.rewardstack import monitoring, participants, program, reward_logic
from changemaker.rewardstack.errors import RewardStackError
from changemaker.rewardstack.webhooks import list_webhook_logs_for_reward
from changemaker.services import reward_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces/{slug}",
    tags=["rewards"],
    dependencies=[Depends(rate_limited_user)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class IssueRequest(BaseModel):
    user_id: str
    type: str  # "points" | "sku"
    amount: int | None = None
    sku_id: str | None = None
    challenge_id: str | None = None
    description: str | None = None


class RetryRequest(BaseModel):
    reward_id: str


class SkuCreate(BaseModel):
    sku_id: str
    name: str
    description: str | None = None
    value: int | None = None
    requires_shipping: bool = True


class SkuUpdate(BaseModel):
    is_active: bool


class WebhookRetryRequest(BaseModel):
    log_ids: list[int] | None = None
    max_retries: int = 10


class ParticipantSyncRequest(BaseModel):
    user_id: str | None = None
    user_ids: list[str] | None = None
    sync_all: bool = False
    force_resync: bool = False


def _require_issuance(engine, ctx: WorkspaceContext, reward_id: str):
    issuance = reward_service.get_issuance(engine, ctx.workspace.id, reward_id)
    if issuance is None:
        raise HTTPException(404, "Reward issuance not found")
    return issuance


def _require_integration(ctx: WorkspaceContext) -> None:
    if not ctx.workspace.reward_stack_enabled:
        raise HTTPException(400, "RewardSTACK integration is not enabled for this workspace")


def _upstream_error(action: str, exc: RewardStackError) -> HTTPException:
    return HTTPException(502, {"error": f"Failed to {action}", "details": exc.message})


# ---------------------------------------------------------------------------
# Issuances
# ---------------------------------------------------------------------------
@router.get("/rewards")
def list_rewards(
    status: str | None = None,
    type: str | None = None,
    challenge_id: str | None = None,
    user_id: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    rows = reward_service.list_issuances(
        engine,
        ctx.workspace.id,
        status=status,
        type=type,
        challenge_id=challenge_id,
        user_id=user_id,
        limit=limit,
    )
    return [reward_service.issuance_to_dict(r) for r in rows]


@router.post("/rewards/issue", status_code=201)
async def issue_reward(
    body: IssueRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    """Record a manual grant and, with RewardSTACK enabled, send it."""
    issuance = await run_db(
        reward_service.issue_manual_reward,
        engine,
        ctx.workspace.id,
        issued_by=ctx.user.id,
        integration_enabled=ctx.workspace.reward_stack_enabled,
        **body.model_dump(),
    )
    result = None
    if ctx.workspace.reward_stack_enabled:
        outcome = await reward_logic.issue_reward_transaction(engine, issuance.id, transport=transport)
        if not outcome.success:
            raise HTTPException(502, {
                "error": "Failed to issue reward via RewardSTACK",
                "details": outcome.error,
                "reward_issuance_id": issuance.id,
            })
        result = asdict(outcome)
    issued = await run_db(reward_service.get_issuance, engine, ctx.workspace.id, issuance.id)
    return {
        "reward_issuance_id": issuance.id,
        "issuance": reward_service.issuance_to_dict(issued),
        "result": result,
    }


@router.post("/rewards/retry")
async def retry_reward(
    body: RetryRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    """Re-send a FAILED issuance, or send a PENDING one that never went out."""
    _require_integration(ctx)
    issuance = await run_db(_require_issuance, engine, ctx, body.reward_id)
    if issuance.status == RewardStatus.PENDING:
        result = await reward_logic.issue_reward_transaction(engine, issuance.id, transport=transport)
    elif issuance.status == RewardStatus.FAILED:
        result = await reward_logic.retry_failed_reward_issuance(engine, issuance.id, transport=transport)
    else:
        raise HTTPException(
            400, f"Cannot retry reward with status {issuance.status}. Only FAILED rewards can be retried."
        )
    return asdict(result)


@router.post("/rewards/retry-failed")
async def retry_failed(
    limit: int = Query(50, ge=1, le=200),
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    _require_integration(ctx)
    return await reward_logic.retry_failed_rewards(engine, ctx.workspace.id, limit, transport=transport)


@router.post("/rewards/monitor")
async def monitor_rewards(
    limit: int = Query(50, ge=1, le=200),
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    """Poll RewardSTACK for every issued reward still awaiting fulfilment."""
    _require_integration(ctx)
    return await reward_logic.monitor_pending_rewards(engine, ctx.workspace.id, limit, transport=transport)


@router.post("/rewards/{reward_id}/status")
async def poll_reward_status(
    reward_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    _require_integration(ctx)
    await run_db(_require_issuance, engine, ctx, reward_id)
    result = await reward_logic.check_reward_issuance_status(engine, reward_id, transport=transport)
    if not result["success"]:
        raise HTTPException(400, result["error"])
    return result


@router.get("/rewards/{reward_id}/webhook-logs")
def reward_webhook_logs(
    reward_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    logs = list_webhook_logs_for_reward(engine, ctx.workspace.id, reward_id)
    if logs is None:
        raise HTTPException(404, "Reward issuance not found")
    return [row_to_dict(log) for log in logs]


# ---------------------------------------------------------------------------
# SKU catalog
# ---------------------------------------------------------------------------
@router.get("/skus")
def list_skus(
    active_only: bool = False,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return [row_to_dict(s) for s in reward_service.list_skus(engine, ctx.workspace.id, active_only=active_only)]


@router.post("/skus", status_code=201)
def create_sku(
    body: SkuCreate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return row_to_dict(reward_service.create_sku(engine, ctx.workspace.id, **body.model_dump()))


@router.patch("/skus/{sku_id}")
def update_sku(
    sku_id: str,
    body: SkuUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    if not reward_service.set_sku_active(engine, ctx.workspace.id, sku_id, body.is_active):
        raise HTTPException(404, "SKU not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Webhook monitoring
# ---------------------------------------------------------------------------
@router.get("/webhooks/health")
def webhook_health(ctx: WorkspaceContext = Depends(require_admin), engine=Depends(get_engine)):
    return {
        "stats": monitoring.get_webhook_health_stats(engine, ctx.workspace.id),
        "unprocessed": monitoring.get_unprocessed_webhooks(engine, ctx.workspace.id),
        "failed": monitoring.get_failed_webhooks(engine, ctx.workspace.id),
    }


@router.post("/webhooks/retry")
def retry_webhooks(
    body: WebhookRetryRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    results = monitoring.retry_failed_webhooks(
        engine, ctx.workspace.id, log_ids=body.log_ids, max_retries=body.max_retries
    )
    return {
        "retried": len(results),
        "successful": sum(1 for r in results if r["success"]),
        "results": results,
    }


@router.post("/webhooks/cleanup")
def cleanup_webhooks(
    older_than_days: int = Query(30, ge=1),
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return {"deleted": monitoring.cleanup_old_webhook_logs(engine, ctx.workspace.id, older_than_days)}


# ---------------------------------------------------------------------------
# RewardSTACK program administration
# ---------------------------------------------------------------------------
@router.post("/rewardstack/test-connection")
async def rewardstack_connection_check(
    ctx: WorkspaceContext = Depends(require_admin),
    transport=Depends(get_rewardstack_transport),
):
    return await program.check_connection(ctx.workspace, transport=transport)


@router.post("/rewardstack/sync")
async def sync_participants(
    body: ParticipantSyncRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    """Mirror one member, a list of members, or the whole workspace."""
    _require_integration(ctx)
    if body.user_id:
        return await participants.sync_participant_to_workspace(
            engine, ctx.workspace.id, body.user_id, transport=transport
        )
    if body.user_ids:
        return await participants.bulk_sync_participants(
            engine, ctx.workspace.id, body.user_ids,
            force_resync=body.force_resync, transport=transport,
        )
    if body.sync_all:
        return await participants.sync_all_workspace_participants(
            engine, ctx.workspace.id, force_resync=body.force_resync, transport=transport
        )
    raise HTTPException(400, "Must provide user_id, user_ids, or sync_all")


@router.delete("/rewardstack/participants/{user_id}")
async def unsync_participant(
    user_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    result = await participants.unsync_participant(
        engine, ctx.workspace.id, user_id, transport=transport
    )
    if not result["success"]:
        raise HTTPException(400, result["error"])
    return result


@router.post("/rewardstack/sync-skus")
async def sync_skus(
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    _require_integration(ctx)
    try:
        return await program.sync_catalog_skus(engine, ctx.workspace, transport=transport)
    except RewardStackError as exc:
        raise _upstream_error("sync SKUs from RewardSTACK", exc) from exc


@router.post("/rewardstack/sso")
async def marketplace_sso(
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
    transport=Depends(get_rewardstack_transport),
):
    """Single sign-on link into the rewards marketplace for the caller."""
    _require_integration(ctx)
    try:
        return await program.generate_marketplace_sso_url(
            engine, ctx.workspace, ctx.user, transport=transport
        )
    except RewardStackError as exc:
        raise _upstream_error("generate marketplace link", exc) from exc


@router.get("/rewardstack/webhooks")
async def list_rewardstack_webhooks(
    ctx: WorkspaceContext = Depends(require_admin),
    transport=Depends(get_rewardstack_transport),
):
    _require_integration(ctx)
    try:
        return await program.list_webhooks(ctx.workspace, transport=transport)
    except RewardStackError as exc:
        raise _upstream_error("list RewardSTACK webhooks", exc) from exc


@router.post("/rewardstack/webhooks")
async def setup_rewardstack_webhook(
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
    transport=Depends(get_rewardstack_transport),
):
    """Subscribe this workspace's receiver URL to RewardSTACK events."""
    _require_integration(ctx)
    url = program.webhook_url_for(cfg.app_url, ctx.workspace.id)
    try:
        return await program.setup_default_webhook(engine, ctx.workspace, url, transport=transport)
    except RewardStackError as exc:
        raise _upstream_error("set up RewardSTACK webhook", exc) from exc


@router.delete("/rewardstack/webhooks/{webhook_id}")
async def delete_rewardstack_webhook(
    webhook_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    transport=Depends(get_rewardstack_transport),
):
    _require_integration(ctx)
    try:
        await program.delete_webhook(ctx.workspace, webhook_id, transport=transport)
    except RewardStackError as exc:
        raise _upstream_error("delete RewardSTACK webhook", exc) from exc
    return {"ok": True}
