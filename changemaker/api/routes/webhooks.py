"""
changemaker.api.routes.webhooks — RewardSTACK webhook receiver
================================================================

``POST /webhooks/rewardstack?workspaceId=<id>`` is called by RewardSTACK,
not by a signed-in user, so it authenticates with the workspace's shared
webhook secret (``x-rewardstack-signature``: hex HMAC-SHA256 of the raw
body) when one is configured.

Every delivery that gets past the workspace checks is written to
``reward_stack_webhook_logs``.  Event ids already marked processed are
acknowledged without being applied again.
"""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from changemaker.api.deps import get_engine
from changemaker.api.rate_limit import get_webhook_rate_limiter
from changemaker.database.engine import run_db
from changemaker.database.models import Workspace
from changemaker.rewardstack import webhooks

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _error(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


def _load_workspace(engine, workspace_id: str) -> Workspace | None:
    with Session(engine) as session:
        return session.get(Workspace, workspace_id)


@router.post("/rewardstack")
async def rewardstack_webhook(request: Request, engine=Depends(get_engine)):
    workspace_id = request.query_params.get("workspaceId")
    if not workspace_id:
        return _error(400, "Missing workspaceId parameter")

    limiter = get_webhook_rate_limiter()
    allowed, info = await run_db(limiter.hit, workspace_id)
    if not allowed:
        logger.warning("Webhook rate limit exceeded for workspace %s", workspace_id)
        return _error(429, "Too many requests", headers={"Retry-After": str(info["reset"])})

    workspace = await run_db(_load_workspace, engine, workspace_id)
    if workspace is None:
        return _error(404, "Workspace not found")
    if not workspace.reward_stack_enabled:
        return _error(400, "RewardSTACK integration not enabled for this workspace")

    raw_body = await request.body()
    try:
        event = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "Invalid JSON payload")
    if not isinstance(event, dict):
        return _error(400, "Invalid JSON payload")

    event_id = event.get("id")
    if await run_db(webhooks.is_event_processed, engine, workspace_id, event_id):
        logger.info("Webhook %s already processed, skipping", event_id)
        return {"received": True, "eventId": event_id, "note": "Already processed (idempotent)"}

    secret = workspace.reward_stack_webhook_secret
    if secret:
        signature = request.headers.get(webhooks.SIGNATURE_HEADER)
        if not webhooks.verify_signature(raw_body, signature, secret):
            logger.warning("Invalid webhook signature for workspace %s", workspace_id)
            await run_db(webhooks.record_webhook, engine, workspace_id, event, error="Invalid signature")
            return _error(401, "Invalid signature")

    log_id = await run_db(webhooks.record_webhook, engine, workspace_id, event)
    try:
        await run_db(webhooks.dispatch_event, engine, workspace_id, event)
    except webhooks.UnknownWebhookEventError as exc:
        await run_db(webhooks.mark_webhook_failed, engine, log_id, str(exc))
        return _error(400, str(exc))
    except Exception as exc:
        logger.exception("Webhook %s processing failed", event_id)
        await run_db(webhooks.mark_webhook_failed, engine, log_id, str(exc))
        return _error(500, "Webhook processing failed")

    await run_db(webhooks.mark_webhook_processed, engine, log_id)
    logger.info("Processed webhook %s (%s) for workspace %s", event_id, event.get("type"), workspace_id)
    return {"received": True, "eventId": event_id}
