"""
changemaker.rewardstack.program — Program Administration
========================================================

Workspace-level RewardSTACK operations an admin triggers by hand:

- ``check_connection``: authenticate and read the configured program.
- ``sync_catalog_skus``: copy the program catalog into ``workspace_skus``.
- ``generate_marketplace_sso_url``: single sign-on link into the
  marketplace for one member.
- ``setup_default_webhook`` / ``list_webhooks`` / ``delete_webhook``:
  manage the organization's webhook subscriptions pointing back at
  ``POST /api/webhooks/rewardstack``.
"""

from __future__ import annotations

import logging
import secrets

import httpx
from sqlalchemy import Engine

from changemaker.database.engine import get_session, run_db
from changemaker.database.models import RewardStackSyncStatus, User, Workspace
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode
from changemaker.rewardstack.participants import sync_user
from changemaker.services.reward_service import upsert_catalog_skus

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_EVENTS = [
    "transaction.created",
    "transaction.updated",
    "transaction.completed",
    "transaction.failed",
    "adjustment.created",
    "adjustment.updated",
    "adjustment.completed",
    "adjustment.failed",
    "participant.created",
    "participant.updated",
    "participant.deleted",
]

_CONNECTION_ERRORS = {
    RewardStackErrorCode.UNAUTHORIZED: "Authentication failed",
    RewardStackErrorCode.FORBIDDEN: "Access forbidden",
    RewardStackErrorCode.NOT_FOUND: "Program not found",
    RewardStackErrorCode.RATE_LIMIT: "Rate limit exceeded",
    RewardStackErrorCode.SERVER_ERROR: "RewardSTACK server error",
    RewardStackErrorCode.NETWORK_ERROR: "Network error",
}


def webhook_url_for(app_url: str, workspace_id: str) -> str:
    return f"{app_url.rstrip('/')}/api/webhooks/rewardstack?workspaceId={workspace_id}"


# ---------------------------------------------------------------------------
# Connection check
# ---------------------------------------------------------------------------
async def check_connection(
    workspace: Workspace, *, transport: httpx.AsyncBaseTransport | None = None
) -> dict:
    """Try the workspace's program; never raises for API failures."""
    if not workspace.reward_stack_program_id:
        return {"success": False, "error": "RewardSTACK program ID not configured"}
    try:
        async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
            program = await client.get_program()
    except RewardStackError as exc:
        logger.warning("RewardSTACK connection test failed for workspace %s: %s",
                       workspace.id, exc.message)
        return {
            "success": False,
            "error": _CONNECTION_ERRORS.get(exc.code, "Connection failed"),
            "details": exc.message,
        }

    program = program if isinstance(program, dict) else {}
    return {
        "success": True,
        "message": "Connection successful",
        "program": {
            "id": program.get("id", workspace.reward_stack_program_id),
            "name": program.get("name"),
        },
    }


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
async def sync_catalog_skus(
    engine: Engine,
    workspace: Workspace,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Pull the program catalog and upsert it as workspace SKUs.

    Raises :class:`RewardStackError` when the catalog can't be read.
    """
    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        catalog = await client.get_catalog()

    if isinstance(catalog, dict):
        items = catalog.get("items") or []
    elif isinstance(catalog, list):
        items = catalog
    else:
        items = []
    items = [item for item in items if isinstance(item, dict)]

    summary = await run_db(upsert_catalog_skus, engine, workspace.id, items)
    logger.info("Catalog sync for workspace %s: %d new, %d updated",
                workspace.id, summary["synced"], summary["updated"])
    return summary


# ---------------------------------------------------------------------------
# Marketplace SSO
# ---------------------------------------------------------------------------
async def generate_marketplace_sso_url(
    engine: Engine,
    workspace: Workspace,
    user: User,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Return ``{"sso_url", "expires_at"}`` for *user*, syncing them first if needed."""
    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        participant_id = user.reward_stack_participant_id
        if not participant_id or user.reward_stack_sync_status != RewardStackSyncStatus.SYNCED:
            participant_id = await sync_user(engine, user.id, workspace.id, client=client)
        result = await client.create_sso_token(participant_id)

    if not isinstance(result, dict) or not result.get("ssoUrl"):
        raise RewardStackError(
            "RewardSTACK did not return an SSO URL", RewardStackErrorCode.SERVER_ERROR
        )
    return {"sso_url": result["ssoUrl"], "expires_at": result.get("expiresAt")}


# ---------------------------------------------------------------------------
# Webhook subscriptions
# ---------------------------------------------------------------------------
def _store_webhook_secret(engine: Engine, workspace_id: str, secret: str) -> None:
    with get_session(engine) as session:
        workspace = session.get(Workspace, workspace_id)
        if workspace is not None:
            workspace.reward_stack_webhook_secret = secret


def _webhook_items(listing) -> list[dict]:
    if isinstance(listing, dict):
        listing = listing.get("items") or listing.get("webhooks") or []
    if not isinstance(listing, list):
        return []
    return [hook for hook in listing if isinstance(hook, dict)]


async def list_webhooks(
    workspace: Workspace, *, transport: httpx.AsyncBaseTransport | None = None
) -> list[dict]:
    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        return _webhook_items(await client.list_webhooks())


async def setup_default_webhook(
    engine: Engine,
    workspace: Workspace,
    webhook_url: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Subscribe *webhook_url* to every event the receiver handles.

    An existing subscription for the same URL is returned unchanged.  A
    new one gets a fresh signing secret, stored on the workspace so the
    receiver can verify deliveries.
    """
    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        for hook in _webhook_items(await client.list_webhooks()):
            if hook.get("url") == webhook_url:
                logger.info("Workspace %s already has webhook %s", workspace.id, hook.get("id"))
                return {"created": False, "webhook": hook}

        secret = secrets.token_hex(32)
        created = await client.create_webhook(webhook_url, DEFAULT_WEBHOOK_EVENTS, secret)

    await run_db(_store_webhook_secret, engine, workspace.id, secret)
    logger.info("Created RewardSTACK webhook for workspace %s", workspace.id)
    return {"created": True, "webhook": created if isinstance(created, dict) else {}}


async def delete_webhook(
    workspace: Workspace,
    webhook_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        await client.delete_webhook(webhook_id)
