"""
changemaker.rewardstack.reward_logic — Reward Issuance Workflow
===============================================================

Drives a ``reward_issuances`` row from PENDING to ISSUED (or FAILED) by
calling RewardSTACK:

    1. Skip rows that were already issued (idempotency).
    2. Validate the grant (positive amount, SKU id, shipping address).
    3. Check the workspace has the integration enabled.
    4. Make sure the recipient exists as a RewardSTACK participant.
    5. Mark the row PENDING / PROCESSING and call the API, retrying 5xx.
    6. Record ISSUED / COMPLETED with the external id, or FAILED with the
       error message.

Integration failures never propagate out of the ``issue_*`` functions;
they come back as ``IssuanceResult(success=False, error=...)`` with the
row already marked FAILED.

All database work is synchronous and goes through :func:`run_db`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from sqlalchemy import Engine, or_, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session, run_db
from changemaker.database.models import (
    ActivityEventType,
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    RewardStatus,
    RewardType,
    User,
    Workspace,
    utcnow,
)
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode
from changemaker.rewardstack.participants import sync_user
from changemaker.services.audit_service import log_activity_event
from changemaker.services.notification_service import (
    notify_reward_issued,
    notify_shipping_address_required,
)
from changemaker.services.reward_service import get_sku

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    max_delay: float = 10.0


DEFAULT_RETRY = RetryConfig()


@dataclass(frozen=True, slots=True)
class IssuanceResult:
    success: bool
    reward_issuance_id: str
    external_id: str | None = None
    error: str | None = None
    already_issued: bool = False


# Labels shown to admins when a SKU reward is blocked on the address.
_ADDRESS_LABELS = {
    "address_line1": "Street Address",
    "city": "City",
    "state": "State",
    "zip_code": "Zip Code",
    "country": "Country",
}

_COUNTRY_NAMES = {
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "canada": "CA",
    "united kingdom": "GB",
    "uk": "GB",
}

_STATUS_MAP = {
    "pending": RewardStackStatus.PENDING,
    "processing": RewardStackStatus.PROCESSING,
    "completed": RewardStackStatus.COMPLETED,
    "success": RewardStackStatus.COMPLETED,
    "delivered": RewardStackStatus.COMPLETED,
    "failed": RewardStackStatus.FAILED,
    "error": RewardStackStatus.FAILED,
    "returned": RewardStackStatus.RETURNED,
    "cancelled": RewardStackStatus.RETURNED,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------
def is_already_issued(issuance: RewardIssuance) -> bool:
    """True once a grant has reached RewardSTACK and must not be re-sent."""
    if (
        issuance.status == RewardStatus.ISSUED
        and issuance.reward_stack_status == RewardStackStatus.COMPLETED
    ):
        return True
    return bool(issuance.reward_stack_transaction_id or issuance.reward_stack_adjustment_id)


def map_reward_stack_status(value: str | None) -> RewardStackStatus:
    """Translate a RewardSTACK status string into our enum."""
    mapped = _STATUS_MAP.get((value or "").lower())
    if mapped is None:
        logger.warning("Unknown RewardSTACK status %r, treating as PROCESSING", value)
        return RewardStackStatus.PROCESSING
    return mapped


def country_code(value: str | None) -> str:
    if not value:
        return ""
    value = value.strip()
    if len(value) == 2:
        return value.upper()
    return _COUNTRY_NAMES.get(value.lower(), value)


def missing_address_fields(user: User) -> list[str]:
    return [label for field, label in _ADDRESS_LABELS.items() if not getattr(user, field)]


def shipping_for(user: User) -> dict:
    return {
        "firstname": user.first_name or "",
        "lastname": user.last_name or "",
        "address1": user.address_line1 or "",
        "address2": user.address_line2 or "",
        "city": user.city or "",
        "state": user.state or "",
        "zip": user.zip_code or "",
        "country": country_code(user.country),
    }


def _external_id(result: Any, *keys: str) -> str | None:
    if not isinstance(result, dict):
        return None
    for key in ("id", *keys):
        if result.get(key) is not None:
            return str(result[key])
    return None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    config: RetryConfig = DEFAULT_RETRY,
) -> T:
    """Await *operation*, retrying only RewardSTACK 5xx failures."""
    delay = config.initial_delay
    attempt = 1
    while True:
        try:
            return await operation()
        except RewardStackError as exc:
            if exc.code != RewardStackErrorCode.SERVER_ERROR or attempt >= config.max_attempts:
                raise
            logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs",
                           label, attempt, config.max_attempts, exc.message, delay)
            await asyncio.sleep(delay)
            delay = min(delay * config.multiplier, config.max_delay)
            attempt += 1


# ---------------------------------------------------------------------------
# Database steps (run on a worker thread)
# ---------------------------------------------------------------------------
def _load(engine: Engine, reward_id: str) -> tuple[RewardIssuance, User, Workspace] | None:
    with Session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        if issuance is None:
            return None
        user = session.get(User, issuance.user_id)
        workspace = session.get(Workspace, issuance.workspace_id)
        return issuance, user, workspace


def _mark_processing(engine: Engine, reward_id: str) -> None:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        issuance.status = RewardStatus.PENDING
        issuance.reward_stack_status = RewardStackStatus.PROCESSING


def _mark_failed(engine: Engine, reward_id: str, message: str) -> None:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        if issuance is None:
            return
        issuance.status = RewardStatus.FAILED
        issuance.reward_stack_status = RewardStackStatus.FAILED
        issuance.reward_stack_error_message = message
        log_activity_event(
            session,
            workspace_id=issuance.workspace_id,
            challenge_id=issuance.challenge_id,
            user_id=issuance.user_id,
            type=ActivityEventType.REWARD_FAILED,
            metadata={"reward_issuance_id": reward_id, "type": issuance.type, "error": message},
        )


def _mark_issued(engine: Engine, reward_id: str, external_id: str, response: Any) -> None:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        issuance.status = RewardStatus.ISSUED
        issuance.reward_stack_status = RewardStackStatus.COMPLETED
        issuance.reward_stack_error_message = None
        issuance.issued_at = utcnow()
        issuance.external_response = response if isinstance(response, dict) else {"data": response}
        if issuance.type == RewardType.POINTS:
            issuance.reward_stack_adjustment_id = external_id
        else:
            issuance.reward_stack_transaction_id = external_id

        workspace = session.get(Workspace, issuance.workspace_id)
        sku = get_sku(session, issuance.workspace_id, issuance.sku_id) if issuance.sku_id else None
        log_activity_event(
            session,
            workspace_id=issuance.workspace_id,
            challenge_id=issuance.challenge_id,
            user_id=issuance.user_id,
            actor_user_id=issuance.issued_by,
            type=ActivityEventType.REWARD_ISSUED,
            metadata={
                "reward_issuance_id": reward_id,
                "type": issuance.type,
                "amount": issuance.amount,
                "sku_id": issuance.sku_id,
                "external_id": external_id,
            },
        )
        notify_reward_issued(
            session,
            user_id=issuance.user_id,
            workspace_id=issuance.workspace_id,
            workspace_slug=workspace.slug,
            reward_type=issuance.type,
            amount=issuance.amount,
            sku_name=sku.name if sku else issuance.sku_id,
        )


def _notify_missing_address(engine: Engine, reward_id: str) -> None:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        workspace = session.get(Workspace, issuance.workspace_id)
        sku = get_sku(session, issuance.workspace_id, issuance.sku_id or "")
        notify_shipping_address_required(
            session,
            user_id=issuance.user_id,
            workspace_id=issuance.workspace_id,
            workspace_slug=workspace.slug,
            reward_id=reward_id,
            sku_name=sku.name if sku else "your reward",
        )


def _reset_for_retry(engine: Engine, reward_id: str) -> None:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        issuance.status = RewardStatus.PENDING
        issuance.reward_stack_status = RewardStackStatus.PENDING
        issuance.reward_stack_error_message = None
        issuance.reward_stack_transaction_id = None
        issuance.reward_stack_adjustment_id = None


def _apply_polled_status(
    engine: Engine, reward_id: str, status: RewardStackStatus, error: str | None
) -> bool:
    with get_session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        previous = issuance.reward_stack_status
        if previous == status:
            return False
        issuance.reward_stack_status = status
        if status == RewardStackStatus.COMPLETED:
            issuance.status = RewardStatus.ISSUED
            issuance.issued_at = issuance.issued_at or utcnow()
        elif status == RewardStackStatus.FAILED:
            issuance.status = RewardStatus.FAILED
            issuance.reward_stack_error_message = error or "Transaction failed"
        logger.info("RewardIssuance %s status: %s -> %s", reward_id, previous, status)
        return True


def _ids_for_monitoring(engine: Engine, workspace_id: str, limit: int) -> list[str]:
    with Session(engine) as session:
        return list(session.scalars(
            select(RewardIssuance.id)
            .where(
                RewardIssuance.workspace_id == workspace_id,
                RewardIssuance.reward_stack_status.in_(
                    [RewardStackStatus.PENDING, RewardStackStatus.PROCESSING]
                ),
                or_(
                    RewardIssuance.reward_stack_transaction_id.is_not(None),
                    RewardIssuance.reward_stack_adjustment_id.is_not(None),
                ),
            )
            .order_by(RewardIssuance.created_at)
            .limit(limit)
        ).all())


def _failed_ids(engine: Engine, workspace_id: str, limit: int) -> list[str]:
    with Session(engine) as session:
        return list(session.scalars(
            select(RewardIssuance.id)
            .where(
                RewardIssuance.workspace_id == workspace_id,
                RewardIssuance.status == RewardStatus.FAILED,
            )
            .order_by(RewardIssuance.created_at)
            .limit(limit)
        ).all())


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------
async def _fail(engine: Engine, reward_id: str, message: str) -> IssuanceResult:
    logger.error("Reward issuance %s failed: %s", reward_id, message)
    await run_db(_mark_failed, engine, reward_id, message)
    return IssuanceResult(success=False, reward_issuance_id=reward_id, error=message)


async def _issue(
    engine: Engine,
    reward_id: str,
    expected_type: RewardType,
    transport: httpx.AsyncBaseTransport | None,
    retry: RetryConfig,
) -> IssuanceResult:
    loaded = await run_db(_load, engine, reward_id)
    if loaded is None:
        return IssuanceResult(
            success=False, reward_issuance_id=reward_id, error="Reward issuance not found"
        )
    issuance, user, workspace = loaded

    if is_already_issued(issuance):
        logger.info("Reward issuance %s already issued; skipping", reward_id)
        return IssuanceResult(
            success=True,
            reward_issuance_id=reward_id,
            external_id=issuance.reward_stack_adjustment_id or issuance.reward_stack_transaction_id,
            already_issued=True,
        )

    if issuance.type != expected_type:
        return await _fail(engine, reward_id, f"Invalid reward type: {issuance.type}")
    if expected_type == RewardType.POINTS and (issuance.amount is None or issuance.amount <= 0):
        return await _fail(engine, reward_id, "Points amount must be positive")
    if expected_type == RewardType.SKU:
        if not issuance.sku_id:
            return await _fail(engine, reward_id, "SKU ID is required for catalog rewards")
        missing = missing_address_fields(user)
        if missing:
            await run_db(_notify_missing_address, engine, reward_id)
            return await _fail(
                engine, reward_id,
                "Participant missing required shipping address fields: "
                f"{', '.join(missing)}",
            )

    if not workspace.reward_stack_enabled:
        return await _fail(engine, reward_id, "RewardSTACK integration is not enabled")
    if not workspace.reward_stack_program_id:
        return await _fail(engine, reward_id, "RewardSTACK program ID not configured")

    metadata = {
        **(issuance.metadata_ or {}),
        "changemaker_reward_id": reward_id,
        "changemaker_challenge_id": issuance.challenge_id,
    }

    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        participant_id = user.reward_stack_participant_id
        if not participant_id or user.reward_stack_sync_status != RewardStackSyncStatus.SYNCED:
            try:
                participant_id = await sync_user(engine, user.id, workspace.id, client=client)
            except RewardStackError as exc:
                return await _fail(engine, reward_id, f"Failed to sync participant: {exc.message}")

        await run_db(_mark_processing, engine, reward_id)

        try:
            if expected_type == RewardType.POINTS:
                result = await with_retry(
                    lambda: client.create_adjustment(
                        participant_id,
                        issuance.amount,
                        f"Challenge reward - {issuance.challenge_id or 'Manual'}",
                        metadata,
                    ),
                    f"Point adjustment for {reward_id}",
                    retry,
                )
                external_id = _external_id(result, "adjustmentId")
            else:
                result = await with_retry(
                    lambda: client.create_transaction(
                        participant_id, issuance.sku_id, shipping_for(user), metadata
                    ),
                    f"Catalog transaction for {reward_id}",
                    retry,
                )
                external_id = _external_id(result, "transactionId")
        except RewardStackError as exc:
            return await _fail(engine, reward_id, exc.message)

    if not external_id:
        return await _fail(engine, reward_id, "RewardSTACK did not return a transaction id")

    await run_db(_mark_issued, engine, reward_id, external_id, result)
    logger.info("Issued %s reward %s (external id %s)", expected_type, reward_id, external_id)
    return IssuanceResult(success=True, reward_issuance_id=reward_id, external_id=external_id)


async def issue_points_reward(
    engine: Engine,
    reward_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    retry: RetryConfig = DEFAULT_RETRY,
) -> IssuanceResult:
    return await _issue(engine, reward_id, RewardType.POINTS, transport, retry)


async def issue_sku_reward(
    engine: Engine,
    reward_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    retry: RetryConfig = DEFAULT_RETRY,
) -> IssuanceResult:
    return await _issue(engine, reward_id, RewardType.SKU, transport, retry)


async def issue_reward_transaction(
    engine: Engine,
    reward_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    retry: RetryConfig = DEFAULT_RETRY,
) -> IssuanceResult:
    """Issue a reward of either type."""
    loaded = await run_db(_load, engine, reward_id)
    if loaded is None:
        return IssuanceResult(
            success=False, reward_issuance_id=reward_id, error="Reward issuance not found"
        )
    reward_type = loaded[0].type
    if reward_type == RewardType.POINTS:
        return await issue_points_reward(engine, reward_id, transport=transport, retry=retry)
    if reward_type == RewardType.SKU:
        return await issue_sku_reward(engine, reward_id, transport=transport, retry=retry)
    return await _fail(engine, reward_id, f"Unsupported reward type: {reward_type}")


# ---------------------------------------------------------------------------
# Status polling & retries
# ---------------------------------------------------------------------------
async def check_reward_issuance_status(
    engine: Engine,
    reward_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Poll RewardSTACK for one issuance and apply any status change.

    Returns ``{"success", "status", "updated"}`` or ``{"success": False,
    "error"}``.
    """
    loaded = await run_db(_load, engine, reward_id)
    if loaded is None:
        return {"success": False, "error": "Reward issuance not found"}
    issuance, user, workspace = loaded

    if not user.reward_stack_participant_id:
        return {"success": False, "error": "Participant not synced to RewardSTACK"}
    is_points = issuance.type == RewardType.POINTS
    external_id = (
        issuance.reward_stack_adjustment_id if is_points else issuance.reward_stack_transaction_id
    )
    if not external_id:
        return {"success": False, "error": "No external transaction/adjustment ID found"}

    try:
        async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
            if is_points:
                remote = await client.get_adjustment(user.reward_stack_participant_id, external_id)
            else:
                remote = await client.get_transaction(user.reward_stack_participant_id, external_id)
    except RewardStackError as exc:
        logger.error("Status check for %s failed: %s", reward_id, exc.message)
        return {"success": False, "error": exc.message}

    if not isinstance(remote, dict):
        logger.error("Status check for %s got an unexpected body: %r", reward_id, remote)
        return {"success": False, "error": "Unexpected status response from RewardSTACK"}
    status = map_reward_stack_status(remote.get("status"))
    updated = await run_db(_apply_polled_status, engine, reward_id, status, remote.get("error"))
    return {"success": True, "status": str(status), "updated": updated}


async def retry_failed_reward_issuance(
    engine: Engine,
    reward_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    retry: RetryConfig = DEFAULT_RETRY,
) -> IssuanceResult:
    loaded = await run_db(_load, engine, reward_id)
    if loaded is None:
        return IssuanceResult(
            success=False, reward_issuance_id=reward_id, error="Reward issuance not found"
        )
    status = loaded[0].status
    if status != RewardStatus.FAILED:
        return IssuanceResult(
            success=False,
            reward_issuance_id=reward_id,
            error=f"Cannot retry reward with status {status}. Only FAILED rewards can be retried.",
        )
    await run_db(_reset_for_retry, engine, reward_id)
    logger.info("Retrying reward issuance %s", reward_id)
    return await issue_reward_transaction(engine, reward_id, transport=transport, retry=retry)


async def monitor_pending_rewards(
    engine: Engine,
    workspace_id: str,
    limit: int = 50,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Poll every in-flight issuance of a workspace, oldest first."""
    ids = await run_db(_ids_for_monitoring, engine, workspace_id, limit)
    details = [f"Found {len(ids)} pending/processing rewards"]
    checked = updated = failed = 0
    for reward_id in ids:
        result = await check_reward_issuance_status(engine, reward_id, transport=transport)
        checked += 1
        if not result["success"]:
            failed += 1
        elif result["updated"]:
            updated += 1
    if ids:
        details += [
            f"Checked {checked} rewards",
            f"Updated {updated} statuses",
            f"Failed to check {failed} rewards",
        ]
    return {"checked": checked, "updated": updated, "failed": failed, "details": details}


async def retry_failed_rewards(
    engine: Engine,
    workspace_id: str,
    limit: int = 50,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    retry: RetryConfig = DEFAULT_RETRY,
) -> dict:
    """Retry up to *limit* FAILED issuances of a workspace, oldest first."""
    ids = await run_db(_failed_ids, engine, workspace_id, limit)
    details = [f"Found {len(ids)} failed rewards"]
    successful = failed = 0
    for reward_id in ids:
        result = await retry_failed_reward_issuance(
            engine, reward_id, transport=transport, retry=retry
        )
        if result.success:
            successful += 1
        else:
            failed += 1
            details.append(f"{reward_id}: {result.error}")
    return {"attempted": len(ids), "successful": successful, "failed": failed, "details": details}
