"""
changemaker.rewardstack.webhooks — Inbound RewardSTACK Events
=============================================================

RewardSTACK posts events shaped like::

    {"id": "evt_1", "type": "transaction.completed", "timestamp": "...",
     "data": {"id": "txn_9", "status": "completed", "error": null}}

Events are routed on the category before the dot (``transaction``,
``adjustment``, ``participant``).  Each one is recorded in
``reward_stack_webhook_logs``; a processed row for the same event id makes
later deliveries no-ops, which keeps replays idempotent across restarts.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import (
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    RewardStackWebhookLog,
    RewardStatus,
    User,
    WorkspaceMembership,
    utcnow,
)
from changemaker.rewardstack.reward_logic import map_reward_stack_status

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-rewardstack-signature"


class UnknownWebhookEventError(Exception):
    """The event type's category has no handler."""

    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------
def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded, compared in constant time."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


# ---------------------------------------------------------------------------
# Handlers (run inside an open session)
# ---------------------------------------------------------------------------
def _apply_reward_event(session: Session, issuance: RewardIssuance, event: dict) -> None:
    event_type = event.get("type", "")
    data = event.get("data") or {}
    action = event_type.split(".", 1)[1] if "." in event_type else ""

    if action == "created":
        issuance.reward_stack_status = RewardStackStatus.PROCESSING
    elif action == "updated":
        issuance.reward_stack_status = (
            map_reward_stack_status(data["status"]) if data.get("status")
            else RewardStackStatus.PROCESSING
        )
    elif action == "completed":
        issuance.reward_stack_status = RewardStackStatus.COMPLETED
        issuance.status = RewardStatus.ISSUED
        issuance.issued_at = issuance.issued_at or utcnow()
    elif action == "failed":
        issuance.reward_stack_status = RewardStackStatus.FAILED
        issuance.status = RewardStatus.FAILED
        message = data.get("error") or data.get("message")
        if message:
            issuance.reward_stack_error_message = str(message)
    else:
        logger.warning("Unhandled reward event type %s", event_type)
        return

    issuance.reward_stack_webhook_received = True
    logger.info("RewardIssuance %s updated from %s: %s",
                issuance.id, event_type, issuance.reward_stack_status)


def handle_transaction_event(session: Session, workspace_id: str, event: dict) -> None:
    transaction_id = str((event.get("data") or {}).get("id", ""))
    issuance = session.scalar(
        select(RewardIssuance).where(
            RewardIssuance.workspace_id == workspace_id,
            RewardIssuance.reward_stack_transaction_id == transaction_id,
        )
    )
    if issuance is None:
        logger.warning("No RewardIssuance for transaction %s in workspace %s",
                       transaction_id, workspace_id)
        return
    _apply_reward_event(session, issuance, event)


def handle_adjustment_event(session: Session, workspace_id: str, event: dict) -> None:
    adjustment_id = str((event.get("data") or {}).get("id", ""))
    issuance = session.scalar(
        select(RewardIssuance).where(
            RewardIssuance.workspace_id == workspace_id,
            RewardIssuance.reward_stack_adjustment_id == adjustment_id,
        )
    )
    if issuance is None:
        logger.warning("No RewardIssuance for adjustment %s in workspace %s",
                       adjustment_id, workspace_id)
        return
    _apply_reward_event(session, issuance, event)


def handle_participant_event(session: Session, workspace_id: str, event: dict) -> None:
    event_type = event.get("type", "")
    participant_id = str((event.get("data") or {}).get("id", ""))
    user = session.scalar(
        select(User)
        .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
        .where(
            WorkspaceMembership.workspace_id == workspace_id,
            User.reward_stack_participant_id == participant_id,
        )
    )
    if user is None:
        logger.warning("No user for participant %s in workspace %s",
                       participant_id, workspace_id)
        return

    if event_type in ("participant.created", "participant.updated"):
        user.reward_stack_sync_status = RewardStackSyncStatus.SYNCED
        user.reward_stack_last_sync = utcnow()
    elif event_type == "participant.deleted":
        user.reward_stack_sync_status = RewardStackSyncStatus.NOT_SYNCED
        user.reward_stack_participant_id = None
    else:
        logger.warning("Unhandled participant event type %s", event_type)


_HANDLERS = {
    "transaction": handle_transaction_event,
    "adjustment": handle_adjustment_event,
    "participant": handle_participant_event,
}


def dispatch_event(engine: Engine, workspace_id: str, event: dict) -> None:
    """Route *event* to its handler and commit the resulting changes.

    Raises
    ------
    UnknownWebhookEventError
        If the category before the dot has no handler.
    """
    event_type = str(event.get("type", ""))
    handler = _HANDLERS.get(event_type.split(".", 1)[0])
    if handler is None:
        raise UnknownWebhookEventError(event_type)
    with get_session(engine) as session:
        handler(session, workspace_id, event)


# ---------------------------------------------------------------------------
# Webhook log
# ---------------------------------------------------------------------------
def is_event_processed(engine: Engine, workspace_id: str, event_id: str | None) -> bool:
    if not event_id:
        return False
    with Session(engine) as session:
        return session.scalar(
            select(RewardStackWebhookLog.id).where(
                RewardStackWebhookLog.workspace_id == workspace_id,
                RewardStackWebhookLog.event_id == event_id,
                RewardStackWebhookLog.processed.is_(True),
            ).limit(1)
        ) is not None


def record_webhook(
    engine: Engine,
    workspace_id: str,
    event: dict,
    *,
    error: str | None = None,
) -> int:
    """Insert a log row for *event*; returns its id."""
    with get_session(engine) as session:
        row = RewardStackWebhookLog(
            workspace_id=workspace_id,
            event_id=str(event["id"]) if event.get("id") is not None else None,
            event_type=str(event.get("type") or "unknown"),
            payload=event,
            error=error,
        )
        session.add(row)
        session.flush()
        return row.id


def mark_webhook_processed(engine: Engine, log_id: int) -> None:
    with get_session(engine) as session:
        row = session.get(RewardStackWebhookLog, log_id)
        row.processed = True
        row.processed_at = utcnow()
        row.error = None


def mark_webhook_failed(engine: Engine, log_id: int, error: str) -> None:
    with get_session(engine) as session:
        row = session.get(RewardStackWebhookLog, log_id)
        row.processed = False
        row.error = error


def list_webhook_logs_for_reward(
    engine: Engine, workspace_id: str, reward_id: str, limit: int = 1000
) -> list[RewardStackWebhookLog] | None:
    """Logs whose ``data.id`` matches the issuance's external ids.

    Returns ``None`` when the issuance does not belong to the workspace.
    """
    with Session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        if issuance is None or issuance.workspace_id != workspace_id:
            return None
        external_ids = {
            i for i in (issuance.reward_stack_transaction_id, issuance.reward_stack_adjustment_id)
            if i
        }
        if not external_ids:
            return []
        rows = session.scalars(
            select(RewardStackWebhookLog)
            .where(RewardStackWebhookLog.workspace_id == workspace_id)
            .order_by(RewardStackWebhookLog.created_at.desc())
            .limit(limit)
        ).all()
        return [
            row for row in rows
            if str(((row.payload or {}).get("data") or {}).get("id")) in external_ids
        ]
