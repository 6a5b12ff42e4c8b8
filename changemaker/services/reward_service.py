"""
changemaker.services.reward_service — Reward Issuance Records & SKU Catalog
===========================================================================

Creates the local ``reward_issuances`` rows that the RewardSTACK workflow
(:mod:`changemaker.rewardstack.reward_logic`) later drives through
``PENDING → ISSUED / FAILED``, and manages each workspace's SKU catalog.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivitySubmission,
    Challenge,
    RewardIssuance,
    RewardStatus,
    RewardType,
    WorkspaceMembership,
    WorkspaceSku,
    utcnow,
)
from changemaker.errors import ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def add_issuance(
    session: Session,
    *,
    workspace_id: str,
    user_id: str,
    type: str,
    amount: int | None = None,
    sku_id: str | None = None,
    challenge_id: str | None = None,
    submission_id: str | None = None,
    description: str | None = None,
    issued_by: str | None = None,
    metadata: dict | None = None,
) -> RewardIssuance:
    """Create a PENDING issuance and link it to its submission, if any."""
    if type == RewardType.POINTS and (amount is None or amount <= 0):
        raise ValidationError("Points amount must be positive")
    if type == RewardType.SKU and not sku_id:
        raise ValidationError("SKU rewards require sku_id")
    if type not in (RewardType.POINTS, RewardType.SKU):
        raise ValidationError(f"Unsupported reward type '{type}'")

    issuance = RewardIssuance(
        workspace_id=workspace_id,
        user_id=user_id,
        challenge_id=challenge_id,
        submission_id=submission_id,
        type=str(type),
        amount=amount,
        sku_id=sku_id,
        description=description,
        issued_by=issued_by,
        status=RewardStatus.PENDING,
        metadata_=metadata,
    )
    session.add(issuance)
    session.flush()

    if submission_id:
        submission = session.get(ActivitySubmission, submission_id)
        if submission is not None:
            submission.reward_issuance_id = issuance.id
            submission.reward_issued = True
    return issuance


def create_issuance(engine: Engine, **kwargs: Any) -> RewardIssuance:
    with get_session(engine) as session:
        return add_issuance(session, **kwargs)


def issue_manual_reward(
    engine: Engine,
    workspace_id: str,
    *,
    user_id: str,
    type: str,
    amount: int | None = None,
    sku_id: str | None = None,
    challenge_id: str | None = None,
    description: str | None = None,
    issued_by: str | None = None,
    integration_enabled: bool = False,
) -> RewardIssuance:
    """Record an admin's grant to a member of *workspace_id*.

    SKU grants must name an active SKU from the workspace catalog and take
    their amount from the SKU's value.  Without the RewardSTACK
    integration there is nothing to send, so the row is ISSUED at once.
    """
    with get_session(engine) as session:
        membership = session.scalar(
            select(WorkspaceMembership).where(
                WorkspaceMembership.user_id == user_id,
                WorkspaceMembership.workspace_id == workspace_id,
            )
        )
        if membership is None:
            raise ResourceNotFoundError(
                "User", user_id, message="User is not a member of this workspace"
            )
        if challenge_id:
            challenge = session.get(Challenge, challenge_id)
            if challenge is None or challenge.workspace_id != workspace_id:
                raise ResourceNotFoundError("Challenge", challenge_id)
        if type == RewardType.SKU:
            if not sku_id:
                raise ValidationError("SKU rewards require sku_id")
            sku = get_sku(session, workspace_id, sku_id)
            if sku is None or not sku.is_active:
                raise ValidationError("This SKU is not available for this workspace or is inactive")
            amount = sku.value

        issuance = add_issuance(
            session,
            workspace_id=workspace_id,
            user_id=user_id,
            type=type,
            amount=amount,
            sku_id=sku_id,
            challenge_id=challenge_id,
            description=description,
            issued_by=issued_by,
        )
        if not integration_enabled:
            issuance.status = RewardStatus.ISSUED
            issuance.issued_at = utcnow()
        logger.info("Manual %s reward %s for user %s in workspace %s",
                    type, issuance.id, user_id, workspace_id)
        return issuance


def get_issuance(engine: Engine, workspace_id: str, reward_id: str) -> RewardIssuance | None:
    with Session(engine) as session:
        issuance = session.get(RewardIssuance, reward_id)
        if issuance is None or issuance.workspace_id != workspace_id:
            return None
        return issuance


def list_issuances(
    engine: Engine,
    workspace_id: str,
    *,
    status: str | None = None,
    type: str | None = None,
    challenge_id: str | None = None,
    user_id: str | None = None,
    limit: int = 100,
) -> list[RewardIssuance]:
    with Session(engine) as session:
        query = select(RewardIssuance).where(RewardIssuance.workspace_id == workspace_id)
        if status:
            query = query.where(RewardIssuance.status == status)
        if type:
            query = query.where(RewardIssuance.type == type)
        if challenge_id:
            query = query.where(RewardIssuance.challenge_id == challenge_id)
        if user_id:
            query = query.where(RewardIssuance.user_id == user_id)
        return list(session.scalars(
            query.order_by(RewardIssuance.created_at.desc()).limit(limit)
        ).all())


def issuance_to_dict(issuance: RewardIssuance) -> dict:
    return {
        "id": issuance.id,
        "user_id": issuance.user_id,
        "challenge_id": issuance.challenge_id,
        "submission_id": issuance.submission_id,
        "type": issuance.type,
        "amount": issuance.amount,
        "sku_id": issuance.sku_id,
        "description": issuance.description,
        "status": issuance.status,
        "reward_stack_status": issuance.reward_stack_status,
        "reward_stack_transaction_id": issuance.reward_stack_transaction_id,
        "reward_stack_adjustment_id": issuance.reward_stack_adjustment_id,
        "reward_stack_error_message": issuance.reward_stack_error_message,
        "issued_at": issuance.issued_at.isoformat() if issuance.issued_at else None,
        "created_at": issuance.created_at.isoformat() if issuance.created_at else None,
    }


# ---------------------------------------------------------------------------
# SKU catalog
# ---------------------------------------------------------------------------
def list_skus(engine: Engine, workspace_id: str, *, active_only: bool = False) -> list[WorkspaceSku]:
    with Session(engine) as session:
        query = select(WorkspaceSku).where(WorkspaceSku.workspace_id == workspace_id)
        if active_only:
            query = query.where(WorkspaceSku.is_active.is_(True))
        return list(session.scalars(query.order_by(WorkspaceSku.name)).all())


def get_sku(session: Session, workspace_id: str, sku_id: str) -> WorkspaceSku | None:
    return session.scalar(
        select(WorkspaceSku).where(
            WorkspaceSku.workspace_id == workspace_id,
            WorkspaceSku.sku_id == sku_id,
        )
    )


def create_sku(
    engine: Engine,
    workspace_id: str,
    *,
    sku_id: str,
    name: str,
    description: str | None = None,
    value: int | None = None,
    requires_shipping: bool = True,
) -> WorkspaceSku:
    if not sku_id or not sku_id.strip():
        raise ValidationError("SKU id is required")
    if not name or not name.strip():
        raise ValidationError("Name is required")
    with get_session(engine) as session:
        if get_sku(session, workspace_id, sku_id.strip()) is not None:
            raise ValidationError(f"SKU '{sku_id}' already exists in this workspace")
        sku = WorkspaceSku(
            workspace_id=workspace_id,
            sku_id=sku_id.strip(),
            name=name.strip(),
            description=description,
            value=value,
            requires_shipping=requires_shipping,
        )
        session.add(sku)
        session.flush()
        return sku


def set_sku_active(engine: Engine, workspace_id: str, sku_id: str, active: bool) -> bool:
    with get_session(engine) as session:
        sku = get_sku(session, workspace_id, sku_id)
        if sku is None:
            return False
        sku.is_active = active
        return True


def upsert_catalog_skus(engine: Engine, workspace_id: str, items: list[dict]) -> dict:
    """Mirror RewardSTACK catalog entries into the workspace SKU table.

    Returns ``{"synced": <new>, "updated": <existing>, "total": <items>}``.
    """
    synced = updated = 0
    with get_session(engine) as session:
        for item in items:
            sku_id = str(item.get("sku") or "").strip()
            if not sku_id:
                continue
            fields = {
                "name": item.get("name") or sku_id,
                "description": item.get("description"),
                "value": item.get("value"),
                "is_active": bool(item.get("isActive", True)),
            }
            sku = get_sku(session, workspace_id, sku_id)
            if sku is None:
                session.add(WorkspaceSku(workspace_id=workspace_id, sku_id=sku_id, **fields))
                synced += 1
            else:
                for key, value in fields.items():
                    setattr(sku, key, value)
                updated += 1
    return {"synced": synced, "updated": updated, "total": len(items)}
