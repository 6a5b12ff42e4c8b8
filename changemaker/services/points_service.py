"""
changemaker.services.points_service — Balances, Budgets & Ledger
=================================================================

A points award touches three tables in one transaction:

    1. challenge budget ``allocated`` (or the workspace budget when the
       challenge has none; no budget row means nothing to track)
    2. the recipient's ``points_balances`` row (upserted)
    3. one append-only ``points_ledger`` row

Budgets are ceilings for reporting; an award that overshoots one is still
recorded.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.engine import get_session
from changemaker.database.models import (
    Challenge,
    ChallengePointsBudget,
    PointsBalance,
    PointsLedger,
    WorkspacePointsBudget,
)
from changemaker.errors import DatabaseError, ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

AWARD_REASON = "AWARD_APPROVED"


def award_points_with_budget(
    session: Session,
    *,
    workspace_id: str,
    to_user_id: str,
    amount: int,
    challenge_id: str | None = None,
    actor_user_id: str | None = None,
    submission_id: str | None = None,
) -> PointsBalance:
    """Credit *amount* points inside the caller's transaction."""
    if amount is None or amount <= 0:
        raise DatabaseError("Invalid award amount")

    budget = None
    if challenge_id:
        budget = session.get(ChallengePointsBudget, challenge_id)
    if budget is None:
        budget = session.get(WorkspacePointsBudget, workspace_id)
    if budget is not None:
        budget.allocated += amount

    balance = session.scalar(
        select(PointsBalance).where(
            PointsBalance.user_id == to_user_id,
            PointsBalance.workspace_id == workspace_id,
        )
    )
    if balance is None:
        balance = PointsBalance(
            user_id=to_user_id,
            workspace_id=workspace_id,
            total_points=amount,
            available_points=amount,
        )
        session.add(balance)
    else:
        balance.total_points += amount
        balance.available_points += amount

    session.add(PointsLedger(
        workspace_id=workspace_id,
        challenge_id=challenge_id,
        to_user_id=to_user_id,
        actor_user_id=actor_user_id,
        submission_id=submission_id,
        amount=amount,
        reason=AWARD_REASON,
    ))
    session.flush()
    logger.info("Awarded %d points to %s in %s", amount, to_user_id, workspace_id)
    return balance


def award_points(engine: Engine, **kwargs) -> PointsBalance:
    """Standalone award in its own transaction."""
    with get_session(engine) as session:
        return award_points_with_budget(session, **kwargs)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_balance(engine: Engine, user_id: str, workspace_id: str) -> dict:
    with Session(engine) as session:
        balance = session.scalar(
            select(PointsBalance).where(
                PointsBalance.user_id == user_id,
                PointsBalance.workspace_id == workspace_id,
            )
        )
    if balance is None:
        return {"total_points": 0, "available_points": 0}
    return {
        "total_points": balance.total_points,
        "available_points": balance.available_points,
    }


def get_leaderboard(engine: Engine, workspace_id: str, limit: int = 10) -> list[dict]:
    """Top earners by lifetime points."""
    with Session(engine) as session:
        rows = session.scalars(
            select(PointsBalance)
            .options(selectinload(PointsBalance.user))
            .where(PointsBalance.workspace_id == workspace_id)
            .order_by(PointsBalance.total_points.desc())
            .limit(limit)
        ).all()
        return [
            {
                "rank": i,
                "user_id": row.user_id,
                "email": row.user.email,
                "display_name": row.user.display_name
                or " ".join(p for p in (row.user.first_name, row.user.last_name) if p)
                or row.user.email,
                "total_points": row.total_points,
            }
            for i, row in enumerate(rows, start=1)
        ]


def get_ledger(engine: Engine, workspace_id: str, *, user_id: str | None = None,
               limit: int = 50) -> list[PointsLedger]:
    with Session(engine) as session:
        query = select(PointsLedger).where(PointsLedger.workspace_id == workspace_id)
        if user_id:
            query = query.where(PointsLedger.to_user_id == user_id)
        return list(session.scalars(
            query.order_by(PointsLedger.id.desc()).limit(limit)
        ).all())


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------
def _budget_dict(budget) -> dict:
    if budget is None:
        return {"total_budget": 0, "allocated": 0, "remaining": 0}
    return {
        "total_budget": budget.total_budget,
        "allocated": budget.allocated,
        "remaining": budget.total_budget - budget.allocated,
    }


def get_workspace_budget(engine: Engine, workspace_id: str) -> dict:
    with Session(engine) as session:
        return _budget_dict(session.get(WorkspacePointsBudget, workspace_id))


def upsert_workspace_budget(
    engine: Engine, workspace_id: str, total_budget: int, *, updated_by: str
) -> dict:
    if total_budget < 0:
        raise ValidationError("Budget cannot be negative")
    with get_session(engine) as session:
        budget = session.get(WorkspacePointsBudget, workspace_id)
        if budget is None:
            budget = WorkspacePointsBudget(workspace_id=workspace_id, allocated=0)
            session.add(budget)
        budget.total_budget = total_budget
        budget.updated_by = updated_by
        session.flush()
        return _budget_dict(budget)


def upsert_challenge_budget(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    total_budget: int,
    *,
    updated_by: str,
) -> dict:
    if total_budget < 0:
        raise ValidationError("Budget cannot be negative")
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        budget = session.get(ChallengePointsBudget, challenge_id)
        if budget is None:
            budget = ChallengePointsBudget(
                challenge_id=challenge_id, workspace_id=workspace_id, allocated=0
            )
            session.add(budget)
        budget.total_budget = total_budget
        budget.updated_by = updated_by
        session.flush()
        return _budget_dict(budget)
