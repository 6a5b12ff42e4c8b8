"""
changemaker.services.audit_service — Activity Event Trail
==========================================================

Every workspace mutation that matters to admins (enrollments, reviews,
challenge lifecycle, role changes, reward outcomes) writes one
``activity_events`` row inside the same transaction as the change.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from changemaker.database.models import ActivityEvent

logger = logging.getLogger(__name__)


def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_activity_event(
    session: Session,
    *,
    workspace_id: str,
    type: str,
    challenge_id: str | None = None,
    enrollment_id: str | None = None,
    user_id: str | None = None,
    actor_user_id: str | None = None,
    metadata: dict | None = None,
) -> ActivityEvent:
    """Add an activity event to the current transaction."""
    event = ActivityEvent(
        workspace_id=workspace_id,
        challenge_id=challenge_id,
        enrollment_id=enrollment_id,
        user_id=user_id,
        actor_user_id=actor_user_id,
        type=str(type),
        metadata_=metadata,
    )
    session.add(event)
    return event


def list_activity_events(
    engine: Engine,
    workspace_id: str,
    *,
    page: int = 1,
    page_size: int = 50,
    challenge_id: str | None = None,
    event_type: str | None = None,
) -> dict:
    """Paginated activity feed, newest first."""
    with Session(engine) as session:
        query = select(ActivityEvent).where(ActivityEvent.workspace_id == workspace_id)
        if challenge_id:
            query = query.where(ActivityEvent.challenge_id == challenge_id)
        if event_type:
            query = query.where(ActivityEvent.type == event_type)

        total = session.scalar(
            select(func.count()).select_from(query.subquery())
        ) or 0
        rows = session.scalars(
            query.order_by(ActivityEvent.created_at.desc(), ActivityEvent.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()

        return {
            "total": total,
            "page": page,
            "page_size": page_size,
            "events": [
                {
                    "id": e.id,
                    "type": e.type,
                    "challenge_id": e.challenge_id,
                    "user_id": e.user_id,
                    "actor_user_id": e.actor_user_id,
                    "metadata": e.metadata_,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in rows
            ],
        }
