"""
changemaker.services.notification_service — Participant Inbox
==============================================================

Notifications are scoped to (user, workspace) and carry an optional expiry.
Expired and dismissed rows are hidden from the inbox by default and
``delete_expired_notifications`` is the housekeeping sweep.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import Engine, delete, func, or_, select, update
from sqlalchemy.orm import Session

from changemaker.constants import (
    NOTIFICATION_DEFAULT_TTL_DAYS,
    REWARD_NOTIFICATION_TTL_DAYS,
    SHIPPING_ADDRESS_FIELDS,
    SHIPPING_NOTIFICATION_TTL_DAYS,
    SUBMISSION_NOTIFICATION_TTL_DAYS,
)
from changemaker.database.engine import get_session
from changemaker.database.models import Notification, NotificationType, User, utcnow

logger = logging.getLogger(__name__)


def add_notification(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    type: str,
    title: str,
    message: str,
    action_url: str | None = None,
    action_text: str | None = None,
    expires_in_days: int | None = NOTIFICATION_DEFAULT_TTL_DAYS,
) -> Notification:
    """Queue a notification on an open session."""
    notification = Notification(
        user_id=user_id,
        workspace_id=workspace_id,
        type=str(type),
        title=title,
        message=message,
        action_url=action_url,
        action_text=action_text,
        expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    session.add(notification)
    return notification


def create_notification(engine: Engine, **kwargs) -> Notification:
    with get_session(engine) as session:
        notification = add_notification(session, **kwargs)
        session.flush()
        return notification


def _visible(query, include_dismissed: bool = False, include_expired: bool = False):
    if not include_dismissed:
        query = query.where(Notification.dismissed.is_(False))
    if not include_expired:
        query = query.where(
            or_(Notification.expires_at.is_(None), Notification.expires_at > utcnow())
        )
    return query


def list_notifications(
    engine: Engine,
    user_id: str,
    workspace_id: str,
    *,
    unread_only: bool = False,
    include_dismissed: bool = False,
    include_expired: bool = False,
    limit: int = 50,
) -> list[Notification]:
    with Session(engine) as session:
        query = select(Notification).where(
            Notification.user_id == user_id,
            Notification.workspace_id == workspace_id,
        )
        query = _visible(query, include_dismissed, include_expired)
        if unread_only:
            query = query.where(Notification.read.is_(False))
        return list(session.scalars(
            query.order_by(Notification.created_at.desc()).limit(limit)
        ).all())


def unread_count(engine: Engine, user_id: str, workspace_id: str) -> int:
    with Session(engine) as session:
        query = select(func.count()).select_from(Notification).where(
            Notification.user_id == user_id,
            Notification.workspace_id == workspace_id,
            Notification.read.is_(False),
        )
        return session.scalar(_visible(query)) or 0


def mark_as_read(engine: Engine, user_id: str, notification_ids: list[str]) -> int:
    """Mark the caller's own notifications read; returns rows changed."""
    if not notification_ids:
        return 0
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(
                Notification.id.in_(notification_ids),
                Notification.user_id == user_id,
                Notification.read.is_(False),
            )
            .values(read=True, read_at=utcnow())
        )
        return result.rowcount


def mark_all_as_read(engine: Engine, user_id: str, workspace_id: str) -> int:
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(
                Notification.user_id == user_id,
                Notification.workspace_id == workspace_id,
                Notification.read.is_(False),
            )
            .values(read=True, read_at=utcnow())
        )
        return result.rowcount


def dismiss_notification(engine: Engine, user_id: str, notification_id: str) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.user_id == user_id)
            .values(dismissed=True)
        )
        return result.rowcount > 0


def delete_expired_notifications(engine: Engine) -> int:
    with get_session(engine) as session:
        result = session.execute(
            delete(Notification).where(
                Notification.expires_at.is_not(None),
                Notification.expires_at < utcnow(),
            )
        )
    if result.rowcount:
        logger.info("Deleted %d expired notifications", result.rowcount)
    return result.rowcount


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------
def has_incomplete_shipping_address(user: User) -> bool:
    return any(not getattr(user, f, None) for f in SHIPPING_ADDRESS_FIELDS)


def notify_shipping_address_required(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    reward_id: str,
    sku_name: str,
) -> Notification | None:
    """One open shipping reminder per user per workspace."""
    existing = session.scalar(
        select(Notification.id).where(
            Notification.user_id == user_id,
            Notification.workspace_id == workspace_id,
            Notification.type == NotificationType.SHIPPING_ADDRESS_REQUIRED,
            Notification.dismissed.is_(False),
            or_(Notification.expires_at.is_(None), Notification.expires_at > utcnow()),
        )
    )
    if existing is not None:
        return None
    return add_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.SHIPPING_ADDRESS_REQUIRED,
        title="Shipping Address Required",
        message=(
            f'Your reward "{sku_name}" is ready! Please add your shipping '
            "address to complete delivery."
        ),
        action_url=(
            f"/w/{workspace_slug}/participant/profile?section=address&reward={reward_id}"
        ),
        action_text="Add Shipping Address",
        expires_in_days=SHIPPING_NOTIFICATION_TTL_DAYS,
    )


def notify_reward_issued(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    reward_type: str,
    amount: int | None = None,
    sku_name: str | None = None,
) -> Notification:
    if reward_type == "points":
        message = f"You've earned {amount} points!"
    else:
        message = f'Your reward "{sku_name}" has been issued!'
    return add_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.REWARD_ISSUED,
        title="Reward Earned!",
        message=message,
        action_url=f"/w/{workspace_slug}/participant/dashboard",
        action_text="View Rewards",
        expires_in_days=REWARD_NOTIFICATION_TTL_DAYS,
    )


def notify_submission_approved(
    session: Session,
    *,
    user_id: str,
    workspace_id: str,
    workspace_slug: str,
    challenge_id: str,
    challenge_title: str,
    points: int | None = None,
) -> Notification:
    message = f'Your submission for "{challenge_title}" has been approved!'
    if points:
        message += f" You earned {points} points."
    return add_notification(
        session,
        user_id=user_id,
        workspace_id=workspace_id,
        type=NotificationType.SUBMISSION_APPROVED,
        title="Submission Approved",
        message=message,
        action_url=f"/w/{workspace_slug}/participant/challenges/{challenge_id}",
        action_text="View Challenge",
        expires_in_days=SUBMISSION_NOTIFICATION_TTL_DAYS,
    )
