"""
changemaker.rewardstack.monitoring — Webhook Log Health & Replay
================================================================

Admin-facing views over ``reward_stack_webhook_logs``: counts of stuck and
failed deliveries, a bounded replay of failed events, and housekeeping of
old processed rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import RewardStackWebhookLog, as_utc, utcnow
from changemaker.rewardstack.webhooks import dispatch_event

logger = logging.getLogger(__name__)

Log = RewardStackWebhookLog


def _log_summary(row: RewardStackWebhookLog) -> dict:
    return {
        "id": row.id,
        "event_id": row.event_id,
        "event_type": row.event_type,
        "error": row.error,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def get_unprocessed_webhooks(
    engine: Engine, workspace_id: str, *, limit: int = 100, older_than_minutes: int = 5
) -> dict:
    """Deliveries still unprocessed after *older_than_minutes*."""
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    with Session(engine) as session:
        rows = session.scalars(
            select(Log)
            .where(Log.workspace_id == workspace_id, Log.processed.is_(False), Log.created_at < cutoff)
            .order_by(Log.created_at)
            .limit(limit)
        ).all()
        return {
            "unprocessed_count": len(rows),
            "failed_count": sum(1 for r in rows if r.error is not None),
            "logs": [_log_summary(r) for r in rows],
        }


def get_failed_webhooks(
    engine: Engine, workspace_id: str, *, limit: int = 100, since: datetime | None = None
) -> dict:
    since = since or utcnow() - timedelta(hours=24)
    with Session(engine) as session:
        rows = session.scalars(
            select(Log)
            .where(
                Log.workspace_id == workspace_id,
                Log.processed.is_(False),
                Log.error.is_not(None),
                Log.created_at >= since,
            )
            .order_by(Log.created_at.desc())
            .limit(limit)
        ).all()
        return {"failed_count": len(rows), "logs": [_log_summary(r) for r in rows]}


def retry_failed_webhooks(
    engine: Engine,
    workspace_id: str,
    *,
    log_ids: list[int] | None = None,
    max_retries: int = 10,
) -> list[dict]:
    """Replay failed deliveries oldest first; one result dict per log row."""
    with Session(engine) as session:
        query = (
            select(Log)
            .where(Log.workspace_id == workspace_id, Log.processed.is_(False), Log.error.is_not(None))
            .order_by(Log.created_at)
            .limit(max_retries)
        )
        if log_ids:
            query = query.where(Log.id.in_(log_ids))
        pending = [(r.id, r.event_type, r.payload or {}) for r in session.scalars(query).all()]

    results = []
    for log_id, event_type, payload in pending:
        try:
            dispatch_event(engine, workspace_id, payload)
        except Exception as exc:
            logger.exception("Webhook replay failed for log %s", log_id)
            with get_session(engine) as session:
                session.get(Log, log_id).error = f"Retry failed: {exc}"
            results.append({
                "webhook_log_id": log_id, "event_type": event_type,
                "success": False, "error": str(exc),
            })
            continue

        with get_session(engine) as session:
            row = session.get(Log, log_id)
            row.processed = True
            row.processed_at = utcnow()
            row.error = None
        results.append({"webhook_log_id": log_id, "event_type": event_type, "success": True})

    logger.info("Replayed %d failed webhooks for workspace %s", len(results), workspace_id)
    return results


def get_webhook_health_stats(
    engine: Engine, workspace_id: str, *, since: datetime | None = None
) -> dict:
    """Processing counts and timings for the last 24 hours by default."""
    since = since or utcnow() - timedelta(hours=24)
    base = (Log.workspace_id == workspace_id, Log.created_at >= since)

    with Session(engine) as session:
        def count(*conditions) -> int:
            return session.scalar(select(func.count()).select_from(Log).where(*base, *conditions)) or 0

        total = count()
        processed = count(Log.processed.is_(True))
        failed = count(Log.processed.is_(False), Log.error.is_not(None))
        pending = count(Log.processed.is_(False), Log.error.is_(None))

        timings = session.execute(
            select(Log.created_at, Log.processed_at)
            .where(*base, Log.processed.is_(True), Log.processed_at.is_not(None))
            .limit(100)
        ).all()

    avg_ms = None
    if timings:
        total_ms = sum(
            (as_utc(done) - as_utc(created)).total_seconds() * 1000 for created, done in timings
        )
        avg_ms = total_ms / len(timings)

    return {
        "total": total,
        "processed": processed,
        "failed": failed,
        "pending": pending,
        "processing_rate": (processed / total) * 100 if total else 0.0,
        "avg_processing_time_ms": avg_ms,
    }


def cleanup_old_webhook_logs(engine: Engine, workspace_id: str, older_than_days: int = 30) -> int:
    """Delete processed, error-free rows older than *older_than_days*."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    with get_session(engine) as session:
        result = session.execute(
            delete(Log).where(
                Log.workspace_id == workspace_id,
                Log.processed.is_(True),
                Log.error.is_(None),
                Log.created_at < cutoff,
            )
        )
        deleted = result.rowcount or 0
    if deleted:
        logger.info("Deleted %d old webhook logs for workspace %s", deleted, workspace_id)
    return deleted
