"""
changemaker.api.rate_limit — Durable Sliding-Window Throttles
==============================================================

Two limiters share the ``rate_limit_events`` table, each under its own key
prefix:

* ``user:<id>``      — 30 mutations per minute per signed-in user;
* ``webhook:<id>``   — 100 inbound RewardSTACK webhooks per minute per
  workspace.

Both return HTTP 429 with a ``Retry-After`` header when exceeded.  State is
in the database so limits hold across restarts and API workers.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from changemaker.api.deps import get_current_user
from changemaker.database.models import RateLimitEvent, User

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT = 30
DEFAULT_WEBHOOK_RATE_LIMIT = 100
DEFAULT_WINDOW_SECONDS = 60

# HTTP methods considered "mutations"
_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimiter:
    """Sliding-window rate limiter keyed by an arbitrary string."""

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
        prefix: str = "",
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _normalize_dt(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Check if *key* is within its limit.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request expires
          - limit: the max requests per window
        """
        key = self._key(key)
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            session.execute(
                delete(RateLimitEvent).where(
                    RateLimitEvent.key == key,
                    RateLimitEvent.timestamp < cutoff,
                )
            )
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = self._normalize_dt(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }

        return True, {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, key: str) -> dict[str, Any]:
        """Record one request and return the same info dict as ``check()``."""
        key = self._key(key)
        cutoff = datetime.now(UTC) - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            session.execute(
                delete(RateLimitEvent).where(
                    RateLimitEvent.key == key,
                    RateLimitEvent.timestamp < cutoff,
                )
            )
            session.add(RateLimitEvent(key=key))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent).where(RateLimitEvent.key == key)
            ) or 0
            session.commit()

        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def hit(self, key: str) -> tuple[bool, dict[str, Any]]:
        """``check`` then ``record`` when allowed."""
        allowed, info = self.check(key)
        if not allowed:
            return False, info
        return True, self.record(key)

    def reset(self, key: str | None = None) -> None:
        """Clear state for *key*, or for every key under this prefix."""
        with Session(self.engine) as session:
            if key is None:
                session.execute(
                    delete(RateLimitEvent).where(RateLimitEvent.key.startswith(self.prefix))
                )
            else:
                session.execute(delete(RateLimitEvent).where(RateLimitEvent.key == self._key(key)))
            session.commit()


def too_many_requests(limiter: RateLimiter, info: dict, what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "rate_limit_exceeded",
            "message": f"Rate limit exceeded: {limiter.max_requests} {what} per minute.",
            "retry_after": info["reset"],
        },
        headers={"Retry-After": str(info["reset"])},
    )


# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------
_limiter: RateLimiter | None = None
_webhook_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    if _limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiter() first")
    return _limiter


def get_webhook_rate_limiter() -> RateLimiter:
    if _webhook_limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiter() first")
    return _webhook_limiter


def configure_rate_limiter(
    *,
    engine: Engine,
    mutations_per_minute: int = DEFAULT_RATE_LIMIT,
    webhooks_per_minute: int = DEFAULT_WEBHOOK_RATE_LIMIT,
) -> None:
    """Configure both global limiters against durable DB-backed storage."""
    global _limiter, _webhook_limiter
    _limiter = RateLimiter(
        mutations_per_minute, DEFAULT_WINDOW_SECONDS, engine=engine, prefix="user:"
    )
    _webhook_limiter = RateLimiter(
        webhooks_per_minute, DEFAULT_WINDOW_SECONDS, engine=engine, prefix="webhook:"
    )


# ---------------------------------------------------------------------------
# FastAPI dependency — chains after get_current_user
# ---------------------------------------------------------------------------
async def rate_limited_user(
    request: Request,
    user: User = Depends(get_current_user),
) -> User:
    """Authenticate the caller *and* enforce the per-user mutation limit.

    GET/HEAD/OPTIONS pass through uncounted.  Attach at router level with
    ``APIRouter(dependencies=[Depends(rate_limited_user)])``.
    """
    if request.method not in _MUTATION_METHODS:
        return user

    limiter = get_rate_limiter()
    allowed, info = await asyncio.to_thread(limiter.check, user.id)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for user %s: %d/%ds",
            user.id, limiter.max_requests, limiter.window_seconds,
        )
        raise too_many_requests(limiter, info, "mutations")

    await asyncio.to_thread(limiter.record, user.id)
    return user
