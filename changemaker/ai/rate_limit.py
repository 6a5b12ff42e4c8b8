"""
changemaker.ai.rate_limit — Per-Workspace AI Throttle
=====================================================

Fixed 60-second window per workspace counting both requests and tokens.
State lives in process memory, so each API worker enforces its own limit
and a restart resets every window.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

WINDOW_SECONDS = 60.0


@dataclass(slots=True)
class _Window:
    requests: int
    tokens: int
    started: float


class AIRateLimiter:
    def __init__(
        self,
        requests_per_minute: int = 10,
        tokens_per_minute: int = 50_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def _expired(self, window: _Window, now: float) -> bool:
        return now - window.started > WINDOW_SECONDS

    def _cleanup(self, now: float) -> None:
        for workspace_id in [k for k, w in self._windows.items() if self._expired(w, now)]:
            del self._windows[workspace_id]

    def check_limit(self, workspace_id: str) -> tuple[bool, str | None]:
        """Return ``(allowed, reason)`` for one more request."""
        now = self._clock()
        self._cleanup(now)
        window = self._windows.get(workspace_id)
        if window is None:
            return True, None
        if window.requests >= self.requests_per_minute:
            return False, f"Rate limit exceeded: {self.requests_per_minute} requests per minute"
        if window.tokens >= self.tokens_per_minute:
            return False, f"Token limit exceeded: {self.tokens_per_minute} tokens per minute"
        return True, None

    def record_usage(self, workspace_id: str, tokens: int) -> None:
        now = self._clock()
        window = self._windows.get(workspace_id)
        if window is None or self._expired(window, now):
            self._windows[workspace_id] = _Window(requests=1, tokens=tokens, started=now)
        else:
            window.requests += 1
            window.tokens += tokens

    def get_usage(self, workspace_id: str) -> dict:
        now = self._clock()
        window = self._windows.get(workspace_id)
        if window is None or self._expired(window, now):
            requests = tokens = 0
            reset_in = 0.0
        else:
            requests, tokens = window.requests, window.tokens
            reset_in = max(0.0, WINDOW_SECONDS - (now - window.started))
        return {
            "requests": requests,
            "tokens": tokens,
            "requests_remaining": max(0, self.requests_per_minute - requests),
            "tokens_remaining": max(0, self.tokens_per_minute - tokens),
            "reset_in": round(reset_in, 1),
        }

    def reset(self) -> None:
        self._windows.clear()


rate_limiter = AIRateLimiter()
