"""
changemaker.ai.cost_tracker — AI Spend Accounting
=================================================

Priced at $3 per million input tokens and $15 per million output tokens.
Entries older than 30 days are discarded on every write.  In-memory only.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass

RETENTION_DAYS = 30
_DAY = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class UsageEntry:
    workspace_id: str
    timestamp: float
    input_tokens: int
    output_tokens: int
    cost: float


class CostTracker:
    def __init__(
        self,
        input_cost_per_1m: float = 3.0,
        output_cost_per_1m: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.input_cost_per_1m = input_cost_per_1m
        self.output_cost_per_1m = output_cost_per_1m
        self._clock = clock
        self._entries: list[UsageEntry] = []

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self.input_cost_per_1m
            + output_tokens / 1_000_000 * self.output_cost_per_1m
        )

    def record_usage(self, workspace_id: str, input_tokens: int, output_tokens: int) -> float:
        cost = self.calculate_cost(input_tokens, output_tokens)
        now = self._clock()
        self._entries.append(UsageEntry(workspace_id, now, input_tokens, output_tokens, cost))
        cutoff = now - RETENTION_DAYS * _DAY
        self._entries = [e for e in self._entries if e.timestamp >= cutoff]
        return cost

    @staticmethod
    def _summarize(entries: list[UsageEntry]) -> dict:
        total_in = sum(e.input_tokens for e in entries)
        total_out = sum(e.output_tokens for e in entries)
        return {
            "total_input_tokens": total_in,
            "total_output_tokens": total_out,
            "total_tokens": total_in + total_out,
            "total_cost": sum(e.cost for e in entries),
            "request_count": len(entries),
        }

    def get_usage(self, workspace_id: str, days: int = 30) -> dict:
        cutoff = self._clock() - days * _DAY
        return self._summarize([
            e for e in self._entries if e.workspace_id == workspace_id and e.timestamp >= cutoff
        ])

    def get_total_usage(self, days: int = 30) -> dict:
        cutoff = self._clock() - days * _DAY
        entries = [e for e in self._entries if e.timestamp >= cutoff]
        summary = self._summarize(entries)
        summary["workspace_count"] = len({e.workspace_id for e in entries})
        return summary

    def get_recent_entries(self, workspace_id: str | None = None, limit: int = 10) -> list[dict]:
        """Newest first."""
        entries = [e for e in self._entries if workspace_id is None or e.workspace_id == workspace_id]
        return [asdict(e) for e in sorted(entries, key=lambda e: e.timestamp, reverse=True)[:limit]]

    def reset(self) -> None:
        self._entries.clear()


cost_tracker = CostTracker()
