"""
changemaker.engine.metrics — Challenge Metrics & Leaderboard
=============================================================

Pure calculations over already-loaded rows (duck-typed: anything with the
same attribute names as the ORM models works, which keeps tests light).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from changemaker.database.models import EnrollmentStatus, SubmissionStatus, as_utc

STALLED_INVITE_AGE = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class ChallengeMetrics:
    invited_count: int
    enrolled_count: int
    total_submissions: int
    approved_submissions: int
    pending_submissions: int
    completion_pct: int
    avg_score: int
    last_activity_at: datetime | None
    stalled_invites: int

    def to_dict(self) -> dict:
        return {
            "invited_count": self.invited_count,
            "enrolled_count": self.enrolled_count,
            "total_submissions": self.total_submissions,
            "approved_submissions": self.approved_submissions,
            "pending_submissions": self.pending_submissions,
            "completion_pct": self.completion_pct,
            "avg_score": self.avg_score,
            "last_activity_at": (
                self.last_activity_at.isoformat() if self.last_activity_at else None
            ),
            "stalled_invites": self.stalled_invites,
        }


def calculate_challenge_metrics(
    enrollments: Iterable[Any],
    submissions: Iterable[Any],
    *,
    now: datetime | None = None,
) -> ChallengeMetrics:
    now = now or datetime.now(UTC)
    enrollments = list(enrollments)
    submissions = list(submissions)

    invited = [e for e in enrollments if e.status == EnrollmentStatus.INVITED]
    enrolled_count = sum(1 for e in enrollments if e.status == EnrollmentStatus.ENROLLED)
    approved = [s for s in submissions if s.status == SubmissionStatus.APPROVED]
    pending_count = sum(1 for s in submissions if s.status == SubmissionStatus.PENDING)

    completion_pct = (
        round(len(approved) / enrolled_count * 100) if enrolled_count else 0
    )
    scores = [s.points_awarded or 0 for s in approved]
    avg_score = round(sum(scores) / len(scores)) if scores else 0

    submitted = [as_utc(s.submitted_at) for s in submissions if s.submitted_at]
    stalled = sum(
        1 for e in invited
        if e.created_at and now - as_utc(e.created_at) > STALLED_INVITE_AGE
    )

    return ChallengeMetrics(
        invited_count=len(invited),
        enrolled_count=enrolled_count,
        total_submissions=len(submissions),
        approved_submissions=len(approved),
        pending_submissions=pending_count,
        completion_pct=completion_pct,
        avg_score=avg_score,
        last_activity_at=max(submitted) if submitted else None,
        stalled_invites=stalled,
    )


def calculate_leaderboard(
    submissions: Iterable[Any],
    activity_points: Mapping[str, int],
    limit: int = 5,
) -> list[dict]:
    """Rank users by approved points within one challenge.

    Falls back to the activity's ``points_value`` when a submission was
    approved without an explicit ``points_awarded``.
    """
    totals: dict[str, int] = {}
    for sub in submissions:
        if sub.status != SubmissionStatus.APPROVED:
            continue
        points = sub.points_awarded or activity_points.get(sub.activity_id, 0)
        totals[sub.user_id] = totals.get(sub.user_id, 0) + points

    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [{"user_id": uid, "points": pts} for uid, pts in ranked[:limit]]
