"""
changemaker.services.submission_service — Submissions & Review
==============================================================

Two review tracks:

* **Admin review** — final ``APPROVED`` / ``REJECTED``.  Approval can carry
  a points award (balance + budget + ledger) and/or a reward issuance that
  the RewardSTACK workflow picks up afterwards.
* **Manager review** — assigned challenge managers pre-screen work into
  ``MANAGER_APPROVED`` or ``NEEDS_REVISION``.  No points move here.

Nobody may approve their own submission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session, selectinload

from changemaker.constants import SUBMISSION_NOTIFICATION_TTL_DAYS
from changemaker.database.engine import get_session
from changemaker.database.models import (
    Activity,
    ActivityEventType,
    ActivitySubmission,
    Challenge,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
    NotificationType,
    RewardType,
    SubmissionStatus,
    Workspace,
    as_utc,
    utcnow,
)
from changemaker.engine.validation import validate_submission_content
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.audit_service import log_activity_event
from changemaker.services.challenge_service import get_assignment
from changemaker.services.notification_service import (
    add_notification,
    notify_submission_approved,
)
from changemaker.services.points_service import award_points_with_budget
from changemaker.services.reward_service import add_issuance

logger = logging.getLogger(__name__)

REVIEW_STATUSES = (SubmissionStatus.APPROVED, SubmissionStatus.REJECTED)
MANAGER_ACTIONS = {
    "approve": SubmissionStatus.MANAGER_APPROVED,
    "reject": SubmissionStatus.NEEDS_REVISION,
}


class SelfApprovalError(Exception):
    """Reviewer tried to approve their own submission."""


@dataclass(frozen=True, slots=True)
class ReviewOutcome:
    submission: ActivitySubmission
    reward_issuance_id: str | None = None
    points_awarded: int = 0


def _load_submission(session: Session, workspace_id: str, submission_id: str) -> ActivitySubmission:
    submission = session.scalar(
        select(ActivitySubmission)
        .options(
            selectinload(ActivitySubmission.activity).selectinload(Activity.challenge),
            selectinload(ActivitySubmission.activity).selectinload(Activity.template),
        )
        .join(Activity, Activity.id == ActivitySubmission.activity_id)
        .join(Challenge, Challenge.id == Activity.challenge_id)
        .where(ActivitySubmission.id == submission_id, Challenge.workspace_id == workspace_id)
    )
    if submission is None:
        raise ResourceNotFoundError("ActivitySubmission", submission_id)
    return submission


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_submission(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    activity_id: str,
    user_id: str,
    *,
    text_content: str | None = None,
    file_urls: list[str] | None = None,
    link_url: str | None = None,
) -> ActivitySubmission:
    validate_submission_content(text_content=text_content, file_urls=file_urls, link_url=link_url)

    with get_session(engine) as session:
        activity = session.scalar(
            select(Activity)
            .options(selectinload(Activity.template), selectinload(Activity.challenge))
            .where(Activity.id == activity_id)
        )
        if activity is None or activity.challenge_id != challenge_id:
            raise ResourceNotFoundError("Activity", activity_id)
        challenge = activity.challenge
        if challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        if challenge.status != ChallengeStatus.PUBLISHED:
            raise ValidationError("Challenge is not accepting submissions")

        enrollment = session.scalar(
            select(Enrollment).where(
                Enrollment.user_id == user_id,
                Enrollment.challenge_id == challenge_id,
                Enrollment.status == EnrollmentStatus.ENROLLED,
            )
        )
        if enrollment is None:
            raise ValidationError("You must be enrolled in this challenge to submit")

        if activity.deadline and utcnow() > as_utc(activity.deadline):
            raise ValidationError("The deadline for this activity has passed")

        existing = session.scalar(
            select(func.count()).select_from(ActivitySubmission).where(
                ActivitySubmission.activity_id == activity_id,
                ActivitySubmission.user_id == user_id,
                ActivitySubmission.status != SubmissionStatus.REJECTED,
            )
        ) or 0
        if existing >= activity.max_submissions:
            raise ValidationError("Maximum submissions reached for this activity")

        submission = ActivitySubmission(
            activity=activity,
            user_id=user_id,
            enrollment_id=enrollment.id,
            text_content=text_content,
            file_urls=list(file_urls or []),
            link_url=link_url,
            status=SubmissionStatus.PENDING,
        )
        session.add(submission)
        session.flush()

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            enrollment_id=enrollment.id,
            user_id=user_id,
            actor_user_id=user_id,
            type=ActivityEventType.SUBMISSION_CREATED,
            metadata={"submission_id": submission.id, "activity_id": activity_id},
        )
        return submission


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------
def list_submissions(
    engine: Engine,
    workspace_id: str,
    *,
    status: str | None = SubmissionStatus.PENDING,
    challenge_id: str | None = None,
    user_id: str | None = None,
) -> list[ActivitySubmission]:
    """Review queue, oldest first."""
    with Session(engine) as session:
        query = (
            select(ActivitySubmission)
            .options(
                selectinload(ActivitySubmission.user),
                selectinload(ActivitySubmission.activity).selectinload(Activity.template),
                selectinload(ActivitySubmission.activity).selectinload(Activity.challenge),
            )
            .join(Activity, Activity.id == ActivitySubmission.activity_id)
            .join(Challenge, Challenge.id == Activity.challenge_id)
            .where(Challenge.workspace_id == workspace_id)
        )
        if status:
            query = query.where(ActivitySubmission.status == status)
        if challenge_id:
            query = query.where(Challenge.id == challenge_id)
        if user_id:
            query = query.where(ActivitySubmission.user_id == user_id)
        rows = session.scalars(query.order_by(ActivitySubmission.submitted_at)).all()
        session.expunge_all()
        return list(rows)


def submission_to_dict(submission: ActivitySubmission) -> dict:
    activity = submission.activity
    return {
        "id": submission.id,
        "activity_id": submission.activity_id,
        "challenge_id": activity.challenge_id if activity else None,
        "activity_name": activity.template.name if activity and activity.template else None,
        "user_id": submission.user_id,
        "text_content": submission.text_content,
        "file_urls": submission.file_urls or [],
        "link_url": submission.link_url,
        "status": submission.status,
        "points_awarded": submission.points_awarded,
        "review_notes": submission.review_notes,
        "manager_notes": submission.manager_notes,
        "reward_issuance_id": submission.reward_issuance_id,
        "submitted_at": submission.submitted_at.isoformat() if submission.submitted_at else None,
    }


# ---------------------------------------------------------------------------
# Admin review
# ---------------------------------------------------------------------------
def review_submission(
    engine: Engine,
    workspace_id: str,
    submission_id: str,
    *,
    reviewer_id: str,
    status: str,
    review_notes: str | None = None,
    points_awarded: int | None = None,
    reward: dict | None = None,
) -> ReviewOutcome:
    """Approve or reject a submission.

    On approval, a ``reward`` of type ``points`` with a positive amount
    credits points and records a points issuance; a ``sku`` reward records a
    SKU issuance.  A bare positive ``points_awarded`` is treated as a points
    reward for older clients.
    """
    if status not in REVIEW_STATUSES:
        raise ValidationError("Valid status is required")
    if points_awarded is not None and points_awarded < 0:
        raise ValidationError("Points awarded cannot be negative")

    reward = reward or {}
    reward_type = reward.get("type")
    amount = reward.get("amount") or 0
    if status == SubmissionStatus.APPROVED and reward_type is not None:
        if reward_type not in (RewardType.POINTS, RewardType.SKU):
            raise ValidationError(f"Unsupported reward type '{reward_type}'")
        if reward_type == RewardType.POINTS and (not isinstance(amount, int) or amount <= 0):
            raise ValidationError("Points reward amount must be a positive whole number")
        if reward_type == RewardType.SKU and not reward.get("sku_id"):
            raise ValidationError("SKU rewards require sku_id")

    with get_session(engine) as session:
        submission = _load_submission(session, workspace_id, submission_id)
        if submission.user_id == reviewer_id:
            raise SelfApprovalError("You cannot approve your own submission")
        if submission.status in REVIEW_STATUSES:
            raise ValidationError(f"Submission has already been {submission.status.lower()}")

        activity = submission.activity
        challenge = activity.challenge
        workspace = session.get(Workspace, workspace_id)

        if status == SubmissionStatus.APPROVED and not reward_type and (points_awarded or 0) > 0:
            reward_type, amount = RewardType.POINTS, points_awarded

        submission.status = status
        submission.review_notes = review_notes
        submission.reviewed_by = reviewer_id
        submission.reviewed_at = utcnow()
        if status == SubmissionStatus.APPROVED and reward_type == RewardType.POINTS:
            submission.points_awarded = amount
        elif points_awarded is not None:
            submission.points_awarded = points_awarded

        issuance_id = None
        credited = 0
        if status == SubmissionStatus.APPROVED:
            if reward_type == RewardType.POINTS and amount > 0:
                award_points_with_budget(
                    session,
                    workspace_id=workspace_id,
                    challenge_id=challenge.id,
                    to_user_id=submission.user_id,
                    amount=amount,
                    actor_user_id=reviewer_id,
                    submission_id=submission.id,
                )
                credited = amount
                issuance_id = add_issuance(
                    session,
                    workspace_id=workspace_id,
                    user_id=submission.user_id,
                    challenge_id=challenge.id,
                    submission_id=submission.id,
                    type=RewardType.POINTS,
                    amount=amount,
                    issued_by=reviewer_id,
                    description=f"Approved: {challenge.title}",
                ).id
            elif reward_type == RewardType.SKU:
                issuance_id = add_issuance(
                    session,
                    workspace_id=workspace_id,
                    user_id=submission.user_id,
                    challenge_id=challenge.id,
                    submission_id=submission.id,
                    type=RewardType.SKU,
                    sku_id=reward.get("sku_id"),
                    amount=reward.get("amount"),
                    issued_by=reviewer_id,
                    description=f"Approved: {challenge.title}",
                ).id

            notify_submission_approved(
                session,
                user_id=submission.user_id,
                workspace_id=workspace_id,
                workspace_slug=workspace.slug,
                challenge_id=challenge.id,
                challenge_title=challenge.title,
                points=credited or None,
            )
        else:
            add_notification(
                session,
                user_id=submission.user_id,
                workspace_id=workspace_id,
                type=NotificationType.SUBMISSION_REJECTED,
                title="Submission Needs Attention",
                message=f'Your submission for "{challenge.title}" was not approved.',
                action_url=f"/w/{workspace.slug}/participant/challenges/{challenge.id}",
                action_text="View Challenge",
                expires_in_days=SUBMISSION_NOTIFICATION_TTL_DAYS,
            )

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge.id,
            enrollment_id=submission.enrollment_id,
            user_id=submission.user_id,
            actor_user_id=reviewer_id,
            type=(
                ActivityEventType.SUBMISSION_APPROVED
                if status == SubmissionStatus.APPROVED
                else ActivityEventType.SUBMISSION_REJECTED
            ),
            metadata={
                "submission_id": submission.id,
                "points_awarded": points_awarded or amount or 0,
                "activity_id": submission.activity_id,
                "activity_name": activity.template.name if activity.template else None,
                "review_notes": review_notes or None,
            },
        )
        logger.info("Submission %s reviewed: %s by %s", submission.id, status, reviewer_id)
        return ReviewOutcome(
            submission=submission, reward_issuance_id=issuance_id, points_awarded=credited
        )


# ---------------------------------------------------------------------------
# Manager review
# ---------------------------------------------------------------------------
def manager_review_submission(
    engine: Engine,
    workspace_id: str,
    submission_id: str,
    *,
    reviewer_id: str,
    action: str,
    notes: str | None = None,
    is_workspace_admin: bool = False,
) -> ActivitySubmission:
    new_status = MANAGER_ACTIONS.get(action)
    if new_status is None:
        raise ValidationError("Action must be 'approve' or 'reject'")

    with get_session(engine) as session:
        submission = _load_submission(session, workspace_id, submission_id)
        if submission.user_id == reviewer_id:
            raise SelfApprovalError("You cannot approve your own submission")

        challenge_id = submission.activity.challenge_id
        if not is_workspace_admin and get_assignment(session, challenge_id, reviewer_id) is None:
            raise ResourceNotFoundError("ChallengeAssignment", f"{challenge_id}:{reviewer_id}")
        if submission.status not in (SubmissionStatus.PENDING, SubmissionStatus.NEEDS_REVISION):
            raise ValidationError(f"Cannot review a {submission.status} submission")

        submission.status = new_status
        submission.manager_notes = notes
        submission.manager_reviewed_by = reviewer_id
        submission.manager_reviewed_at = utcnow()

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            enrollment_id=submission.enrollment_id,
            user_id=submission.user_id,
            actor_user_id=reviewer_id,
            type=ActivityEventType.SUBMISSION_MANAGER_REVIEWED,
            metadata={"submission_id": submission.id, "action": action, "notes": notes},
        )
        return submission
