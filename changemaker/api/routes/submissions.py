"""
changemaker.api.routes.submissions — Submit, review queue, approvals
======================================================================

Admin approval of a submission with a reward records the issuance in the
same transaction; when the workspace has RewardSTACK enabled the issuance is
then sent to RewardSTACK before the response returns.  A RewardSTACK failure
never undoes the approval: the issuance is left FAILED for an admin retry.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_admin,
    require_manager,
    require_member,
)
from changemaker.api.rate_limit import rate_limited_user
from changemaker.database.engine import run_db
from changemaker.database.models import SubmissionStatus
from changemaker.rewardstack.reward_logic import issue_reward_transaction
from changemaker.services import submission_service
from changemaker.services.submission_service import submission_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{slug}",
    tags=["submissions"],
    dependencies=[Depends(rate_limited_user)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class SubmissionCreate(BaseModel):
    text_content: str | None = None
    file_urls: list[str] | None = None
    link_url: str | None = None


class RewardSpec(BaseModel):
    type: str  # "points" | "sku"
    amount: int | None = None
    sku_id: str | None = None


class ReviewRequest(BaseModel):
    status: str  # APPROVED | REJECTED
    review_notes: str | None = None
    points_awarded: int | None = None
    reward: RewardSpec | None = None


class ManagerReviewRequest(BaseModel):
    action: str  # approve | reject
    notes: str | None = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.post(
    "/challenges/{challenge_id}/activities/{activity_id}/submissions",
    status_code=201,
)
def create_submission(
    challenge_id: str,
    activity_id: str,
    body: SubmissionCreate,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    submission = submission_service.create_submission(
        engine,
        ctx.workspace.id,
        challenge_id,
        activity_id,
        ctx.user.id,
        **body.model_dump(),
    )
    return submission_to_dict(submission)


@router.get("/submissions")
def review_queue(
    status: str | None = SubmissionStatus.PENDING,
    challenge_id: str | None = None,
    ctx: WorkspaceContext = Depends(require_manager),
    engine=Depends(get_engine),
):
    """Pass ``status=`` (empty) to list every status."""
    rows = submission_service.list_submissions(
        engine, ctx.workspace.id, status=status or None, challenge_id=challenge_id
    )
    return [
        {**submission_to_dict(s), "user_email": s.user.email if s.user else None}
        for s in rows
    ]


@router.get("/submissions/mine")
def my_submissions(
    challenge_id: str | None = None,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    rows = submission_service.list_submissions(
        engine, ctx.workspace.id, status=None, challenge_id=challenge_id, user_id=ctx.user.id
    )
    return [submission_to_dict(s) for s in rows]


@router.post("/submissions/{submission_id}/review")
async def review_submission(
    submission_id: str,
    body: ReviewRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    outcome = await run_db(
        submission_service.review_submission,
        engine,
        ctx.workspace.id,
        submission_id,
        reviewer_id=ctx.user.id,
        status=body.status,
        review_notes=body.review_notes,
        points_awarded=body.points_awarded,
        reward=body.reward.model_dump() if body.reward else None,
    )

    reward_issued = None
    reward_error = None
    if outcome.reward_issuance_id and ctx.workspace.reward_stack_enabled:
        result = await issue_reward_transaction(engine, outcome.reward_issuance_id)
        reward_issued = result.success
        reward_error = result.error
        if not result.success:
            logger.warning(
                "Submission %s approved but reward %s failed: %s",
                submission_id, outcome.reward_issuance_id, result.error,
            )

    return {
        "submission": submission_to_dict(outcome.submission),
        "points_awarded": outcome.points_awarded,
        "reward_issuance_id": outcome.reward_issuance_id,
        "reward_issued": reward_issued,
        "reward_error": reward_error,
    }


@router.post("/submissions/{submission_id}/manager-review")
def manager_review(
    submission_id: str,
    body: ManagerReviewRequest,
    ctx: WorkspaceContext = Depends(require_manager),
    engine=Depends(get_engine),
):
    submission = submission_service.manager_review_submission(
        engine,
        ctx.workspace.id,
        submission_id,
        reviewer_id=ctx.user.id,
        action=body.action,
        notes=body.notes,
        is_workspace_admin=ctx.is_admin,
    )
    return submission_to_dict(submission)
