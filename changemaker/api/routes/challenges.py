"""
changemaker.api.routes.challenges — Challenges, activities, managers, enrollment
==================================================================================

Participants only see published challenges; managers and admins see every
status.  Lifecycle transitions (publish/unpublish/archive/duplicate) and
activity authoring are admin-only.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from changemaker.api.deps import (
    WorkspaceContext,
    get_engine,
    require_admin,
    require_manager,
    require_member,
)
from changemaker.api.rate_limit import rate_limited_user
from changemaker.database.models import ChallengeStatus
from changemaker.services import challenge_service, enrollment_service, points_service
from changemaker.services.audit_service import row_to_dict

router = APIRouter(
    prefix="/workspaces/{slug}/challenges",
    tags=["challenges"],
    dependencies=[Depends(rate_limited_user)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ChallengeCreate(BaseModel):
    title: str
    description: str
    start_date: datetime
    end_date: datetime
    enrollment_deadline: datetime | None = None
    reward_type: str | None = None
    reward_config: dict | None = None


class ChallengeUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    enrollment_deadline: datetime | None = None
    reward_type: str | None = None
    reward_config: dict | None = None


class ActivityCreate(BaseModel):
    template_id: str
    points_value: int | None = None
    max_submissions: int = 1
    deadline: datetime | None = None
    is_required: bool = False
    position: int | None = None


class ActivityUpdate(BaseModel):
    points_value: int | None = None
    max_submissions: int | None = None
    deadline: datetime | None = None
    is_required: bool | None = None
    position: int | None = None


class ManagerAssign(BaseModel):
    user_id: str


class BulkUnenroll(BaseModel):
    user_ids: list[str] = Field(min_length=1)


class BudgetUpdate(BaseModel):
    total_budget: int = Field(ge=0)


def _activity_dict(activity) -> dict:
    data = row_to_dict(activity)
    template = activity.template
    data["template"] = (
        {"id": template.id, "name": template.name, "type": template.type,
         "requires_approval": template.requires_approval}
        if template else None
    )
    return data


def _load(engine, ctx: WorkspaceContext, challenge_id: str):
    challenge = challenge_service.get_challenge(engine, ctx.workspace.id, challenge_id)
    if challenge is None:
        raise HTTPException(404, "Challenge not found")
    if challenge.status != ChallengeStatus.PUBLISHED and not ctx.can_manage:
        raise HTTPException(404, "Challenge not found")
    return challenge


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
@router.get("")
def list_challenges(
    status: str | None = None,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    if not ctx.can_manage:
        status = ChallengeStatus.PUBLISHED
    return [row_to_dict(c) for c in challenge_service.list_challenges(engine, ctx.workspace.id, status=status)]


@router.post("", status_code=201)
def create_challenge(
    body: ChallengeCreate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    challenge = challenge_service.create_challenge(
        engine, ctx.workspace.id, actor_id=ctx.user.id, **body.model_dump()
    )
    return row_to_dict(challenge)


@router.get("/{challenge_id}")
def get_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    """Challenge detail with activities and the caller's effective permissions."""
    challenge = _load(engine, ctx, challenge_id)
    permissions = challenge_service.get_permission_context(
        engine, ctx.workspace.id, challenge_id, ctx.user.id, ctx.role
    )
    return {
        **row_to_dict(challenge),
        "activities": [_activity_dict(a) for a in challenge.activities],
        "permissions": asdict(permissions),
    }


@router.patch("/{challenge_id}")
def update_challenge(
    challenge_id: str,
    body: ChallengeUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    challenge = challenge_service.update_challenge(
        engine, ctx.workspace.id, challenge_id,
        actor_id=ctx.user.id, **body.model_dump(exclude_none=True),
    )
    return row_to_dict(challenge)


@router.post("/{challenge_id}/publish")
def publish_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return row_to_dict(challenge_service.publish_challenge(
        engine, ctx.workspace.id, challenge_id, actor_id=ctx.user.id
    ))


@router.post("/{challenge_id}/unpublish")
def unpublish_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return row_to_dict(challenge_service.unpublish_challenge(
        engine, ctx.workspace.id, challenge_id, actor_id=ctx.user.id
    ))


@router.post("/{challenge_id}/archive")
def archive_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return row_to_dict(challenge_service.archive_challenge(
        engine, ctx.workspace.id, challenge_id, actor_id=ctx.user.id
    ))


@router.post("/{challenge_id}/duplicate", status_code=201)
def duplicate_challenge(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    """Copy as a DRAFT, including activities; enrollments are not copied."""
    return row_to_dict(challenge_service.duplicate_challenge(
        engine, ctx.workspace.id, challenge_id, actor_id=ctx.user.id
    ))


@router.get("/{challenge_id}/metrics")
def challenge_metrics(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_manager),
    engine=Depends(get_engine),
):
    metrics = challenge_service.get_challenge_metrics(engine, ctx.workspace.id, challenge_id)
    data = asdict(metrics)
    if metrics.last_activity_at is not None:
        data["last_activity_at"] = metrics.last_activity_at.isoformat()
    data["leaderboard"] = challenge_service.get_challenge_leaderboard(
        engine, ctx.workspace.id, challenge_id
    )
    return data


@router.put("/{challenge_id}/budget")
def set_challenge_budget(
    challenge_id: str,
    body: BudgetUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return points_service.upsert_challenge_budget(
        engine, ctx.workspace.id, challenge_id, body.total_budget, updated_by=ctx.user.id
    )


# ---------------------------------------------------------------------------
# Managers
# ---------------------------------------------------------------------------
@router.get("/{challenge_id}/managers")
def list_managers(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    return [row_to_dict(a) for a in challenge_service.list_managers(engine, ctx.workspace.id, challenge_id)]


@router.post("/{challenge_id}/managers", status_code=201)
def assign_manager(
    challenge_id: str,
    body: ManagerAssign,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    assignment = challenge_service.assign_manager(
        engine, ctx.workspace.id, challenge_id, manager_id=body.user_id, assigned_by=ctx.user.id
    )
    return row_to_dict(assignment)


@router.delete("/{challenge_id}/managers/{user_id}")
def remove_manager(
    challenge_id: str,
    user_id: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    if not challenge_service.remove_manager(engine, ctx.workspace.id, challenge_id, user_id):
        raise HTTPException(404, "Manager assignment not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
@router.get("/{challenge_id}/activities")
def list_activities(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    challenge = _load(engine, ctx, challenge_id)
    return [_activity_dict(a) for a in challenge.activities]


@router.post("/{challenge_id}/activities", status_code=201)
def create_activity(
    challenge_id: str,
    body: ActivityCreate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    activity = challenge_service.create_activity(
        engine, ctx.workspace.id, challenge_id, actor_id=ctx.user.id, **body.model_dump()
    )
    return row_to_dict(activity)


@router.patch("/{challenge_id}/activities/{activity_id}")
def update_activity(
    challenge_id: str,
    activity_id: str,
    body: ActivityUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    activity = challenge_service.update_activity(
        engine, ctx.workspace.id, challenge_id, activity_id,
        actor_id=ctx.user.id, **body.model_dump(exclude_none=True),
    )
    return row_to_dict(activity)


# ---------------------------------------------------------------------------
# Enrollment
# ---------------------------------------------------------------------------
@router.post("/{challenge_id}/enroll")
def enroll(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    enrollment = enrollment_service.enroll(engine, ctx.workspace.id, challenge_id, ctx.user.id)
    return row_to_dict(enrollment)


@router.post("/{challenge_id}/withdraw")
def withdraw(
    challenge_id: str,
    ctx: WorkspaceContext = Depends(require_member),
    engine=Depends(get_engine),
):
    enrollment = enrollment_service.withdraw(engine, ctx.workspace.id, challenge_id, ctx.user.id)
    return row_to_dict(enrollment)


@router.get("/{challenge_id}/enrollments")
def list_enrollments(
    challenge_id: str,
    status: str | None = None,
    ctx: WorkspaceContext = Depends(require_manager),
    engine=Depends(get_engine),
):
    _load(engine, ctx, challenge_id)
    return [
        {
            **row_to_dict(e),
            "email": e.user.email,
            "display_name": e.user.display_name,
        }
        for e in enrollment_service.list_enrollments(engine, challenge_id, status=status)
    ]


@router.post("/{challenge_id}/enrollments/bulk-unenroll")
def bulk_unenroll(
    challenge_id: str,
    body: BulkUnenroll,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    count = enrollment_service.bulk_unenroll(
        engine, ctx.workspace.id, challenge_id, body.user_ids, actor_id=ctx.user.id
    )
    return {"unenrolled": count}
