"""
changemaker.services.challenge_service — Challenges, Activities & Managers
==========================================================================

Challenge lifecycle::

    DRAFT ──publish──▶ PUBLISHED ──archive──▶ ARCHIVED
      ▲                   │
      └────unpublish──────┘

Every transition and edit writes an activity event with the acting admin.
Duplicating a challenge copies its activities into a new DRAFT.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from changemaker.constants import DEFAULT_MAX_SUBMISSIONS
from changemaker.database.engine import get_session
from changemaker.database.models import (
    Activity,
    ActivityEventType,
    ActivitySubmission,
    ActivityTemplate,
    Challenge,
    ChallengeAssignment,
    ChallengeStatus,
    Enrollment,
    Role,
    RewardType,
)
from changemaker.engine.metrics import (
    ChallengeMetrics,
    calculate_challenge_metrics,
    calculate_leaderboard,
)
from changemaker.engine.permissions import ChallengePermissions, get_challenge_permissions
from changemaker.engine.validation import validate_activity_template, validate_challenge
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.audit_service import log_activity_event
from changemaker.services.workspace_service import get_membership

logger = logging.getLogger(__name__)

_EDITABLE_CHALLENGE_FIELDS = (
    "title", "description", "start_date", "end_date",
    "enrollment_deadline", "reward_type", "reward_config",
)
_EDITABLE_TEMPLATE_FIELDS = (
    "name", "description", "type", "base_points", "requires_approval", "allow_multiple",
)
_EDITABLE_ACTIVITY_FIELDS = (
    "points_value", "max_submissions", "deadline", "is_required", "position",
)


def _load_challenge(session: Session, workspace_id: str, challenge_id: str) -> Challenge:
    challenge = session.get(Challenge, challenge_id)
    if challenge is None or challenge.workspace_id != workspace_id:
        raise ResourceNotFoundError("Challenge", challenge_id)
    return challenge


def _validate_reward_type(reward_type: str | None) -> None:
    if reward_type is not None and reward_type not in (RewardType.POINTS, RewardType.SKU):
        raise ValidationError(f"Invalid reward type '{reward_type}'")


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
def list_challenges(
    engine: Engine, workspace_id: str, *, status: str | None = None
) -> list[Challenge]:
    with Session(engine) as session:
        query = select(Challenge).where(Challenge.workspace_id == workspace_id)
        if status:
            query = query.where(Challenge.status == status)
        return list(session.scalars(query.order_by(Challenge.start_date.desc())).all())


def get_challenge(engine: Engine, workspace_id: str, challenge_id: str) -> Challenge | None:
    """Challenge with its activities and their templates eagerly loaded."""
    with Session(engine) as session:
        challenge = session.scalar(
            select(Challenge)
            .options(selectinload(Challenge.activities).selectinload(Activity.template))
            .where(Challenge.id == challenge_id, Challenge.workspace_id == workspace_id)
        )
        if challenge is not None:
            session.expunge_all()
        return challenge


def create_challenge(
    engine: Engine,
    workspace_id: str,
    *,
    actor_id: str,
    title: str,
    description: str,
    start_date: datetime,
    end_date: datetime,
    enrollment_deadline: datetime | None = None,
    reward_type: str | None = None,
    reward_config: dict | None = None,
) -> Challenge:
    validate_challenge(
        title=title,
        description=description,
        start_date=start_date,
        end_date=end_date,
        enrollment_deadline=enrollment_deadline,
    )
    _validate_reward_type(reward_type)

    with get_session(engine) as session:
        challenge = Challenge(
            workspace_id=workspace_id,
            title=title.strip(),
            description=description.strip(),
            start_date=start_date,
            end_date=end_date,
            enrollment_deadline=enrollment_deadline,
            reward_type=reward_type,
            reward_config=reward_config,
            status=ChallengeStatus.DRAFT,
        )
        session.add(challenge)
        session.flush()
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge.id,
            actor_user_id=actor_id,
            type=ActivityEventType.CHALLENGE_CREATED,
            metadata={"title": challenge.title},
        )
        logger.info("Challenge %s created in %s", challenge.id, workspace_id)
        return challenge


def update_challenge(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    actor_id: str,
    **fields: Any,
) -> Challenge:
    with get_session(engine) as session:
        challenge = _load_challenge(session, workspace_id, challenge_id)
        changed = {k: v for k, v in fields.items() if k in _EDITABLE_CHALLENGE_FIELDS}
        for key, value in changed.items():
            setattr(challenge, key, value)

        validate_challenge(
            title=challenge.title,
            description=challenge.description,
            start_date=challenge.start_date,
            end_date=challenge.end_date,
            enrollment_deadline=challenge.enrollment_deadline,
        )
        _validate_reward_type(challenge.reward_type)

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge.id,
            actor_user_id=actor_id,
            type=ActivityEventType.CHALLENGE_UPDATED,
            metadata={"fields": sorted(changed)},
        )
        return challenge


def _transition(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    actor_id: str,
    allowed_from: tuple[str, ...],
    to: str,
    event: str,
) -> Challenge:
    with get_session(engine) as session:
        challenge = _load_challenge(session, workspace_id, challenge_id)
        if challenge.status not in allowed_from:
            raise ValidationError(f"Cannot change a {challenge.status} challenge to {to}")
        previous = challenge.status
        challenge.status = to
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge.id,
            actor_user_id=actor_id,
            type=event,
            metadata={"from": previous, "to": to},
        )
        return challenge


def publish_challenge(engine: Engine, workspace_id: str, challenge_id: str, *, actor_id: str):
    return _transition(
        engine, workspace_id, challenge_id, actor_id=actor_id,
        allowed_from=(ChallengeStatus.DRAFT,),
        to=ChallengeStatus.PUBLISHED,
        event=ActivityEventType.CHALLENGE_PUBLISHED,
    )


def unpublish_challenge(engine: Engine, workspace_id: str, challenge_id: str, *, actor_id: str):
    return _transition(
        engine, workspace_id, challenge_id, actor_id=actor_id,
        allowed_from=(ChallengeStatus.PUBLISHED,),
        to=ChallengeStatus.DRAFT,
        event=ActivityEventType.CHALLENGE_UNPUBLISHED,
    )


def archive_challenge(engine: Engine, workspace_id: str, challenge_id: str, *, actor_id: str):
    return _transition(
        engine, workspace_id, challenge_id, actor_id=actor_id,
        allowed_from=(ChallengeStatus.DRAFT, ChallengeStatus.PUBLISHED),
        to=ChallengeStatus.ARCHIVED,
        event=ActivityEventType.CHALLENGE_ARCHIVED,
    )


def duplicate_challenge(
    engine: Engine, workspace_id: str, challenge_id: str, *, actor_id: str
) -> Challenge:
    with get_session(engine) as session:
        source = _load_challenge(session, workspace_id, challenge_id)
        copy = Challenge(
            workspace_id=workspace_id,
            title=f"{source.title} (Copy)",
            description=source.description,
            start_date=source.start_date,
            end_date=source.end_date,
            enrollment_deadline=source.enrollment_deadline,
            reward_type=source.reward_type,
            reward_config=dict(source.reward_config) if source.reward_config else None,
            status=ChallengeStatus.DRAFT,
        )
        session.add(copy)
        session.flush()
        for activity in source.activities:
            session.add(Activity(
                template_id=activity.template_id,
                challenge_id=copy.id,
                points_value=activity.points_value,
                max_submissions=activity.max_submissions,
                deadline=activity.deadline,
                is_required=activity.is_required,
                position=activity.position,
            ))
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=copy.id,
            actor_user_id=actor_id,
            type=ActivityEventType.CHALLENGE_DUPLICATED,
            metadata={"source_challenge_id": source.id},
        )
        session.flush()
        return copy


# ---------------------------------------------------------------------------
# Activity templates
# ---------------------------------------------------------------------------
def list_templates(engine: Engine, workspace_id: str) -> list[ActivityTemplate]:
    with Session(engine) as session:
        return list(session.scalars(
            select(ActivityTemplate)
            .where(ActivityTemplate.workspace_id == workspace_id)
            .order_by(ActivityTemplate.name)
        ).all())


def create_template(
    engine: Engine,
    workspace_id: str,
    *,
    name: str,
    type: str,
    description: str = "",
    base_points: int = 10,
    requires_approval: bool = True,
    allow_multiple: bool = False,
) -> ActivityTemplate:
    validate_activity_template(name=name, type=type, base_points=base_points)
    with get_session(engine) as session:
        template = ActivityTemplate(
            workspace_id=workspace_id,
            name=name.strip(),
            description=description or "",
            type=type,
            base_points=base_points,
            requires_approval=requires_approval,
            allow_multiple=allow_multiple,
        )
        session.add(template)
        session.flush()
        return template


def update_template(
    engine: Engine, workspace_id: str, template_id: str, **fields: Any
) -> ActivityTemplate | None:
    with get_session(engine) as session:
        template = session.get(ActivityTemplate, template_id)
        if template is None or template.workspace_id != workspace_id:
            return None
        for key, value in fields.items():
            if key in _EDITABLE_TEMPLATE_FIELDS:
                setattr(template, key, value)
        validate_activity_template(
            name=template.name, type=template.type, base_points=template.base_points
        )
        return template


def delete_template(engine: Engine, workspace_id: str, template_id: str) -> bool:
    with get_session(engine) as session:
        template = session.get(ActivityTemplate, template_id)
        if template is None or template.workspace_id != workspace_id:
            return False
        in_use = session.scalar(
            select(Activity.id).where(Activity.template_id == template_id).limit(1)
        )
        if in_use is not None:
            raise ValidationError("Template is used by one or more activities")
        session.delete(template)
        return True


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------
def list_activities(engine: Engine, workspace_id: str, challenge_id: str) -> list[Activity]:
    challenge = get_challenge(engine, workspace_id, challenge_id)
    if challenge is None:
        raise ResourceNotFoundError("Challenge", challenge_id)
    return list(challenge.activities)


def create_activity(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    actor_id: str,
    template_id: str,
    points_value: int | None = None,
    max_submissions: int = DEFAULT_MAX_SUBMISSIONS,
    deadline: datetime | None = None,
    is_required: bool = False,
    position: int | None = None,
) -> Activity:
    """Attach a template to a challenge; points default to the template's base."""
    if max_submissions < 1:
        raise ValidationError("Max submissions must be at least 1")
    with get_session(engine) as session:
        challenge = _load_challenge(session, workspace_id, challenge_id)
        template = session.get(ActivityTemplate, template_id)
        if template is None or template.workspace_id != workspace_id:
            raise ResourceNotFoundError("ActivityTemplate", template_id)

        points = template.base_points if points_value is None else points_value
        if points <= 0:
            raise ValidationError("Points value must be greater than 0")
        if position is None:
            position = len(challenge.activities)

        activity = Activity(
            template_id=template.id,
            challenge_id=challenge.id,
            points_value=points,
            max_submissions=max_submissions,
            deadline=deadline,
            is_required=is_required,
            position=position,
        )
        session.add(activity)
        session.flush()
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge.id,
            actor_user_id=actor_id,
            type=ActivityEventType.ACTIVITY_CREATED,
            metadata={"activity_id": activity.id, "template": template.name},
        )
        return activity


def update_activity(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    activity_id: str,
    *,
    actor_id: str,
    **fields: Any,
) -> Activity:
    with get_session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        activity = session.get(Activity, activity_id)
        if activity is None or activity.challenge_id != challenge_id:
            raise ResourceNotFoundError("Activity", activity_id)
        changed = {k: v for k, v in fields.items() if k in _EDITABLE_ACTIVITY_FIELDS}
        for key, value in changed.items():
            setattr(activity, key, value)
        if activity.points_value <= 0:
            raise ValidationError("Points value must be greater than 0")
        if activity.max_submissions < 1:
            raise ValidationError("Max submissions must be at least 1")
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            actor_user_id=actor_id,
            type=ActivityEventType.ACTIVITY_UPDATED,
            metadata={"activity_id": activity.id, "fields": sorted(changed)},
        )
        return activity


# ---------------------------------------------------------------------------
# Manager assignments
# ---------------------------------------------------------------------------
def list_managers(engine: Engine, workspace_id: str, challenge_id: str) -> list[ChallengeAssignment]:
    with Session(engine) as session:
        return list(session.scalars(
            select(ChallengeAssignment).where(
                ChallengeAssignment.workspace_id == workspace_id,
                ChallengeAssignment.challenge_id == challenge_id,
            )
        ).all())


def assign_manager(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    *,
    manager_id: str,
    assigned_by: str,
) -> ChallengeAssignment:
    """Only workspace MANAGERs or ADMINs can be assigned to a challenge."""
    with get_session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        membership = get_membership(session, manager_id, workspace_id)
        if membership is None or membership.role not in (Role.MANAGER, Role.ADMIN):
            raise ValidationError("User must be a workspace manager or admin")
        existing = session.scalar(
            select(ChallengeAssignment).where(
                ChallengeAssignment.challenge_id == challenge_id,
                ChallengeAssignment.manager_id == manager_id,
            )
        )
        if existing is not None:
            return existing
        assignment = ChallengeAssignment(
            challenge_id=challenge_id,
            manager_id=manager_id,
            workspace_id=workspace_id,
            assigned_by=assigned_by,
        )
        session.add(assignment)
        session.flush()
        return assignment


def remove_manager(engine: Engine, workspace_id: str, challenge_id: str, manager_id: str) -> bool:
    with get_session(engine) as session:
        assignment = session.scalar(
            select(ChallengeAssignment).where(
                ChallengeAssignment.workspace_id == workspace_id,
                ChallengeAssignment.challenge_id == challenge_id,
                ChallengeAssignment.manager_id == manager_id,
            )
        )
        if assignment is None:
            return False
        session.delete(assignment)
        return True


def get_assignment(
    session: Session, challenge_id: str, user_id: str
) -> ChallengeAssignment | None:
    return session.scalar(
        select(ChallengeAssignment).where(
            ChallengeAssignment.challenge_id == challenge_id,
            ChallengeAssignment.manager_id == user_id,
        )
    )


# ---------------------------------------------------------------------------
# Permission context & metrics
# ---------------------------------------------------------------------------
def get_permission_context(
    engine: Engine, workspace_id: str, challenge_id: str, user_id: str, membership_role: str
) -> ChallengePermissions:
    with Session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        assignment = get_assignment(session, challenge_id, user_id)
        enrollment = session.scalar(
            select(Enrollment).where(
                Enrollment.challenge_id == challenge_id,
                Enrollment.user_id == user_id,
            )
        )
    return get_challenge_permissions(membership_role, assignment, enrollment)


def get_challenge_metrics(engine: Engine, workspace_id: str, challenge_id: str) -> ChallengeMetrics:
    with Session(engine) as session:
        _load_challenge(session, workspace_id, challenge_id)
        enrollments = session.scalars(
            select(Enrollment).where(Enrollment.challenge_id == challenge_id)
        ).all()
        submissions = session.scalars(
            select(ActivitySubmission)
            .join(Activity, Activity.id == ActivitySubmission.activity_id)
            .where(Activity.challenge_id == challenge_id)
        ).all()
        return calculate_challenge_metrics(enrollments, submissions)


def get_challenge_leaderboard(
    engine: Engine, workspace_id: str, challenge_id: str, limit: int = 5
) -> list[dict]:
    with Session(engine) as session:
        challenge = _load_challenge(session, workspace_id, challenge_id)
        activity_points = {a.id: a.points_value for a in challenge.activities}
        submissions = session.scalars(
            select(ActivitySubmission).where(
                ActivitySubmission.activity_id.in_(list(activity_points))
            )
        ).all()
        return calculate_leaderboard(submissions, activity_points, limit=limit)
