"""
changemaker.services.enrollment_service — Challenge Enrollment
==============================================================
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, selectinload

from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivityEventType,
    Challenge,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
    as_utc,
    utcnow,
)
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services.audit_service import log_activity_event

logger = logging.getLogger(__name__)


def _find(session: Session, user_id: str, challenge_id: str) -> Enrollment | None:
    return session.scalar(
        select(Enrollment).where(
            Enrollment.user_id == user_id,
            Enrollment.challenge_id == challenge_id,
        )
    )


def enroll(engine: Engine, workspace_id: str, challenge_id: str, user_id: str) -> Enrollment:
    """Self-enroll in a published challenge before its enrollment deadline.

    An INVITED or WITHDRAWN enrollment is flipped back to ENROLLED.
    """
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        if challenge.status != ChallengeStatus.PUBLISHED:
            raise ValidationError("Challenge is not open for enrollment")
        if challenge.enrollment_deadline and utcnow() > as_utc(challenge.enrollment_deadline):
            raise ValidationError("Enrollment deadline has passed")

        enrollment = _find(session, user_id, challenge_id)
        if enrollment is not None and enrollment.status == EnrollmentStatus.ENROLLED:
            raise ValidationError("Already enrolled in this challenge")
        if enrollment is None:
            enrollment = Enrollment(user_id=user_id, challenge_id=challenge_id)
            session.add(enrollment)
        enrollment.status = EnrollmentStatus.ENROLLED
        session.flush()

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            enrollment_id=enrollment.id,
            user_id=user_id,
            actor_user_id=user_id,
            type=ActivityEventType.ENROLLED,
        )
        return enrollment


def withdraw(engine: Engine, workspace_id: str, challenge_id: str, user_id: str) -> Enrollment:
    with get_session(engine) as session:
        enrollment = _find(session, user_id, challenge_id)
        if enrollment is None or enrollment.status != EnrollmentStatus.ENROLLED:
            raise ResourceNotFoundError("Enrollment", f"{user_id}:{challenge_id}")
        enrollment.status = EnrollmentStatus.WITHDRAWN
        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            enrollment_id=enrollment.id,
            user_id=user_id,
            actor_user_id=user_id,
            type=ActivityEventType.UNENROLLED,
        )
        return enrollment


def list_enrollments(
    engine: Engine, challenge_id: str, *, status: str | None = None
) -> list[Enrollment]:
    with Session(engine) as session:
        query = (
            select(Enrollment)
            .options(selectinload(Enrollment.user))
            .where(Enrollment.challenge_id == challenge_id)
        )
        if status:
            query = query.where(Enrollment.status == status)
        rows = session.scalars(query.order_by(Enrollment.created_at)).all()
        session.expunge_all()
        return list(rows)


def bulk_unenroll(
    engine: Engine,
    workspace_id: str,
    challenge_id: str,
    user_ids: list[str],
    *,
    actor_id: str,
) -> int:
    """Withdraw many participants at once; returns how many changed."""
    with get_session(engine) as session:
        challenge = session.get(Challenge, challenge_id)
        if challenge is None or challenge.workspace_id != workspace_id:
            raise ResourceNotFoundError("Challenge", challenge_id)
        rows = session.scalars(
            select(Enrollment).where(
                Enrollment.challenge_id == challenge_id,
                Enrollment.user_id.in_(user_ids),
                Enrollment.status != EnrollmentStatus.WITHDRAWN,
            )
        ).all()
        for enrollment in rows:
            enrollment.status = EnrollmentStatus.WITHDRAWN

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            actor_user_id=actor_id,
            type=ActivityEventType.BULK_UNENROLL,
            metadata={"user_ids": [e.user_id for e in rows], "count": len(rows)},
        )
        logger.info("Bulk unenrolled %d users from %s", len(rows), challenge_id)
        return len(rows)
