"""
changemaker.services.invite_service — Invite Codes
==================================================

Code-based onboarding.  An invite grants a role in one workspace and may
also auto-enroll the redeemer in a challenge.  Codes are short, uppercase
and avoid look-alike characters so they can be read aloud.
"""

from __future__ import annotations

import logging
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, func, select, update
from sqlalchemy.orm import Session

from changemaker.constants import (
    DEFAULT_INVITE_EXPIRY_DAYS,
    INVITE_CODE_ALPHABET,
    INVITE_CODE_LENGTH,
    INVITE_CODE_MAX_ATTEMPTS,
)
from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivityEventType,
    Challenge,
    Enrollment,
    EnrollmentStatus,
    InviteCode,
    InviteRedemption,
    Role,
    User,
    Workspace,
    as_utc,
    utcnow,
)
from changemaker.engine.validation import validate_invite
from changemaker.errors import DatabaseError, ResourceNotFoundError, ValidationError
from changemaker.services.audit_service import log_activity_event
from changemaker.services.workspace_service import add_membership, get_membership

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def generate_invite_code() -> str:
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


def create_invite(
    engine: Engine,
    *,
    workspace_id: str,
    created_by: str,
    role: str = Role.PARTICIPANT,
    target_email: str | None = None,
    expires_in: timedelta = timedelta(days=DEFAULT_INVITE_EXPIRY_DAYS),
    max_uses: int = 1,
    challenge_id: str | None = None,
) -> InviteCode:
    validate_invite(expires_in=expires_in, max_uses=max_uses, role=role)

    with get_session(engine) as session:
        if challenge_id is not None:
            challenge = session.get(Challenge, challenge_id)
            if challenge is None or challenge.workspace_id != workspace_id:
                raise ResourceNotFoundError("Challenge", challenge_id)

        for _ in range(INVITE_CODE_MAX_ATTEMPTS):
            code = generate_invite_code()
            taken = session.scalar(select(InviteCode.id).where(InviteCode.code == code))
            if taken is None:
                break
        else:
            raise DatabaseError(
                "Failed to generate a unique invite code", "INVITE_CODE_EXHAUSTED"
            )

        invite = InviteCode(
            code=code,
            workspace_id=workspace_id,
            created_by=created_by,
            role=role,
            target_email=target_email.strip().lower() if target_email else None,
            expires_at=utcnow() + expires_in,
            max_uses=max_uses,
            challenge_id=challenge_id,
        )
        session.add(invite)
        session.flush()

        log_activity_event(
            session,
            workspace_id=workspace_id,
            challenge_id=challenge_id,
            actor_user_id=created_by,
            type=ActivityEventType.INVITE_SENT,
            metadata={"code": code, "role": role, "target_email": invite.target_email},
        )
        return invite


def redeem_invite(engine: Engine, code: str, user: User) -> dict:
    """Redeem *code* for *user*.

    Checks run in a fixed order (unknown, expired, exhausted, wrong email)
    and the first failure raises :class:`ValidationError`.  A user who is
    already a member keeps their current role; the invite still enrolls
    them in its challenge.  Each user counts against ``max_uses`` once, so
    redeeming the same code again changes nothing.  Membership, enrollment,
    redemption and the use-count bump commit together.
    """
    with get_session(engine) as session:
        invite = session.scalar(
            select(InviteCode).where(InviteCode.code == (code or "").strip().upper())
        )
        if invite is None:
            raise ValidationError("Invalid invite code")
        if utcnow() > as_utc(invite.expires_at):
            raise ValidationError("This invite code has expired")
        if invite.used_count >= invite.max_uses:
            raise ValidationError("This invite code has reached its maximum uses")
        if invite.target_email and invite.target_email.lower() != user.email.lower():
            raise ValidationError("This invite code is restricted to a specific email address")

        membership = get_membership(session, user.id, invite.workspace_id)
        is_existing_member = membership is not None
        if membership is None:
            membership = add_membership(
                session,
                user_id=user.id,
                workspace_id=invite.workspace_id,
                role=invite.role,
                is_primary=False,
            )

        enrollment = None
        if invite.challenge_id:
            enrollment = session.scalar(
                select(Enrollment).where(
                    Enrollment.user_id == user.id,
                    Enrollment.challenge_id == invite.challenge_id,
                )
            )
            if enrollment is None:
                enrollment = Enrollment(
                    user_id=user.id,
                    challenge_id=invite.challenge_id,
                    status=EnrollmentStatus.ENROLLED,
                )
                session.add(enrollment)
            else:
                enrollment.status = EnrollmentStatus.ENROLLED
            session.flush()

        redeemed = session.scalar(
            select(InviteRedemption.id).where(
                InviteRedemption.invite_id == invite.id,
                InviteRedemption.user_id == user.id,
            )
        )
        if redeemed is None:
            # Conditional bump so concurrent redemptions can't overshoot max_uses.
            bumped = session.execute(
                update(InviteCode)
                .where(InviteCode.id == invite.id, InviteCode.used_count < InviteCode.max_uses)
                .values(used_count=InviteCode.used_count + 1)
            )
            if bumped.rowcount == 0:
                raise ValidationError("This invite code has reached its maximum uses")
            session.add(InviteRedemption(invite_id=invite.id, user_id=user.id))

            log_activity_event(
                session,
                workspace_id=invite.workspace_id,
                challenge_id=invite.challenge_id,
                enrollment_id=enrollment.id if enrollment else None,
                user_id=user.id,
                actor_user_id=user.id,
                type=ActivityEventType.INVITE_REDEEMED,
                metadata={
                    "code": invite.code,
                    "role": membership.role,
                    "is_existing_member": is_existing_member,
                },
            )
            logger.info("Invite %s redeemed by %s", invite.code, user.id)

        return {
            "workspace_id": invite.workspace_id,
            "challenge_id": invite.challenge_id,
            "role": membership.role,
            "is_existing_member": is_existing_member,
        }


# ---------------------------------------------------------------------------
# Listing & revocation
# ---------------------------------------------------------------------------
def _pending_for_email(email: str):
    return select(InviteCode).where(
        InviteCode.target_email == email.lower(),
        InviteCode.expires_at > utcnow(),
        InviteCode.used_count < InviteCode.max_uses,
    )


def list_pending_invites(engine: Engine, email: str) -> list[dict]:
    with Session(engine) as session:
        rows = session.execute(
            _pending_for_email(email)
            .add_columns(Workspace.name, Workspace.slug)
            .join(Workspace, Workspace.id == InviteCode.workspace_id)
            .order_by(InviteCode.created_at.desc())
        ).all()
        return [
            {
                "id": invite.id,
                "code": invite.code,
                "workspace_name": name,
                "workspace_slug": slug,
                "role": invite.role,
                "expires_at": as_utc(invite.expires_at).isoformat(),
            }
            for invite, name, slug in rows
        ]


def pending_invite_count(engine: Engine, email: str) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(_pending_for_email(email).subquery())
        ) or 0


def list_workspace_invites(engine: Engine, workspace_id: str) -> list[dict]:
    with Session(engine) as session:
        rows = session.execute(
            select(InviteCode, Challenge.title)
            .outerjoin(Challenge, Challenge.id == InviteCode.challenge_id)
            .where(InviteCode.workspace_id == workspace_id)
            .order_by(InviteCode.created_at.desc())
        ).all()
        return [
            {
                "id": invite.id,
                "code": invite.code,
                "role": invite.role,
                "target_email": invite.target_email,
                "expires_at": as_utc(invite.expires_at).isoformat(),
                "max_uses": invite.max_uses,
                "used_count": invite.used_count,
                "challenge_title": title,
            }
            for invite, title in rows
        ]


def revoke_invite(engine: Engine, workspace_id: str, invite_id: str) -> bool:
    """Expire an invite immediately; history is kept."""
    with get_session(engine) as session:
        invite = session.get(InviteCode, invite_id)
        if invite is None or invite.workspace_id != workspace_id:
            return False
        invite.expires_at = _EPOCH
        return True
