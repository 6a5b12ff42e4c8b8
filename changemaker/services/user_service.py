"""
changemaker.services.user_service — Users Mirrored from the Auth Provider
==========================================================================

The auth provider owns credentials; this table keeps the profile and
shipping details the rest of the system needs.  Rows are keyed by the
token subject (``supabase_user_id``) and upserted on ``/auth/sync``.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import User
from changemaker.engine.validation import validate_email
from changemaker.errors import ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = frozenset({
    "first_name",
    "last_name",
    "display_name",
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "zip_code",
    "country",
})


def get_user_by_subject(engine: Engine, subject: str) -> User | None:
    with Session(engine) as session:
        return session.scalar(select(User).where(User.supabase_user_id == subject))


def get_user(engine: Engine, user_id: str) -> User | None:
    with Session(engine) as session:
        return session.get(User, user_id)


def sync_user_from_claims(engine: Engine, claims: dict) -> User:
    """Create or refresh the ``User`` row for a verified token.

    A row created earlier by email alone (an invited user who had not yet
    signed in) is linked to the token subject on first sync.
    """
    subject = claims.get("sub")
    if not subject:
        raise ValidationError("Token has no subject")
    email = validate_email(claims.get("email") or "")
    metadata = claims.get("user_metadata") or {}

    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.supabase_user_id == subject))
        if user is None:
            user = session.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(email=email, supabase_user_id=subject)
            session.add(user)
            logger.info("Created user %s for subject %s", email, subject)
        else:
            user.supabase_user_id = subject
            user.email = email

        for key in ("first_name", "last_name", "display_name"):
            if metadata.get(key) and not getattr(user, key):
                setattr(user, key, metadata[key])
        session.flush()
        return user


def update_profile(engine: Engine, user_id: str, **fields: Any) -> User:
    country = fields.get("country")
    if country is not None and len(country) != 2:
        raise ValidationError("Country must be a 2-letter ISO code")

    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        for key, value in fields.items():
            if key in PROFILE_FIELDS:
                setattr(user, key, value.upper() if key == "country" and value else value)
        return user


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "phone": user.phone,
        "address_line1": user.address_line1,
        "address_line2": user.address_line2,
        "city": user.city,
        "state": user.state,
        "zip_code": user.zip_code,
        "country": user.country,
        "is_platform_super_admin": user.is_platform_super_admin,
        "reward_stack_sync_status": user.reward_stack_sync_status,
    }
