"""
changemaker.api.auth — Session sync and profile endpoints
===========================================================

Sign-in itself happens at the auth provider.  The frontend calls
``POST /auth/sync`` once after login so the token subject has a ``User``
row; every other endpoint resolves the caller through that row.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from changemaker.api.deps import get_current_user, get_engine, get_token_claims
from changemaker.api.rate_limit import rate_limited_user
from changemaker.database.models import User
from changemaker.services import invite_service, user_service, workspace_service

router = APIRouter(prefix="/auth", tags=["auth"])


class ProfileUpdate(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    display_name: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


def _membership_dict(m) -> dict:
    return {
        "workspace_id": m.workspace_id,
        "slug": m.workspace.slug,
        "name": m.workspace.name,
        "role": m.role,
        "is_primary": m.is_primary,
        "joined_at": m.joined_at.isoformat() if m.joined_at else None,
    }


@router.post("/sync")
def sync(claims: dict = Depends(get_token_claims), engine=Depends(get_engine)):
    """Upsert the caller's ``User`` row from the verified token claims."""
    user = user_service.sync_user_from_claims(engine, claims)
    return {
        "user": user_service.user_to_dict(user),
        "pending_invites": invite_service.pending_invite_count(engine, user.email),
    }


@router.get("/me")
def me(user: User = Depends(get_current_user), engine=Depends(get_engine)):
    memberships = workspace_service.list_memberships(engine, user.id)
    return {
        **user_service.user_to_dict(user),
        "memberships": [_membership_dict(m) for m in memberships],
    }


@router.patch("/me")
def update_me(
    body: ProfileUpdate,
    user: User = Depends(rate_limited_user),
    engine=Depends(get_engine),
):
    updated = user_service.update_profile(engine, user.id, **body.model_dump(exclude_none=True))
    return user_service.user_to_dict(updated)
