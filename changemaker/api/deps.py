"""
changemaker.api.deps — FastAPI dependency injection
=====================================================

Bearer tokens are the auth provider's HS256 access tokens, verified with
the shared ``JWT_SECRET``.  The token subject maps to ``users.supabase_user_id``;
the caller's role inside a workspace comes from their membership (platform
super admins act as ADMIN everywhere).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import httpx
import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.config import ChangemakerConfig, load_config
from changemaker.database.engine import create_db_engine
from changemaker.database.models import Role, User, Workspace
from changemaker.engine.permissions import can_access_manager_routes
from changemaker.services.workspace_service import (
    get_user_workspace_role,
    get_workspace_by_slug,
)

_WEAK_SECRETS = frozenset({
    "changemaker-dev-secret-change-me",
    "super-secret-jwt-token-with-at-least-32-characters-long",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Use the JWT secret from your auth provider's project settings."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ChangemakerConfig:
    return load_config()


def get_rewardstack_transport() -> httpx.AsyncBaseTransport | None:
    """Transport for outbound RewardSTACK calls; None means the real network."""
    return None


# ---------------------------------------------------------------------------
# Token → user
# ---------------------------------------------------------------------------
def get_token_claims(authorization: Annotated[str | None, Header()] = None) -> dict:
    """Validate the bearer token and return its claims. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        # Provider tokens carry aud="authenticated"; the signature is what we trust.
        payload = jwt.decode(
            token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"verify_aud": False}
        )
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return payload


def get_current_user(
    claims: dict = Depends(get_token_claims),
    engine: Engine = Depends(get_engine),
) -> User:
    """The ``User`` row for the token subject. 401 until ``/auth/sync`` has run."""
    with Session(engine) as session:
        user = session.scalar(select(User).where(User.supabase_user_id == claims["sub"]))
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "User not synced")
    return user


# ---------------------------------------------------------------------------
# Workspace context
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class WorkspaceContext:
    workspace: Workspace
    user: User
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def can_manage(self) -> bool:
        return can_access_manager_routes(self.role)


def require_member(
    slug: str,
    user: User = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
) -> WorkspaceContext:
    with Session(engine) as session:
        workspace = get_workspace_by_slug(session, slug)
        if workspace is None:
            raise HTTPException(status.HTTP_404_NOT_FOUND, "Workspace not found")
        role = get_user_workspace_role(session, user, workspace)
    if role is None:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not a member of this workspace")
    return WorkspaceContext(workspace=workspace, user=user, role=role)


def require_manager(ctx: WorkspaceContext = Depends(require_member)) -> WorkspaceContext:
    if not ctx.can_manage:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Manager access required")
    return ctx


def require_admin(ctx: WorkspaceContext = Depends(require_member)) -> WorkspaceContext:
    if not ctx.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Admin access required")
    return ctx
