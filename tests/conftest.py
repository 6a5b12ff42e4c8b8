"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of changemaker.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import time  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from unittest.mock import patch  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from changemaker.config import ChangemakerConfig  # noqa: E402
from changemaker.database.engine import get_session  # noqa: E402
from changemaker.database.models import (  # noqa: E402
    Activity,
    ActivityTemplate,
    Base,
    Challenge,
    ChallengeStatus,
    Role,
    User,
    Workspace,
    WorkspaceMembership,
)

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Changemaker tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db`` and the limiter).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def app_config() -> ChangemakerConfig:
    return ChangemakerConfig(
        app_name="Changemaker",
        app_url="http://localhost:3000",
        support_email="team@changemaker.im",
        email_from_name="Changemaker",
        email_from="noreply@changemaker.im",
        brand_color="#F97316",
        ai_model="claude-sonnet-4-5-20250929",
        ai_temperature=0.7,
        ai_max_tokens=4096,
        ai_requests_per_minute=10,
        ai_tokens_per_minute=40000,
    )


# ---------------------------------------------------------------------------
# Seed helpers (plain functions so tests can call them with arguments)
# ---------------------------------------------------------------------------
def make_user(engine: Engine, email: str = "alice@example.com", **fields) -> User:
    fields.setdefault("supabase_user_id", f"sub-{email}")
    with get_session(engine) as session:
        user = User(email=email, **fields)
        session.add(user)
        session.flush()
        return user


def make_workspace(engine: Engine, slug: str = "acme", **fields) -> Workspace:
    fields.setdefault("name", slug.title())
    with get_session(engine) as session:
        workspace = Workspace(slug=slug, **fields)
        session.add(workspace)
        session.flush()
        return workspace


def add_member(engine: Engine, user: User, workspace: Workspace, role: str = Role.PARTICIPANT):
    with get_session(engine) as session:
        membership = WorkspaceMembership(user_id=user.id, workspace_id=workspace.id, role=role)
        session.add(membership)
        session.flush()
        return membership


def make_challenge(
    engine: Engine,
    workspace: Workspace,
    *,
    status: str = ChallengeStatus.PUBLISHED,
    title: str = "Green Commute",
    **fields,
) -> Challenge:
    now = datetime.now(UTC)
    fields.setdefault("start_date", now - timedelta(days=1))
    fields.setdefault("end_date", now + timedelta(days=30))
    with get_session(engine) as session:
        challenge = Challenge(
            workspace_id=workspace.id,
            title=title,
            description="Bike, walk or bus to work",
            status=status,
            **fields,
        )
        session.add(challenge)
        session.flush()
        return challenge


def make_activity(
    engine: Engine,
    challenge: Challenge,
    *,
    points_value: int = 25,
    max_submissions: int = 1,
    requires_approval: bool = True,
    allow_multiple: bool = False,
    **fields,
) -> Activity:
    with get_session(engine) as session:
        template = ActivityTemplate(
            workspace_id=challenge.workspace_id,
            name="Share a photo",
            type="PHOTO_UPLOAD",
            base_points=points_value,
            requires_approval=requires_approval,
            allow_multiple=allow_multiple,
        )
        session.add(template)
        session.flush()
        activity = Activity(
            template_id=template.id,
            challenge_id=challenge.id,
            points_value=points_value,
            max_submissions=max_submissions,
            **fields,
        )
        session.add(activity)
        session.flush()
        return activity


def make_token(sub: str, email: str = "alice@example.com", **claims) -> str:
    """Sign an auth-provider style access token."""
    import jwt

    from changemaker.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "email": email, "aud": "authenticated", **claims},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def auth_header(user: User) -> dict:
    return {"Authorization": f"Bearer {make_token(user.supabase_user_id, user.email)}"}


@pytest.fixture
def client(db_engine: Engine, app_config: ChangemakerConfig):
    """TestClient wired to the in-memory engine, with fresh throttles."""
    from fastapi.testclient import TestClient

    from changemaker.ai.rate_limit import rate_limiter as ai_rate_limiter
    from changemaker.api.deps import get_config, get_engine
    from changemaker.api.main import app
    from changemaker.api.rate_limit import configure_rate_limiter

    configure_rate_limiter(engine=db_engine)
    ai_rate_limiter.reset()
    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: app_config
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# RewardSTACK fake
# ---------------------------------------------------------------------------
class FakeRewardStack:
    """Records requests and answers from a per-route table.

    ``routes`` maps ``"METHOD /path"`` to a list of ``(status, body)``
    responses consumed in order; the last one repeats.  A ``str`` or
    ``bytes`` body is sent as-is instead of as JSON.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.routes: dict[str, list[tuple[int, object]]] = {}

    def on(self, method: str, path: str, *responses: tuple[int, object]) -> None:
        self.routes[f"{method} {path}"] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_calls += 1
            return httpx.Response(
                200, json={"token": f"tok-{self.token_calls}", "expires": time.time() + 3600}
            )
        self.requests.append(request)
        queue = self.routes.get(f"{request.method} {request.url.path}")
        if not queue:
            return httpx.Response(404, json={"message": "no route"})
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(body, (str, bytes)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]


@pytest.fixture
def rewardstack_credentials():
    """Service credentials in the environment and an empty token cache."""
    from changemaker.rewardstack import auth

    auth.clear_token_cache()
    with patch.dict("os.environ", {"REWARDSTACK_USERNAME": "svc", "REWARDSTACK_PASSWORD": "pw"}):
        yield
    auth.clear_token_cache()
