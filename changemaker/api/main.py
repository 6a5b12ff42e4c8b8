"""
changemaker.api.main — FastAPI application entry point
=========================================================

Run with::

    uvicorn changemaker.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from changemaker.ai.rate_limit import rate_limiter as ai_rate_limiter  # noqa: E402
from changemaker.api.auth import router as auth_router  # noqa: E402
from changemaker.api.deps import get_config, get_engine  # noqa: E402
from changemaker.api.rate_limit import configure_rate_limiter  # noqa: E402
from changemaker.api.routes.challenges import router as challenges_router  # noqa: E402
from changemaker.api.routes.emails import router as emails_router  # noqa: E402
from changemaker.api.routes.invites import router as invites_router  # noqa: E402
from changemaker.api.routes.notifications import router as notifications_router  # noqa: E402
from changemaker.api.routes.points import router as points_router  # noqa: E402
from changemaker.api.routes.rewards import router as rewards_router  # noqa: E402
from changemaker.api.routes.submissions import router as submissions_router  # noqa: E402
from changemaker.api.routes.templates import router as templates_router  # noqa: E402
from changemaker.api.routes.webhooks import router as webhooks_router  # noqa: E402
from changemaker.api.routes.workspaces import router as workspaces_router  # noqa: E402
from changemaker.errors import DatabaseError, http_status_for  # noqa: E402
from changemaker.services.submission_service import SelfApprovalError  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, configure throttles."""
    engine = get_engine()
    cfg = get_config()
    configure_rate_limiter(
        engine=engine,
        mutations_per_minute=cfg.mutation_rate_limit,
        webhooks_per_minute=cfg.webhook_rate_limit,
    )
    ai_rate_limiter.requests_per_minute = cfg.ai_requests_per_minute
    ai_rate_limiter.tokens_per_minute = cfg.ai_tokens_per_minute
    logger.info("Changemaker API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Changemaker API shutting down")


app = FastAPI(
    title="Changemaker API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Service errors → HTTP
# ---------------------------------------------------------------------------
@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error("Service error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"detail": exc.message, "code": exc.code}, status_code=status_code)


@app.exception_handler(SelfApprovalError)
async def self_approval_handler(request: Request, exc: SelfApprovalError):
    return JSONResponse({"detail": str(exc)}, status_code=403)


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(workspaces_router, prefix="/api")
app.include_router(challenges_router, prefix="/api")
app.include_router(templates_router, prefix="/api")
app.include_router(submissions_router, prefix="/api")
app.include_router(points_router, prefix="/api")
app.include_router(rewards_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(invites_router, prefix="/api")
app.include_router(notifications_router, prefix="/api")
app.include_router(emails_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
