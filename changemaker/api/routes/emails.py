"""
changemaker.api.routes.emails — Email settings, templates, AI composer
========================================================================

The two composer endpoints stream.  ``/ai-generate`` emits Server-Sent
Events with the subject and HTML parsed so far; ``/chat`` streams raw model
text.  Both are throttled per workspace by the in-memory AI limiter before
the upstream call is made.
"""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from changemaker.ai import composer
from changemaker.ai.cost_tracker import cost_tracker
from changemaker.ai.email_ai import build_prompt, chat_system_prompt, temperature_for
from changemaker.ai.rate_limit import rate_limiter
from changemaker.api.deps import WorkspaceContext, get_config, get_engine, require_admin
from changemaker.api.rate_limit import rate_limited_user
from changemaker.config import ChangemakerConfig
from changemaker.database.engine import run_db
from changemaker.engine.templates import TEMPLATE_VARIABLES, sample_data
from changemaker.services import email_service
from changemaker.services.audit_service import row_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{slug}/emails",
    tags=["emails"],
    dependencies=[Depends(rate_limited_user)],
)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EmailSettingsUpdate(BaseModel):
    from_name: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    footer_html: str | None = None
    brand_color: str | None = None


class TemplateUpdate(BaseModel):
    subject: str | None = None
    html: str | None = None
    enabled: bool | None = None


class TestEmailRequest(BaseModel):
    to: str | None = None
    subject: str
    html: str
    variables: dict[str, str] | None = None


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    template_type: str = "GENERIC"
    existing_subject: str | None = None
    existing_html: str | None = None
    tone: str | None = None
    length: str | None = None
    creativity: str | None = None


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    template_type: str = "GENERIC"
    creativity: str | None = None


# ---------------------------------------------------------------------------
# Settings & templates
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_settings(
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    return email_service.get_email_settings(engine, ctx.workspace.id, cfg)


@router.put("/settings")
def update_settings(
    body: EmailSettingsUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    row = email_service.upsert_email_settings(
        engine, ctx.workspace.id, updated_by=ctx.user.id, **body.model_dump()
    )
    return row_to_dict(row)


@router.get("/templates")
def list_templates(ctx: WorkspaceContext = Depends(require_admin), engine=Depends(get_engine)):
    return {
        "templates": [row_to_dict(t) for t in email_service.list_templates(engine, ctx.workspace.id)],
        "variables": [
            {"name": v.name, "description": v.description, "sample": v.sample_value}
            for v in TEMPLATE_VARIABLES
        ],
    }


@router.get("/templates/{template_type}")
def get_template(
    template_type: str,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    row = email_service.get_template(engine, ctx.workspace.id, template_type)
    if row is None:
        raise HTTPException(404, "Template not found")
    return row_to_dict(row)


@router.put("/templates/{template_type}")
def save_template(
    template_type: str,
    body: TemplateUpdate,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
):
    row, warnings = email_service.upsert_template(
        engine, ctx.workspace.id, template_type, updated_by=ctx.user.id, **body.model_dump()
    )
    return {**row_to_dict(row), "warnings": warnings}


@router.post("/test")
async def send_test(
    body: TestEmailRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    """Send a rendered template to *to* (defaults to the caller)."""
    settings = await run_db(email_service.get_email_settings, engine, ctx.workspace.id, cfg)
    variables = sample_data({
        "workspaceName": ctx.workspace.name,
        "recipientName": ctx.user.display_name or ctx.user.first_name or ctx.user.email,
        "recipientEmail": ctx.user.email,
        **(body.variables or {}),
    })
    try:
        sent = await email_service.send_test_email(
            to=body.to or ctx.user.email,
            subject=body.subject,
            html=body.html,
            settings=settings,
            variables=variables,
        )
    except email_service.EmailDeliveryError as exc:
        raise HTTPException(502, str(exc))
    return {"id": sent.id, "delivered": sent.delivered}


# ---------------------------------------------------------------------------
# AI composer
# ---------------------------------------------------------------------------
def _ai_guard(ctx: WorkspaceContext):
    """Limiter check plus client construction; returns a response on refusal."""
    allowed, reason = rate_limiter.check_limit(ctx.workspace.id)
    if not allowed:
        usage = rate_limiter.get_usage(ctx.workspace.id)
        return None, JSONResponse(
            {"error": reason, "usage": usage},
            status_code=429,
            headers={"Retry-After": str(max(1, int(usage["reset_in"])))},
        )
    try:
        return composer.make_client(), None
    except composer.AINotConfiguredError:
        logger.error("AI composer called without ANTHROPIC_API_KEY")
        return None, JSONResponse({"error": "AI service not configured"}, status_code=503)


@router.post("/ai-generate")
def ai_generate(
    body: GenerateRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    client, refusal = _ai_guard(ctx)
    if refusal is not None:
        return refusal

    brand_color = email_service.get_email_settings(engine, ctx.workspace.id, cfg)["brand_color"]
    prompt = build_prompt(
        body.prompt,
        template_type=body.template_type,
        workspace_name=ctx.workspace.name,
        brand_color=brand_color,
        existing_html=body.existing_html,
        tone=body.tone,
        length=body.length,
    )
    events = composer.stream_generation_events(
        ctx.workspace.id,
        [{"role": "user", "content": prompt}],
        existing_subject=body.existing_subject or "",
        existing_html=body.existing_html or "",
        temperature=temperature_for(body.creativity) if body.creativity else cfg.ai_temperature,
        model=cfg.ai_model,
        max_tokens=cfg.ai_max_tokens,
        client=client,
    )
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/chat")
def ai_chat(
    body: ChatRequest,
    ctx: WorkspaceContext = Depends(require_admin),
    engine=Depends(get_engine),
    cfg: ChangemakerConfig = Depends(get_config),
):
    client, refusal = _ai_guard(ctx)
    if refusal is not None:
        return refusal

    brand_color = email_service.get_email_settings(engine, ctx.workspace.id, cfg)["brand_color"]
    text = composer.stream_chat(
        ctx.workspace.id,
        [m.model_dump() for m in body.messages],
        system=chat_system_prompt(ctx.workspace.name, brand_color, body.template_type),
        temperature=temperature_for(body.creativity) if body.creativity else cfg.ai_temperature,
        model=cfg.ai_model,
        max_tokens=cfg.ai_max_tokens,
        client=client,
    )
    return StreamingResponse(text, media_type="text/plain; charset=utf-8")


@router.get("/ai-usage")
def ai_usage(ctx: WorkspaceContext = Depends(require_admin)):
    return {
        "rate_limit": rate_limiter.get_usage(ctx.workspace.id),
        "cost": cost_tracker.get_usage(ctx.workspace.id),
        "recent": cost_tracker.get_recent_entries(ctx.workspace.id),
    }
