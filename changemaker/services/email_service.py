"""
changemaker.services.email_service — Email Settings, Templates & Delivery
=========================================================================

Outbound mail goes through the Resend HTTP API.  When ``RESEND_API_KEY`` is
unset and ``ENVIRONMENT=development`` the message is logged instead of sent
so local flows (invites, test emails) still complete.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import httpx
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.config import ChangemakerConfig
from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivityEventType,
    EmailTemplateType,
    WorkspaceEmailSettings,
    WorkspaceEmailTemplate,
)
from changemaker.engine.templates import render_template, validate_template
from changemaker.errors import ValidationError
from changemaker.services.audit_service import log_activity_event

logger = logging.getLogger(__name__)

RESEND_API = "https://api.resend.com"

_SETTINGS_FIELDS = ("from_name", "from_email", "reply_to", "footer_html", "brand_color")


class EmailDeliveryError(Exception):
    """The email provider rejected the message or is not configured."""


@dataclass(frozen=True, slots=True)
class SentEmail:
    id: str | None
    delivered: bool  # False when only logged in development


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
def get_email_settings(engine: Engine, workspace_id: str, config: ChangemakerConfig) -> dict:
    """Workspace sender settings merged over the application defaults."""
    with Session(engine) as session:
        row = session.get(WorkspaceEmailSettings, workspace_id)
    return {
        "from_name": (row and row.from_name) or config.email_from_name,
        "from_email": (row and row.from_email) or config.email_from,
        "reply_to": (row and row.reply_to) or config.support_email,
        "footer_html": row.footer_html if row else None,
        "brand_color": (row and row.brand_color) or config.brand_color,
    }


def upsert_email_settings(
    engine: Engine, workspace_id: str, *, updated_by: str, **fields: str | None
) -> WorkspaceEmailSettings:
    with get_session(engine) as session:
        row = session.get(WorkspaceEmailSettings, workspace_id)
        if row is None:
            row = WorkspaceEmailSettings(workspace_id=workspace_id)
            session.add(row)
        for key, value in fields.items():
            if key in _SETTINGS_FIELDS:
                setattr(row, key, value)
        row.updated_by = updated_by
        session.flush()
        return row


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------
def _check_type(template_type: str) -> str:
    if template_type not in EmailTemplateType.__members__:
        raise ValidationError(f"Unknown email template type '{template_type}'")
    return template_type


def list_templates(engine: Engine, workspace_id: str) -> list[WorkspaceEmailTemplate]:
    with Session(engine) as session:
        return list(session.scalars(
            select(WorkspaceEmailTemplate)
            .where(WorkspaceEmailTemplate.workspace_id == workspace_id)
            .order_by(WorkspaceEmailTemplate.type)
        ).all())


def get_template(engine: Engine, workspace_id: str, template_type: str) -> WorkspaceEmailTemplate | None:
    _check_type(template_type)
    with Session(engine) as session:
        return session.scalar(
            select(WorkspaceEmailTemplate).where(
                WorkspaceEmailTemplate.workspace_id == workspace_id,
                WorkspaceEmailTemplate.type == template_type,
            )
        )


def upsert_template(
    engine: Engine,
    workspace_id: str,
    template_type: str,
    *,
    updated_by: str,
    subject: str | None = None,
    html: str | None = None,
    enabled: bool | None = None,
) -> tuple[WorkspaceEmailTemplate, list[str]]:
    """Save a template; returns it with any variable warnings."""
    _check_type(template_type)
    report = validate_template(html or "")

    with get_session(engine) as session:
        row = session.scalar(
            select(WorkspaceEmailTemplate).where(
                WorkspaceEmailTemplate.workspace_id == workspace_id,
                WorkspaceEmailTemplate.type == template_type,
            )
        )
        if row is None:
            row = WorkspaceEmailTemplate(workspace_id=workspace_id, type=template_type)
            session.add(row)
        if subject is not None:
            row.subject = subject
        if html is not None:
            row.html = html
        if enabled is not None:
            row.enabled = enabled
        row.updated_by = updated_by
        session.flush()

        log_activity_event(
            session,
            workspace_id=workspace_id,
            actor_user_id=updated_by,
            type=ActivityEventType.EMAIL_TEMPLATE_UPDATED,
            metadata={"template_type": template_type, "enabled": row.enabled},
        )
        return row, report["warnings"]


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
async def send_email(
    *,
    to: str | list[str],
    subject: str,
    html: str,
    from_name: str,
    from_email: str,
    reply_to: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SentEmail:
    """Send one message via Resend.

    Raises
    ------
    EmailDeliveryError
        If the API key is missing outside development, or Resend answers
        with an error status.
    """
    recipients = [to] if isinstance(to, str) else list(to)
    api_key = os.getenv("RESEND_API_KEY", "").strip()
    if not api_key:
        if os.getenv("ENVIRONMENT", "").lower() == "development":
            logger.info("[email:dev] to=%s subject=%r (%d chars html)",
                        ", ".join(recipients), subject, len(html))
            return SentEmail(id=None, delivered=False)
        raise EmailDeliveryError("RESEND_API_KEY is not configured")

    body = {
        "from": f"{from_name} <{from_email}>",
        "to": recipients,
        "subject": subject,
        "html": html,
    }
    if reply_to:
        body["reply_to"] = reply_to

    transport = transport or httpx.AsyncHTTPTransport(retries=1)
    async with httpx.AsyncClient(timeout=10, transport=transport) as client:
        try:
            resp = await client.post(
                f"{RESEND_API}/emails",
                json=body,
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Email provider unreachable: {exc}") from exc

    if resp.status_code >= 400:
        logger.error("Resend rejected email to %s: %s %s",
                     recipients, resp.status_code, resp.text[:200])
        raise EmailDeliveryError(f"Email provider returned {resp.status_code}")
    return SentEmail(id=resp.json().get("id"), delivered=True)


async def send_test_email(
    *,
    to: str,
    subject: str,
    html: str,
    settings: dict,
    variables: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SentEmail:
    """Render *html* with sample variable values and send it to *to*."""
    rendered = render_template(html, variables)
    if settings.get("footer_html"):
        rendered += render_template(settings["footer_html"], variables)
    return await send_email(
        to=to,
        subject=f"[Test] {render_template(subject, variables)}",
        html=rendered,
        from_name=settings["from_name"],
        from_email=settings["from_email"],
        reply_to=settings.get("reply_to"),
        transport=transport,
    )
