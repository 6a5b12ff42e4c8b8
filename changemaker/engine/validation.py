"""
changemaker.engine.validation — Input Validation Rules
=======================================================

Each validator raises :class:`~changemaker.errors.ValidationError` with a
human-readable message on the first rule that fails.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from changemaker.constants import (
    ACTIVITY_TYPES,
    MIN_INVITE_EXPIRY_HOURS,
    ROLES,
    SLUG_MAX_LENGTH,
    SLUG_MIN_LENGTH,
    SLUG_PATTERN,
)
from changemaker.database.models import as_utc
from changemaker.errors import ValidationError


def validate_workspace_slug(slug: str) -> str:
    slug = (slug or "").strip()
    if not (SLUG_MIN_LENGTH <= len(slug) <= SLUG_MAX_LENGTH):
        raise ValidationError(
            f"Slug must be between {SLUG_MIN_LENGTH} and {SLUG_MAX_LENGTH} characters"
        )
    if not SLUG_PATTERN.match(slug):
        raise ValidationError(
            "Slug may only contain lowercase letters, numbers, and hyphens"
        )
    return slug


def validate_challenge(
    *,
    title: str,
    description: str,
    start_date: datetime,
    end_date: datetime,
    enrollment_deadline: datetime | None = None,
) -> None:
    if not title or not title.strip():
        raise ValidationError("Title is required")
    if not description or not description.strip():
        raise ValidationError("Description is required")
    start, end = as_utc(start_date), as_utc(end_date)
    if end <= start:
        raise ValidationError("End date must be after start date")
    if enrollment_deadline is not None and as_utc(enrollment_deadline) > start:
        raise ValidationError("Enrollment deadline must be on or before the start date")


def validate_activity_template(*, name: str, type: str, base_points: int) -> None:
    if not name or not name.strip():
        raise ValidationError("Name is required")
    if type not in ACTIVITY_TYPES:
        raise ValidationError(
            f"Invalid activity type '{type}'. Must be one of: {', '.join(ACTIVITY_TYPES)}"
        )
    if base_points is None or base_points <= 0:
        raise ValidationError("Base points must be greater than 0")


def validate_submission_content(
    *,
    text_content: str | None,
    file_urls: list[str] | None,
    link_url: str | None,
) -> None:
    has_text = bool(text_content and text_content.strip())
    has_files = bool(file_urls)
    has_link = bool(link_url and link_url.strip())
    if not (has_text or has_files or has_link):
        raise ValidationError("Submission must include text, files, or a link")


def validate_invite(*, expires_in: timedelta, max_uses: int, role: str) -> None:
    if expires_in < timedelta(hours=MIN_INVITE_EXPIRY_HOURS):
        raise ValidationError("Invite must be valid for at least 1 hour")
    if max_uses < 1:
        raise ValidationError("Max uses must be at least 1")
    if role not in ROLES:
        raise ValidationError(f"Invalid role '{role}'")


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"Invalid role '{role}'")
    return role


def validate_email(email: str) -> str:
    email = (email or "").strip().lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain or " " in email:
        raise ValidationError("A valid email address is required")
    return email
