"""
changemaker.engine.templates — Email Template Variables & Rendering
====================================================================

The variable catalog below is shared by the AI prompt builder, template
validation, and test-email rendering so all three agree on which
``{{placeholders}}`` exist.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime

_VARIABLE_RE = re.compile(r"\{\{([^}]+)\}\}")


@dataclass(frozen=True, slots=True)
class TemplateVariable:
    name: str
    description: str
    sample_value: str
    template_types: tuple[str, ...] | None = None  # None → every template type


def _current_year() -> str:
    return str(datetime.now(UTC).year)


TEMPLATE_VARIABLES: tuple[TemplateVariable, ...] = (
    TemplateVariable("recipientName", "Name of the email recipient", "John Smith"),
    TemplateVariable("workspaceName", "Name of the workspace", "Acme Rewards Team"),
    TemplateVariable(
        "workspaceUrl", "URL to the workspace homepage", "http://localhost:3000/w/acme"
    ),
    TemplateVariable(
        "actionUrl", "Primary call-to-action URL", "http://localhost:3000/w/acme"
    ),
    TemplateVariable(
        "inviteUrl", "Invitation acceptance URL",
        "http://localhost:3000/w/acme/invites/test", ("INVITE",),
    ),
    TemplateVariable(
        "challengeUrl", "URL to a specific challenge",
        "http://localhost:3000/w/acme/challenges/sample-challenge",
        ("ENROLLMENT_UPDATE", "REMINDER"),
    ),
    TemplateVariable(
        "inviterName", "Name of the person sending the invitation", "Admin User", ("INVITE",)
    ),
    TemplateVariable("senderName", "Name of the email sender", "Changemaker Team"),
    TemplateVariable(
        "challenge.title", "Title of the challenge", "Sample Challenge",
        ("ENROLLMENT_UPDATE", "REMINDER"),
    ),
    TemplateVariable(
        "challenge.description", "Description of the challenge",
        "Complete this challenge to earn rewards and recognition!",
        ("ENROLLMENT_UPDATE", "REMINDER"),
    ),
    TemplateVariable(
        "expirationDays", "Number of days until expiration", "7", ("INVITE",)
    ),
    TemplateVariable(
        "expirationDate", "Expiration date (formatted)", "December 31, 2025",
        ("INVITE", "REMINDER"),
    ),
    TemplateVariable("currentYear", "Current year (for copyright notices)", ""),
    TemplateVariable("year", "Alias for currentYear", ""),
    TemplateVariable("supportEmail", "Support/reply-to email address", "team@changemaker.im"),
    TemplateVariable("replyToEmail", "Reply-to email address", "team@changemaker.im"),
)

_YEAR_VARIABLES = frozenset({"currentYear", "year"})


def variable_names() -> list[str]:
    """All variables formatted as ``{{name}}``."""
    return [f"{{{{{v.name}}}}}" for v in TEMPLATE_VARIABLES]


def variables_for_template(template_type: str) -> list[TemplateVariable]:
    return [
        v for v in TEMPLATE_VARIABLES
        if v.template_types is None or template_type in v.template_types
    ]


def sample_data(overrides: dict[str, str] | None = None) -> dict[str, str]:
    data = {
        v.name: (_current_year() if v.name in _YEAR_VARIABLES else v.sample_value)
        for v in TEMPLATE_VARIABLES
    }
    if overrides:
        data.update(overrides)
    return data


def extract_variables(html: str) -> list[str]:
    """Distinct variable names used in *html*, in first-seen order."""
    seen: dict[str, None] = {}
    for match in _VARIABLE_RE.finditer(html or ""):
        seen.setdefault(match.group(1).strip(), None)
    return list(seen)


def validate_template(html: str) -> dict:
    known = {v.name for v in TEMPLATE_VARIABLES}
    undefined = [name for name in extract_variables(html) if name not in known]
    warnings = []
    if undefined:
        warnings.append(
            "Template uses undefined variables: "
            + ", ".join(f"{{{{{name}}}}}" for name in undefined)
        )
    return {"valid": not undefined, "undefined_variables": undefined, "warnings": warnings}


def render_template(template: str, data: dict[str, str] | None = None) -> str:
    """Substitute ``{{name}}`` placeholders; unknown placeholders are left as-is."""
    values = sample_data(data)

    def _replace(match: re.Match) -> str:
        key = match.group(1).strip()
        return values.get(key, match.group(0))

    return _VARIABLE_RE.sub(_replace, template or "")
