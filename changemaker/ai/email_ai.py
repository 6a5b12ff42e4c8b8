"""
changemaker.ai.email_ai — Email Composer Prompts & Output Parsing
=================================================================

Prompt construction and response parsing for the AI email composer.  Kept
free of I/O so the composer (:mod:`changemaker.ai.composer`) can stream
while this module stays easy to test.

The model is asked to answer in a fixed shape::

    Subject: <subject line>

    ```html
    <!DOCTYPE html> ...
    ```

:func:`parse_generated_email` tolerates a response that is still streaming
(no closing fence yet), so partial HTML can be forwarded as it arrives.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from changemaker.engine.templates import TEMPLATE_VARIABLES, variables_for_template

MODEL = "claude-sonnet-4-5-20250929"
TEMPERATURE = 0.7
MAX_TOKENS = 4096

CREATIVITY_TEMPERATURES = {
    "conservative": 0.3,
    "balanced": 0.7,
    "creative": 1.0,
}

SYSTEM_PROMPT = """\
You are an expert email template designer for professional workplace \
communication platforms. Your task is to generate clean, modern, and \
accessible HTML email templates.

Guidelines:
- Use inline CSS for maximum email client compatibility
- Include responsive meta tags and viewport settings
- Use web-safe fonts (Arial, Helvetica, sans-serif)
- Ensure good color contrast for accessibility
- Keep HTML structure simple and table-based for email clients
- Include proper alt text for images
- Make the design clean, professional, and on-brand
- Ensure the template is mobile-friendly

Template Structure:
- Always include DOCTYPE, html, head, and body tags
- Include meta tags for charset, viewport, and email client compatibility
- Use tables for layout (email clients don't support flexbox/grid reliably)
- Include a max-width container (typically 600px) centered with margins
- Use the provided brand color for primary actions and accents

Output format:
- First line: "Subject: " followed by the subject line
- Then the complete HTML inside a ```html fenced block
- No other commentary"""

_SUBJECT_RE = re.compile(r"^\s*Subject:\s*(.+?)\s*$", re.MULTILINE | re.IGNORECASE)
_HTML_OPEN = "```html"


@dataclass(frozen=True, slots=True)
class GeneratedEmail:
    subject: str
    html: str
    complete: bool  # closing fence seen


def temperature_for(creativity: str | None) -> float:
    return CREATIVITY_TEMPERATURES.get(creativity or "", TEMPERATURE)


def build_prompt(
    prompt: str,
    template_type: str = "GENERIC",
    workspace_name: str | None = None,
    brand_color: str | None = None,
    existing_html: str | None = None,
    tone: str | None = None,
    length: str | None = None,
) -> str:
    """Wrap the admin's request with workspace context and the variable list."""
    lines = [f"Generate an HTML email template for: {template_type}", ""]
    if workspace_name:
        lines.append(f"Workspace: {workspace_name}")
    if brand_color:
        lines.append(f"Brand Color: {brand_color} (use for primary buttons and accents)")
    if tone:
        lines.append(f"Tone: {tone}")
    if length:
        lines.append(f"Length: {length}")

    recommended = variables_for_template(template_type)
    recommended_names = {v.name for v in recommended}
    lines += [
        "",
        "AVAILABLE TEMPLATE VARIABLES:",
        "Use these variables in your template by wrapping them in double braces, "
        "e.g., {{recipientName}}",
        "",
    ]
    if recommended:
        lines.append(f"Recommended for {template_type}:")
        lines += [f"- {{{{{v.name}}}}}: {v.description}" for v in recommended]
        lines.append("")
    lines.append("All available variables:")
    for v in TEMPLATE_VARIABLES:
        suffix = " (recommended for this type)" if v.name in recommended_names else ""
        lines.append(f"- {{{{{v.name}}}}}: {v.description}{suffix}")

    if existing_html:
        lines += ["", "Existing Template (modify based on user request):", existing_html, ""]

    lines += [
        "",
        f"User Request: {prompt}",
        "",
        "IMPORTANT: Only use the template variables listed above. Do not create new variables.",
    ]
    return "\n".join(lines)


def chat_system_prompt(workspace_name: str, brand_color: str, template_type: str) -> str:
    return (
        f"{SYSTEM_PROMPT}\n\n"
        "WORKSPACE CONTEXT:\n"
        f"- Name: {workspace_name}\n"
        f"- Brand Color: {brand_color}\n"
        f"- Template Type: {template_type}"
    )


def parse_generated_email(text: str) -> GeneratedEmail:
    """Pull the subject line and the fenced HTML out of model output."""
    match = _SUBJECT_RE.search(text)
    subject = match.group(1).strip() if match else ""

    start = text.find(_HTML_OPEN)
    if start == -1:
        return GeneratedEmail(subject=subject, html="", complete=False)
    body = text[start + len(_HTML_OPEN):].lstrip("\n")
    end = body.find("```")
    if end == -1:
        return GeneratedEmail(subject=subject, html=body, complete=False)
    return GeneratedEmail(subject=subject, html=body[:end].rstrip(), complete=True)
