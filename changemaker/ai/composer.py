"""
changemaker.ai.composer — Streaming Email Generation
====================================================

Bridges the Anthropic Messages API to the two composer endpoints:

* :func:`stream_chat` yields raw text deltas (``/emails/chat``).
* :func:`stream_generation_events` yields Server-Sent Event frames carrying
  the subject/HTML parsed so far (``/emails/ai-generate``)::

      data: {"type": "object-delta", "subject": "...", "html": "...", "done": false}

      data: {"type": "finish", "subject": "...", "html": "...", "done": true}

Token usage from the final message is recorded in the workspace's rate
limiter window and cost ledger once the stream completes.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator

from anthropic import AsyncAnthropic

from changemaker.ai.cost_tracker import CostTracker, cost_tracker
from changemaker.ai.email_ai import MAX_TOKENS, MODEL, SYSTEM_PROMPT, parse_generated_email
from changemaker.ai.rate_limit import AIRateLimiter, rate_limiter

logger = logging.getLogger(__name__)


class AINotConfiguredError(RuntimeError):
    """``ANTHROPIC_API_KEY`` is not set."""


def make_client() -> AsyncAnthropic:
    api_key = os.getenv("ANTHROPIC_API_KEY", "").strip()
    if not api_key:
        raise AINotConfiguredError("ANTHROPIC_API_KEY is not set")
    return AsyncAnthropic(api_key=api_key)


async def stream_chat(
    workspace_id: str,
    messages: list[dict],
    *,
    system: str = SYSTEM_PROMPT,
    temperature: float = 0.7,
    model: str = MODEL,
    max_tokens: int = MAX_TOKENS,
    client: AsyncAnthropic | None = None,
    limiter: AIRateLimiter = rate_limiter,
    tracker: CostTracker = cost_tracker,
) -> AsyncIterator[str]:
    """Yield text deltas, then record usage for *workspace_id*."""
    client = client or make_client()
    async with client.messages.stream(
        model=model,
        max_tokens=max_tokens,
        temperature=temperature,
        system=system,
        messages=messages,
    ) as stream:
        async for text in stream.text_stream:
            yield text
        final = await stream.get_final_message()

    usage = final.usage
    limiter.record_usage(workspace_id, usage.input_tokens + usage.output_tokens)
    cost = tracker.record_usage(workspace_id, usage.input_tokens, usage.output_tokens)
    logger.info("AI usage ws=%s in=%d out=%d cost=$%.4f",
                workspace_id, usage.input_tokens, usage.output_tokens, cost)


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def stream_generation_events(
    workspace_id: str,
    messages: list[dict],
    *,
    existing_subject: str = "",
    existing_html: str = "",
    **kwargs,
) -> AsyncIterator[str]:
    """SSE frames with the email parsed so far, ending in a ``finish`` frame."""
    text = ""
    async for delta in stream_chat(workspace_id, messages, **kwargs):
        text += delta
        partial = parse_generated_email(text)
        yield _sse({
            "type": "object-delta",
            "subject": partial.subject or existing_subject,
            "html": partial.html or existing_html,
            "done": False,
        })

    final = parse_generated_email(text)
    yield _sse({
        "type": "finish",
        "subject": final.subject or existing_subject,
        "html": final.html or existing_html,
        "done": True,
    })
