"""
tests/test_ai.py — AI Email Composer
=====================================

Covers the per-workspace throttle, spend accounting, prompt building,
output parsing and the streaming bridge (against a fake Anthropic client).
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from changemaker.ai import composer
from changemaker.ai.cost_tracker import CostTracker
from changemaker.ai.email_ai import (
    build_prompt,
    chat_system_prompt,
    parse_generated_email,
    temperature_for,
)
from changemaker.ai.rate_limit import AIRateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Fake Anthropic streaming client
# ---------------------------------------------------------------------------
class _FakeStream:
    def __init__(self, chunks, input_tokens, output_tokens):
        self._chunks = chunks
        self._usage = SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @property
    def text_stream(self):
        async def gen():
            for chunk in self._chunks:
                yield chunk
        return gen()

    async def get_final_message(self):
        return SimpleNamespace(usage=self._usage)


class FakeAnthropic:
    def __init__(self, chunks, input_tokens=120, output_tokens=380):
        self.calls: list[dict] = []
        outer = self

        class _Messages:
            def stream(self, **kwargs):
                outer.calls.append(kwargs)
                return _FakeStream(chunks, input_tokens, output_tokens)

        self.messages = _Messages()


async def _collect(agen) -> list[str]:
    return [item async for item in agen]


# ---------------------------------------------------------------------------
# Rate limit
# ---------------------------------------------------------------------------
class TestAIRateLimiter:
    def test_request_limit(self):
        limiter = AIRateLimiter(requests_per_minute=2, tokens_per_minute=10_000, clock=FakeClock())
        assert limiter.check_limit("ws") == (True, None)
        limiter.record_usage("ws", 10)
        limiter.record_usage("ws", 10)
        allowed, reason = limiter.check_limit("ws")
        assert not allowed
        assert reason == "Rate limit exceeded: 2 requests per minute"
        assert limiter.check_limit("other")[0]

    def test_token_limit(self):
        limiter = AIRateLimiter(requests_per_minute=10, tokens_per_minute=500, clock=FakeClock())
        limiter.record_usage("ws", 600)
        allowed, reason = limiter.check_limit("ws")
        assert not allowed
        assert "500 tokens per minute" in reason

    def test_window_expires(self):
        clock = FakeClock()
        limiter = AIRateLimiter(requests_per_minute=1, clock=clock)
        limiter.record_usage("ws", 5)
        assert not limiter.check_limit("ws")[0]
        clock.now += 61
        assert limiter.check_limit("ws")[0]
        assert limiter.get_usage("ws")["requests"] == 0

    def test_usage_report(self):
        clock = FakeClock()
        limiter = AIRateLimiter(requests_per_minute=10, tokens_per_minute=1000, clock=clock)
        limiter.record_usage("ws", 250)
        clock.now += 20
        assert limiter.get_usage("ws") == {
            "requests": 1,
            "tokens": 250,
            "requests_remaining": 9,
            "tokens_remaining": 750,
            "reset_in": 40.0,
        }


# ---------------------------------------------------------------------------
# Cost tracking
# ---------------------------------------------------------------------------
class TestCostTracker:
    def test_pricing(self):
        tracker = CostTracker()
        assert tracker.calculate_cost(1_000_000, 1_000_000) == pytest.approx(18.0)
        assert tracker.calculate_cost(2000, 1000) == pytest.approx(0.021)

    def test_usage_per_workspace_and_total(self):
        clock = FakeClock()
        tracker = CostTracker(clock=clock)
        tracker.record_usage("a", 1000, 500)
        clock.now += 10
        tracker.record_usage("a", 2000, 0)
        tracker.record_usage("b", 0, 100)

        usage = tracker.get_usage("a")
        assert usage["total_input_tokens"] == 3000
        assert usage["request_count"] == 2
        total = tracker.get_total_usage()
        assert total["workspace_count"] == 2
        assert total["total_tokens"] == 3600
        recent = tracker.get_recent_entries("a", limit=1)
        assert recent[0]["input_tokens"] == 2000

    def test_old_entries_pruned(self):
        clock = FakeClock()
        tracker = CostTracker(clock=clock)
        tracker.record_usage("a", 10, 10)
        clock.now += 31 * 24 * 3600
        tracker.record_usage("a", 20, 20)
        assert tracker.get_usage("a", days=365)["request_count"] == 1


# ---------------------------------------------------------------------------
# Prompt & parsing
# ---------------------------------------------------------------------------
class TestPrompts:
    def test_prompt_includes_context(self):
        prompt = build_prompt(
            "Invite people to the spring cleanup",
            template_type="INVITE",
            workspace_name="Acme",
            brand_color="#112233",
            existing_html="<p>old</p>",
            tone="friendly",
        )
        assert prompt.startswith("Generate an HTML email template for: INVITE")
        assert "Brand Color: #112233" in prompt
        assert "Recommended for INVITE:" in prompt
        assert "- {{inviteUrl}}: Invitation acceptance URL" in prompt
        assert "<p>old</p>" in prompt
        assert prompt.rstrip().endswith("Do not create new variables.")

    def test_creativity_temperatures(self):
        assert temperature_for("conservative") == 0.3
        assert temperature_for("creative") == 1.0
        assert temperature_for(None) == 0.7
        assert temperature_for("wild") == 0.7

    def test_chat_system_prompt(self):
        system = chat_system_prompt("Acme", "#F97316", "REMINDER")
        assert "- Template Type: REMINDER" in system

    def test_parse_complete_output(self):
        parsed = parse_generated_email(
            "Subject: Join us!\n\n```html\n<!DOCTYPE html><p>Hi</p>\n```\n"
        )
        assert parsed.subject == "Join us!"
        assert parsed.html == "<!DOCTYPE html><p>Hi</p>"
        assert parsed.complete is True

    def test_parse_streaming_output(self):
        parsed = parse_generated_email("Subject: Join us!\n\n```html\n<!DOCTYPE html><p>H")
        assert parsed.html == "<!DOCTYPE html><p>H"
        assert parsed.complete is False
        assert parse_generated_email("Subj").subject == ""


# ---------------------------------------------------------------------------
# Streaming bridge
# ---------------------------------------------------------------------------
class TestComposer:
    def test_make_client_requires_key(self):
        with patch.dict("os.environ", {"ANTHROPIC_API_KEY": ""}):
            with pytest.raises(composer.AINotConfiguredError):
                composer.make_client()

    def test_stream_chat_records_usage(self):
        client = FakeAnthropic(["Hel", "lo"], input_tokens=100, output_tokens=50)
        limiter = AIRateLimiter(clock=FakeClock())
        tracker = CostTracker(clock=FakeClock())

        chunks = asyncio.run(_collect(composer.stream_chat(
            "ws", [{"role": "user", "content": "hi"}],
            temperature=0.3, client=client, limiter=limiter, tracker=tracker,
        )))

        assert chunks == ["Hel", "lo"]
        assert client.calls[0]["temperature"] == 0.3
        assert limiter.get_usage("ws")["tokens"] == 150
        assert tracker.get_usage("ws")["total_output_tokens"] == 50

    def test_generation_events(self):
        client = FakeAnthropic([
            "Subject: Spring ", "Cleanup\n\n```html\n<p>Join", " us</p>\n```",
        ])
        frames = asyncio.run(_collect(composer.stream_generation_events(
            "ws", [{"role": "user", "content": "x"}],
            existing_html="<p>old</p>",
            client=client, limiter=AIRateLimiter(), tracker=CostTracker(),
        )))

        events = [json.loads(f.removeprefix("data: ").strip()) for f in frames]
        assert all(f.endswith("\n\n") for f in frames)
        assert events[0] == {
            "type": "object-delta", "subject": "Spring", "html": "<p>old</p>", "done": False,
        }
        assert events[-1] == {
            "type": "finish", "subject": "Spring Cleanup", "html": "<p>Join us</p>", "done": True,
        }
