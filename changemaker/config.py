"""
changemaker.config — YAML Configuration Loader
===============================================

Reads ``config.yaml`` for non-secret application settings (public URLs,
default sender identity, AI model tuning, rate limits).  Credentials and
connection strings never live here; they come from the environment
(``DATABASE_URL``, ``JWT_SECRET``, ``REWARDSTACK_*``, ``ANTHROPIC_API_KEY``,
``RESEND_API_KEY``).

Usage::

    from changemaker.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.app_url)           # "http://localhost:3000"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChangemakerConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str
    app_url: str
    support_email: str

    # Email defaults (overridden per workspace by email settings)
    email_from_name: str
    email_from: str
    brand_color: str

    # AI email composer
    ai_model: str
    ai_temperature: float
    ai_max_tokens: int
    ai_requests_per_minute: int
    ai_tokens_per_minute: int

    # Throttles
    webhook_rate_limit: int = 100
    mutation_rate_limit: int = 30


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ChangemakerConfig:
    """Read *path* and return a :class:`ChangemakerConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: run from the repository root, where config.yaml lives."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh)

    email = raw["email"]
    ai = raw["ai"]
    limits = raw.get("rate_limits") or {}

    return ChangemakerConfig(
        app_name=raw["app_name"],
        app_url=str(raw["app_url"]).rstrip("/"),
        support_email=raw["support_email"],
        email_from_name=email["from_name"],
        email_from=email["from_email"],
        brand_color=email.get("brand_color", "#F97316"),
        ai_model=ai["model"],
        ai_temperature=float(ai["temperature"]),
        ai_max_tokens=int(ai["max_tokens"]),
        ai_requests_per_minute=int(ai["requests_per_minute"]),
        ai_tokens_per_minute=int(ai["tokens_per_minute"]),
        webhook_rate_limit=int(limits.get("webhook_per_minute", 100)),
        mutation_rate_limit=int(limits.get("mutations_per_minute", 30)),
    )
