"""
changemaker.rewardstack.auth — RewardSTACK Token Management
===========================================================

RewardSTACK issues long-lived bearer tokens from ``POST /token`` using HTTP
Basic credentials.  Tokens are cached per environment (QA / PRODUCTION)
and reused until five minutes before they expire.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

import httpx

from changemaker.database.models import RewardStackEnvironment
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode

logger = logging.getLogger(__name__)

BASE_URLS: dict[str, str] = {
    RewardStackEnvironment.QA: "https://admin.adrqa.info",
    RewardStackEnvironment.PRODUCTION: "https://admin.adr.info",
}

TOKEN_HOURS_UNTIL_EXPIRY = 8760
TOKEN_NAME = "Changemaker Platform"
TOKEN_REFRESH_BUFFER_SECONDS = 5 * 60


@dataclass(slots=True)
class _CachedToken:
    token: str
    refresh_at: float  # unix seconds


_token_cache: dict[str, _CachedToken] = {}


def get_base_url(environment: str) -> str:
    try:
        return BASE_URLS[environment]
    except KeyError:
        raise ValueError(f"Unknown RewardSTACK environment: {environment}") from None


def clear_token_cache(environment: str | None = None) -> None:
    """Drop one environment's token, or all of them."""
    if environment is None:
        _token_cache.clear()
    else:
        _token_cache.pop(environment, None)


async def get_token(environment: str, *, client: httpx.AsyncClient) -> str:
    """Return a cached token or fetch a fresh one.

    Raises
    ------
    RewardStackError
        ``UNAUTHORIZED`` when credentials are missing or rejected,
        ``NETWORK_ERROR`` when the token endpoint is unreachable.
    """
    cached = _token_cache.get(environment)
    if cached is not None and cached.refresh_at > time.time():
        return cached.token

    username = os.getenv("REWARDSTACK_USERNAME", "").strip()
    password = os.getenv("REWARDSTACK_PASSWORD", "").strip()
    if not username or not password:
        raise RewardStackError(
            "RewardSTACK credentials not configured. "
            "Set REWARDSTACK_USERNAME and REWARDSTACK_PASSWORD.",
            RewardStackErrorCode.UNAUTHORIZED,
        )

    try:
        resp = await client.post(
            f"{get_base_url(environment)}/token",
            auth=(username, password),
            json={"hoursUntilExpiry": TOKEN_HOURS_UNTIL_EXPIRY, "tokenName": TOKEN_NAME},
        )
    except httpx.HTTPError as exc:
        raise RewardStackError(
            f"Network error: {exc}", RewardStackErrorCode.NETWORK_ERROR
        ) from exc

    if resp.status_code >= 400:
        raise RewardStackError(
            f"RewardSTACK authentication failed ({resp.status_code})",
            RewardStackErrorCode.UNAUTHORIZED,
            resp.status_code,
        )

    try:
        data = resp.json()
    except ValueError as exc:
        raise RewardStackError(
            "Invalid token response from RewardSTACK API",
            RewardStackErrorCode.SERVER_ERROR,
            resp.status_code,
            resp.text[:500],
        ) from exc
    if not isinstance(data, dict) or not data.get("token") or not data.get("expires"):
        raise RewardStackError(
            "Invalid token response from RewardSTACK API",
            RewardStackErrorCode.UNAUTHORIZED,
            resp.status_code,
            data,
        )

    _token_cache[environment] = _CachedToken(
        token=data["token"],
        refresh_at=float(data["expires"]) - TOKEN_REFRESH_BUFFER_SECONDS,
    )
    logger.info("Obtained RewardSTACK token for %s", environment)
    return data["token"]
