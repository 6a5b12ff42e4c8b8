"""
changemaker.rewardstack.client — RewardSTACK REST Client
========================================================

Thin async wrapper over the RewardSTACK program API::

    async with RewardStackClient("QA", program_id="prog-1") as rs:
        participant = await rs.create_participant({...})
        adjustment = await rs.create_adjustment(user_id, 100, "Challenge reward")

Every non-2xx response is raised as :class:`RewardStackError` with a code
derived from the status.  A 401 clears the cached token and the request is
replayed once with a fresh one.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from changemaker.database.models import Workspace
from changemaker.rewardstack.auth import clear_token_cache, get_base_url, get_token
from changemaker.rewardstack.errors import (
    RewardStackError,
    RewardStackErrorCode,
    code_for_status,
)

logger = logging.getLogger(__name__)

__all__ = ["RewardStackClient", "RewardStackError", "RewardStackErrorCode"]

_STATUS_MESSAGES = {
    RewardStackErrorCode.UNAUTHORIZED: "Authentication failed - invalid credentials or expired token",
    RewardStackErrorCode.FORBIDDEN: "Access forbidden - insufficient permissions",
    RewardStackErrorCode.NOT_FOUND: "Resource not found",
    RewardStackErrorCode.RATE_LIMIT: "Rate limit exceeded",
    RewardStackErrorCode.SERVER_ERROR: "RewardSTACK server error",
}


def _seg(value: Any) -> str:
    return quote(str(value), safe="")


def _error_message(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if isinstance(message, list):
        return "; ".join(str(m) for m in message)
    return message if isinstance(message, str) else None


class RewardStackClient:
    """Client bound to one environment and program."""

    def __init__(
        self,
        environment: str,
        program_id: str,
        org_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.environment = environment
        self.program_id = program_id
        self.org_id = org_id
        self.base_url = get_base_url(environment)
        self._http = httpx.AsyncClient(
            timeout=10,
            transport=transport or httpx.AsyncHTTPTransport(retries=1),
        )

    @classmethod
    def for_workspace(
        cls, workspace: Workspace, transport: httpx.AsyncBaseTransport | None = None
    ) -> RewardStackClient:
        """Build a client from a workspace's integration settings."""
        if not workspace.reward_stack_program_id:
            raise RewardStackError(
                "RewardSTACK program ID not configured",
                RewardStackErrorCode.VALIDATION_ERROR,
            )
        return cls(
            workspace.reward_stack_environment,
            workspace.reward_stack_program_id,
            workspace.reward_stack_org_id,
            transport=transport,
        )

    async def __aenter__(self) -> RewardStackClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict | None = None,
        _retried: bool = False,
    ) -> Any:
        token = await get_token(self.environment, client=self._http)
        try:
            resp = await self._http.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise RewardStackError(
                f"Network error: {exc}", RewardStackErrorCode.NETWORK_ERROR
            ) from exc

        if resp.status_code == 401 and not _retried:
            logger.info("RewardSTACK returned 401; refreshing token and retrying")
            clear_token_cache(self.environment)
            return await self.request(method, path, json=json, params=params, _retried=True)

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            code = code_for_status(resp.status_code)
            message = _STATUS_MESSAGES.get(code) or _error_message(body) or "Request failed"
            if code == RewardStackErrorCode.VALIDATION_ERROR and _error_message(body):
                message = _error_message(body)
            raise RewardStackError(message, code, resp.status_code, body)

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RewardStackError(
                "Invalid JSON response from RewardSTACK",
                RewardStackErrorCode.SERVER_ERROR,
                resp.status_code,
                resp.text[:500],
            ) from exc

    def _program_path(self, *parts: Any) -> str:
        path = f"/api/program/{_seg(self.program_id)}"
        for part in parts:
            path += f"/{_seg(part)}"
        return path

    def _org_path(self, *parts: Any) -> str:
        if not self.org_id:
            raise RewardStackError(
                "RewardSTACK organization ID not configured",
                RewardStackErrorCode.VALIDATION_ERROR,
            )
        path = f"/api/organization/{_seg(self.org_id)}"
        for part in parts:
            path += f"/{_seg(part)}"
        return path

    # ------------------------------------------------------------------
    # Program
    # ------------------------------------------------------------------
    async def get_program(self) -> dict:
        return await self.request("GET", self._program_path())

    async def get_catalog(self) -> Any:
        return await self.request("GET", self._program_path("catalog"))

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------
    async def create_participant(self, participant: dict) -> dict:
        body = {**participant, "program": self.program_id}
        return await self.request("POST", self._program_path("participant"), json=body)

    async def update_participant(self, participant_id: str, participant: dict) -> dict:
        return await self.request(
            "PATCH", self._program_path("participant", participant_id), json=participant
        )

    async def delete_participant(self, participant_id: str) -> None:
        await self.request("DELETE", self._program_path("participant", participant_id))

    async def sync_participant(self, unique_id: str, participant: dict) -> dict:
        """Create the participant, or replace it when it already exists."""
        try:
            return await self.create_participant(participant)
        except RewardStackError as exc:
            if exc.status_code != 409:
                raise
        return await self.request(
            "PUT", self._program_path("participant", unique_id), json=participant
        )

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------
    async def create_adjustment(
        self,
        unique_id: str,
        amount: int,
        description: str,
        metadata: dict | None = None,
    ) -> dict:
        body = {
            "amount": amount,
            "type": "credit",
            "description": description,
            "metadata": metadata or {},
        }
        return await self.request(
            "POST", self._program_path("participant", unique_id, "adjustment"), json=body
        )

    async def create_transaction(
        self,
        unique_id: str,
        sku: str,
        shipping: dict,
        metadata: dict | None = None,
        quantity: int = 1,
    ) -> dict:
        body = {
            "products": [{"sku": sku, "quantity": quantity}],
            "shipping": shipping,
            "issue_points": True,
            "metadata": metadata or {},
        }
        return await self.request(
            "POST", self._program_path("participant", unique_id, "transaction"), json=body
        )

    async def get_adjustment(self, unique_id: str, adjustment_id: str) -> dict:
        return await self.request(
            "GET", self._program_path("participant", unique_id, "adjustment", adjustment_id)
        )

    async def get_transaction(self, unique_id: str, transaction_id: str) -> dict:
        return await self.request(
            "GET", self._program_path("participant", unique_id, "transaction", transaction_id)
        )

    async def create_sso_token(self, unique_id: str) -> dict:
        return await self.request("POST", self._program_path("participant", unique_id, "sso"))

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------
    async def list_webhooks(self) -> Any:
        return await self.request("GET", self._org_path("webhooks"))

    async def create_webhook(self, url: str, events: list[str], secret: str | None = None) -> dict:
        body: dict[str, Any] = {"url": url, "events": events}
        if secret:
            body["secret"] = secret
        return await self.request("POST", self._org_path("webhooks"), json=body)

    async def delete_webhook(self, webhook_id: str) -> None:
        await self.request("DELETE", self._org_path("webhooks", webhook_id))
