"""
tests/test_rewardstack.py — RewardSTACK Client, Sync & Issuance
================================================================

All HTTP goes through an in-process fake of the RewardSTACK API mounted on
``httpx.MockTransport``; retries run with a zero back-off.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import httpx
import pytest
from conftest import FakeRewardStack, add_member, make_user, make_workspace
from sqlalchemy import select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import (
    ActivityEvent,
    Notification,
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    RewardStatus,
    User,
    Workspace,
)
from changemaker.rewardstack import auth, participants, program, reward_logic
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode, code_for_status
from changemaker.rewardstack.participants import map_user_to_participant, sync_user
from changemaker.rewardstack.reward_logic import RetryConfig
from changemaker.services import reward_service

NO_WAIT = RetryConfig(max_attempts=3, initial_delay=0, max_delay=0)
PROGRAM = "/api/program/prog-1"


@pytest.fixture(autouse=True)
def _credentials(rewardstack_credentials):
    yield


@pytest.fixture
def engine(db_engine):
    return db_engine


@pytest.fixture
def fake():
    return FakeRewardStack()


@pytest.fixture
def ws(engine):
    return make_workspace(engine, reward_stack_enabled=True, reward_stack_program_id="prog-1")


@pytest.fixture
def member(engine, ws):
    user = make_user(
        engine,
        first_name="Ana",
        last_name="Diaz",
        address_line1="1 Main St",
        city="Portland",
        state="OR",
        zip_code="97201",
        country="US",
    )
    add_member(engine, user, ws)
    return user


def _reload(engine, model, pk):
    with Session(engine) as session:
        return session.get(model, pk)


# ---------------------------------------------------------------------------
# Auth & client
# ---------------------------------------------------------------------------
class TestAuth:
    def test_token_cached_per_environment(self, fake):
        async def run():
            async with httpx.AsyncClient(transport=fake.transport) as http:
                first = await auth.get_token("QA", client=http)
                second = await auth.get_token("QA", client=http)
                prod = await auth.get_token("PRODUCTION", client=http)
            return first, second, prod

        first, second, prod = asyncio.run(run())
        assert first == second == "tok-1"
        assert prod == "tok-2"
        assert fake.token_calls == 2

    def test_missing_credentials(self, fake):
        async def run():
            async with httpx.AsyncClient(transport=fake.transport) as http:
                await auth.get_token("QA", client=http)

        with patch.dict("os.environ", {"REWARDSTACK_USERNAME": ""}):
            with pytest.raises(RewardStackError) as info:
                asyncio.run(run())
        assert info.value.code == RewardStackErrorCode.UNAUTHORIZED

    def test_unknown_environment(self):
        with pytest.raises(ValueError):
            auth.get_base_url("STAGING")

    @pytest.mark.parametrize(
        "response, code",
        [
            (httpx.Response(200, content=b"<html>login</html>"), RewardStackErrorCode.SERVER_ERROR),
            (httpx.Response(200, json=["tok"]), RewardStackErrorCode.UNAUTHORIZED),
            (httpx.Response(200, json={"token": "t"}), RewardStackErrorCode.UNAUTHORIZED),
        ],
    )
    def test_malformed_token_response(self, response, code):
        transport = httpx.MockTransport(lambda request: response)

        async def run():
            async with httpx.AsyncClient(transport=transport) as http:
                await auth.get_token("QA", client=http)

        with pytest.raises(RewardStackError, match="Invalid token response") as info:
            asyncio.run(run())
        assert info.value.code == code
        assert auth._token_cache == {}


class TestClient:
    def test_status_codes_map_to_error_codes(self):
        assert code_for_status(403) == RewardStackErrorCode.FORBIDDEN
        assert code_for_status(429) == RewardStackErrorCode.RATE_LIMIT
        assert code_for_status(503) == RewardStackErrorCode.SERVER_ERROR
        assert code_for_status(422) == RewardStackErrorCode.VALIDATION_ERROR

    def test_validation_error_uses_body_message(self, fake):
        fake.on("POST", f"{PROGRAM}/participant", (400, {"message": ["email invalid", "zip invalid"]}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                await rs.create_participant({"email_address": "x"})

        with pytest.raises(RewardStackError) as info:
            asyncio.run(run())
        assert info.value.message == "email invalid; zip invalid"
        assert info.value.status_code == 400

    def test_401_refreshes_token_once(self, fake):
        fake.on("GET", PROGRAM, (401, {}), (200, {"id": "prog-1"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await rs.get_program()

        assert asyncio.run(run()) == {"id": "prog-1"}
        assert fake.token_calls == 2
        assert [r.headers["Authorization"] for r in fake.requests] == ["Bearer tok-1", "Bearer tok-2"]

    def test_adjustment_payload(self, fake):
        fake.on("POST", f"{PROGRAM}/participant/u1/adjustment", (200, {"id": "adj-1"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await rs.create_adjustment("u1", 40, "Challenge reward", {"k": "v"})

        assert asyncio.run(run()) == {"id": "adj-1"}
        body = json.loads(fake.requests[0].content)
        assert body == {"amount": 40, "type": "credit", "description": "Challenge reward", "metadata": {"k": "v"}}

    def test_non_json_success_body_is_server_error(self, fake):
        fake.on("GET", f"{PROGRAM}/catalog", (200, "<html>gateway ok</html>"))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                await rs.get_catalog()

        with pytest.raises(RewardStackError) as info:
            asyncio.run(run())
        assert info.value.code == RewardStackErrorCode.SERVER_ERROR
        assert info.value.status_code == 200
        assert info.value.response == "<html>gateway ok</html>"

    def test_empty_body_is_empty_dict(self, fake):
        fake.on("DELETE", f"{PROGRAM}/participant/p1", (204, ""))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await rs.delete_participant("p1")

        assert asyncio.run(run()) is None
        assert fake.paths() == [f"DELETE {PROGRAM}/participant/p1"]

    def test_sync_participant_falls_back_to_put_on_conflict(self, fake):
        fake.on("POST", f"{PROGRAM}/participant", (409, {"message": "exists"}))
        fake.on("PUT", f"{PROGRAM}/participant/u1", (200, {"unique_id": "u1"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await rs.sync_participant("u1", {"email_address": "a@example.com"})

        assert asyncio.run(run()) == {"unique_id": "u1"}
        assert fake.paths() == [f"POST {PROGRAM}/participant", f"PUT {PROGRAM}/participant/u1"]
        assert json.loads(fake.requests[0].content)["program"] == "prog-1"
        assert json.loads(fake.requests[1].content) == {"email_address": "a@example.com"}

    def test_sync_participant_other_errors_propagate(self, fake):
        fake.on("POST", f"{PROGRAM}/participant", (400, {"message": "email invalid"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                await rs.sync_participant("u1", {"email_address": "x"})

        with pytest.raises(RewardStackError, match="email invalid"):
            asyncio.run(run())
        assert fake.paths() == [f"POST {PROGRAM}/participant"]

    def test_org_paths_need_org_id(self):
        client = RewardStackClient("QA", "prog-1")
        with pytest.raises(RewardStackError, match="organization ID"):
            client._org_path("webhooks")
        asyncio.run(client.aclose())

    def test_for_workspace_requires_program(self, engine):
        ws = make_workspace(engine, "bare")
        with pytest.raises(RewardStackError, match="program ID"):
            RewardStackClient.for_workspace(ws)


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------
class TestParticipantSync:
    def test_payload_skips_blank_fields(self):
        user = User(id="u1", email="a@example.com", first_name="Ana", city="")
        assert map_user_to_participant(user) == {
            "email_address": "a@example.com", "external_id": "u1", "firstname": "Ana",
        }

    def test_create_records_sync(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await sync_user(engine, member.id, ws.id, client=rs)

        assert asyncio.run(run()) == "rs-ana"
        user = _reload(engine, User, member.id)
        assert user.reward_stack_participant_id == "rs-ana"
        assert user.reward_stack_sync_status == RewardStackSyncStatus.SYNCED
        assert user.reward_stack_last_sync is not None

    def test_missing_upstream_is_recreated(self, engine, ws, fake):
        user = make_user(engine, "old@example.com", reward_stack_participant_id="gone")
        fake.on("PATCH", f"{PROGRAM}/participant/gone", (404, {}))
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "fresh"}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await sync_user(engine, user.id, ws.id, client=rs)

        assert asyncio.run(run()) == "fresh"
        assert fake.paths() == [f"PATCH {PROGRAM}/participant/gone", f"POST {PROGRAM}/participant"]

    def test_failure_marks_user(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (403, {}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                await sync_user(engine, member.id, ws.id, client=rs)

        with pytest.raises(RewardStackError):
            asyncio.run(run())
        assert _reload(engine, User, member.id).reward_stack_sync_status == RewardStackSyncStatus.FAILED

    def test_conflict_on_create_replaces_participant(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (409, {"message": "exists"}))
        fake.on("PUT", f"{PROGRAM}/participant/{member.id}", (200, {}))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await sync_user(engine, member.id, ws.id, client=rs)

        assert asyncio.run(run()) == member.id
        user = _reload(engine, User, member.id)
        assert (user.reward_stack_participant_id, user.reward_stack_sync_status) == (
            member.id, RewardStackSyncStatus.SYNCED,
        )

    def test_unexpected_body_falls_back_to_user_id(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, ["created"]))

        async def run():
            async with RewardStackClient("QA", "prog-1", transport=fake.transport) as rs:
                return await sync_user(engine, member.id, ws.id, client=rs)

        assert asyncio.run(run()) == member.id


class TestWorkspaceSync:
    def test_single_member(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        result = asyncio.run(participants.sync_participant_to_workspace(
            engine, ws.id, member.id, transport=fake.transport
        ))
        assert result == {
            "success": True,
            "user_id": member.id,
            "participant_id": "rs-ana",
            "details": {"action": "created", "email": member.email},
        }

    def test_non_member_and_disabled_workspace(self, engine, ws, fake):
        outsider = make_user(engine, "out@example.com")
        result = asyncio.run(participants.sync_participant_to_workspace(
            engine, ws.id, outsider.id, transport=fake.transport
        ))
        assert result["error"] == "User is not a member of this workspace"

        off = make_workspace(engine, "off")
        add_member(engine, outsider, off)
        result = asyncio.run(participants.sync_participant_to_workspace(
            engine, off.id, outsider.id, transport=fake.transport
        ))
        assert result == {
            "success": False, "user_id": outsider.id,
            "error": "RewardSTACK is not enabled for this workspace",
        }
        assert fake.requests == []

    def test_api_failure_is_reported(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (403, {}))
        result = asyncio.run(participants.sync_participant_to_workspace(
            engine, ws.id, member.id, transport=fake.transport
        ))
        assert result["success"] is False
        assert "forbidden" in result["error"]
        assert _reload(engine, User, member.id).reward_stack_sync_status == RewardStackSyncStatus.FAILED

    def test_should_sync_user(self):
        now = datetime.now(UTC)
        assert participants.should_sync_user(User(reward_stack_sync_status="NOT_SYNCED")) is True
        assert participants.should_sync_user(User(reward_stack_sync_status="FAILED")) is True
        fresh = User(reward_stack_sync_status="SYNCED", reward_stack_last_sync=now - timedelta(minutes=5))
        stale = User(reward_stack_sync_status="SYNCED", reward_stack_last_sync=now - timedelta(hours=2))
        assert participants.should_sync_user(fresh) is False
        assert participants.should_sync_user(fresh, force=True) is True
        assert participants.should_sync_user(stale) is True

    def test_bulk_skips_fresh_and_reports_each(self, engine, ws, member, fake):
        fresh = make_user(
            engine, "fresh@example.com",
            reward_stack_participant_id="rs-fresh",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
            reward_stack_last_sync=datetime.now(UTC),
        )
        add_member(engine, fresh, ws)
        outsider = make_user(engine, "out@example.com")
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))

        summary = asyncio.run(participants.bulk_sync_participants(
            engine, ws.id, [member.id, fresh.id, outsider.id], transport=fake.transport
        ))

        assert (summary["total"], summary["successful"], summary["failed"], summary["skipped"]) == (3, 1, 1, 1)
        by_user = {r["user_id"]: r for r in summary["results"]}
        assert by_user[fresh.id]["skipped"] is True
        assert by_user[outsider.id]["error"] == "User is not a member of this workspace"
        assert fake.paths() == [f"POST {PROGRAM}/participant"]

    def test_sync_all_with_force(self, engine, ws, member, fake):
        fresh = make_user(
            engine, "fresh@example.com",
            reward_stack_participant_id="rs-fresh",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
            reward_stack_last_sync=datetime.now(UTC),
        )
        add_member(engine, fresh, ws)
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("PATCH", f"{PROGRAM}/participant/rs-fresh", (200, {"unique_id": "rs-fresh"}))

        summary = asyncio.run(participants.sync_all_workspace_participants(
            engine, ws.id, force_resync=True, transport=fake.transport
        ))
        assert (summary["total"], summary["successful"], summary["skipped"]) == (2, 2, 0)
        actions = sorted(r["details"]["action"] for r in summary["results"])
        assert actions == ["created", "updated"]

    def test_unsync_deletes_and_resets(self, engine, ws, fake):
        user = make_user(
            engine, "s@example.com",
            reward_stack_participant_id="rs-1",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
            reward_stack_last_sync=datetime.now(UTC),
        )
        add_member(engine, user, ws)
        fake.on("DELETE", f"{PROGRAM}/participant/rs-1", (404, {}))

        result = asyncio.run(participants.unsync_participant(engine, ws.id, user.id, transport=fake.transport))

        assert result["success"] is True
        assert result["details"] == {"action": "deleted"}
        row = _reload(engine, User, user.id)
        assert row.reward_stack_participant_id is None
        assert row.reward_stack_sync_status == RewardStackSyncStatus.NOT_SYNCED
        assert row.reward_stack_last_sync is None

    def test_unsync_without_participant(self, engine, ws, member, fake):
        result = asyncio.run(participants.unsync_participant(engine, ws.id, member.id, transport=fake.transport))
        assert result["details"] == {"action": "already_unsynced"}
        assert fake.requests == []

    def test_unsync_upstream_failure_keeps_link(self, engine, ws, fake):
        user = make_user(engine, "s@example.com", reward_stack_participant_id="rs-1")
        add_member(engine, user, ws)
        fake.on("DELETE", f"{PROGRAM}/participant/rs-1", (403, {}))
        result = asyncio.run(participants.unsync_participant(engine, ws.id, user.id, transport=fake.transport))
        assert result["success"] is False
        assert _reload(engine, User, user.id).reward_stack_participant_id == "rs-1"


# ---------------------------------------------------------------------------
# Issuance workflow
# ---------------------------------------------------------------------------
class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Completed", RewardStackStatus.COMPLETED),
            ("delivered", RewardStackStatus.COMPLETED),
            ("error", RewardStackStatus.FAILED),
            ("cancelled", RewardStackStatus.RETURNED),
            ("mystery", RewardStackStatus.PROCESSING),
            (None, RewardStackStatus.PROCESSING),
        ],
    )
    def test_status_mapping(self, raw, expected):
        assert reward_logic.map_reward_stack_status(raw) == expected

    def test_country_codes(self):
        assert reward_logic.country_code("us") == "US"
        assert reward_logic.country_code("United Kingdom") == "GB"
        assert reward_logic.country_code("") == ""

    def test_missing_address_labels(self):
        user = User(email="x@example.com", address_line1="1 Main", city="Portland")
        assert reward_logic.missing_address_fields(user) == ["State", "Zip Code", "Country"]

    def test_with_retry_only_retries_server_errors(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RewardStackError("boom", RewardStackErrorCode.SERVER_ERROR, 502)
            return "ok"

        assert asyncio.run(reward_logic.with_retry(flaky, "flaky", NO_WAIT)) == "ok"
        assert len(calls) == 3

        async def invalid():
            calls.append(1)
            raise RewardStackError("bad", RewardStackErrorCode.VALIDATION_ERROR, 400)

        calls.clear()
        with pytest.raises(RewardStackError):
            asyncio.run(reward_logic.with_retry(invalid, "invalid", NO_WAIT))
        assert len(calls) == 1


class TestIssue:
    def _points(self, engine, ws, user, amount=40):
        return reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="points", amount=amount,
            challenge_id="c1",
        )

    def test_points_issued_end_to_end(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (201, {"id": "adj-9"}))
        issuance = self._points(engine, ws, member)

        result = asyncio.run(reward_logic.issue_reward_transaction(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))

        assert result == reward_logic.IssuanceResult(
            success=True, reward_issuance_id=issuance.id, external_id="adj-9"
        )
        row = _reload(engine, RewardIssuance, issuance.id)
        assert row.status == RewardStatus.ISSUED
        assert row.reward_stack_status == RewardStackStatus.COMPLETED
        assert row.reward_stack_adjustment_id == "adj-9"
        assert row.issued_at is not None
        body = json.loads(fake.requests[-1].content)
        assert body["metadata"]["changemaker_reward_id"] == issuance.id
        with Session(engine) as session:
            assert session.scalar(select(Notification.message)) == "You've earned 40 points!"
            assert session.scalar(
                select(ActivityEvent.type).where(ActivityEvent.type == "REWARD_ISSUED")
            ) == "REWARD_ISSUED"

    def test_already_issued_is_not_resent(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (201, {"id": "adj-9"}))
        issuance = self._points(engine, ws, member)
        asyncio.run(reward_logic.issue_points_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        sent = len(fake.requests)

        again = asyncio.run(reward_logic.issue_points_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert again.already_issued is True
        assert again.external_id == "adj-9"
        assert len(fake.requests) == sent

    def test_disabled_integration_fails_row(self, engine, member, fake):
        ws = make_workspace(engine, "off")
        issuance = self._points(engine, ws, member)
        result = asyncio.run(reward_logic.issue_reward_transaction(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert result.success is False
        assert result.error == "RewardSTACK integration is not enabled"
        row = _reload(engine, RewardIssuance, issuance.id)
        assert (row.status, row.reward_stack_error_message) == (
            RewardStatus.FAILED, "RewardSTACK integration is not enabled",
        )
        assert fake.requests == []

    def test_sku_without_address_notifies(self, engine, ws, fake):
        user = make_user(engine, "noaddr@example.com")
        add_member(engine, user, ws)
        reward_service.create_sku(engine, ws.id, sku_id="BOTTLE", name="Water bottle")
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="sku", sku_id="BOTTLE"
        )
        result = asyncio.run(reward_logic.issue_sku_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert result.success is False
        assert "Street Address" in result.error
        with Session(engine) as session:
            note = session.scalar(select(Notification))
        assert note.type == "SHIPPING_ADDRESS_REQUIRED"
        assert "Water bottle" in note.message

    def test_sku_transaction_sends_shipping(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/transaction", (201, {"transactionId": 77}))
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=member.id, type="sku", sku_id="BOTTLE"
        )
        result = asyncio.run(reward_logic.issue_sku_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert result.external_id == "77"
        body = json.loads(fake.requests[-1].content)
        assert body["products"] == [{"sku": "BOTTLE", "quantity": 1}]
        assert body["shipping"]["country"] == "US"
        assert _reload(engine, RewardIssuance, issuance.id).reward_stack_transaction_id == "77"

    def test_server_errors_are_retried_then_fail(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (503, {}))
        issuance = self._points(engine, ws, member)
        result = asyncio.run(reward_logic.issue_points_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert result.success is False
        assert fake.paths().count(f"POST {PROGRAM}/participant/rs-ana/adjustment") == 3
        assert _reload(engine, RewardIssuance, issuance.id).status == RewardStatus.FAILED

    def test_non_json_success_leaves_row_failed(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (200, "<html>gateway ok</html>"))
        issuance = self._points(engine, ws, member)

        result = asyncio.run(reward_logic.issue_points_reward(
            engine, issuance.id, transport=fake.transport, retry=NO_WAIT
        ))

        assert result.success is False
        assert fake.paths().count(f"POST {PROGRAM}/participant/rs-ana/adjustment") == 3
        row = _reload(engine, RewardIssuance, issuance.id)
        assert row.status == RewardStatus.FAILED
        assert row.reward_stack_status == RewardStackStatus.FAILED
        assert row.reward_stack_error_message == "Invalid JSON response from RewardSTACK"
        assert row.reward_stack_adjustment_id is None

    def test_unknown_issuance(self, engine):
        result = asyncio.run(reward_logic.issue_reward_transaction(engine, "missing"))
        assert result.error == "Reward issuance not found"


class TestRetryAndMonitor:
    def _failed_points(self, engine, ws, user):
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="points", amount=10
        )
        reward_logic._mark_failed(engine, issuance.id, "earlier outage")
        return issuance

    def test_only_failed_rewards_retry(self, engine, ws, member):
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=member.id, type="points", amount=10
        )
        result = asyncio.run(reward_logic.retry_failed_reward_issuance(engine, issuance.id))
        assert result.success is False
        assert "Only FAILED rewards" in result.error

    def test_bulk_retry(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (201, {"id": "adj-1"}))
        issuance = self._failed_points(engine, ws, member)

        summary = asyncio.run(reward_logic.retry_failed_rewards(
            engine, ws.id, transport=fake.transport, retry=NO_WAIT
        ))
        assert summary["attempted"] == 1
        assert summary["successful"] == 1
        row = _reload(engine, RewardIssuance, issuance.id)
        assert row.status == RewardStatus.ISSUED
        assert row.reward_stack_error_message is None

    def test_monitor_applies_polled_status(self, engine, ws, fake):
        user = make_user(
            engine, "synced@example.com",
            reward_stack_participant_id="rs-1",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
        )
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="sku", sku_id="MUG"
        )

        with get_session(engine) as session:
            row = session.get(RewardIssuance, issuance.id)
            row.reward_stack_transaction_id = "txn-5"
            row.reward_stack_status = RewardStackStatus.PROCESSING
        fake.on("GET", f"{PROGRAM}/participant/rs-1/transaction/txn-5", (200, {"status": "failed", "error": "Out of stock"}))

        summary = asyncio.run(reward_logic.monitor_pending_rewards(engine, ws.id, transport=fake.transport))
        assert (summary["checked"], summary["updated"], summary["failed"]) == (1, 1, 0)
        row = _reload(engine, RewardIssuance, issuance.id)
        assert row.status == RewardStatus.FAILED
        assert row.reward_stack_error_message == "Out of stock"

        again = asyncio.run(reward_logic.check_reward_issuance_status(engine, issuance.id, transport=fake.transport))
        assert again == {"success": True, "status": "FAILED", "updated": False}

    def test_status_check_needs_external_id(self, engine, ws):
        user = make_user(engine, "synced@example.com", reward_stack_participant_id="rs-1")
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="points", amount=5
        )
        result = asyncio.run(reward_logic.check_reward_issuance_status(engine, issuance.id))
        assert result == {"success": False, "error": "No external transaction/adjustment ID found"}

    def test_status_check_rejects_unexpected_body(self, engine, ws):
        user = make_user(engine, "synced@example.com", reward_stack_participant_id="rs-1")
        issuance = reward_service.create_issuance(
            engine, workspace_id=ws.id, user_id=user.id, type="points", amount=5
        )
        with get_session(engine) as session:
            session.get(RewardIssuance, issuance.id).reward_stack_adjustment_id = "adj-5"
        fake = FakeRewardStack()
        fake.on("GET", f"{PROGRAM}/participant/rs-1/adjustment/adj-5", (200, ["completed"]))

        result = asyncio.run(reward_logic.check_reward_issuance_status(
            engine, issuance.id, transport=fake.transport
        ))
        assert result == {"success": False, "error": "Unexpected status response from RewardSTACK"}
        assert _reload(engine, RewardIssuance, issuance.id).status == RewardStatus.PENDING


# ---------------------------------------------------------------------------
# Program administration
# ---------------------------------------------------------------------------
WEBHOOKS = "/api/organization/org-1/webhooks"


class TestProgram:
    @pytest.fixture
    def org_ws(self, engine):
        return make_workspace(
            engine, "org",
            reward_stack_enabled=True,
            reward_stack_program_id="prog-1",
            reward_stack_org_id="org-1",
        )

    def test_connection_ok(self, ws, fake):
        fake.on("GET", PROGRAM, (200, {"id": "prog-1", "name": "Green Rewards"}))
        assert asyncio.run(program.check_connection(ws, transport=fake.transport)) == {
            "success": True,
            "message": "Connection successful",
            "program": {"id": "prog-1", "name": "Green Rewards"},
        }

    def test_connection_failure_is_reported(self, ws, fake):
        fake.on("GET", PROGRAM, (404, {}))
        result = asyncio.run(program.check_connection(ws, transport=fake.transport))
        assert result["success"] is False
        assert result["error"] == "Program not found"
        assert result["details"]

    def test_connection_without_program(self, engine, fake):
        bare = make_workspace(engine, "bare", reward_stack_enabled=True)
        assert asyncio.run(program.check_connection(bare, transport=fake.transport)) == {
            "success": False, "error": "RewardSTACK program ID not configured",
        }
        assert fake.requests == []

    def test_catalog_sync(self, engine, ws, fake):
        reward_service.create_sku(engine, ws.id, sku_id="MUG", name="Old mug")
        fake.on("GET", f"{PROGRAM}/catalog", (200, {"items": [
            {"sku": "MUG", "name": "Mug", "value": 150},
            {"sku": "HAT", "name": "Hat", "value": 300, "isActive": False},
            {"name": "no sku"},
            "junk",
        ]}))

        summary = asyncio.run(program.sync_catalog_skus(engine, ws, transport=fake.transport))

        assert summary == {"synced": 1, "updated": 1, "total": 3}
        skus = {s.sku_id: s for s in reward_service.list_skus(engine, ws.id)}
        assert (skus["MUG"].name, skus["MUG"].value) == ("Mug", 150)
        assert skus["HAT"].is_active is False

    def test_sso_syncs_user_first(self, engine, ws, member, fake):
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/sso",
                (200, {"ssoUrl": "https://market.example/sso/abc", "expiresAt": "2026-10-20T00:00:00Z"}))

        result = asyncio.run(program.generate_marketplace_sso_url(
            engine, ws, member, transport=fake.transport
        ))

        assert result == {
            "sso_url": "https://market.example/sso/abc", "expires_at": "2026-10-20T00:00:00Z",
        }
        assert fake.paths() == [f"POST {PROGRAM}/participant", f"POST {PROGRAM}/participant/rs-ana/sso"]

    def test_sso_without_url_is_an_error(self, engine, ws, fake):
        user = make_user(
            engine, "s@example.com",
            reward_stack_participant_id="rs-1",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
        )
        fake.on("POST", f"{PROGRAM}/participant/rs-1/sso", (200, {}))
        with pytest.raises(RewardStackError, match="SSO URL") as info:
            asyncio.run(program.generate_marketplace_sso_url(engine, ws, user, transport=fake.transport))
        assert info.value.code == RewardStackErrorCode.SERVER_ERROR
        assert fake.paths() == [f"POST {PROGRAM}/participant/rs-1/sso"]

    def test_webhook_created_with_secret(self, engine, org_ws, fake):
        url = program.webhook_url_for("https://app.example/", org_ws.id)
        fake.on("GET", WEBHOOKS, (200, []))
        fake.on("POST", WEBHOOKS, (201, {"id": "wh-1", "url": url}))

        result = asyncio.run(program.setup_default_webhook(engine, org_ws, url, transport=fake.transport))

        assert result == {"created": True, "webhook": {"id": "wh-1", "url": url}}
        assert url == f"https://app.example/api/webhooks/rewardstack?workspaceId={org_ws.id}"
        body = json.loads(fake.requests[-1].content)
        assert body["events"] == program.DEFAULT_WEBHOOK_EVENTS
        stored = _reload(engine, Workspace, org_ws.id).reward_stack_webhook_secret
        assert stored == body["secret"]
        assert len(stored) == 64

    def test_existing_webhook_is_reused(self, engine, org_ws, fake):
        url = program.webhook_url_for("https://app.example", org_ws.id)
        fake.on("GET", WEBHOOKS, (200, {"items": [{"id": "wh-1", "url": url}]}))

        result = asyncio.run(program.setup_default_webhook(engine, org_ws, url, transport=fake.transport))

        assert result == {"created": False, "webhook": {"id": "wh-1", "url": url}}
        assert fake.paths() == [f"GET {WEBHOOKS}"]
        assert _reload(engine, Workspace, org_ws.id).reward_stack_webhook_secret is None

    def test_list_and_delete_webhooks(self, org_ws, fake):
        fake.on("GET", WEBHOOKS, (200, {"webhooks": [{"id": "wh-1"}, "junk"]}))
        fake.on("DELETE", f"{WEBHOOKS}/wh-1", (204, ""))

        assert asyncio.run(program.list_webhooks(org_ws, transport=fake.transport)) == [{"id": "wh-1"}]
        asyncio.run(program.delete_webhook(org_ws, "wh-1", transport=fake.transport))
        assert fake.paths()[-1] == f"DELETE {WEBHOOKS}/wh-1"
