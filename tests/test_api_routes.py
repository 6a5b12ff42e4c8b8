"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
End-to-end checks through the TestClient against the in-memory engine:

- Auth guards and role checks
- Workspace → challenge → enrollment → submission → review flow
- Service errors mapped onto HTTP status codes
- RewardSTACK webhook receiver (signature, idempotency, throttle)
- Reward issuance and RewardSTACK administration against a fake upstream
- AI composer guards and streaming
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from conftest import (
    FakeRewardStack,
    add_member,
    auth_header,
    make_activity,
    make_challenge,
    make_token,
    make_user,
    make_workspace,
)
from sqlalchemy import select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session
from changemaker.database.models import (
    RewardIssuance,
    RewardStackStatus,
    RewardStackSyncStatus,
    RewardStatus,
    Role,
    User,
    Workspace,
)
from changemaker.services import reward_service


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def team(db_engine):
    """Workspace ``acme`` with an admin and a participant."""
    ws = make_workspace(db_engine)
    admin = make_user(db_engine, "admin@example.com")
    participant = make_user(db_engine, "pat@example.com")
    add_member(db_engine, admin, ws, Role.ADMIN)
    add_member(db_engine, participant, ws)
    return ws, admin, participant


# ===========================================================================
# Health & auth
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestAuth:
    def test_missing_token(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_bad_signature(self, client):
        import jwt

        forged = jwt.encode({"sub": "x", "email": "x@example.com"}, "wrong-secret-" + "y" * 40, algorithm="HS256")
        resp = client.get("/api/auth/me", headers=_bearer(forged))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Invalid token"

    def test_unsynced_user(self, client):
        resp = client.get("/api/auth/me", headers=_bearer(make_token("new-sub", "new@example.com")))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "User not synced"

    def test_sync_then_me(self, client):
        token = make_token("sub-new", "New@Example.com", user_metadata={"first_name": "Nova"})
        resp = client.post("/api/auth/sync", headers=_bearer(token))
        assert resp.status_code == 200
        body = resp.json()
        assert body["user"]["email"] == "new@example.com"
        assert body["user"]["first_name"] == "Nova"
        assert body["pending_invites"] == 0

        me = client.get("/api/auth/me", headers=_bearer(token)).json()
        assert me["email"] == "new@example.com"
        assert me["memberships"] == []

    def test_profile_update_validates_country(self, client, db_engine):
        user = make_user(db_engine)
        resp = client.patch("/api/auth/me", headers=auth_header(user), json={"country": "USA"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_ERROR"
        ok = client.patch("/api/auth/me", headers=auth_header(user), json={"country": "US", "city": "Austin"})
        assert ok.json()["city"] == "Austin"


# ===========================================================================
# Workspaces
# ===========================================================================
class TestWorkspaces:
    def test_create_and_list(self, client, db_engine):
        user = make_user(db_engine)
        resp = client.post("/api/workspaces", headers=auth_header(user), json={"slug": "green-team", "name": "Green Team"})
        assert resp.status_code == 201
        assert resp.json()["role"] == "ADMIN"

        listed = client.get("/api/workspaces", headers=auth_header(user)).json()
        assert [(w["slug"], w["is_primary"]) for w in listed] == [("green-team", True)]

    def test_duplicate_slug_is_400(self, client, db_engine, team):
        user = make_user(db_engine, "x@example.com")
        resp = client.post("/api/workspaces", headers=auth_header(user), json={"slug": "acme", "name": "Other"})
        assert resp.status_code == 400

    def test_membership_required(self, client, db_engine, team):
        outsider = make_user(db_engine, "out@example.com")
        assert client.get("/api/workspaces/acme", headers=auth_header(outsider)).status_code == 403
        assert client.get("/api/workspaces/nope", headers=auth_header(outsider)).status_code == 404

    def test_webhook_secret_is_masked(self, client, team):
        _, admin, _ = team
        resp = client.patch(
            "/api/workspaces/acme", headers=auth_header(admin),
            json={"reward_stack_webhook_secret": "shh", "reward_stack_enabled": True},
        )
        assert resp.status_code == 200
        assert resp.json()["reward_stack_webhook_secret"] is True

    def test_admin_only_routes(self, client, team):
        _, _, participant = team
        resp = client.patch("/api/workspaces/acme", headers=auth_header(participant), json={"name": "Hijack"})
        assert resp.status_code == 403
        assert client.get("/api/workspaces/acme/activity", headers=auth_header(participant)).status_code == 403


# ===========================================================================
# Challenge lifecycle through review
# ===========================================================================
class TestChallengeFlow:
    def test_full_flow(self, client, db_engine, team):
        _, admin, participant = team
        now = datetime.now(UTC)
        created = client.post(
            "/api/workspaces/acme/challenges",
            headers=auth_header(admin),
            json={
                "title": "Plastic Free July",
                "description": "Skip single-use plastic",
                "start_date": (now - timedelta(days=1)).isoformat(),
                "end_date": (now + timedelta(days=30)).isoformat(),
            },
        )
        assert created.status_code == 201
        challenge_id = created.json()["id"]
        assert created.json()["status"] == "DRAFT"

        # Drafts are invisible to participants
        url = f"/api/workspaces/acme/challenges/{challenge_id}"
        assert client.get(url, headers=auth_header(participant)).status_code == 404

        template = client.post(
            "/api/workspaces/acme/activity-templates",
            headers=auth_header(admin),
            json={"name": "Photo of your haul", "type": "PHOTO_UPLOAD", "base_points": 15},
        ).json()
        activity = client.post(
            f"{url}/activities", headers=auth_header(admin), json={"template_id": template["id"]}
        )
        assert activity.status_code == 201
        activity_id = activity.json()["id"]
        assert activity.json()["points_value"] == 15

        assert client.post(f"{url}/publish", headers=auth_header(admin)).status_code == 200
        detail = client.get(url, headers=auth_header(participant)).json()
        assert [a["id"] for a in detail["activities"]] == [activity_id]
        assert detail["permissions"]["can_enroll"] is True
        assert detail["permissions"]["is_participant"] is False

        assert client.post(f"{url}/enroll", headers=auth_header(participant)).status_code == 200
        again = client.post(f"{url}/enroll", headers=auth_header(participant))
        assert again.status_code == 400

        submitted = client.post(
            f"{url}/activities/{activity_id}/submissions",
            headers=auth_header(participant),
            json={"text_content": "Bought loose veg all week"},
        )
        assert submitted.status_code == 201
        submission_id = submitted.json()["id"]

        queue = client.get("/api/workspaces/acme/submissions", headers=auth_header(admin)).json()
        assert [s["id"] for s in queue] == [submission_id]
        assert queue[0]["user_email"] == "pat@example.com"
        assert client.get("/api/workspaces/acme/submissions", headers=auth_header(participant)).status_code == 403

        review_url = f"/api/workspaces/acme/submissions/{submission_id}/review"
        forbidden = client.post(review_url, headers=auth_header(participant), json={"status": "APPROVED"})
        assert forbidden.status_code == 403

        reviewed = client.post(
            review_url,
            headers=auth_header(admin),
            json={"status": "APPROVED", "reward": {"type": "points", "amount": 15}},
        )
        assert reviewed.status_code == 200
        body = reviewed.json()
        assert body["points_awarded"] == 15
        assert body["submission"]["status"] == "APPROVED"
        assert body["reward_issued"] is None

        me = client.get("/api/workspaces/acme/points/me", headers=auth_header(participant)).json()
        assert me["total_points"] == 15
        unread = client.get("/api/workspaces/acme/notifications/unread-count", headers=auth_header(participant))
        assert unread.json() == {"count": 1}

        repeat = client.post(
            review_url, headers=auth_header(admin),
            json={"status": "APPROVED", "reward": {"type": "points", "amount": 15}},
        )
        assert repeat.status_code == 400

    def test_invalid_dates_are_400(self, client, team):
        _, admin, _ = team
        resp = client.post(
            "/api/workspaces/acme/challenges",
            headers=auth_header(admin),
            json={
                "title": "Backwards",
                "description": "Ends before it starts",
                "start_date": "2026-06-10T00:00:00Z",
                "end_date": "2026-06-01T00:00:00Z",
            },
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "End date must be after start date"

    def test_unknown_challenge_is_404(self, client, team):
        _, admin, _ = team
        resp = client.post("/api/workspaces/acme/challenges/missing/publish", headers=auth_header(admin))
        assert resp.status_code == 404
        assert resp.json()["code"] == "RESOURCE_NOT_FOUND"

    def test_self_approval_is_403(self, client, db_engine, team):
        ws, admin, _ = team
        challenge = make_challenge(db_engine, ws)
        activity = make_activity(db_engine, challenge)
        base = f"/api/workspaces/acme/challenges/{challenge.id}"
        client.post(f"{base}/enroll", headers=auth_header(admin))
        submission = client.post(
            f"{base}/activities/{activity.id}/submissions",
            headers=auth_header(admin),
            json={"link_url": "https://example.com/proof"},
        ).json()
        resp = client.post(
            f"/api/workspaces/acme/submissions/{submission['id']}/review",
            headers=auth_header(admin),
            json={"status": "APPROVED"},
        )
        assert resp.status_code == 403


# ===========================================================================
# Invites
# ===========================================================================
class TestInvites:
    def test_create_and_redeem(self, client, db_engine, team):
        _, admin, _ = team
        created = client.post(
            "/api/workspaces/acme/invites",
            headers=auth_header(admin),
            json={"target_email": "newbie@example.com", "role": "MANAGER"},
        )
        assert created.status_code == 201
        code = created.json()["code"]

        newbie = make_user(db_engine, "newbie@example.com")
        pending = client.get("/api/invites/pending", headers=auth_header(newbie)).json()
        assert [p["code"] for p in pending] == [code]

        redeemed = client.post("/api/invites/redeem", headers=auth_header(newbie), json={"code": code})
        assert redeemed.status_code == 200
        assert redeemed.json()["role"] == "MANAGER"
        assert client.get("/api/workspaces/acme", headers=auth_header(newbie)).json()["role"] == "MANAGER"

    def test_bad_code(self, client, db_engine):
        user = make_user(db_engine)
        resp = client.post("/api/invites/redeem", headers=auth_header(user), json={"code": "NOPE2345"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid invite code"


# ===========================================================================
# RewardSTACK webhook receiver
# ===========================================================================
class TestRewardStackWebhook:
    @pytest.fixture
    def hooked(self, db_engine):
        ws = make_workspace(
            db_engine, "hooked",
            reward_stack_enabled=True,
            reward_stack_program_id="prog-1",
            reward_stack_webhook_secret="whsec",
        )
        user = make_user(db_engine, "r@example.com")
        from changemaker.services.reward_service import create_issuance

        issuance = create_issuance(db_engine, workspace_id=ws.id, user_id=user.id, type="sku", sku_id="MUG")
        with get_session(db_engine) as session:
            session.get(RewardIssuance, issuance.id).reward_stack_transaction_id = "txn-42"
        return ws, issuance

    def _post(self, client, ws_id, event, secret="whsec"):
        raw = json.dumps(event).encode()
        headers = {"content-type": "application/json"}
        if secret:
            headers["x-rewardstack-signature"] = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
        return client.post(f"/api/webhooks/rewardstack?workspaceId={ws_id}", content=raw, headers=headers)

    def test_missing_workspace_param(self, client):
        assert client.post("/api/webhooks/rewardstack", json={}).status_code == 400

    def test_unknown_and_disabled_workspaces(self, client, db_engine):
        assert self._post(client, "nope", {"id": "e"}).status_code == 404
        off = make_workspace(db_engine, "off")
        assert self._post(client, off.id, {"id": "e"}).status_code == 400

    def test_bad_signature(self, client, hooked):
        ws, _ = hooked
        resp = self._post(client, ws.id, {"id": "e1", "type": "transaction.completed"}, secret="guess")
        assert resp.status_code == 401

    def test_processes_once(self, client, db_engine, hooked):
        ws, issuance = hooked
        event = {"id": "evt-1", "type": "transaction.completed", "data": {"id": "txn-42"}}
        first = self._post(client, ws.id, event)
        assert first.status_code == 200
        assert first.json() == {"received": True, "eventId": "evt-1"}
        with Session(db_engine) as session:
            assert session.get(RewardIssuance, issuance.id).status == RewardStatus.ISSUED

        second = self._post(client, ws.id, event)
        assert second.json()["note"] == "Already processed (idempotent)"

    def test_unknown_event_type(self, client, hooked):
        ws, _ = hooked
        resp = self._post(client, ws.id, {"id": "evt-2", "type": "catalog.changed"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Unknown event type: catalog.changed"

    def test_throttled_per_workspace(self, client, db_engine, hooked):
        import changemaker.api.rate_limit as rl_mod
        from changemaker.api.rate_limit import RateLimiter

        ws, _ = hooked
        rl_mod._webhook_limiter = RateLimiter(1, 60, engine=db_engine, prefix="webhook:")
        assert self._post(client, ws.id, {"id": "a", "type": "transaction.updated", "data": {"id": "x"}}).status_code == 200
        blocked = self._post(client, ws.id, {"id": "b", "type": "transaction.updated", "data": {"id": "x"}})
        assert blocked.status_code == 429
        assert "Retry-After" in blocked.headers


# ===========================================================================
# Rewards & RewardSTACK administration
# ===========================================================================
PROGRAM = "/api/program/prog-1"


class TestRewardRoutes:
    @pytest.fixture
    def fake(self, client, rewardstack_credentials):
        from changemaker.api.deps import get_rewardstack_transport
        from changemaker.api.main import app

        fake = FakeRewardStack()
        app.dependency_overrides[get_rewardstack_transport] = lambda: fake.transport
        return fake

    @pytest.fixture
    def green(self, db_engine):
        """Workspace ``green`` with RewardSTACK on, an admin and a member."""
        ws = make_workspace(
            db_engine, "green",
            reward_stack_enabled=True,
            reward_stack_program_id="prog-1",
            reward_stack_org_id="org-1",
        )
        admin = make_user(db_engine, "boss@example.com")
        member = make_user(db_engine, "ana@example.com")
        add_member(db_engine, admin, ws, Role.ADMIN)
        add_member(db_engine, member, ws)
        return ws, admin, member

    def _issue(self, client, admin, slug="acme", **body):
        return client.post(f"/api/workspaces/{slug}/rewards/issue", headers=auth_header(admin), json=body)

    # -- /rewards/issue -----------------------------------------------------
    def test_issue_to_non_member_is_404(self, client, db_engine, team, fake):
        _, admin, _ = team
        outsider = make_user(db_engine, "out@example.com")
        resp = self._issue(client, admin, user_id=outsider.id, type="points", amount=10)
        assert resp.status_code == 404
        assert resp.json()["detail"] == "User is not a member of this workspace"

    def test_issue_for_foreign_challenge_is_404(self, client, db_engine, team, fake):
        _, admin, participant = team
        other = make_workspace(db_engine, "other")
        foreign = make_challenge(db_engine, other)
        resp = self._issue(
            client, admin, user_id=participant.id, type="points", amount=10, challenge_id=foreign.id
        )
        assert resp.status_code == 404

    @pytest.mark.parametrize("sku_id", ["GONE", "RETIRED"])
    def test_issue_needs_active_workspace_sku(self, client, db_engine, team, fake, sku_id):
        ws, admin, participant = team
        reward_service.create_sku(db_engine, ws.id, sku_id="RETIRED", name="Old mug", value=100)
        reward_service.set_sku_active(db_engine, ws.id, "RETIRED", False)
        resp = self._issue(client, admin, user_id=participant.id, type="sku", sku_id=sku_id)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "This SKU is not available for this workspace or is inactive"
        with Session(db_engine) as session:
            assert session.scalar(select(RewardIssuance)) is None

    def test_issue_without_integration_is_issued(self, client, db_engine, team, fake):
        ws, admin, participant = team
        reward_service.create_sku(db_engine, ws.id, sku_id="MUG", name="Mug", value=150)
        resp = self._issue(client, admin, user_id=participant.id, type="sku", sku_id="MUG", amount=1)
        assert resp.status_code == 201
        data = resp.json()
        assert data["result"] is None
        assert data["issuance"]["status"] == RewardStatus.ISSUED
        assert data["issuance"]["amount"] == 150
        assert data["issuance"]["issued_at"] is not None
        assert fake.requests == []

    def test_issue_sends_through_rewardstack(self, client, green, fake):
        _, admin, member = green
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (201, {"id": "adj-1"}))
        resp = self._issue(client, admin, "green", user_id=member.id, type="points", amount=40)
        assert resp.status_code == 201
        data = resp.json()
        assert data["result"]["success"] is True
        assert data["issuance"]["status"] == RewardStatus.ISSUED
        assert data["issuance"]["reward_stack_adjustment_id"] == "adj-1"

    def test_issue_upstream_failure_is_502(self, client, db_engine, green, fake):
        _, admin, member = green
        fake.on("POST", f"{PROGRAM}/participant", (403, {}))
        resp = self._issue(client, admin, "green", user_id=member.id, type="points", amount=40)
        assert resp.status_code == 502
        detail = resp.json()["detail"]
        assert detail["error"] == "Failed to issue reward via RewardSTACK"
        assert detail["details"].startswith("Failed to sync participant")
        with Session(db_engine) as session:
            assert session.get(RewardIssuance, detail["reward_issuance_id"]).status == RewardStatus.FAILED

    # -- /rewards/retry -------------------------------------------------------
    def _grant(self, db_engine, ws, user, **fields):
        issuance = reward_service.create_issuance(
            db_engine, workspace_id=ws.id, user_id=user.id, type="points", amount=10
        )
        with get_session(db_engine) as session:
            row = session.get(RewardIssuance, issuance.id)
            for key, value in fields.items():
                setattr(row, key, value)
        return issuance

    def test_retry_needs_integration(self, client, team, fake):
        _, admin, _ = team
        resp = client.post("/api/workspaces/acme/rewards/retry", headers=auth_header(admin), json={"reward_id": "x"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "RewardSTACK integration is not enabled for this workspace"

    def test_retry_unknown_and_issued(self, client, db_engine, green, fake):
        ws, admin, member = green
        url = "/api/workspaces/green/rewards/retry"
        assert client.post(url, headers=auth_header(admin), json={"reward_id": "nope"}).status_code == 404
        done = self._grant(db_engine, ws, member, status=RewardStatus.ISSUED)
        resp = client.post(url, headers=auth_header(admin), json={"reward_id": done.id})
        assert resp.status_code == 400
        assert "Only FAILED rewards" in resp.json()["detail"]

    def test_retry_failed_reward(self, client, db_engine, green, fake):
        ws, admin, member = green
        failed = self._grant(db_engine, ws, member, status=RewardStatus.FAILED, reward_stack_error_message="outage")
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/adjustment", (201, {"id": "adj-2"}))
        resp = client.post(
            "/api/workspaces/green/rewards/retry", headers=auth_header(admin), json={"reward_id": failed.id}
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        with Session(db_engine) as session:
            row = session.get(RewardIssuance, failed.id)
        assert (row.status, row.reward_stack_error_message) == (RewardStatus.ISSUED, None)

    # -- /rewards/{id}/status ---------------------------------------------------
    def test_status_poll(self, client, db_engine, green, fake):
        ws, admin, _ = green
        synced = make_user(
            db_engine, "synced@example.com",
            reward_stack_participant_id="rs-1",
            reward_stack_sync_status=RewardStackSyncStatus.SYNCED,
        )
        add_member(db_engine, synced, ws)
        sent = self._grant(
            db_engine, ws, synced,
            reward_stack_adjustment_id="adj-5", reward_stack_status=RewardStackStatus.PROCESSING,
        )
        fake.on("GET", f"{PROGRAM}/participant/rs-1/adjustment/adj-5", (200, {"status": "completed"}))

        resp = client.post(f"/api/workspaces/green/rewards/{sent.id}/status", headers=auth_header(admin))
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "status": "COMPLETED", "updated": True}

    def test_status_poll_errors(self, client, db_engine, green, fake):
        ws, admin, member = green
        assert client.post(
            "/api/workspaces/green/rewards/missing/status", headers=auth_header(admin)
        ).status_code == 404
        unsent = self._grant(db_engine, ws, member)
        resp = client.post(f"/api/workspaces/green/rewards/{unsent.id}/status", headers=auth_header(admin))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Participant not synced to RewardSTACK"

    # -- /rewardstack/* -------------------------------------------------------
    def test_connection_check(self, client, green, fake):
        _, admin, _ = green
        fake.on("GET", PROGRAM, (200, {"id": "prog-1", "name": "Green Rewards"}))
        resp = client.post("/api/workspaces/green/rewardstack/test-connection", headers=auth_header(admin))
        assert resp.json()["program"] == {"id": "prog-1", "name": "Green Rewards"}

    def test_participant_sync(self, client, db_engine, green, fake):
        _, admin, member = green
        url = "/api/workspaces/green/rewardstack/sync"
        missing = client.post(url, headers=auth_header(admin), json={})
        assert missing.status_code == 400
        assert missing.json()["detail"] == "Must provide user_id, user_ids, or sync_all"

        fake.on("POST", f"{PROGRAM}/participant", (201, {}))
        summary = client.post(url, headers=auth_header(admin), json={"sync_all": True}).json()
        assert (summary["total"], summary["successful"], summary["failed"]) == (2, 2, 0)
        with Session(db_engine) as session:
            row = session.get(User, member.id)
        assert (row.reward_stack_participant_id, row.reward_stack_sync_status) == (
            member.id, RewardStackSyncStatus.SYNCED,
        )

    def test_participant_sync_needs_integration(self, client, team, fake):
        _, admin, participant = team
        resp = client.post(
            "/api/workspaces/acme/rewardstack/sync", headers=auth_header(admin), json={"user_id": participant.id}
        )
        assert resp.status_code == 400

    def test_participant_unsync(self, client, db_engine, green, fake):
        ws, admin, _ = green
        linked = make_user(db_engine, "linked@example.com", reward_stack_participant_id="rs-9")
        add_member(db_engine, linked, ws)
        fake.on("DELETE", f"{PROGRAM}/participant/rs-9", (204, ""))
        resp = client.delete(f"/api/workspaces/green/rewardstack/participants/{linked.id}", headers=auth_header(admin))
        assert resp.status_code == 200
        assert resp.json()["details"] == {"action": "deleted"}

        outsider = make_user(db_engine, "out@example.com")
        resp = client.delete(f"/api/workspaces/green/rewardstack/participants/{outsider.id}", headers=auth_header(admin))
        assert resp.status_code == 400

    def test_sku_sync(self, client, db_engine, green, fake):
        ws, admin, _ = green
        fake.on("GET", f"{PROGRAM}/catalog", (200, [{"sku": "MUG", "name": "Mug", "value": 150}]))
        resp = client.post("/api/workspaces/green/rewardstack/sync-skus", headers=auth_header(admin))
        assert resp.json() == {"synced": 1, "updated": 0, "total": 1}
        assert [s.sku_id for s in reward_service.list_skus(db_engine, ws.id)] == ["MUG"]

    def test_sku_sync_upstream_failure(self, client, green, fake):
        _, admin, _ = green
        fake.on("GET", f"{PROGRAM}/catalog", (403, {}))
        resp = client.post("/api/workspaces/green/rewardstack/sync-skus", headers=auth_header(admin))
        assert resp.status_code == 502
        assert resp.json()["detail"]["error"] == "Failed to sync SKUs from RewardSTACK"

    def test_member_gets_marketplace_link(self, client, green, fake):
        _, _, member = green
        fake.on("POST", f"{PROGRAM}/participant", (201, {"unique_id": "rs-ana"}))
        fake.on("POST", f"{PROGRAM}/participant/rs-ana/sso", (200, {"ssoUrl": "https://m.example/s", "expiresAt": None}))
        resp = client.post("/api/workspaces/green/rewardstack/sso", headers=auth_header(member))
        assert resp.status_code == 200
        assert resp.json() == {"sso_url": "https://m.example/s", "expires_at": None}

    def test_webhook_management(self, client, db_engine, green, fake):
        ws, admin, _ = green
        hooks = "/api/organization/org-1/webhooks"
        expected_url = f"http://localhost:3000/api/webhooks/rewardstack?workspaceId={ws.id}"
        fake.on("GET", hooks, (200, []))
        fake.on("POST", hooks, (201, {"id": "wh-1", "url": expected_url}))
        fake.on("DELETE", f"{hooks}/wh-1", (204, ""))

        created = client.post("/api/workspaces/green/rewardstack/webhooks", headers=auth_header(admin))
        assert created.json() == {"created": True, "webhook": {"id": "wh-1", "url": expected_url}}
        with Session(db_engine) as session:
            assert session.get(Workspace, ws.id).reward_stack_webhook_secret

        assert client.get("/api/workspaces/green/rewardstack/webhooks", headers=auth_header(admin)).json() == []
        deleted = client.delete("/api/workspaces/green/rewardstack/webhooks/wh-1", headers=auth_header(admin))
        assert deleted.json() == {"ok": True}
        assert fake.paths()[-1] == f"DELETE {hooks}/wh-1"

    def test_admin_routes_refuse_participants(self, client, green, fake):
        _, _, member = green
        resp = client.post("/api/workspaces/green/rewardstack/sync-skus", headers=auth_header(member))
        assert resp.status_code == 403
        assert fake.requests == []


# ===========================================================================
# AI composer
# ===========================================================================
class TestAIComposer:
    def test_not_configured_is_503(self, client, team):
        _, admin, _ = team
        with patch.dict("os.environ", {"ANTHROPIC_API_KEY": ""}):
            resp = client.post(
                "/api/workspaces/acme/emails/ai-generate", headers=auth_header(admin), json={"prompt": "Invite"}
            )
        assert resp.status_code == 503
        assert resp.json()["error"] == "AI service not configured"

    def test_throttled_is_429(self, client, team):
        from changemaker.ai.rate_limit import rate_limiter

        ws, admin, _ = team
        for _ in range(rate_limiter.requests_per_minute):
            rate_limiter.record_usage(ws.id, 10)
        resp = client.post(
            "/api/workspaces/acme/emails/chat",
            headers=auth_header(admin),
            json={"messages": [{"role": "user", "content": "hi"}]},
        )
        assert resp.status_code == 429
        assert resp.json()["usage"]["requests_remaining"] == 0
        assert "Retry-After" in resp.headers

    def test_generate_streams_events(self, client, team):
        from test_ai import FakeAnthropic

        _, admin, _ = team
        fake = FakeAnthropic(["Subject: Hi\n\n```html\n<p>Hello</p>\n```"])
        with patch("changemaker.ai.composer.make_client", return_value=fake):
            resp = client.post(
                "/api/workspaces/acme/emails/ai-generate",
                headers=auth_header(admin),
                json={"prompt": "Say hello", "creativity": "creative"},
            )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
        assert frames[-1] == {"type": "finish", "subject": "Hi", "html": "<p>Hello</p>", "done": True}
        assert fake.calls[0]["temperature"] == 1.0

    def test_participants_cannot_use_composer(self, client, team):
        _, _, participant = team
        resp = client.post(
            "/api/workspaces/acme/emails/ai-generate", headers=auth_header(participant), json={"prompt": "x"}
        )
        assert resp.status_code == 403
