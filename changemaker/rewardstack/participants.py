"""
changemaker.rewardstack.participants — Participant Sync
=======================================================

Mirrors a local :class:`User` into RewardSTACK before any reward is sent
to them.  The user row records the outcome (``reward_stack_sync_status``)
so admins can spot accounts that never made it across.

Admin entry points (one member, a list of members, the whole workspace,
or removing a participant again) return plain result dicts instead of
raising, so a bulk run reports every member's outcome.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from changemaker.database.engine import get_session, run_db
from changemaker.database.models import (
    RewardStackSyncStatus,
    User,
    Workspace,
    WorkspaceMembership,
    as_utc,
    utcnow,
)
from changemaker.errors import ResourceNotFoundError
from changemaker.rewardstack.client import RewardStackClient
from changemaker.rewardstack.errors import RewardStackError, RewardStackErrorCode

logger = logging.getLogger(__name__)

# Synced users are refreshed once their mirror is older than this.
RESYNC_AFTER = timedelta(minutes=60)

_OPTIONAL_FIELDS = {
    "firstname": "first_name",
    "lastname": "last_name",
    "phone": "phone",
    "address1": "address_line1",
    "address2": "address_line2",
    "city": "city",
    "state": "state",
    "zip": "zip_code",
    "country": "country",
}


def map_user_to_participant(user: User) -> dict:
    """Translate a user row into a RewardSTACK participant payload."""
    participant = {"email_address": user.email, "external_id": user.id}
    for remote, local in _OPTIONAL_FIELDS.items():
        value = getattr(user, local)
        if value:
            participant[remote] = value
    return participant


def should_sync_user(user: User, force: bool = False) -> bool:
    """Whether a bulk run should (re)send *user*."""
    if force:
        return True
    if user.reward_stack_sync_status != RewardStackSyncStatus.SYNCED:
        return True
    last_sync = as_utc(user.reward_stack_last_sync)
    return last_sync is None or utcnow() - last_sync > RESYNC_AFTER


# ---------------------------------------------------------------------------
# Database steps
# ---------------------------------------------------------------------------
def _load_user(engine: Engine, user_id: str) -> User | None:
    with Session(engine) as session:
        return session.get(User, user_id)


def _load_workspace(engine: Engine, workspace_id: str) -> Workspace | None:
    with Session(engine) as session:
        return session.get(Workspace, workspace_id)


def _load_member(engine: Engine, workspace_id: str, user_id: str) -> tuple[Workspace, User | None] | None:
    with Session(engine) as session:
        workspace = session.get(Workspace, workspace_id)
        if workspace is None:
            return None
        user = session.scalar(
            select(User)
            .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
            .where(User.id == user_id, WorkspaceMembership.workspace_id == workspace_id)
        )
        return workspace, user


def _load_members(engine: Engine, workspace_id: str, user_ids: list[str] | None) -> dict[str, User]:
    with Session(engine) as session:
        stmt = (
            select(User)
            .join(WorkspaceMembership, WorkspaceMembership.user_id == User.id)
            .where(WorkspaceMembership.workspace_id == workspace_id)
        )
        if user_ids is not None:
            stmt = stmt.where(User.id.in_(user_ids))
        return {u.id: u for u in session.scalars(stmt)}


def _record_sync(engine: Engine, user_id: str, status: str, participant_id: str | None) -> None:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return
        user.reward_stack_sync_status = status
        if status == RewardStackSyncStatus.SYNCED:
            user.reward_stack_participant_id = participant_id
            user.reward_stack_last_sync = utcnow()


def _clear_sync(engine: Engine, user_id: str) -> None:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            return
        user.reward_stack_participant_id = None
        user.reward_stack_sync_status = RewardStackSyncStatus.NOT_SYNCED
        user.reward_stack_last_sync = None


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------
async def sync_user(
    engine: Engine, user_id: str, workspace_id: str, *, client: RewardStackClient
) -> str:
    """Ensure *user_id* exists as a participant; return the participant id.

    Users that were synced before are updated in place.  If RewardSTACK no
    longer knows them (404) or the update fails server-side, they are
    created afresh.  A create that collides with an existing participant
    (409) replaces it.
    """
    user = await run_db(_load_user, engine, user_id)
    if user is None:
        raise ResourceNotFoundError("User", user_id)

    participant = map_user_to_participant(user)
    try:
        if user.reward_stack_participant_id:
            try:
                result = await client.update_participant(
                    user.reward_stack_participant_id, participant
                )
            except RewardStackError as exc:
                if exc.code not in (
                    RewardStackErrorCode.NOT_FOUND,
                    RewardStackErrorCode.SERVER_ERROR,
                ):
                    raise
                logger.info("Participant %s missing upstream; recreating",
                            user.reward_stack_participant_id)
                result = await client.sync_participant(user.id, participant)
        else:
            result = await client.sync_participant(user.id, participant)
    except RewardStackError as exc:
        logger.error("Participant sync failed for user %s in workspace %s: %s",
                     user_id, workspace_id, exc.message)
        await run_db(_record_sync, engine, user_id, RewardStackSyncStatus.FAILED, None)
        raise

    remote_id = result.get("unique_id") if isinstance(result, dict) else None
    participant_id = remote_id or user.reward_stack_participant_id or user.id
    await run_db(_record_sync, engine, user_id, RewardStackSyncStatus.SYNCED, participant_id)
    logger.info("Synced user %s to RewardSTACK participant %s", user_id, participant_id)
    return participant_id


def _integration_error(workspace: Workspace) -> str | None:
    if not workspace.reward_stack_enabled:
        return "RewardSTACK is not enabled for this workspace"
    if not workspace.reward_stack_program_id:
        return "RewardSTACK program ID not configured"
    return None


async def _sync_member(
    engine: Engine, workspace: Workspace, user: User, client: RewardStackClient
) -> dict:
    action = "updated" if user.reward_stack_participant_id else "created"
    try:
        participant_id = await sync_user(engine, user.id, workspace.id, client=client)
    except RewardStackError as exc:
        return {"success": False, "user_id": user.id, "error": exc.message}
    return {
        "success": True,
        "user_id": user.id,
        "participant_id": participant_id,
        "details": {"action": action, "email": user.email},
    }


async def sync_participant_to_workspace(
    engine: Engine,
    workspace_id: str,
    user_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Sync one workspace member; failures come back as ``success: False``."""
    loaded = await run_db(_load_member, engine, workspace_id, user_id)
    if loaded is None:
        raise ResourceNotFoundError("Workspace", workspace_id)
    workspace, user = loaded
    if user is None:
        return {"success": False, "user_id": user_id, "error": "User is not a member of this workspace"}
    error = _integration_error(workspace)
    if error:
        return {"success": False, "user_id": user_id, "error": error}

    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        return await _sync_member(engine, workspace, user, client)


async def bulk_sync_participants(
    engine: Engine,
    workspace_id: str,
    user_ids: list[str] | None = None,
    *,
    force_resync: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Sync several members (all of them when *user_ids* is None).

    Members whose mirror is fresh are skipped unless *force_resync*.
    Returns ``{"total", "successful", "failed", "skipped", "results"}``.
    """
    workspace = await run_db(_load_workspace, engine, workspace_id)
    if workspace is None:
        raise ResourceNotFoundError("Workspace", workspace_id)
    members = await run_db(_load_members, engine, workspace_id, user_ids)
    targets = user_ids if user_ids is not None else list(members)
    summary = {"total": len(targets), "successful": 0, "failed": 0, "skipped": 0, "results": []}

    error = _integration_error(workspace)
    if error:
        summary["failed"] = len(targets)
        summary["results"] = [{"success": False, "user_id": uid, "error": error} for uid in targets]
        return summary

    async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
        for uid in targets:
            user = members.get(uid)
            if user is None:
                result = {"success": False, "user_id": uid,
                          "error": "User is not a member of this workspace"}
            elif not should_sync_user(user, force_resync):
                summary["skipped"] += 1
                summary["results"].append({"success": True, "user_id": uid, "skipped": True})
                continue
            else:
                result = await _sync_member(engine, workspace, user, client)
            summary["successful" if result["success"] else "failed"] += 1
            summary["results"].append(result)

    logger.info("Bulk participant sync for workspace %s: %d ok, %d failed, %d skipped",
                workspace_id, summary["successful"], summary["failed"], summary["skipped"])
    return summary


async def sync_all_workspace_participants(
    engine: Engine,
    workspace_id: str,
    *,
    force_resync: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    return await bulk_sync_participants(
        engine, workspace_id, None, force_resync=force_resync, transport=transport
    )


# ---------------------------------------------------------------------------
# Unsync
# ---------------------------------------------------------------------------
async def unsync_participant(
    engine: Engine,
    workspace_id: str,
    user_id: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Delete the member's participant upstream and reset the local mirror.

    A participant RewardSTACK no longer knows (404) still counts as removed.
    """
    loaded = await run_db(_load_member, engine, workspace_id, user_id)
    if loaded is None:
        raise ResourceNotFoundError("Workspace", workspace_id)
    workspace, user = loaded
    if user is None:
        return {"success": False, "user_id": user_id, "error": "User is not a member of this workspace"}

    if not user.reward_stack_participant_id:
        await run_db(_clear_sync, engine, user_id)
        return {"success": True, "user_id": user_id, "details": {"action": "already_unsynced"}}

    error = _integration_error(workspace)
    if error:
        return {"success": False, "user_id": user_id, "error": error}

    try:
        async with RewardStackClient.for_workspace(workspace, transport=transport) as client:
            await client.delete_participant(user.reward_stack_participant_id)
    except RewardStackError as exc:
        if exc.code != RewardStackErrorCode.NOT_FOUND:
            logger.error("Failed to remove participant %s: %s",
                         user.reward_stack_participant_id, exc.message)
            return {"success": False, "user_id": user_id, "error": exc.message}

    await run_db(_clear_sync, engine, user_id)
    logger.info("Removed RewardSTACK participant %s for user %s",
                user.reward_stack_participant_id, user_id)
    return {
        "success": True,
        "user_id": user_id,
        "participant_id": user.reward_stack_participant_id,
        "details": {"action": "deleted"},
    }
