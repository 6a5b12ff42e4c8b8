"""
changemaker.engine.permissions — Role & Challenge Permission Rules
===================================================================

Pure functions, no database access.  The service and API layers load the
membership / assignment / enrollment rows and hand them here.

Challenge permission hierarchy (highest first):

    1. Workspace ADMIN           — full control
    2. Assigned challenge manager — manage + approve
    3. Enrolled participant       — participate
    4. Workspace MANAGER          — manage + approve (workspace-wide)
    5. Anyone else in workspace   — view, may enroll
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from changemaker.database.models import Role

# ---------------------------------------------------------------------------
# Workspace-level permissions
# ---------------------------------------------------------------------------
WORKSPACE_MANAGE = "workspace:manage"
WORKSPACE_VIEW = "workspace:view"
CHALLENGE_CREATE = "challenge:create"
CHALLENGE_EDIT = "challenge:edit"
CHALLENGE_DELETE = "challenge:delete"
CHALLENGE_VIEW = "challenge:view"
USER_MANAGE = "user:manage"
USER_VIEW = "user:view"
ENROLLMENT_CREATE = "enrollment:create"
ENROLLMENT_VIEW = "enrollment:view"
ENROLLMENT_MANAGE = "enrollment:manage"
SUBMISSION_REVIEW = "submission:review"
SUBMISSION_VIEW = "submission:view"

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    Role.ADMIN: frozenset({
        WORKSPACE_MANAGE, WORKSPACE_VIEW,
        CHALLENGE_CREATE, CHALLENGE_EDIT, CHALLENGE_DELETE, CHALLENGE_VIEW,
        USER_MANAGE, USER_VIEW,
        ENROLLMENT_CREATE, ENROLLMENT_VIEW, ENROLLMENT_MANAGE,
        SUBMISSION_REVIEW, SUBMISSION_VIEW,
    }),
    Role.MANAGER: frozenset({
        WORKSPACE_VIEW,
        CHALLENGE_VIEW, CHALLENGE_EDIT,  # edit limited to assigned challenges
        USER_VIEW,
        ENROLLMENT_VIEW,
        SUBMISSION_REVIEW, SUBMISSION_VIEW,
    }),
    Role.PARTICIPANT: frozenset({
        WORKSPACE_VIEW,
        CHALLENGE_VIEW,
        USER_VIEW,
        ENROLLMENT_CREATE, ENROLLMENT_VIEW,
        SUBMISSION_VIEW,  # own submissions only
    }),
}


def has_permission(role: str | None, permission: str) -> bool:
    if role is None:
        return False
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def is_admin(role: str | None) -> bool:
    return role == Role.ADMIN


def can_access_manager_routes(role: str | None) -> bool:
    return role in (Role.ADMIN, Role.MANAGER)


def can_access_participant_routes(role: str | None) -> bool:
    return role in (Role.ADMIN, Role.MANAGER, Role.PARTICIPANT)


# ---------------------------------------------------------------------------
# Challenge-level permissions
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ChallengePermissions:
    role: str
    permissions: tuple[str, ...] = field(default_factory=tuple)
    can_approve_submissions: bool = False
    can_enroll: bool = False
    can_manage: bool = False
    is_participant: bool = False
    is_manager: bool = False
    is_admin: bool = False


def get_challenge_permissions(
    membership_role: str,
    assignment: Any | None = None,
    enrollment: Any | None = None,
) -> ChallengePermissions:
    """Resolve a user's effective role for one challenge."""
    enrolled = enrollment is not None

    if membership_role == Role.ADMIN:
        return ChallengePermissions(
            role="ADMIN",
            permissions=(
                "full_control", "manage_challenge", "participate",
                "approve_submissions", "view_all",
            ),
            can_approve_submissions=True,
            can_enroll=True,
            can_manage=True,
            is_participant=enrolled,
            is_manager=True,
            is_admin=True,
        )

    if assignment is not None:
        return ChallengePermissions(
            role="CHALLENGE_MANAGER",
            permissions=("manage_challenge", "approve_submissions", "participate", "view_all"),
            can_approve_submissions=True,
            can_enroll=True,
            can_manage=True,
            is_participant=enrolled,
            is_manager=True,
        )

    if enrolled:
        return ChallengePermissions(
            role="PARTICIPANT",
            permissions=("participate", "submit_activities", "view_challenge"),
            is_participant=True,
        )

    if membership_role == Role.MANAGER:
        return ChallengePermissions(
            role="MANAGER",
            permissions=("manage_challenge", "approve_submissions", "view_all_challenges"),
            can_approve_submissions=True,
            can_enroll=True,
            can_manage=True,
            is_manager=True,
        )

    return ChallengePermissions(
        role="PARTICIPANT",
        permissions=("view_challenge",),
        can_enroll=True,
    )


def can_approve_submission(
    permissions: ChallengePermissions,
    submission_user_id: str,
    current_user_id: str,
) -> bool:
    """Reviewers may approve others' work, never their own."""
    if not permissions.can_approve_submissions:
        return False
    return submission_user_id != current_user_id
