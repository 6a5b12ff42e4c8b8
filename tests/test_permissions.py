"""
tests/test_permissions.py — Role & Challenge Permission Rules
==============================================================

Pure functions, no database.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from changemaker.engine.permissions import (
    CHALLENGE_CREATE,
    ENROLLMENT_CREATE,
    SUBMISSION_REVIEW,
    WORKSPACE_MANAGE,
    can_access_manager_routes,
    can_access_participant_routes,
    can_approve_submission,
    get_challenge_permissions,
    has_permission,
    is_admin,
)

ASSIGNMENT = SimpleNamespace(id="assign-1")
ENROLLMENT = SimpleNamespace(id="enroll-1")


class TestWorkspacePermissions:
    def test_admin_has_everything(self):
        for perm in (WORKSPACE_MANAGE, CHALLENGE_CREATE, SUBMISSION_REVIEW, ENROLLMENT_CREATE):
            assert has_permission("ADMIN", perm)

    def test_manager_reviews_but_cannot_manage_workspace(self):
        assert has_permission("MANAGER", SUBMISSION_REVIEW)
        assert not has_permission("MANAGER", WORKSPACE_MANAGE)
        assert not has_permission("MANAGER", CHALLENGE_CREATE)

    def test_participant_can_enroll_only(self):
        assert has_permission("PARTICIPANT", ENROLLMENT_CREATE)
        assert not has_permission("PARTICIPANT", SUBMISSION_REVIEW)

    def test_unknown_or_missing_role(self):
        assert not has_permission(None, WORKSPACE_MANAGE)
        assert not has_permission("GUEST", WORKSPACE_MANAGE)

    @pytest.mark.parametrize(
        ("role", "admin", "manager_routes", "participant_routes"),
        [
            ("ADMIN", True, True, True),
            ("MANAGER", False, True, True),
            ("PARTICIPANT", False, False, True),
            (None, False, False, False),
        ],
    )
    def test_route_gates(self, role, admin, manager_routes, participant_routes):
        assert is_admin(role) is admin
        assert can_access_manager_routes(role) is manager_routes
        assert can_access_participant_routes(role) is participant_routes


class TestChallengePermissions:
    def test_admin_wins_over_everything(self):
        perms = get_challenge_permissions("ADMIN", ASSIGNMENT, ENROLLMENT)
        assert perms.role == "ADMIN"
        assert perms.is_admin and perms.can_manage and perms.can_approve_submissions
        assert perms.is_participant

    def test_assigned_manager(self):
        perms = get_challenge_permissions("PARTICIPANT", ASSIGNMENT, None)
        assert perms.role == "CHALLENGE_MANAGER"
        assert perms.can_approve_submissions and perms.can_manage
        assert not perms.is_admin

    def test_enrollment_beats_workspace_manager_role(self):
        perms = get_challenge_permissions("MANAGER", None, ENROLLMENT)
        assert perms.role == "PARTICIPANT"
        assert perms.is_participant
        assert not perms.can_approve_submissions

    def test_workspace_manager_without_assignment(self):
        perms = get_challenge_permissions("MANAGER")
        assert perms.role == "MANAGER"
        assert perms.can_approve_submissions and perms.is_manager

    def test_plain_member_may_view_and_enroll(self):
        perms = get_challenge_permissions("PARTICIPANT")
        assert perms.permissions == ("view_challenge",)
        assert perms.can_enroll
        assert not perms.is_participant


class TestSelfApproval:
    def test_reviewer_cannot_approve_own_submission(self):
        perms = get_challenge_permissions("ADMIN")
        assert not can_approve_submission(perms, "u1", "u1")
        assert can_approve_submission(perms, "u2", "u1")

    def test_non_reviewer_never_approves(self):
        perms = get_challenge_permissions("PARTICIPANT")
        assert not can_approve_submission(perms, "u2", "u1")
