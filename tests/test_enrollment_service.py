"""
tests/test_enrollment_service.py — Challenge Enrollment
========================================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import add_member, make_challenge, make_user, make_workspace
from sqlalchemy import select
from sqlalchemy.orm import Session

from changemaker.database.models import (
    ActivityEvent,
    ChallengeStatus,
    Enrollment,
    EnrollmentStatus,
)
from changemaker.errors import ResourceNotFoundError, ValidationError
from changemaker.services import enrollment_service


@pytest.fixture
def engine(db_engine):
    return db_engine


@pytest.fixture
def setup(engine):
    ws = make_workspace(engine)
    user = make_user(engine)
    add_member(engine, user, ws)
    return ws, user


class TestEnroll:
    def test_enroll_published_challenge(self, engine, setup):
        ws, user = setup
        challenge = make_challenge(engine, ws)
        enrollment = enrollment_service.enroll(engine, ws.id, challenge.id, user.id)
        assert enrollment.status == EnrollmentStatus.ENROLLED

        with Session(engine) as session:
            event = session.scalar(select(ActivityEvent))
        assert event.type == "ENROLLED"
        assert event.enrollment_id == enrollment.id

    def test_draft_challenge_is_closed(self, engine, setup):
        ws, user = setup
        challenge = make_challenge(engine, ws, status=ChallengeStatus.DRAFT)
        with pytest.raises(ValidationError, match="not open"):
            enrollment_service.enroll(engine, ws.id, challenge.id, user.id)

    def test_deadline_passed(self, engine, setup):
        ws, user = setup
        past = datetime.now(UTC) - timedelta(days=2)
        challenge = make_challenge(
            engine, ws, start_date=past, enrollment_deadline=past - timedelta(hours=1)
        )
        with pytest.raises(ValidationError, match="deadline"):
            enrollment_service.enroll(engine, ws.id, challenge.id, user.id)

    def test_double_enroll_rejected(self, engine, setup):
        ws, user = setup
        challenge = make_challenge(engine, ws)
        enrollment_service.enroll(engine, ws.id, challenge.id, user.id)
        with pytest.raises(ValidationError, match="Already enrolled"):
            enrollment_service.enroll(engine, ws.id, challenge.id, user.id)

    def test_withdraw_then_reenroll_reuses_row(self, engine, setup):
        ws, user = setup
        challenge = make_challenge(engine, ws)
        first = enrollment_service.enroll(engine, ws.id, challenge.id, user.id)
        assert enrollment_service.withdraw(
            engine, ws.id, challenge.id, user.id
        ).status == EnrollmentStatus.WITHDRAWN
        again = enrollment_service.enroll(engine, ws.id, challenge.id, user.id)
        assert again.id == first.id
        assert again.status == EnrollmentStatus.ENROLLED

    def test_withdraw_without_enrollment(self, engine, setup):
        ws, user = setup
        challenge = make_challenge(engine, ws)
        with pytest.raises(ResourceNotFoundError):
            enrollment_service.withdraw(engine, ws.id, challenge.id, user.id)

    def test_wrong_workspace(self, engine, setup):
        ws, user = setup
        other = make_workspace(engine, "other")
        challenge = make_challenge(engine, other)
        with pytest.raises(ResourceNotFoundError):
            enrollment_service.enroll(engine, ws.id, challenge.id, user.id)


class TestBulkUnenroll:
    def test_withdraws_only_active_rows(self, engine, setup):
        ws, admin = setup
        challenge = make_challenge(engine, ws)
        users = [make_user(engine, f"p{i}@example.com") for i in range(3)]
        for u in users:
            enrollment_service.enroll(engine, ws.id, challenge.id, u.id)
        enrollment_service.withdraw(engine, ws.id, challenge.id, users[2].id)

        changed = enrollment_service.bulk_unenroll(
            engine, ws.id, challenge.id, [u.id for u in users], actor_id=admin.id
        )
        assert changed == 2

        with Session(engine) as session:
            statuses = set(session.scalars(select(Enrollment.status)))
        assert statuses == {EnrollmentStatus.WITHDRAWN}

        rows = enrollment_service.list_enrollments(engine, challenge.id, status="WITHDRAWN")
        assert len(rows) == 3
        assert rows[0].user.email.endswith("@example.com")
