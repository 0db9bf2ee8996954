"""
Unit tests for audit trail recording.

Tests that AuditLogger writes AuditLog records correctly, reports
persistence failures as ``False`` without raising, and that written
entries can be neither modified nor removed.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from sqlalchemy.exc import OperationalError

from gxp_compliance.core.audit import (
    SECURITY_ACTIONS,
    TRAINING_ACTIONS,
    AuditAction,
    AuditEntryCreate,
    AuditLogger,
)
from gxp_compliance.core.client import ClientMetadata
from gxp_compliance.db.models import AuditImmutabilityError, AuditLog
from gxp_compliance.modules.audit.service import AuditLogQueryService

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _make_session(flush_error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    session.add = MagicMock()
    session.flush = AsyncMock(side_effect=flush_error)
    session.begin_nested = MagicMock()
    return session


def _written(session: MagicMock) -> AuditLog:
    session.add.assert_called_once()
    return session.add.call_args[0][0]


# --------------------------------------------------------------------------
# append
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_append_writes_record_inside_savepoint() -> None:
    session = _make_session()
    audit = AuditLogger(session, clock=lambda: FIXED_NOW)

    ok = await audit.append(
        AuditEntryCreate(
            action=AuditAction.COURSE_STARTED,
            resource_type="training_course",
            user_id="user-1",
            resource_id="course-9",
            additional_data={"event": "course_start"},
            client=ClientMetadata(ip_address="10.0.0.1", user_agent="TestAgent/1.0"),
        )
    )

    assert ok is True
    session.begin_nested.assert_called_once()
    session.flush.assert_awaited_once()
    row = _written(session)
    assert row.action == "course_started"
    assert row.resource_type == "training_course"
    assert row.user_id == "user-1"
    assert row.resource_id == "course-9"
    assert row.timestamp == FIXED_NOW
    assert row.ip_address == "10.0.0.1"
    assert row.user_agent == "TestAgent/1.0"
    assert row.success is True
    assert row.additional_data == {"event": "course_start"}


@pytest.mark.asyncio
async def test_append_failure_returns_false_without_raising() -> None:
    session = _make_session(OperationalError("INSERT", {}, Exception("db down")))
    audit = AuditLogger(session)

    ok = await audit.append(AuditEntryCreate(action="login", resource_type="user"))

    assert ok is False


@pytest.mark.asyncio
async def test_append_picks_up_bound_request_id() -> None:
    session = _make_session()
    audit = AuditLogger(session)
    structlog.contextvars.bind_contextvars(request_id="req-42")
    try:
        await audit.append(AuditEntryCreate(action="logout", resource_type="user"))
    finally:
        structlog.contextvars.clear_contextvars()

    assert _written(session).request_id == "req-42"


@pytest.mark.asyncio
async def test_explicit_request_id_wins() -> None:
    session = _make_session()
    audit = AuditLogger(session)
    structlog.contextvars.bind_contextvars(request_id="req-42")
    try:
        await audit.append(
            AuditEntryCreate(action="logout", resource_type="user", request_id="req-explicit")
        )
    finally:
        structlog.contextvars.clear_contextvars()

    assert _written(session).request_id == "req-explicit"


# --------------------------------------------------------------------------
# Convenience emitters
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_login_is_anonymous_and_unsuccessful() -> None:
    session = _make_session()
    audit = AuditLogger(session)

    await audit.log_failed_login(
        "jane@example.com",
        ClientMetadata(ip_address="203.0.113.5"),
        error_message="Invalid login credentials",
    )

    row = _written(session)
    assert row.action == "login_failed"
    assert row.user_id is None
    assert row.success is False
    assert row.error_message == "Invalid login credentials"
    assert row.additional_data == {"email": "jane@example.com", "event": "failed_login"}
    assert row.ip_address == "203.0.113.5"


@pytest.mark.asyncio
async def test_quiz_attempt_success_mirrors_passed() -> None:
    session = _make_session()
    audit = AuditLogger(session)

    await audit.log_quiz_attempt("user-1", "module-3", score=40.0, passed=False)

    row = _written(session)
    assert row.action == "quiz_attempted"
    assert row.resource_type == "training_module"
    assert row.success is False
    assert row.additional_data == {"event": "quiz_attempt", "score": 40.0, "passed": False}


@pytest.mark.asyncio
async def test_signature_captured_references_enrollment() -> None:
    session = _make_session()
    audit = AuditLogger(session)

    await audit.log_signature_captured(
        "user-1", "enrollment-7", "training_completion", signature_id="sig-1"
    )

    row = _written(session)
    assert row.action == "signature_captured"
    assert row.resource_type == "training_enrollment"
    assert row.resource_id == "enrollment-7"
    assert row.additional_data == {
        "event": "electronic_signature",
        "signature_type": "training_completion",
        "signature_id": "sig-1",
    }


@pytest.mark.asyncio
async def test_signature_invalidated_records_old_and_new_state() -> None:
    session = _make_session()
    audit = AuditLogger(session)

    await audit.log_signature_invalidated("admin-1", "sig-1", "duplicate entry")

    row = _written(session)
    assert row.action == "signature_invalidated"
    assert row.user_id == "admin-1"
    assert row.resource_type == "electronic_signature"
    assert row.resource_id == "sig-1"
    assert row.old_values == {"is_valid": True}
    assert row.new_values == {"is_valid": False}
    assert row.additional_data == {"reason": "duplicate entry"}


@pytest.mark.asyncio
async def test_account_locked_is_a_security_event() -> None:
    session = _make_session()
    audit = AuditLogger(session)

    await audit.log_account_locked("jane@example.com", blocked_until_ms=1234)

    row = _written(session)
    assert row.action in SECURITY_ACTIONS
    assert row.additional_data["blocked_until_ms"] == 1234


def test_action_sets_are_disjoint() -> None:
    assert SECURITY_ACTIONS.isdisjoint(TRAINING_ACTIONS)
    assert "signature_captured" in TRAINING_ACTIONS
    assert "login" not in SECURITY_ACTIONS


# --------------------------------------------------------------------------
# Persistence and immutability
# --------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_written_entry_cannot_be_updated(db_session) -> None:
    audit = AuditLogger(db_session)
    await audit.log_login("user-1")
    await db_session.commit()

    rows, _ = await AuditLogQueryService(db_session).list_logs()
    rows[0].success = False

    with pytest.raises(AuditImmutabilityError):
        await db_session.flush()


@pytest.mark.asyncio
async def test_written_entry_cannot_be_deleted(db_session) -> None:
    audit = AuditLogger(db_session)
    await audit.log_logout("user-1")
    await db_session.commit()

    rows, _ = await AuditLogQueryService(db_session).list_logs()
    await db_session.delete(rows[0])

    with pytest.raises(AuditImmutabilityError):
        await db_session.flush()


def _snapshot(row: AuditLog) -> dict[str, object]:
    return {column.name: getattr(row, column.key) for column in AuditLog.__mapper__.columns}


@pytest.mark.asyncio
async def test_appended_entries_stay_retrievable_and_unchanged(session_factory, dt_clock) -> None:
    rng = random.Random(20260301)
    actions = list(AuditAction)
    snapshots: dict[object, dict[str, object]] = {}

    async with session_factory() as writer:
        audit = AuditLogger(writer, clock=dt_clock)
        for index in range(30):
            action = rng.choice(actions)
            ok = await audit.append(
                AuditEntryCreate(
                    action=action,
                    resource_type=rng.choice(["user", "training_course", "training_module"]),
                    user_id=rng.choice([None, "user-1", "user-2"]),
                    resource_id=f"res-{rng.randint(1, 5)}",
                    success=rng.random() > 0.3,
                    additional_data={"index": index, "nested": {"z": 1, "a": 2}},
                )
            )
            assert ok is True
            await writer.commit()
            dt_clock.advance(seconds=rng.randint(1, 90))

            async with session_factory() as reader:
                rows, total = await AuditLogQueryService(reader).list_logs(page_size=200)
                assert total == index + 1
                current = {row.id: _snapshot(row) for row in rows}

            for entry_id, snapshot in snapshots.items():
                assert current[entry_id] == snapshot
            snapshots = current
