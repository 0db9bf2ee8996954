"""
Audit trail recording for compliance-relevant actions.

Provides ``AuditLogger`` for writing immutable entries into the
``audit_logs`` table, plus convenience emitters for the portal's common
actions (logins, course progress, quiz attempts, electronic signatures).

Each write runs inside a **SAVEPOINT** on the caller's session so that a
failed audit insert is rolled back on its own and never poisons the
business transaction it accompanies. ``append`` reports the outcome as a
boolean; it does not raise on persistence failure.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gxp_compliance.core.client import ClientMetadata
from gxp_compliance.core.logging import get_logger
from gxp_compliance.db.models import AuditLog

logger = get_logger(__name__)


class AuditAction(str, Enum):
    """Action taxonomy recorded in the audit trail."""

    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    PASSWORD_RESET = "password_reset"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    COURSE_ENROLLED = "course_enrolled"
    COURSE_STARTED = "course_started"
    COURSE_COMPLETED = "course_completed"
    MODULE_STARTED = "module_started"
    MODULE_COMPLETED = "module_completed"
    MODULE_PROGRESS = "module_progress"
    QUIZ_ATTEMPTED = "quiz_attempted"
    SIGNATURE_CAPTURED = "signature_captured"
    SIGNATURE_INVALIDATED = "signature_invalidated"


SECURITY_ACTIONS: frozenset[str] = frozenset(
    {
        AuditAction.LOGIN_FAILED.value,
        AuditAction.ACCOUNT_LOCKED.value,
        AuditAction.PASSWORD_RESET.value,
        AuditAction.UNAUTHORIZED_ACCESS.value,
    }
)

TRAINING_ACTIONS: frozenset[str] = frozenset(
    {
        AuditAction.COURSE_STARTED.value,
        AuditAction.COURSE_COMPLETED.value,
        AuditAction.MODULE_STARTED.value,
        AuditAction.MODULE_COMPLETED.value,
        AuditAction.QUIZ_ATTEMPTED.value,
        AuditAction.SIGNATURE_CAPTURED.value,
    }
)


@dataclass(frozen=True)
class AuditEntryCreate:
    """A well-formed audit entry awaiting its server-assigned timestamp."""

    action: str
    resource_type: str
    user_id: str | None = None
    resource_id: str | None = None
    success: bool = True
    error_message: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    additional_data: dict[str, Any] | None = None
    session_id: str | None = None
    request_id: str | None = None
    client: ClientMetadata = field(default_factory=ClientMetadata)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _bound_request_id() -> str | None:
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return str(request_id) if request_id is not None else None


class AuditLogger:
    """Append-only writer for the audit trail."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or _utcnow

    async def append(self, entry: AuditEntryCreate) -> bool:
        """Write one immutable audit record.

        Returns ``True`` when the row was flushed, ``False`` when the store
        rejected it. Failures are reported through the log, not raised.
        """
        action = entry.action.value if isinstance(entry.action, Enum) else entry.action
        row = AuditLog(
            user_id=entry.user_id,
            session_id=entry.session_id,
            action=action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            old_values=entry.old_values,
            new_values=entry.new_values,
            timestamp=self._clock(),
            ip_address=entry.client.ip_address,
            user_agent=entry.client.user_agent,
            request_id=entry.request_id or _bound_request_id(),
            success=entry.success,
            error_message=entry.error_message,
            additional_data=entry.additional_data,
        )

        try:
            async with self._session.begin_nested():
                self._session.add(row)
                await self._session.flush()
        except SQLAlchemyError:
            logger.warning(
                "audit_log_write_failed",
                action=action,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                exc_info=True,
            )
            return False

        logger.debug(
            "audit_log_written",
            audit_id=str(row.id),
            action=action,
            resource_type=entry.resource_type,
            success=entry.success,
        )
        return True

    # ------------------------------------------------------------------
    # Authentication events
    # ------------------------------------------------------------------

    async def log_login(self, user_id: str, client: ClientMetadata | None = None) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.LOGIN,
                resource_type="user",
                user_id=user_id,
                resource_id=user_id,
                additional_data={"event": "user_login"},
                client=client or ClientMetadata(),
            )
        )

    async def log_logout(self, user_id: str, client: ClientMetadata | None = None) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.LOGOUT,
                resource_type="user",
                user_id=user_id,
                resource_id=user_id,
                additional_data={"event": "user_logout"},
                client=client or ClientMetadata(),
            )
        )

    async def log_failed_login(
        self,
        email: str,
        client: ClientMetadata | None = None,
        *,
        error_message: str | None = None,
    ) -> bool:
        """Record a rejected login; the actor is unknown so only the email is kept."""
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.LOGIN_FAILED,
                resource_type="user",
                success=False,
                error_message=error_message,
                additional_data={"email": email, "event": "failed_login"},
                client=client or ClientMetadata(),
            )
        )

    async def log_account_locked(
        self,
        identifier: str,
        *,
        blocked_until_ms: int | None = None,
        client: ClientMetadata | None = None,
    ) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.ACCOUNT_LOCKED,
                resource_type="user",
                success=False,
                additional_data={
                    "identifier": identifier,
                    "blocked_until_ms": blocked_until_ms,
                    "event": "account_locked",
                },
                client=client or ClientMetadata(),
            )
        )

    async def log_unauthorized_access(
        self,
        user_id: str | None,
        resource_type: str,
        resource_id: str | None = None,
        client: ClientMetadata | None = None,
    ) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.UNAUTHORIZED_ACCESS,
                resource_type=resource_type,
                user_id=user_id,
                resource_id=resource_id,
                success=False,
                additional_data={"event": "unauthorized_access"},
                client=client or ClientMetadata(),
            )
        )

    # ------------------------------------------------------------------
    # Training events
    # ------------------------------------------------------------------

    async def log_course_enrollment(self, user_id: str, course_id: str) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.COURSE_ENROLLED,
                resource_type="training_course",
                user_id=user_id,
                resource_id=course_id,
                additional_data={"event": "course_enrollment"},
            )
        )

    async def log_course_start(self, user_id: str, course_id: str) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.COURSE_STARTED,
                resource_type="training_course",
                user_id=user_id,
                resource_id=course_id,
                additional_data={"event": "course_start"},
            )
        )

    async def log_course_completion(
        self, user_id: str, course_id: str, score: float | None = None
    ) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.COURSE_COMPLETED,
                resource_type="training_course",
                user_id=user_id,
                resource_id=course_id,
                additional_data={"event": "course_completion", "score": score},
            )
        )

    async def log_module_progress(self, user_id: str, module_id: str, progress: float) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.MODULE_PROGRESS,
                resource_type="training_module",
                user_id=user_id,
                resource_id=module_id,
                additional_data={"event": "module_progress", "progress_percentage": progress},
            )
        )

    async def log_quiz_attempt(
        self, user_id: str, module_id: str, score: float, passed: bool
    ) -> bool:
        """A failed quiz is still a completed action; ``success`` mirrors ``passed``."""
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.QUIZ_ATTEMPTED,
                resource_type="training_module",
                user_id=user_id,
                resource_id=module_id,
                success=passed,
                additional_data={"event": "quiz_attempt", "score": score, "passed": passed},
            )
        )

    # ------------------------------------------------------------------
    # Electronic signatures
    # ------------------------------------------------------------------

    async def log_signature_captured(
        self,
        user_id: str,
        enrollment_id: str,
        signature_type: str,
        *,
        signature_id: str | None = None,
        client: ClientMetadata | None = None,
    ) -> bool:
        additional: dict[str, Any] = {
            "event": "electronic_signature",
            "signature_type": signature_type,
        }
        if signature_id is not None:
            additional["signature_id"] = signature_id
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.SIGNATURE_CAPTURED,
                resource_type="training_enrollment",
                user_id=user_id,
                resource_id=enrollment_id,
                additional_data=additional,
                client=client or ClientMetadata(),
            )
        )

    async def log_signature_invalidated(
        self, invalidated_by: str, signature_id: str, reason: str
    ) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=AuditAction.SIGNATURE_INVALIDATED,
                resource_type="electronic_signature",
                user_id=invalidated_by,
                resource_id=signature_id,
                old_values={"is_valid": True},
                new_values={"is_valid": False},
                additional_data={"reason": reason},
            )
        )

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    async def log_data_modification(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
    ) -> bool:
        return await self.append(
            AuditEntryCreate(
                action=action,
                resource_type=resource_type,
                user_id=user_id,
                resource_id=resource_id,
                old_values=old_values,
                new_values=new_values,
                additional_data={"event": "data_modification"},
            )
        )
