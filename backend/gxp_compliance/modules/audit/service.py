"""Read-only queries over the audit trail."""

from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gxp_compliance.core.audit import SECURITY_ACTIONS, TRAINING_ACTIONS
from gxp_compliance.db.models import AuditLog


@dataclass(frozen=True)
class AuditLogFilters:
    """Optional filters for the paginated audit listing."""

    user_id: str | None = None
    action: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    success: bool | None = None

    def clauses(self) -> list[Any]:
        conditions: list[Any] = []
        if self.user_id is not None:
            conditions.append(AuditLog.user_id == self.user_id)
        if self.action is not None:
            conditions.append(AuditLog.action == self.action)
        if self.resource_type is not None:
            conditions.append(AuditLog.resource_type == self.resource_type)
        if self.resource_id is not None:
            conditions.append(AuditLog.resource_id == self.resource_id)
        if self.start is not None:
            conditions.append(AuditLog.timestamp >= self.start)
        if self.end is not None:
            conditions.append(AuditLog.timestamp <= self.end)
        if self.success is not None:
            conditions.append(AuditLog.success.is_(self.success))
        return conditions


class AuditLogQueryService:
    """
    Listing and specialised views of the audit trail.

    There is intentionally no write method here; entries are only ever
    appended through ``AuditLogger``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_logs(
        self,
        filters: AuditLogFilters | None = None,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        """Return one page of entries, newest first, and the total match count."""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")

        conditions = (filters or AuditLogFilters()).clauses()
        count_query = select(func.count()).select_from(AuditLog).where(*conditions)
        total = (await self._session.execute(count_query)).scalar() or 0

        query = (
            select(AuditLog)
            .where(*conditions)
            .order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all()), total

    async def _by_actions(
        self,
        actions: Collection[str],
        *,
        user_id: str | None = None,
        limit: int,
    ) -> list[AuditLog]:
        query = select(AuditLog).where(AuditLog.action.in_(sorted(actions)))
        if user_id is not None:
            query = query.where(AuditLog.user_id == user_id)
        result = await self._session.execute(
            query.order_by(desc(AuditLog.timestamp)).limit(limit)
        )
        return list(result.scalars().all())

    async def get_security_events(self, limit: int = 100) -> list[AuditLog]:
        """Failed logins, lockouts, password resets and unauthorized access."""
        return await self._by_actions(SECURITY_ACTIONS, limit=limit)

    async def get_training_events(
        self, user_id: str | None = None, limit: int = 100
    ) -> list[AuditLog]:
        return await self._by_actions(TRAINING_ACTIONS, user_id=user_id, limit=limit)

    async def get_resource_history(self, resource_type: str, resource_id: str) -> list[AuditLog]:
        """Every entry about one resource, oldest first."""
        result = await self._session.execute(
            select(AuditLog)
            .where(
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.timestamp)
        )
        return list(result.scalars().all())

    async def get_user_history(self, user_id: str, limit: int = 100) -> list[AuditLog]:
        result = await self._session.execute(
            select(AuditLog)
            .where(AuditLog.user_id == user_id)
            .order_by(desc(AuditLog.timestamp))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_entry(self, entry_id: UUID) -> AuditLog | None:
        result = await self._session.execute(select(AuditLog).where(AuditLog.id == entry_id))
        return result.scalar_one_or_none()
