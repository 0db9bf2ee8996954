"""Pydantic schemas for audit trail API responses."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditLogResponse(BaseModel):
    """Single audit entry in API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str | None = None
    session_id: str | None = None
    action: str
    resource_type: str
    resource_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    timestamp: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    success: bool
    error_message: str | None = None
    additional_data: dict[str, Any] | None = None


class AuditLogListResponse(BaseModel):
    """Paginated list of audit entries."""

    items: list[AuditLogResponse]
    total: int
    page: int
    page_size: int


class AuditLogCollectionResponse(BaseModel):
    """Unpaginated audit view (security events, histories)."""

    items: list[AuditLogResponse]
    count: int
