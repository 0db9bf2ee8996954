"""Admin audit trail endpoints. Read-only: the trail is append-only."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from gxp_compliance.core.security import AdminActor
from gxp_compliance.db.models import AuditLog
from gxp_compliance.db.session import DbSession
from gxp_compliance.modules.audit.schemas import (
    AuditLogCollectionResponse,
    AuditLogListResponse,
    AuditLogResponse,
)
from gxp_compliance.modules.audit.service import AuditLogFilters, AuditLogQueryService

router = APIRouter()


def _collection(rows: list[AuditLog]) -> AuditLogCollectionResponse:
    return AuditLogCollectionResponse(
        items=[AuditLogResponse.model_validate(row) for row in rows],
        count=len(rows),
    )


@router.get("/logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: DbSession,
    _admin: AdminActor,
    user_id: str | None = Query(None, description="Filter by actor"),
    action: str | None = Query(None, description="Filter by action"),
    resource_type: str | None = Query(None, description="Filter by resource type"),
    resource_id: str | None = Query(None, description="Filter by resource id"),
    start: datetime | None = Query(None, description="Earliest timestamp (inclusive)"),
    end: datetime | None = Query(None, description="Latest timestamp (inclusive)"),
    success: bool | None = Query(None, description="Filter by outcome"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
) -> AuditLogListResponse:
    """List audit entries with optional filters (admin only)."""
    filters = AuditLogFilters(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        start=start,
        end=end,
        success=success,
    )
    rows, total = await AuditLogQueryService(db).list_logs(
        filters, page=page, page_size=page_size
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(row) for row in rows],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/logs/{entry_id:uuid}", response_model=AuditLogResponse)
async def get_audit_log(
    entry_id: UUID,
    db: DbSession,
    _admin: AdminActor,
) -> AuditLogResponse:
    row = await AuditLogQueryService(db).get_entry(entry_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Audit entry not found")
    return AuditLogResponse.model_validate(row)


@router.get("/security-events", response_model=AuditLogCollectionResponse)
async def list_security_events(
    db: DbSession,
    _admin: AdminActor,
    limit: int = Query(100, ge=1, le=1000),
) -> AuditLogCollectionResponse:
    rows = await AuditLogQueryService(db).get_security_events(limit=limit)
    return _collection(rows)


@router.get("/training-events", response_model=AuditLogCollectionResponse)
async def list_training_events(
    db: DbSession,
    _admin: AdminActor,
    user_id: str | None = Query(None, description="Restrict to one learner"),
    limit: int = Query(100, ge=1, le=1000),
) -> AuditLogCollectionResponse:
    rows = await AuditLogQueryService(db).get_training_events(user_id=user_id, limit=limit)
    return _collection(rows)


@router.get("/resources/{resource_type}/{resource_id}", response_model=AuditLogCollectionResponse)
async def get_resource_history(
    resource_type: str,
    resource_id: str,
    db: DbSession,
    _admin: AdminActor,
) -> AuditLogCollectionResponse:
    rows = await AuditLogQueryService(db).get_resource_history(resource_type, resource_id)
    return _collection(rows)


@router.get("/users/{user_id}", response_model=AuditLogCollectionResponse)
async def get_user_history(
    user_id: str,
    db: DbSession,
    _admin: AdminActor,
    limit: int = Query(100, ge=1, le=1000),
) -> AuditLogCollectionResponse:
    rows = await AuditLogQueryService(db).get_user_history(user_id, limit=limit)
    return _collection(rows)
