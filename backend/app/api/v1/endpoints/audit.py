"""
Audit Log API Endpoints.

Read-only access to the admin audit trail.
"""

from datetime import datetime, timedelta
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.clock import utcnow
from backend.app.core.dependencies import AdminContext
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db
from backend.app.models.enums import TargetType
from backend.app.schemas.audit import (
    AuditEntryResponse, AuditSearchFilters, AuditTrailResponse, AuditStatsResponse,
)
from backend.app.services import audit
from backend.app.services.audit import AuditTarget
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin/audit-logs", tags=["Admin - Audit"])


@router.get("", response_model=AuditTrailResponse)
async def search_audit_logs(
    action: Optional[str] = Query(None, description="Exact action, e.g. user.ban"),
    target_type: Optional[TargetType] = Query(None),
    target_id: Optional[str] = Query(None),
    actor_id: Optional[int] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    q: Optional[str] = Query(None, description="Free text over action and reason"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_AUDIT_LOG)),
    db: AsyncSession = Depends(get_db)
):
    """
    Search the audit trail, newest first.
    """
    filters = AuditSearchFilters(
        action=action,
        target_type=target_type,
        target_id=target_id,
        actor_id=actor_id,
        start=start,
        end=end,
        text=q,
    )
    logs, total = await audit.search(db, filters, page=page, page_size=page_size)

    return AuditTrailResponse(
        logs=[AuditEntryResponse.model_validate(log) for log in logs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/stats", response_model=AuditStatsResponse)
async def get_audit_stats(
    days: int = Query(30, ge=1, le=365),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_AUDIT_LOG)),
    db: AsyncSession = Depends(get_db)
):
    """Admin activity over the last N days."""
    return await audit.audit_stats(db, since=utcnow() - timedelta(days=days))


@router.get("/targets/{target_type}/{target_id}", response_model=AuditTrailResponse)
async def get_target_history(
    target_type: TargetType,
    target_id: str,
    admin: AdminContext = Depends(require_permission(Permission.VIEW_AUDIT_LOG)),
    db: AsyncSession = Depends(get_db)
):
    """
    Complete history of one target, newest first.
    """
    logs = await audit.by_target(db, AuditTarget.of(target_type, target_id))

    return AuditTrailResponse(
        logs=[AuditEntryResponse.model_validate(log) for log in logs],
        total=len(logs),
        page=1,
        page_size=len(logs),
    )


@router.get("/actors/{actor_id}", response_model=AuditTrailResponse)
async def get_admin_activity(
    actor_id: int,
    start: Optional[datetime] = Query(None, description="Inclusive lower bound"),
    end: Optional[datetime] = Query(None, description="Exclusive upper bound"),
    limit: int = Query(100, ge=1, le=500),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_AUDIT_LOG)),
    db: AsyncSession = Depends(get_db)
):
    """Activity timeline of one admin, newest first."""
    logs = await audit.by_actor(db, actor_id, start=start, end=end, limit=limit)

    return AuditTrailResponse(
        logs=[AuditEntryResponse.model_validate(log) for log in logs],
        total=len(logs),
        page=1,
        page_size=limit,
    )
