"""
Security Events API Endpoints.
"""

from datetime import timedelta
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.clock import utcnow
from backend.app.core.dependencies import AdminContext
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db
from backend.app.models.enums import Severity, TargetType, ResolveOutcome
from backend.app.schemas.security import (
    SecurityEventResponse, SecurityEventListResponse, ResolveRequest, ResolveResponse,
)
from backend.app.services import security_feed
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin/security-events", tags=["Admin - Security"])


@router.get("", response_model=SecurityEventListResponse)
async def list_security_events(
    unresolved_only: bool = Query(True, description="Open events ordered by severity"),
    min_severity: Severity = Query(Severity.LOW),
    hours: int = Query(24, ge=1, le=24 * 90, description="Lookback when listing all events"),
    severity: Optional[Severity] = Query(None),
    subject_id: Optional[int] = Query(None),
    type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_SECURITY_EVENTS)),
    db: AsyncSession = Depends(get_db)
):
    """
    List security events.

    By default: unresolved events at or above min_severity, most severe first.
    With unresolved_only=false: everything in the lookback window, newest first.
    """
    if unresolved_only:
        events = await security_feed.unresolved(db, min_severity=min_severity, limit=limit)
    else:
        events = await security_feed.recent(
            db,
            since=utcnow() - timedelta(hours=hours),
            severity=severity,
            subject_id=subject_id,
            type=type,
            limit=limit,
        )

    return SecurityEventListResponse(
        events=[SecurityEventResponse.model_validate(e) for e in events],
        total=len(events),
    )


@router.get("/banner", response_model=SecurityEventListResponse)
async def get_banner_alerts(
    admin: AdminContext = Depends(require_permission(Permission.VIEW_SECURITY_EVENTS)),
    db: AsyncSession = Depends(get_db)
):
    """Unresolved high and critical events."""
    events = await security_feed.banner(db)
    return SecurityEventListResponse(
        events=[SecurityEventResponse.model_validate(e) for e in events],
        total=len(events),
    )


@router.post("/{event_id}/resolve", response_model=ResolveResponse)
async def resolve_security_event(
    event_id: int,
    request: ResolveRequest,
    admin: AdminContext = Depends(require_permission(Permission.RESOLVE_SECURITY_EVENTS)),
    db: AsyncSession = Depends(get_db)
):
    """
    Resolve a security event.

    Resolving an already-resolved event is not an error; the outcome says so
    and the original resolution is left untouched.
    """
    event = await security_feed.get_event(db, event_id)
    if event.resolved:
        return ResolveResponse(event_id=event_id, outcome=ResolveOutcome.ALREADY_RESOLVED)

    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.SECURITY_EVENT_RESOLVE,
        target=AuditTarget.of(TargetType.SECURITY_EVENT, event_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.notes,
    ) as audit:
        audit.set_before({"resolved": False, "severity": event.severity, "type": event.type})
        outcome = await security_feed.resolve(db, event_id, admin.user_id, request.notes, commit=False)
        audit.set_after({"resolved": True, "outcome": outcome.value})

    return ResolveResponse(event_id=event_id, outcome=outcome)
