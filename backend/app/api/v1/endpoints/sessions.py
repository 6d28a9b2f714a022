"""
Admin session management API Endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.dependencies import AdminContext
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db
from backend.app.models.enums import TargetType
from backend.app.schemas.sessions import (
    AdminSessionResponse, SessionListResponse, RevokeSessionRequest, RevokeSessionResponse,
    RevokeAllRequest, RevokeAllResponse,
)
from backend.app.services import sessions
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin", tags=["Admin - Sessions"])


@router.get("/sessions/{user_id}", response_model=SessionListResponse)
async def list_user_sessions(
    user_id: int,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_SESSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """Currently valid sessions of a user, most recently active first."""
    active = await sessions.list_active(db, user_id)
    return SessionListResponse(
        user_id=user_id,
        sessions=[AdminSessionResponse.model_validate(s) for s in active],
    )


@router.post("/sessions/revoke", response_model=RevokeSessionResponse)
async def revoke_session(
    request: RevokeSessionRequest,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_SESSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """Revoke one session by token. Revoking twice is a no-op."""
    target = await sessions.find_by_token(db, request.token)
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.SESSION_REVOKE,
        target=AuditTarget.of(TargetType.ADMIN_SESSION, target.id if target else None),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
    ) as audit:
        revoked = await sessions.revoke(db, request.token, admin.user_id, request.reason, commit=False)
        audit.add_metadata(revoked=revoked, session_user_id=target.user_id if target else None)

    return RevokeSessionResponse(revoked=revoked)


@router.post("/users/{user_id}/sessions/revoke-all", response_model=RevokeAllResponse)
async def revoke_all_sessions(
    user_id: int,
    request: RevokeAllRequest,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_SESSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """Cascade revoke every valid session of a user."""
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.SESSION_REVOKE_ALL,
        target=AuditTarget.of(TargetType.USER, user_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
    ) as audit:
        count = await sessions.revoke_all(db, user_id, admin.user_id, request.reason, commit=False)
        audit.add_metadata(sessions_revoked=count)

    return RevokeAllResponse(user_id=user_id, revoked_count=count)
