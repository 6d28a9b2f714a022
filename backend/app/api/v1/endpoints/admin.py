"""
Admin API Endpoints.

User moderation (suspend, ban and their reversals). Every action runs inside
an audited transaction: the mutation, the cascade session revoke and the
audit entry commit together or not at all.
"""

from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from backend.app.core.clock import utcnow
from backend.app.core.dependencies import AdminContext
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db, storage_errors
from backend.app.models.enums import TargetType
from backend.app.models.user import User
from backend.app.schemas.admin import (
    SuspendUserRequest, BanUserRequest, ReinstateUserRequest, AdminActionResponse,
)
from backend.app.services import sessions
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _get_user(db: AsyncSession, user_id: int) -> User:
    with storage_errors("user.get"):
        result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise ResourceNotFoundError("User", user_id)
    return user


@router.post("/users/{user_id}/suspend", response_model=AdminActionResponse)
async def suspend_user(
    user_id: int,
    request: SuspendUserRequest,
    admin: AdminContext = Depends(require_permission(Permission.SUSPEND_USER, "user", "user_id")),
    db: AsyncSession = Depends(get_db)
):
    """
    Suspend a user and revoke all of their admin sessions.

    A reason is required; the suspension may be time-limited.
    """
    target_user = await _get_user(db, user_id)

    if target_user.id == admin.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot suspend yourself")
    if target_user.is_suspended:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is already suspended")

    now = utcnow()
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.USER_SUSPEND,
        target=AuditTarget.of(TargetType.USER, user_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
        metadata={"duration_hours": request.duration_hours},
        now=now,
    ) as audit:
        audit.set_before(target_user.snapshot())

        target_user.is_suspended = True
        target_user.suspended_at = now
        target_user.suspended_by = admin.user_id
        target_user.suspend_reason = request.reason
        target_user.suspend_expires_at = (
            now + timedelta(hours=request.duration_hours) if request.duration_hours else None
        )
        revoked = await sessions.revoke_all(
            db, user_id, admin.user_id, reason=f"user suspended: {request.reason}", now=now, commit=False
        )

        audit.set_after(target_user.snapshot())
        audit.add_metadata(sessions_revoked=revoked)

    return AdminActionResponse(
        success=True,
        message=f"User '{target_user.email}' has been suspended",
        user_id=user_id,
        action=AdminAction.USER_SUSPEND,
        audit_log_id=audit.entry.id,
        sessions_revoked=revoked,
    )


@router.post("/users/{user_id}/unsuspend", response_model=AdminActionResponse)
async def unsuspend_user(
    user_id: int,
    request: ReinstateUserRequest,
    admin: AdminContext = Depends(require_permission(Permission.SUSPEND_USER, "user", "user_id")),
    db: AsyncSession = Depends(get_db)
):
    """Lift a suspension."""
    target_user = await _get_user(db, user_id)

    if not target_user.is_suspended:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is not suspended")

    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.USER_UNSUSPEND,
        target=AuditTarget.of(TargetType.USER, user_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
    ) as audit:
        audit.set_before(target_user.snapshot())

        target_user.is_suspended = False
        target_user.suspended_at = None
        target_user.suspended_by = None
        target_user.suspend_reason = None
        target_user.suspend_expires_at = None

        audit.set_after(target_user.snapshot())

    return AdminActionResponse(
        success=True,
        message=f"User '{target_user.email}' has been unsuspended",
        user_id=user_id,
        action=AdminAction.USER_UNSUSPEND,
        audit_log_id=audit.entry.id,
    )


@router.post("/users/{user_id}/ban", response_model=AdminActionResponse)
async def ban_user(
    user_id: int,
    request: BanUserRequest,
    admin: AdminContext = Depends(require_permission(Permission.BAN_USER, "user", "user_id")),
    db: AsyncSession = Depends(get_db)
):
    """
    Ban a user and revoke all of their admin sessions (reason required).

    This immediately terminates all of the user's sessions.
    """
    target_user = await _get_user(db, user_id)

    if target_user.id == admin.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot ban yourself")
    if target_user.is_banned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is already banned")

    now = utcnow()
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.USER_BAN,
        target=AuditTarget.of(TargetType.USER, user_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
        now=now,
    ) as audit:
        audit.set_before(target_user.snapshot())

        target_user.is_banned = True
        target_user.is_active = False
        target_user.banned_at = now
        target_user.banned_by = admin.user_id
        target_user.ban_reason = request.reason
        revoked = await sessions.revoke_all(
            db, user_id, admin.user_id, reason=f"user banned: {request.reason}", now=now, commit=False
        )

        audit.set_after(target_user.snapshot())
        audit.add_metadata(sessions_revoked=revoked)

    return AdminActionResponse(
        success=True,
        message=f"User '{target_user.email}' has been banned",
        user_id=user_id,
        action=AdminAction.USER_BAN,
        audit_log_id=audit.entry.id,
        sessions_revoked=revoked,
    )


@router.post("/users/{user_id}/unban", response_model=AdminActionResponse)
async def unban_user(
    user_id: int,
    request: ReinstateUserRequest,
    admin: AdminContext = Depends(require_permission(Permission.BAN_USER, "user", "user_id")),
    db: AsyncSession = Depends(get_db)
):
    """Lift a ban. The user must sign in again; revoked sessions stay revoked."""
    target_user = await _get_user(db, user_id)

    if not target_user.is_banned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User is not banned")

    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.USER_UNBAN,
        target=AuditTarget.of(TargetType.USER, user_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
    ) as audit:
        audit.set_before(target_user.snapshot())

        target_user.is_banned = False
        target_user.is_active = True
        target_user.banned_at = None
        target_user.banned_by = None
        target_user.ban_reason = None

        audit.set_after(target_user.snapshot())

    return AdminActionResponse(
        success=True,
        message=f"User '{target_user.email}' has been unbanned",
        user_id=user_id,
        action=AdminAction.USER_UNBAN,
        audit_log_id=audit.entry.id,
    )
