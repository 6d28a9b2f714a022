"""
Permission management API Endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.dependencies import AdminContext
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db
from backend.app.models.enums import TargetType
from backend.app.models.permission_grant import scope_key
from backend.app.schemas.permissions import (
    PermissionGrantRequest, PermissionRevokeRequest, PermissionGrantResponse,
    PermissionListResponse, PermissionRevokeResponse,
)
from backend.app.services import permissions
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.permissions import Permission

router = APIRouter(prefix="/admin/permissions", tags=["Admin - Permissions"])


@router.post("/grant", response_model=PermissionGrantResponse)
async def grant_permission(
    request: PermissionGrantRequest,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_PERMISSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """
    Grant a permission, optionally scoped to a resource type or a single
    resource, optionally expiring. Re-granting refreshes the existing grant.
    """
    scope = permissions.normalize_scope(request.resource_type, request.resource_id)
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.PERMISSION_GRANT,
        target=AuditTarget.of(TargetType.PERMISSION, f"{request.user_id}:{request.permission}"),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
        metadata={"scope": scope_key(*scope)},
    ) as audit:
        grant = await permissions.grant(
            db,
            user_id=request.user_id,
            permission=request.permission,
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            granted_by=admin.user_id,
            expires_at=request.expires_at,
            commit=False,
        )
        audit.set_after({
            "user_id": grant.user_id,
            "permission": grant.permission,
            "resource_type": grant.resource_type,
            "resource_id": grant.resource_id,
            "expires_at": grant.expires_at.isoformat() if grant.expires_at else None,
        })

    return PermissionGrantResponse.model_validate(grant)


@router.post("/revoke", response_model=PermissionRevokeResponse)
async def revoke_permission(
    request: PermissionRevokeRequest,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_PERMISSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """Revoke the grant with exactly this scope. Revoking nothing is not an error."""
    scope = permissions.normalize_scope(request.resource_type, request.resource_id)
    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.PERMISSION_REVOKE,
        target=AuditTarget.of(TargetType.PERMISSION, f"{request.user_id}:{request.permission}"),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        reason=request.reason,
        metadata={"scope": scope_key(*scope)},
    ) as audit:
        revoked = await permissions.revoke(
            db,
            user_id=request.user_id,
            permission=request.permission,
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            commit=False,
        )
        audit.add_metadata(revoked=revoked)

    return PermissionRevokeResponse(revoked=revoked)


@router.get("/{user_id}", response_model=PermissionListResponse)
async def list_user_permissions(
    user_id: int,
    admin: AdminContext = Depends(require_permission(Permission.MANAGE_PERMISSIONS)),
    db: AsyncSession = Depends(get_db)
):
    """A user's active (unexpired) grants."""
    grants = await permissions.list_active(db, user_id)
    return PermissionListResponse(
        user_id=user_id,
        grants=[PermissionGrantResponse.model_validate(g) for g in grants],
    )
