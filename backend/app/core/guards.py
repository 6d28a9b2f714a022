"""
Security guards for permission-based access control.

Provides dependency factories for protecting admin endpoints.
"""

import logging
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.dependencies import AdminContext, get_current_admin
from backend.app.core.exceptions import InsufficientPermissionsError
from backend.app.db.session import get_db
from backend.app.services import permissions, security_feed

logger = logging.getLogger("marketplace_admin.guards")


def require_permission(permission: str, resource_type: str = None, resource_param: str = None):
    """
    Dependency factory for permission-based access control.

    Usage:
        @router.post("/admin/users/{user_id}/ban")
        async def ban_user(admin: AdminContext = Depends(require_permission(Permission.BAN_USER, "user", "user_id"))):
            ...

    A refusal is recorded as a permission_denied security event before the
    403 is returned.

    Args:
        permission: Permission name checked against the registry
        resource_type: Resource type the endpoint acts on; wildcard-scoped
            grants always match
        resource_param: Path parameter holding the resource id, for
            grants scoped to a single resource

    Returns:
        FastAPI dependency returning the AdminContext

    Raises:
        InsufficientPermissionsError: no active grant covers the request
    """
    async def permission_checker(
        request: Request,
        admin: AdminContext = Depends(get_current_admin),
        db: AsyncSession = Depends(get_db),
    ) -> AdminContext:
        resource_id = request.path_params.get(resource_param) if resource_param else None
        if await permissions.check(db, admin.user_id, permission, resource_type, resource_id):
            return admin

        logger.warning(
            "Permission denied",
            extra={"user_id": admin.user_id, "permission": permission, "resource_type": resource_type},
        )
        await security_feed.record_permission_denied(
            db,
            user_id=admin.user_id,
            permission=permission,
            resource=f"{resource_type}:{resource_id}" if resource_id else resource_type,
            origin_ip=admin.origin_ip,
            user_agent=admin.user_agent,
        )
        raise InsufficientPermissionsError(
            f"Access denied. Required permission: {permission}",
            {"permission": permission, "resource_type": resource_type},
        )

    return permission_checker
