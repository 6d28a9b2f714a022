"""
Permission registry.

Time-bounded, resource-scoped capability grants. A grant with a NULL
resource_type covers every resource type; a NULL resource_id covers every
resource of its type.
"""

import logging
from datetime import datetime
from typing import Any, Optional, List, Tuple

from sqlalchemy import select, delete, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import resolve_now
from backend.app.core.exceptions import ValidationError
from backend.app.db.session import storage_errors, dialect_name
from backend.app.models.permission_grant import PermissionGrant, scope_key

logger = logging.getLogger("marketplace_admin.permissions")


class Permission:
    """Well-known admin permissions."""
    BAN_USER = "ban_user"
    SUSPEND_USER = "suspend_user"
    VIEW_AUDIT_LOG = "view_audit_log"
    VIEW_SECURITY_EVENTS = "view_security_events"
    RESOLVE_SECURITY_EVENTS = "resolve_security_events"
    MANAGE_PERMISSIONS = "manage_permissions"
    MANAGE_SESSIONS = "manage_sessions"
    MANAGE_FEATURE_FLAGS = "manage_feature_flags"
    VIEW_ANALYTICS = "view_analytics"
    RUN_AGGREGATION = "run_aggregation"
    DELETE_PRODUCT = "delete_product"


ALL_PERMISSIONS = [
    value for key, value in vars(Permission).items() if key.isupper()
]


WILDCARD = "*"


def normalize_scope(resource_type: Optional[str], resource_id: Optional[Any]) -> Tuple[Optional[str], Optional[str]]:
    """
    Blank scope fields mean wildcard (None). A literal "*" is rejected so it
    cannot be mistaken for the wildcard.
    """
    scope = []
    for field, value in (("resource_type", resource_type), ("resource_id", resource_id)):
        if value is not None:
            value = str(value).strip() or None
        if value == WILDCARD:
            raise ValidationError(f"{field} cannot be the wildcard literal; omit it instead", {field: value})
        scope.append(value)
    return scope[0], scope[1]


def _active(now: datetime):
    return or_(PermissionGrant.expires_at.is_(None), PermissionGrant.expires_at > now)


def _insert_for(db: AsyncSession):
    if dialect_name(db) == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def grant(
    db: AsyncSession,
    user_id: int,
    permission: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    granted_by: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> PermissionGrant:
    """
    Grant (or re-grant) a permission.

    Upserts on (user_id, permission, scope); a re-grant refreshes granted_at,
    granted_by and expires_at instead of creating a second row.
    """
    if not (permission or "").strip():
        raise ValidationError("Permission name is required", {"missing": ["permission"]})
    resource_type, resource_id = normalize_scope(resource_type, resource_id)
    if resource_id is not None and resource_type is None:
        raise ValidationError("resource_id requires resource_type", {"resource_id": resource_id})

    now = resolve_now(now)
    key = scope_key(resource_type, resource_id)
    values = dict(
        user_id=user_id,
        permission=permission,
        resource_type=resource_type,
        resource_id=resource_id,
        scope_key=key,
        granted_by=granted_by,
        granted_at=now,
        expires_at=resolve_now(expires_at) if expires_at else None,
    )

    insert = _insert_for(db)
    stmt = insert(PermissionGrant).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "permission", "scope_key"],
        set_={
            "granted_by": stmt.excluded.granted_by,
            "granted_at": stmt.excluded.granted_at,
            "expires_at": stmt.excluded.expires_at,
        },
    )

    with storage_errors("permission.grant"):
        await db.execute(stmt)
        row = (await db.execute(
            select(PermissionGrant)
            .where(
                PermissionGrant.user_id == user_id,
                PermissionGrant.permission == permission,
                PermissionGrant.scope_key == key,
            )
            .execution_options(populate_existing=True)
        )).scalar_one()
        if commit:
            await db.commit()
        else:
            await db.flush()

    logger.info(
        "Permission granted",
        extra={"user_id": user_id, "permission": permission, "scope": key, "granted_by": granted_by},
    )
    return row


async def revoke(
    db: AsyncSession,
    user_id: int,
    permission: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    commit: bool = True,
) -> bool:
    """Remove the grant with exactly this scope. Returns False when there was none."""
    resource_type, resource_id = normalize_scope(resource_type, resource_id)
    key = scope_key(resource_type, resource_id)
    stmt = delete(PermissionGrant).where(
        PermissionGrant.user_id == user_id,
        PermissionGrant.permission == permission,
        PermissionGrant.scope_key == key,
    ).execution_options(synchronize_session=False)

    with storage_errors("permission.revoke"):
        result = await db.execute(stmt)
        if commit:
            await db.commit()

    removed = result.rowcount > 0
    if removed:
        logger.info("Permission revoked", extra={"user_id": user_id, "permission": permission, "scope": key})
    return removed


async def check(
    db: AsyncSession,
    user_id: int,
    permission: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[Any] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    True iff an active grant covers the request.

    A grant covers it when its resource_type is NULL or equal and its
    resource_id is NULL or equal. Expired grants never match.
    """
    resource_type, resource_id = normalize_scope(resource_type, resource_id)
    now = resolve_now(now)
    conditions = [
        PermissionGrant.user_id == user_id,
        PermissionGrant.permission == permission,
        _active(now),
    ]
    if resource_type is None:
        conditions.append(PermissionGrant.resource_type.is_(None))
    else:
        conditions.append(or_(PermissionGrant.resource_type.is_(None), PermissionGrant.resource_type == resource_type))
    if resource_id is None:
        conditions.append(PermissionGrant.resource_id.is_(None))
    else:
        conditions.append(or_(PermissionGrant.resource_id.is_(None), PermissionGrant.resource_id == resource_id))

    query = select(PermissionGrant.id).where(*conditions).limit(1)
    with storage_errors("permission.check"):
        found = (await db.execute(query)).scalar()
    return found is not None


async def list_active(db: AsyncSession, user_id: int, now: Optional[datetime] = None) -> List[PermissionGrant]:
    """A user's unexpired grants, by permission then scope."""
    query = (
        select(PermissionGrant)
        .where(PermissionGrant.user_id == user_id, _active(resolve_now(now)))
        .order_by(PermissionGrant.permission, PermissionGrant.scope_key)
    )
    with storage_errors("permission.list_active"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def prune_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Delete expired grants. Returns the number removed."""
    stmt = delete(PermissionGrant).where(
        PermissionGrant.expires_at.is_not(None),
        PermissionGrant.expires_at <= resolve_now(now),
    ).execution_options(synchronize_session=False)

    with storage_errors("permission.prune"):
        result = await db.execute(stmt)
        await db.commit()

    if result.rowcount:
        logger.info("Expired permissions pruned", extra={"count": result.rowcount})
    return result.rowcount
