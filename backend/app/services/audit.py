"""
Audit logging service for admin actions.

Every mutating admin action writes an entry inside the same transaction as the
mutation itself. If the entry cannot be written the mutation is rolled back.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Union

from sqlalchemy import select, func, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import resolve_now
from backend.app.core.exceptions import ValidationError
from backend.app.db.session import storage_errors
from backend.app.models.audit_log import AuditEntry
from backend.app.models.enums import TargetType
from backend.app.schemas.audit import (
    AuditSearchFilters, AuditStatsResponse, AuditActionCount, AuditActorCount, AuditDayCount,
)

logger = logging.getLogger("marketplace_admin.audit")


# Audit action constants
class AdminAction:
    """Standardized admin action names, in noun.verb form."""
    USER_SUSPEND = "user.suspend"
    USER_UNSUSPEND = "user.unsuspend"
    USER_BAN = "user.ban"
    USER_UNBAN = "user.unban"
    USER_DELETE = "user.delete"
    USER_VERIFY = "user.verify"
    ROLE_CHANGE = "role.change"

    PRODUCT_DELETE = "product.delete"
    PRODUCT_BULK_DELETE = "product.bulk_delete"
    PRODUCT_APPROVE = "product.approve"
    PRODUCT_REJECT = "product.reject"

    MESSAGE_DELETE = "message.delete"
    MESSAGE_BULK_DELETE = "message.bulk_delete"

    CATEGORY_CREATE = "category.create"
    CATEGORY_UPDATE = "category.update"
    CATEGORY_DELETE = "category.delete"

    SETTING_UPDATE = "setting.update"

    FEATURE_FLAG_TOGGLE = "feature_flag.toggle"
    FEATURE_FLAG_UPDATE = "feature_flag.update"

    PERMISSION_GRANT = "permission.grant"
    PERMISSION_REVOKE = "permission.revoke"

    SECURITY_EVENT_RESOLVE = "security_event.resolve"

    SESSION_REVOKE = "admin_session.revoke"
    SESSION_REVOKE_ALL = "admin_session.revoke_all"

    METRIC_RECOMPUTE = "metric.recompute"


DESTRUCTIVE_ACTIONS = frozenset({
    AdminAction.USER_SUSPEND,
    AdminAction.USER_BAN,
    AdminAction.USER_DELETE,
    AdminAction.ROLE_CHANGE,
    AdminAction.PRODUCT_DELETE,
    AdminAction.PRODUCT_BULK_DELETE,
    AdminAction.MESSAGE_DELETE,
    AdminAction.MESSAGE_BULK_DELETE,
    AdminAction.CATEGORY_DELETE,
})

DESTRUCTIVE_VERBS = frozenset({"suspend", "ban", "delete", "bulk_delete"})

SENSITIVE_KEYS = frozenset({
    "password",
    "password_hash",
    "passwordhash",
    "token",
    "access_token",
    "refresh_token",
    "api_key",
    "secret",
    "session_token",
})

REDACTED = "[REDACTED]"

_ACTION_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")


def is_destructive(action: str) -> bool:
    """Destructive actions require a reason."""
    return action in DESTRUCTIVE_ACTIONS or action.rsplit(".", 1)[-1] in DESTRUCTIVE_VERBS


def sanitize_state(state: Any) -> Any:
    """Replace sensitive values with a marker, recursively through dicts and lists."""
    if isinstance(state, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else sanitize_state(value)
            for key, value in state.items()
        }
    if isinstance(state, (list, tuple)):
        return [sanitize_state(item) for item in state]
    return state


@dataclass(frozen=True)
class AuditTarget:
    """
    What an admin action affected: a known kind plus an optional identifier.
    """
    kind: TargetType
    id: Optional[str] = None

    def __post_init__(self):
        try:
            kind = TargetType(self.kind)
        except ValueError:
            raise ValidationError(f"Unknown audit target kind: {self.kind}", {"target_type": str(self.kind)})
        object.__setattr__(self, "kind", kind)
        if self.id is not None:
            object.__setattr__(self, "id", str(self.id))

    @classmethod
    def of(cls, kind: Union[TargetType, str], id: Any = None) -> "AuditTarget":
        return cls(kind=kind, id=None if id is None else str(id))


@dataclass
class AuditEntryCreate:
    """An audit entry about to be appended."""
    actor_id: Optional[int]
    action: Optional[str]
    target: Optional[AuditTarget]
    origin_ip: Optional[str]
    user_agent: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def validate_entry(entry: AuditEntryCreate) -> None:
    """
    Check an entry before anything is written.

    Raises:
        ValidationError: a required field is missing, the action is malformed,
            or a destructive action has no reason
    """
    missing = []
    if entry.actor_id is None:
        missing.append("actor_id")
    if not entry.action:
        missing.append("action")
    if entry.target is None:
        missing.append("target")
    if not entry.origin_ip:
        missing.append("origin_ip")
    if missing:
        raise ValidationError("Audit entry is missing required fields", {"missing": missing})

    if not _ACTION_RE.match(entry.action):
        raise ValidationError(f"Malformed audit action: {entry.action}", {"action": entry.action})

    if not isinstance(entry.target, AuditTarget):
        raise ValidationError("Audit target must be an AuditTarget", {"target": repr(entry.target)})

    if is_destructive(entry.action) and not (entry.reason or "").strip():
        raise ValidationError(
            f"A reason is required for {entry.action}",
            {"action": entry.action, "missing": ["reason"]},
        )


async def append(db: AsyncSession, entry: AuditEntryCreate, now: Optional[datetime] = None) -> AuditEntry:
    """
    Append an audit entry to the caller's transaction.

    The insert is flushed but never committed here; the caller's commit makes
    the mutation and its audit entry durable together.

    Args:
        db: Database session holding the admin action's transaction
        entry: Entry to append
        now: Creation time (defaults to the wall clock)

    Returns:
        The flushed AuditEntry, with its id assigned

    Raises:
        ValidationError: see validate_entry; nothing is written
        StorageUnavailable: the store could not be reached
    """
    validate_entry(entry)

    audit_entry = AuditEntry(
        actor_id=entry.actor_id,
        action=entry.action,
        target_type=entry.target.kind.value,
        target_id=entry.target.id,
        before_state=sanitize_state(entry.before_state),
        after_state=sanitize_state(entry.after_state),
        reason=entry.reason,
        origin_ip=entry.origin_ip,
        user_agent=entry.user_agent,
        meta_data=sanitize_state(entry.metadata or {}),
        created_at=resolve_now(now),
    )

    with storage_errors("audit.append"):
        db.add(audit_entry)
        await db.flush()

    logger.info(
        "Admin action audited",
        extra={
            "audit_id": audit_entry.id,
            "actor_id": audit_entry.actor_id,
            "action": audit_entry.action,
            "target": f"{audit_entry.target_type}:{audit_entry.target_id}",
        },
    )
    return audit_entry


class PendingAudit:
    """
    Handle yielded by audited_action.

    The handler fills in the target id and state snapshots while it performs
    its mutation. After the block, `entry` holds the appended AuditEntry.
    """

    def __init__(self, draft: AuditEntryCreate):
        self.draft = draft
        self.entry: Optional[AuditEntry] = None

    @property
    def target(self) -> AuditTarget:
        return self.draft.target

    @target.setter
    def target(self, value: AuditTarget):
        self.draft.target = value

    def set_before(self, state: Optional[Dict[str, Any]]):
        self.draft.before_state = state

    def set_after(self, state: Optional[Dict[str, Any]]):
        self.draft.after_state = state

    def add_metadata(self, **values):
        self.draft.metadata.update(values)


@asynccontextmanager
async def audited_action(
    db: AsyncSession,
    *,
    actor_id: int,
    action: str,
    target: AuditTarget,
    origin_ip: str,
    user_agent: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
):
    """
    Audit-before-commit wrapper for an admin mutation.

    Usage:
        async with audited_action(db, actor_id=..., action=AdminAction.USER_BAN, ...) as audit:
            audit.set_before(user.snapshot())
            ...mutate...
            audit.set_after(user.snapshot())

    The entry is validated before the block runs, appended after it, and then
    the transaction commits. Any exception rolls everything back and propagates.
    """
    pending = PendingAudit(AuditEntryCreate(
        actor_id=actor_id,
        action=action,
        target=target,
        origin_ip=origin_ip,
        user_agent=user_agent,
        reason=reason,
        metadata=dict(metadata or {}),
    ))
    validate_entry(pending.draft)

    try:
        yield pending
        pending.entry = await append(db, pending.draft, now=now)
        with storage_errors("audit.commit"):
            await db.commit()
    except Exception:
        logger.warning("Admin action rolled back", extra={"action": action, "actor_id": actor_id})
        await db.rollback()
        raise


async def tail(db: AsyncSession, limit: int = 50) -> List[AuditEntry]:
    """Most recent entries, newest first."""
    query = select(AuditEntry).order_by(desc(AuditEntry.created_at), desc(AuditEntry.id)).limit(limit)
    with storage_errors("audit.tail"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def by_target(db: AsyncSession, target: AuditTarget, limit: Optional[int] = None) -> List[AuditEntry]:
    """Full history of one target, newest first."""
    query = select(AuditEntry).where(AuditEntry.target_type == target.kind.value)
    if target.id is None:
        query = query.where(AuditEntry.target_id.is_(None))
    else:
        query = query.where(AuditEntry.target_id == target.id)
    query = query.order_by(desc(AuditEntry.created_at), desc(AuditEntry.id))
    if limit:
        query = query.limit(limit)

    with storage_errors("audit.by_target"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def by_actor(
    db: AsyncSession,
    actor_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[AuditEntry]:
    """Actions performed by one admin, newest first."""
    query = select(AuditEntry).where(AuditEntry.actor_id == actor_id)
    if start is not None:
        query = query.where(AuditEntry.created_at >= resolve_now(start))
    if end is not None:
        query = query.where(AuditEntry.created_at < resolve_now(end))
    query = query.order_by(desc(AuditEntry.created_at), desc(AuditEntry.id))
    if limit:
        query = query.limit(limit)

    with storage_errors("audit.by_actor"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def search(
    db: AsyncSession,
    filters: AuditSearchFilters,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[AuditEntry], int]:
    """
    Filtered, paginated audit search.

    Returns:
        (entries newest first, total matching count)
    """
    conditions = []
    if filters.action:
        conditions.append(AuditEntry.action == filters.action)
    if filters.target_type:
        conditions.append(AuditEntry.target_type == TargetType(filters.target_type).value)
    if filters.target_id:
        conditions.append(AuditEntry.target_id == filters.target_id)
    if filters.actor_id is not None:
        conditions.append(AuditEntry.actor_id == filters.actor_id)
    if filters.start:
        conditions.append(AuditEntry.created_at >= resolve_now(filters.start))
    if filters.end:
        conditions.append(AuditEntry.created_at < resolve_now(filters.end))
    if filters.text:
        pattern = f"%{filters.text}%"
        conditions.append(or_(AuditEntry.action.ilike(pattern), AuditEntry.reason.ilike(pattern)))

    count_query = select(func.count(AuditEntry.id)).where(*conditions)
    query = (
        select(AuditEntry)
        .where(*conditions)
        .order_by(desc(AuditEntry.created_at), desc(AuditEntry.id))
        .offset((page - 1) * page_size)
        .limit(page_size)
    )

    with storage_errors("audit.search"):
        total = (await db.execute(count_query)).scalar() or 0
        result = await db.execute(query)
    return list(result.scalars().all()), total


async def audit_stats(db: AsyncSession, since: datetime) -> AuditStatsResponse:
    """Admin activity since a point in time: by action, by admin, per day."""
    since = resolve_now(since)
    window = AuditEntry.created_at >= since
    count_col = func.count(AuditEntry.id).label("count")
    day_col = func.date(AuditEntry.created_at).label("day")

    with storage_errors("audit.stats"):
        total = (await db.execute(select(func.count(AuditEntry.id)).where(window))).scalar() or 0
        actions = await db.execute(
            select(AuditEntry.action, count_col).where(window)
            .group_by(AuditEntry.action).order_by(desc(count_col), AuditEntry.action)
        )
        actors = await db.execute(
            select(AuditEntry.actor_id, count_col).where(window)
            .group_by(AuditEntry.actor_id).order_by(desc(count_col), AuditEntry.actor_id)
        )
        days = await db.execute(
            select(day_col, count_col).where(window).group_by(day_col).order_by(day_col)
        )

    return AuditStatsResponse(
        since=since,
        total=total,
        by_action=[AuditActionCount(action=row.action, count=row.count) for row in actions],
        by_actor=[AuditActorCount(actor_id=row.actor_id, count=row.count) for row in actors],
        by_day=[AuditDayCount(date=str(row.day), count=row.count) for row in days],
    )
