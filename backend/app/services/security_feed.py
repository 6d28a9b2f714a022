"""
Security feed service.

Raising, querying and resolving flagged security events.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, List

from sqlalchemy import select, update, func, case, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import resolve_now
from backend.app.core.config import settings
from backend.app.core.exceptions import ResourceNotFoundError, ValidationError
from backend.app.db.session import storage_errors
from backend.app.models.enums import Severity, ResolveOutcome, SEVERITY_RANK
from backend.app.models.security_event import SecurityEvent
from backend.app.schemas.security import SecurityEventCreate

logger = logging.getLogger("marketplace_admin.security")


class SecurityEventType:
    FAILED_LOGIN = "failed_login"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    UNUSUAL_LOCATION = "unusual_location"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


# Rank expression so severity sorts by its total order, not alphabetically
severity_rank = case(
    {severity.value: rank for severity, rank in SEVERITY_RANK.items()},
    value=SecurityEvent.severity,
    else_=-1,
)


async def raise_event(
    db: AsyncSession,
    event: SecurityEventCreate,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> SecurityEvent:
    """
    Record a security event. Events always start unresolved.

    Args:
        db: Database session
        event: Event details
        now: Creation time (defaults to the wall clock)
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        The stored SecurityEvent
    """
    if not (event.type or "").strip():
        raise ValidationError("Security event type is required", {"missing": ["type"]})

    severity = Severity(event.severity)
    row = SecurityEvent(
        subject_id=event.subject_id,
        type=event.type.strip(),
        severity=severity.value,
        description=event.description,
        origin_ip=event.origin_ip,
        user_agent=event.user_agent,
        meta_data=event.metadata or {},
        resolved=False,
        created_at=resolve_now(now),
    )

    with storage_errors("security.raise"):
        db.add(row)
        if commit:
            await db.commit()
        else:
            await db.flush()

    context = {
        "security_event_id": row.id,
        "event_type": row.type,
        "severity": row.severity,
        "subject_id": row.subject_id,
        "origin_ip": row.origin_ip,
    }
    if severity == Severity.CRITICAL:
        logger.error("CRITICAL security event", extra={**context, "description": row.description})
    else:
        logger.warning("Security event raised", extra=context)
    return row


async def resolve(
    db: AsyncSession,
    event_id: int,
    resolved_by: int,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ResolveOutcome:
    """
    Mark an event resolved, exactly once.

    The transition is a single conditional UPDATE, so a second resolve (even a
    concurrent one) leaves resolved_at untouched and reports ALREADY_RESOLVED.

    Raises:
        ResourceNotFoundError: no event with that id
    """
    stmt = (
        update(SecurityEvent)
        .where(SecurityEvent.id == event_id, SecurityEvent.resolved.is_(False))
        .values(resolved=True, resolved_by=resolved_by, resolved_at=resolve_now(now))
        .execution_options(synchronize_session=False)
    )

    with storage_errors("security.resolve"):
        result = await db.execute(stmt)

        if result.rowcount == 0:
            exists = (await db.execute(select(SecurityEvent.id).where(SecurityEvent.id == event_id))).scalar()
            if exists is None:
                raise ResourceNotFoundError("Security event", event_id)
            return ResolveOutcome.ALREADY_RESOLVED

        if notes:
            row = (await db.execute(
                select(SecurityEvent)
                .where(SecurityEvent.id == event_id)
                .execution_options(populate_existing=True)
            )).scalar_one()
            row.meta_data = {**(row.meta_data or {}), "resolution_notes": notes}

        if commit:
            await db.commit()
        else:
            await db.flush()

    logger.info("Security event resolved", extra={"security_event_id": event_id, "resolved_by": resolved_by})
    return ResolveOutcome.RESOLVED


async def get_event(db: AsyncSession, event_id: int) -> SecurityEvent:
    with storage_errors("security.get"):
        row = (await db.execute(
            select(SecurityEvent).where(SecurityEvent.id == event_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
    if row is None:
        raise ResourceNotFoundError("Security event", event_id)
    return row


async def unresolved(
    db: AsyncSession,
    min_severity: Severity = Severity.LOW,
    limit: Optional[int] = None,
) -> List[SecurityEvent]:
    """Open events at or above a severity: most severe first, then oldest first."""
    levels = [s.value for s in Severity(min_severity).at_least()]
    query = (
        select(SecurityEvent)
        .where(SecurityEvent.resolved.is_(False), SecurityEvent.severity.in_(levels))
        .order_by(desc(severity_rank), SecurityEvent.created_at, SecurityEvent.id)
    )
    if limit:
        query = query.limit(limit)

    with storage_errors("security.unresolved"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def banner(db: AsyncSession, limit: Optional[int] = None) -> List[SecurityEvent]:
    """Open events severe enough for the admin banner (high and above)."""
    return await unresolved(db, min_severity=Severity.HIGH, limit=limit)


async def recent(
    db: AsyncSession,
    since: datetime,
    severity: Optional[Severity] = None,
    resolved: Optional[bool] = None,
    subject_id: Optional[int] = None,
    type: Optional[str] = None,
    limit: int = 100,
) -> List[SecurityEvent]:
    """Events since a point in time, newest first, with optional filters."""
    query = select(SecurityEvent).where(SecurityEvent.created_at >= resolve_now(since))
    if severity is not None:
        query = query.where(SecurityEvent.severity == Severity(severity).value)
    if resolved is not None:
        query = query.where(SecurityEvent.resolved.is_(resolved))
    if subject_id is not None:
        query = query.where(SecurityEvent.subject_id == subject_id)
    if type:
        query = query.where(SecurityEvent.type == type)
    query = query.order_by(desc(SecurityEvent.created_at), desc(SecurityEvent.id)).limit(limit)

    with storage_errors("security.recent"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def count_recent_failed_logins(db: AsyncSession, origin_ip: str, since: datetime) -> int:
    query = select(func.count(SecurityEvent.id)).where(
        SecurityEvent.type == SecurityEventType.FAILED_LOGIN,
        SecurityEvent.origin_ip == origin_ip,
        SecurityEvent.created_at >= since,
    )
    with storage_errors("security.count_failed_logins"):
        return (await db.execute(query)).scalar() or 0


async def record_failed_login(
    db: AsyncSession,
    email: str,
    origin_ip: str,
    user_agent: Optional[str] = None,
    reason: str = "invalid_credentials",
    now: Optional[datetime] = None,
) -> SecurityEvent:
    """
    Record a failed login.

    Escalates to HIGH when the same IP already reached the brute-force
    threshold within the configured window; LOW otherwise.
    """
    now = resolve_now(now)
    window_start = now - timedelta(minutes=settings.brute_force_window_minutes)
    failures = await count_recent_failed_logins(db, origin_ip, window_start)
    severity = Severity.HIGH if failures >= settings.brute_force_threshold else Severity.LOW

    return await raise_event(
        db,
        SecurityEventCreate(
            type=SecurityEventType.FAILED_LOGIN,
            severity=severity,
            description=f"Failed login attempt for email: {email}. Reason: {reason}",
            origin_ip=origin_ip,
            user_agent=user_agent,
            metadata={"email": email, "reason": reason, "failure_count": failures + 1},
        ),
        now=now,
    )


async def record_permission_denied(
    db: AsyncSession,
    user_id: int,
    permission: str,
    resource: Optional[str] = None,
    origin_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SecurityEvent:
    """Record a refused permission check (MEDIUM)."""
    return await raise_event(
        db,
        SecurityEventCreate(
            type=SecurityEventType.PERMISSION_DENIED,
            severity=Severity.MEDIUM,
            subject_id=user_id,
            description=f"User {user_id} denied {permission} on {resource or '*'}",
            origin_ip=origin_ip,
            user_agent=user_agent,
            metadata={"permission": permission, "resource": resource},
        ),
        now=now,
    )
