"""
Admin session registry.

Issue, heartbeat and revoke admin sessions. Validity (not revoked and not
expired) is always evaluated in SQL against the stored row; there is no
in-process session cache.

Revocation and heartbeat are both single conditional UPDATE statements. The
heartbeat never writes `revoked`, so a cascade revoke cannot be undone by a
concurrent touch.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, List

from sqlalchemy import select, update, delete, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import resolve_now
from backend.app.core.config import settings
from backend.app.core.exceptions import SessionInvalid, ValidationError
from backend.app.db.session import storage_errors
from backend.app.models.admin_session import AdminSession

logger = logging.getLogger("marketplace_admin.sessions")

TOKEN_BYTES = 32


def _valid(now: datetime):
    return and_(AdminSession.revoked.is_(False), AdminSession.expires_at > now)


def _fingerprint(token: str) -> str:
    """Short token prefix for logs; the full token is never logged."""
    return (token or "")[:8]


async def issue(
    db: AsyncSession,
    user_id: int,
    origin_ip: str,
    user_agent: Optional[str] = None,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> AdminSession:
    """
    Open a new admin session with an opaque random token.

    Args:
        db: Database session
        user_id: Admin user id
        origin_ip: Client address
        user_agent: Client user agent
        ttl: Lifetime (defaults to admin_session_ttl_minutes)
        now: Issue time (defaults to the wall clock)

    Returns:
        The stored AdminSession, token included
    """
    if not origin_ip:
        raise ValidationError("origin_ip is required", {"missing": ["origin_ip"]})

    now = resolve_now(now)
    if ttl is None:
        ttl = timedelta(minutes=settings.admin_session_ttl_minutes)
    if ttl <= timedelta(0):
        raise ValidationError("Session ttl must be positive", {"ttl_seconds": ttl.total_seconds()})

    session = AdminSession(
        user_id=user_id,
        token=secrets.token_urlsafe(TOKEN_BYTES),
        origin_ip=origin_ip,
        user_agent=user_agent,
        issued_at=now,
        last_activity_at=now,
        expires_at=now + ttl,
        revoked=False,
    )

    with storage_errors("session.issue"):
        db.add(session)
        await db.commit()

    logger.info("Admin session issued", extra={"user_id": user_id, "session_id": session.id, "origin_ip": origin_ip})
    return session


async def touch(db: AsyncSession, token: str, now: Optional[datetime] = None) -> None:
    """
    Heartbeat: bump last_activity_at on a valid session.

    Raises:
        SessionInvalid: the session is unknown, revoked or expired
    """
    now = resolve_now(now)
    stmt = (
        update(AdminSession)
        .where(AdminSession.token == token, _valid(now))
        .values(last_activity_at=now)
        .execution_options(synchronize_session=False)
    )

    with storage_errors("session.touch"):
        result = await db.execute(stmt)
        await db.commit()

    if result.rowcount == 0:
        logger.info("Rejected invalid admin session", extra={"token_prefix": _fingerprint(token)})
        raise SessionInvalid()


async def revoke(
    db: AsyncSession,
    token: str,
    revoked_by: Optional[int],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> bool:
    """
    Revoke one session. Only the first revoke takes effect.

    Returns:
        True if this call revoked it; False if already revoked or unknown
    """
    stmt = (
        update(AdminSession)
        .where(AdminSession.token == token, AdminSession.revoked.is_(False))
        .values(revoked=True, revoked_at=resolve_now(now), revoked_by=revoked_by, revoke_reason=reason)
        .execution_options(synchronize_session=False)
    )

    with storage_errors("session.revoke"):
        result = await db.execute(stmt)
        if commit:
            await db.commit()

    revoked = result.rowcount > 0
    if revoked:
        logger.info("Admin session revoked", extra={"token_prefix": _fingerprint(token), "revoked_by": revoked_by})
    return revoked


async def revoke_all(
    db: AsyncSession,
    user_id: int,
    revoked_by: Optional[int],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    """
    Cascade revoke: every currently valid session of a user, in one UPDATE.

    Returns:
        Number of sessions revoked
    """
    now = resolve_now(now)
    stmt = (
        update(AdminSession)
        .where(AdminSession.user_id == user_id, _valid(now))
        .values(revoked=True, revoked_at=now, revoked_by=revoked_by, revoke_reason=reason)
        .execution_options(synchronize_session=False)
    )

    with storage_errors("session.revoke_all"):
        result = await db.execute(stmt)
        if commit:
            await db.commit()

    logger.info(
        "Admin sessions revoked for user",
        extra={"user_id": user_id, "count": result.rowcount, "revoked_by": revoked_by},
    )
    return result.rowcount


async def get_valid(db: AsyncSession, token: str, now: Optional[datetime] = None) -> Optional[AdminSession]:
    """The session row if it is currently valid, else None."""
    if not token:
        return None
    query = (
        select(AdminSession)
        .where(AdminSession.token == token, _valid(resolve_now(now)))
        .execution_options(populate_existing=True)
    )
    with storage_errors("session.get_valid"):
        return (await db.execute(query)).scalar_one_or_none()


async def find_by_token(db: AsyncSession, token: str) -> Optional[AdminSession]:
    """The session row for a token, valid or not."""
    if not token:
        return None
    query = select(AdminSession).where(AdminSession.token == token).execution_options(populate_existing=True)
    with storage_errors("session.find"):
        return (await db.execute(query)).scalar_one_or_none()


async def is_valid(db: AsyncSession, token: str, now: Optional[datetime] = None) -> bool:
    return await get_valid(db, token, now) is not None


async def list_active(db: AsyncSession, user_id: int, now: Optional[datetime] = None) -> List[AdminSession]:
    """Currently valid sessions of a user, most recently active first."""
    query = (
        select(AdminSession)
        .where(AdminSession.user_id == user_id, _valid(resolve_now(now)))
        .order_by(AdminSession.last_activity_at.desc(), AdminSession.id.desc())
        .execution_options(populate_existing=True)
    )
    with storage_errors("session.list_active"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def prune_expired(db: AsyncSession, older_than: timedelta, now: Optional[datetime] = None) -> int:
    """Delete sessions that expired, or were revoked, before now - older_than."""
    cutoff = resolve_now(now) - older_than
    stmt = delete(AdminSession).where(
        or_(
            AdminSession.expires_at < cutoff,
            and_(AdminSession.revoked.is_(True), AdminSession.revoked_at < cutoff),
        )
    ).execution_options(synchronize_session=False)

    with storage_errors("session.prune"):
        result = await db.execute(stmt)
        await db.commit()

    if result.rowcount:
        logger.info("Stale admin sessions pruned", extra={"count": result.rowcount})
    return result.rowcount
