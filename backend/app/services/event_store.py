"""
Event store service.

Append-only storage of user and system activity. Ingestion is best-effort:
the fire-and-forget path tolerates loss and duplication and never raises to
the user-facing caller.
"""

import logging
from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import resolve_now
from backend.app.core.exceptions import ValidationError, StorageUnavailable
from backend.app.core.reliability import ingestion_circuit_breaker, CircuitOpenError
from backend.app.db.session import AsyncSessionLocal, storage_errors
from backend.app.models.event import Event
from backend.app.schemas.events import EventCreate, EventTypeStats

logger = logging.getLogger("marketplace_admin.events")


class EventCategory:
    """Well-known event categories. Any non-empty string is accepted."""
    AUTH = "auth"
    PROFILE = "profile"
    PRODUCT = "product"
    MESSAGE = "message"
    FAVORITE = "favorite"
    SEARCH = "search"
    ADMIN = "admin"
    SYSTEM = "system"


class EventType:
    """Well-known event types, grouped by category."""
    # Auth
    USER_REGISTER = "user.register"
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    PASSWORD_RESET_REQUEST = "password.reset.request"
    PASSWORD_CHANGE = "password.change"
    EMAIL_VERIFY = "email.verify"

    # Profile
    PROFILE_VIEW = "profile.view"
    PROFILE_UPDATE = "profile.update"

    # Product
    PRODUCT_CREATE = "product.create"
    PRODUCT_VIEW = "product.view"
    PRODUCT_UPDATE = "product.update"
    PRODUCT_DELETE = "product.delete"

    # Messaging
    MESSAGE_SEND = "message.send"
    MESSAGE_READ = "message.read"

    # Favorites
    FAVORITE_ADD = "favorite.add"
    FAVORITE_REMOVE = "favorite.remove"

    # Search
    SEARCH_QUERY = "search.query"
    SEARCH_SAVE = "search.save"


def validate_event(event: EventCreate) -> None:
    """Reject events without a type or category."""
    missing = [name for name in ("type", "category") if not (getattr(event, name) or "").strip()]
    if missing:
        raise ValidationError("Event is missing required fields", {"missing": missing})


async def record(db: AsyncSession, event: EventCreate, now: Optional[datetime] = None) -> int:
    """
    Persist a single event.

    Args:
        db: Database session
        event: Event to store
        now: Ingestion time, used when the event carries no occurred_at

    Returns:
        The new event id

    Raises:
        ValidationError: type or category is empty
        StorageUnavailable: the store could not be reached
    """
    validate_event(event)

    row = Event(
        actor_id=event.actor_id,
        type=event.type.strip(),
        category=event.category.strip(),
        payload=event.payload or {},
        origin_ip=event.origin_ip,
        user_agent=event.user_agent,
        session_ref=event.session_ref,
        occurred_at=resolve_now(event.occurred_at or now),
    )

    with storage_errors("event.record"):
        db.add(row)
        await db.commit()

    logger.debug("Event recorded", extra={"event_type": row.type, "actor_id": row.actor_id})
    return row.id


async def track_event(
    event: EventCreate,
    session_factory: Optional[async_sessionmaker] = None,
) -> Optional[int]:
    """
    Fire-and-forget emission.

    Opens its own session and goes through the ingestion circuit breaker.
    Failures are logged and swallowed; returns None when the event was dropped.
    """
    try:
        validate_event(event)
    except ValidationError as exc:
        logger.warning("Dropping invalid event", extra={"details": exc.details})
        return None

    factory = session_factory or AsyncSessionLocal

    async def _write() -> int:
        async with factory() as db:
            return await record(db, event)

    try:
        return await ingestion_circuit_breaker.call(_write)
    except CircuitOpenError:
        logger.warning("Event dropped, ingestion circuit open", extra={"event_type": event.type})
    except StorageUnavailable as exc:
        logger.error("Failed to track event", extra={"event_type": event.type, "error": exc.message})
    return None


async def list_by_actor(
    db: AsyncSession,
    actor_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[Event]:
    """Activity timeline of one actor, newest first."""
    query = select(Event).where(Event.actor_id == actor_id)
    if start is not None:
        query = query.where(Event.occurred_at >= resolve_now(start))
    if end is not None:
        query = query.where(Event.occurred_at < resolve_now(end))
    query = query.order_by(desc(Event.occurred_at), desc(Event.id)).limit(limit)

    with storage_errors("event.list_by_actor"):
        result = await db.execute(query)
    return list(result.scalars().all())


async def count_by_type_and_window(db: AsyncSession, type: str, start: datetime, end: datetime) -> int:
    """Number of events of a type in the half-open window [start, end)."""
    query = select(func.count(Event.id)).where(
        Event.type == type,
        Event.occurred_at >= resolve_now(start),
        Event.occurred_at < resolve_now(end),
    )
    with storage_errors("event.count"):
        return (await db.execute(query)).scalar() or 0


async def event_stats(db: AsyncSession, start: datetime, end: datetime) -> List[EventTypeStats]:
    """Count and distinct actors per (category, type), busiest first."""
    count_col = func.count(Event.id).label("count")
    query = (
        select(
            Event.category,
            Event.type,
            count_col,
            func.count(func.distinct(Event.actor_id)).label("unique_actors"),
        )
        .where(Event.occurred_at >= resolve_now(start), Event.occurred_at < resolve_now(end))
        .group_by(Event.category, Event.type)
        .order_by(desc(count_col), Event.category, Event.type)
    )
    with storage_errors("event.stats"):
        rows = await db.execute(query)

    return [
        EventTypeStats(category=row.category, type=row.type, count=row.count, unique_actors=row.unique_actors)
        for row in rows
    ]
