"""
Metric aggregation service.

Pre-aggregates per-day metrics from the event store, the audit log and the
security feed into analytics_daily. Every recompute reads source data for the
whole UTC day and replaces the stored value, so re-running a day (late
events, retries, out-of-order jobs) always converges on the same row.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple, Callable, Awaitable, FrozenSet

from sqlalchemy import select, func, distinct
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import resolve_now, day_bounds
from backend.app.core.config import settings
from backend.app.core.exceptions import ValidationError
from backend.app.db.session import storage_errors, dialect_name
from backend.app.models.audit_log import AuditEntry
from backend.app.models.daily_metric import DailyMetric
from backend.app.models.enums import Severity
from backend.app.models.event import Event
from backend.app.models.security_event import SecurityEvent
from backend.app.schemas.analytics import KPI, MetricPoint, RecomputeResult
from backend.app.services.event_store import EventType

logger = logging.getLogger("marketplace_admin.metrics")


class MetricName:
    DAU = "dau"
    LOGINS = "logins"
    PRODUCT_VIEWS = "product_views"
    SEARCH_QUERIES = "search_queries"
    UNIQUE_SEARCHERS = "unique_searchers"
    MESSAGES_SENT = "messages_sent"
    NEW_FAVORITES = "new_favorites"
    EVENTS_TOTAL = "events_total"
    SECURITY_EVENTS = "security_events"
    ADMIN_ACTIONS = "admin_actions"
    VIEW_TO_MESSAGE_RATE = "view_to_message_rate"


def normalize_dimensions(dimensions: Optional[Dict[str, Any]]) -> Tuple[Dict[str, str], str]:
    """
    Canonical form of a dimensions mapping.

    Keys and values become strings, None values are dropped, and the key is
    JSON with sorted keys and compact separators, so equal mappings produce
    the same key whatever their insertion order.
    """
    dims = {str(k): str(v) for k, v in (dimensions or {}).items() if v is not None}
    key = json.dumps(dims, sort_keys=True, separators=(",", ":"))
    return dims, key


Computer = Callable[[AsyncSession, datetime, datetime, Dict[str, str]], Awaitable[float]]


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    compute: Computer
    dimensions: FrozenSet[str] = frozenset()
    derived: bool = False


def _events_in(start: datetime, end: datetime):
    return (Event.occurred_at >= start, Event.occurred_at < end)


async def _scalar(db: AsyncSession, query) -> float:
    with storage_errors("metric.compute"):
        return float((await db.execute(query)).scalar() or 0)


def _count_type(event_type: str) -> Computer:
    async def compute(db, start, end, dims):
        return await _scalar(db, select(func.count(Event.id)).where(Event.type == event_type, *_events_in(start, end)))
    return compute


def _distinct_actors(event_type: Optional[str] = None) -> Computer:
    async def compute(db, start, end, dims):
        conditions = [Event.actor_id.is_not(None), *_events_in(start, end)]
        if event_type:
            conditions.append(Event.type == event_type)
        return await _scalar(db, select(func.count(distinct(Event.actor_id))).where(*conditions))
    return compute


async def _events_total(db, start, end, dims):
    query = select(func.count(Event.id)).where(*_events_in(start, end))
    if "category" in dims:
        query = query.where(Event.category == dims["category"])
    if "type" in dims:
        query = query.where(Event.type == dims["type"])
    return await _scalar(db, query)


async def _security_events(db, start, end, dims):
    query = select(func.count(SecurityEvent.id)).where(
        SecurityEvent.created_at >= start, SecurityEvent.created_at < end
    )
    if "severity" in dims:
        query = query.where(SecurityEvent.severity == dims["severity"])
    return await _scalar(db, query)


async def _admin_actions(db, start, end, dims):
    query = select(func.count(AuditEntry.id)).where(AuditEntry.created_at >= start, AuditEntry.created_at < end)
    if "action" in dims:
        query = query.where(AuditEntry.action == dims["action"])
    return await _scalar(db, query)


async def _view_to_message_rate(db, start, end, dims):
    views = await _count_type(EventType.PRODUCT_VIEW)(db, start, end, {})
    if views == 0:
        return 0.0
    messages = await _count_type(EventType.MESSAGE_SEND)(db, start, end, {})
    return round(messages / views * 100, 2)


# Base metrics first; derived metrics last.
METRICS: Dict[str, MetricDefinition] = {
    d.name: d for d in [
        MetricDefinition(MetricName.DAU, _distinct_actors()),
        MetricDefinition(MetricName.LOGINS, _count_type(EventType.USER_LOGIN)),
        MetricDefinition(MetricName.PRODUCT_VIEWS, _count_type(EventType.PRODUCT_VIEW)),
        MetricDefinition(MetricName.SEARCH_QUERIES, _count_type(EventType.SEARCH_QUERY)),
        MetricDefinition(MetricName.UNIQUE_SEARCHERS, _distinct_actors(EventType.SEARCH_QUERY)),
        MetricDefinition(MetricName.MESSAGES_SENT, _count_type(EventType.MESSAGE_SEND)),
        MetricDefinition(MetricName.NEW_FAVORITES, _count_type(EventType.FAVORITE_ADD)),
        MetricDefinition(MetricName.EVENTS_TOTAL, _events_total, frozenset({"category", "type"})),
        MetricDefinition(MetricName.SECURITY_EVENTS, _security_events, frozenset({"severity"})),
        MetricDefinition(MetricName.ADMIN_ACTIONS, _admin_actions, frozenset({"action"})),
        MetricDefinition(MetricName.VIEW_TO_MESSAGE_RATE, _view_to_message_rate, derived=True),
    ]
}


def tracked_metrics() -> List[str]:
    """Tracked metric names, base metrics before derived ones."""
    return [d.name for d in METRICS.values() if not d.derived] + [d.name for d in METRICS.values() if d.derived]


def get_definition(metric_name: str, dimensions: Dict[str, str]) -> MetricDefinition:
    definition = METRICS.get(metric_name)
    if definition is None:
        raise ValidationError(f"Unknown metric: {metric_name}", {"metric_name": metric_name})

    unsupported = sorted(set(dimensions) - definition.dimensions)
    if unsupported:
        raise ValidationError(
            f"Unsupported dimensions for {metric_name}",
            {"metric_name": metric_name, "unsupported": unsupported, "supported": sorted(definition.dimensions)},
        )
    if "severity" in dimensions:
        try:
            Severity(dimensions["severity"])
        except ValueError:
            raise ValidationError("Unknown severity", {"severity": dimensions["severity"]}) from None
    return definition


def _insert_for(db: AsyncSession):
    if dialect_name(db) == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def _upsert(
    db: AsyncSession,
    day: date,
    metric_name: str,
    dims: Dict[str, str],
    key: str,
    value: float,
    now: datetime,
) -> None:
    insert = _insert_for(db)
    stmt = insert(DailyMetric).values(
        date=day,
        metric_name=metric_name,
        dimensions=dims,
        dimensions_key=key,
        value=value,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["date", "metric_name", "dimensions_key"],
        set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
    )
    with storage_errors("metric.upsert"):
        await db.execute(stmt)


async def recompute(
    db: AsyncSession,
    day: date,
    metric_name: str,
    dimensions: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> float:
    """
    Recompute one metric for one UTC day and store it.

    The stored row is replaced, never incremented, so calling this twice with
    unchanged source data leaves one row with the same value.

    Args:
        db: Database session
        day: Calendar day (UTC)
        metric_name: A tracked metric name
        dimensions: Optional breakdown, restricted to the metric's dimensions
        now: Write time (defaults to the wall clock)
        commit: Commit immediately

    Returns:
        The computed value

    Raises:
        ValidationError: unknown metric or unsupported dimension
        StorageUnavailable: the store could not be reached
    """
    dims, key = normalize_dimensions(dimensions)
    definition = get_definition(metric_name, dims)
    start, end = day_bounds(day)

    value = await definition.compute(db, start, end, dims)
    await _upsert(db, day, metric_name, dims, key, value, resolve_now(now))

    if commit:
        with storage_errors("metric.commit"):
            await db.commit()

    logger.debug("Metric recomputed", extra={"date": day.isoformat(), "metric": metric_name, "dims": key, "value": value})
    return value


async def breakdowns(db: AsyncSession, day: date) -> List[Tuple[str, Dict[str, str]]]:
    """Dimensioned (metric, dimensions) pairs that have source data on a day."""
    start, end = day_bounds(day)
    with storage_errors("metric.breakdowns"):
        event_pairs = await db.execute(
            select(Event.category, Event.type).where(*_events_in(start, end))
            .group_by(Event.category, Event.type).order_by(Event.category, Event.type)
        )
        severities = await db.execute(
            select(SecurityEvent.severity).where(SecurityEvent.created_at >= start, SecurityEvent.created_at < end)
            .group_by(SecurityEvent.severity).order_by(SecurityEvent.severity)
        )
        actions = await db.execute(
            select(AuditEntry.action).where(AuditEntry.created_at >= start, AuditEntry.created_at < end)
            .group_by(AuditEntry.action).order_by(AuditEntry.action)
        )

    pairs: List[Tuple[str, Dict[str, str]]] = []
    for row in event_pairs:
        pairs.append((MetricName.EVENTS_TOTAL, {"category": row.category}))
        pairs.append((MetricName.EVENTS_TOTAL, {"category": row.category, "type": row.type}))
    pairs.extend((MetricName.SECURITY_EVENTS, {"severity": row.severity}) for row in severities)
    pairs.extend((MetricName.ADMIN_ACTIONS, {"action": row.action}) for row in actions)

    # a category with several types shows up once per type
    unique = []
    seen = set()
    for name, dims in pairs:
        marker = (name, normalize_dimensions(dims)[1])
        if marker not in seen:
            seen.add(marker)
            unique.append((name, dims))
    return unique


async def aggregate_daily(db: AsyncSession, day: date, now: Optional[datetime] = None) -> List[RecomputeResult]:
    """Recompute every tracked metric for a day, plus dimensioned breakdowns."""
    logger.info("Aggregating daily metrics", extra={"date": day.isoformat()})
    results = []
    for name in tracked_metrics():
        value = await recompute(db, day, name, now=now, commit=False)
        results.append(RecomputeResult(date=day, metric_name=name, value=value))

    for name, dims in await breakdowns(db, day):
        value = await recompute(db, day, name, dims, now=now, commit=False)
        results.append(RecomputeResult(date=day, metric_name=name, dimensions=dims, value=value))

    with storage_errors("metric.commit"):
        await db.commit()
    return results


async def get_metric(
    db: AsyncSession,
    day: date,
    metric_name: str,
    dimensions: Optional[Dict[str, Any]] = None,
) -> Optional[DailyMetric]:
    _, key = normalize_dimensions(dimensions)
    query = select(DailyMetric).where(
        DailyMetric.date == day,
        DailyMetric.metric_name == metric_name,
        DailyMetric.dimensions_key == key,
    )
    with storage_errors("metric.get"):
        return (await db.execute(query)).scalar_one_or_none()


async def metric_series(
    db: AsyncSession,
    metric_name: str,
    start: date,
    end: date,
    dimensions: Optional[Dict[str, Any]] = None,
) -> List[MetricPoint]:
    """Stored values for [start, end], oldest first. Days never aggregated are absent."""
    _, key = normalize_dimensions(dimensions)
    query = (
        select(DailyMetric.date, DailyMetric.value)
        .where(
            DailyMetric.metric_name == metric_name,
            DailyMetric.dimensions_key == key,
            DailyMetric.date >= start,
            DailyMetric.date <= end,
        )
        .order_by(DailyMetric.date)
    )
    with storage_errors("metric.series"):
        rows = await db.execute(query)
    return [MetricPoint(date=row.date, value=row.value) for row in rows]


async def dashboard_kpis(db: AsyncSession, today: date, metric_names: Optional[List[str]] = None) -> List[KPI]:
    """Today's value of each metric against yesterday's; change is 0 when yesterday was 0."""
    names = metric_names or settings.dashboard_metrics
    yesterday = today - timedelta(days=1)
    _, key = normalize_dimensions(None)

    query = select(DailyMetric.date, DailyMetric.metric_name, DailyMetric.value).where(
        DailyMetric.metric_name.in_(names),
        DailyMetric.dimensions_key == key,
        DailyMetric.date.in_([today, yesterday]),
    )
    with storage_errors("metric.kpis"):
        rows = await db.execute(query)

    values = {(row.date, row.metric_name): row.value for row in rows}
    kpis = []
    for name in names:
        current = float(values.get((today, name), 0.0))
        previous = float(values.get((yesterday, name), 0.0))
        change = round((current - previous) / previous * 100, 2) if previous > 0 else 0.0
        kpis.append(KPI(metric_name=name, value=current, previous_value=previous, change_percent=change))
    return kpis
