"""
Metric aggregation tests.
"""

import pytest
from datetime import date, datetime, timedelta
from sqlalchemy import select, func

from backend.app.core.exceptions import ValidationError
from backend.app.models.daily_metric import DailyMetric
from backend.app.models.enums import Severity
from backend.app.schemas.events import EventCreate
from backend.app.schemas.security import SecurityEventCreate
from backend.app.services import event_store, metrics, security_feed
from backend.app.services.event_store import EventCategory, EventType
from backend.app.services.metrics import MetricName

DAY = date(2024, 3, 14)
NOON = datetime(2024, 3, 14, 12, 0, 0)


async def _emit(db, type, category, actor_id, at):
    await event_store.record(db, EventCreate(type=type, category=category, actor_id=actor_id, occurred_at=at))


async def _row_count(db) -> int:
    return (await db.execute(select(func.count(DailyMetric.id)))).scalar()


def test_dimension_key_ignores_order_and_none():
    _, first = metrics.normalize_dimensions({"type": "product.view", "category": "product"})
    _, second = metrics.normalize_dimensions({"category": "product", "type": "product.view", "action": None})
    assert first == second
    assert metrics.normalize_dimensions(None) == ({}, "{}")


def test_unknown_metric_and_dimension():
    with pytest.raises(ValidationError):
        metrics.get_definition("bounce_rate", {})
    with pytest.raises(ValidationError):
        metrics.get_definition(MetricName.DAU, {"category": "product"})
    with pytest.raises(ValidationError):
        metrics.get_definition(MetricName.SECURITY_EVENTS, {"severity": "apocalyptic"})


@pytest.mark.asyncio
async def test_recompute_is_idempotent(db_session, now):
    await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, 1, NOON)
    await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, 2, NOON)

    first = await metrics.recompute(db_session, DAY, MetricName.PRODUCT_VIEWS, now=now)
    second = await metrics.recompute(db_session, DAY, MetricName.PRODUCT_VIEWS, now=now)

    assert first == second == 2.0
    assert await _row_count(db_session) == 1


@pytest.mark.asyncio
async def test_late_event_replaces_value(db_session, now):
    await _emit(db_session, EventType.MESSAGE_SEND, EventCategory.MESSAGE, 1, NOON)
    await metrics.recompute(db_session, DAY, MetricName.MESSAGES_SENT, now=now)

    await _emit(db_session, EventType.MESSAGE_SEND, EventCategory.MESSAGE, 1, NOON + timedelta(hours=11))
    await metrics.recompute(db_session, DAY, MetricName.MESSAGES_SENT, now=now + timedelta(hours=1))

    row = await metrics.get_metric(db_session, DAY, MetricName.MESSAGES_SENT)
    await db_session.refresh(row)
    assert row.value == 2.0
    assert await _row_count(db_session) == 1


@pytest.mark.asyncio
async def test_day_boundaries_are_half_open(db_session, now):
    await _emit(db_session, EventType.USER_LOGIN, EventCategory.AUTH, 1, datetime(2024, 3, 14, 0, 0, 0))
    await _emit(db_session, EventType.USER_LOGIN, EventCategory.AUTH, 2, datetime(2024, 3, 15, 0, 0, 0))

    assert await metrics.recompute(db_session, DAY, MetricName.LOGINS, now=now) == 1.0


@pytest.mark.asyncio
async def test_dimension_order_hits_same_row(db_session, now):
    await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, 1, NOON)

    await metrics.recompute(
        db_session, DAY, MetricName.EVENTS_TOTAL, {"category": "product", "type": "product.view"}, now=now
    )
    await metrics.recompute(
        db_session, DAY, MetricName.EVENTS_TOTAL, {"type": "product.view", "category": "product"}, now=now
    )

    assert await _row_count(db_session) == 1


@pytest.mark.asyncio
async def test_dau_counts_distinct_actors(db_session, now):
    for actor in (1, 1, 2, None):
        await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, actor, NOON)

    assert await metrics.recompute(db_session, DAY, MetricName.DAU, now=now) == 2.0


@pytest.mark.asyncio
async def test_view_to_message_rate(db_session, now):
    assert await metrics.recompute(db_session, DAY, MetricName.VIEW_TO_MESSAGE_RATE, now=now) == 0.0

    for _ in range(3):
        await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, 1, NOON)
    await _emit(db_session, EventType.MESSAGE_SEND, EventCategory.MESSAGE, 1, NOON)

    assert await metrics.recompute(db_session, DAY, MetricName.VIEW_TO_MESSAGE_RATE, now=now) == 33.33


@pytest.mark.asyncio
async def test_aggregate_daily_includes_breakdowns(db_session, now):
    await _emit(db_session, EventType.PRODUCT_VIEW, EventCategory.PRODUCT, 1, NOON)
    await _emit(db_session, EventType.PRODUCT_CREATE, EventCategory.PRODUCT, 1, NOON)
    await security_feed.raise_event(
        db_session, SecurityEventCreate(type="suspicious_activity", severity=Severity.HIGH), now=NOON
    )

    results = await metrics.aggregate_daily(db_session, DAY, now=now)

    keyed = {(r.metric_name, metrics.normalize_dimensions(r.dimensions)[1]): r.value for r in results}
    assert keyed[(MetricName.EVENTS_TOTAL, "{}")] == 2.0
    assert keyed[(MetricName.EVENTS_TOTAL, '{"category":"product"}')] == 2.0
    assert keyed[(MetricName.EVENTS_TOTAL, '{"category":"product","type":"product.view"}')] == 1.0
    assert keyed[(MetricName.SECURITY_EVENTS, '{"severity":"high"}')] == 1.0
    assert all(r.ok for r in results)


@pytest.mark.asyncio
async def test_series_leaves_gaps(db_session, now):
    for offset in (0, 2):
        day = DAY + timedelta(days=offset)
        await _emit(db_session, EventType.USER_LOGIN, EventCategory.AUTH, 1, datetime(day.year, day.month, day.day, 9))
        await metrics.recompute(db_session, day, MetricName.LOGINS, now=now)

    points = await metrics.metric_series(db_session, MetricName.LOGINS, DAY, DAY + timedelta(days=2))

    assert [p.date for p in points] == [DAY, DAY + timedelta(days=2)]


@pytest.mark.asyncio
async def test_kpis_compare_with_previous_day(db_session, now):
    today = DAY + timedelta(days=1)
    for _ in range(2):
        await _emit(db_session, EventType.USER_LOGIN, EventCategory.AUTH, 1, NOON)
    for _ in range(3):
        await _emit(db_session, EventType.USER_LOGIN, EventCategory.AUTH, 1, NOON + timedelta(days=1))
    await metrics.recompute(db_session, DAY, MetricName.LOGINS, now=now)
    await metrics.recompute(db_session, today, MetricName.LOGINS, now=now)
    await metrics.recompute(db_session, today, MetricName.PRODUCT_VIEWS, now=now)

    kpis = {k.metric_name: k for k in await metrics.dashboard_kpis(
        db_session, today, [MetricName.LOGINS, MetricName.PRODUCT_VIEWS]
    )}

    assert kpis[MetricName.LOGINS].value == 3.0
    assert kpis[MetricName.LOGINS].previous_value == 2.0
    assert kpis[MetricName.LOGINS].change_percent == 50.0
    # no previous value: change is reported as 0
    assert kpis[MetricName.PRODUCT_VIEWS].change_percent == 0.0

