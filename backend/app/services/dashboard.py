"""
Dashboard query service.

Read-side composition of the admin dashboard overview. Each section runs in
its own session, concurrently; a section that fails is reported as such and
does not take the rest of the overview down with it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Callable, Awaitable, Type

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import resolve_now
from backend.app.core.config import settings
from backend.app.core.exceptions import AppException
from backend.app.db.session import AsyncSessionLocal
from backend.app.models.enums import Severity
from backend.app.schemas.analytics import (
    DashboardOverview, AlertsSection, AuditTailSection, MetricSeriesSection, KPISection,
    MetricSeries, SectionResult,
)
from backend.app.schemas.audit import AuditEntryResponse
from backend.app.schemas.security import SecurityEventResponse
from backend.app.services import audit, metrics, security_feed

logger = logging.getLogger("marketplace_admin.dashboard")


class DashboardQueryService:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def _section(
        self,
        name: str,
        section_cls: Type[SectionResult],
        build: Callable[[AsyncSession], Awaitable[SectionResult]],
    ) -> SectionResult:
        try:
            async with self.session_factory() as db:
                return await build(db)
        except AppException as exc:
            logger.error("Dashboard section failed", extra={"section": name, "error": str(exc)})
            return section_cls(ok=False, error=exc.message)
        except Exception as exc:
            logger.error("Dashboard section failed", extra={"section": name, "error": repr(exc)}, exc_info=True)
            return section_cls(ok=False, error="Section query failed")

    async def overview(
        self,
        window: timedelta = timedelta(days=7),
        now: Optional[datetime] = None,
    ) -> DashboardOverview:
        """
        Compose the admin overview.

        Sections: unresolved alerts, banner alerts, recent audit tail, one
        series per configured dashboard metric over the window, and KPIs.
        """
        now = resolve_now(now)
        today = now.date()
        first_day = (now - window).date()
        min_severity = Severity(settings.dashboard_alert_min_severity)

        async def unresolved_alerts(db):
            events = await security_feed.unresolved(db, min_severity=min_severity, limit=50)
            return AlertsSection(events=[SecurityEventResponse.model_validate(e) for e in events])

        async def banner_alerts(db):
            events = await security_feed.banner(db, limit=10)
            return AlertsSection(events=[SecurityEventResponse.model_validate(e) for e in events])

        async def audit_tail(db):
            entries = await audit.tail(db, limit=settings.dashboard_audit_tail_limit)
            return AuditTailSection(entries=[AuditEntryResponse.model_validate(e) for e in entries])

        async def series(db):
            result = []
            for name in settings.dashboard_metrics:
                points = await metrics.metric_series(db, name, first_day, today)
                result.append(MetricSeries(metric_name=name, points=points))
            return MetricSeriesSection(series=result)

        async def kpis(db):
            return KPISection(kpis=await metrics.dashboard_kpis(db, today))

        sections = await asyncio.gather(
            self._section("unresolved_alerts", AlertsSection, unresolved_alerts),
            self._section("banner_alerts", AlertsSection, banner_alerts),
            self._section("recent_audit_tail", AuditTailSection, audit_tail),
            self._section("metric_series", MetricSeriesSection, series),
            self._section("kpis", KPISection, kpis),
        )

        return DashboardOverview(
            generated_at=now,
            window_days=window.days,
            unresolved_alerts=sections[0],
            banner_alerts=sections[1],
            recent_audit_tail=sections[2],
            metric_series=sections[3],
            kpis=sections[4],
        )
