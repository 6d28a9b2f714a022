"""
Analytics API Endpoints.

Pre-aggregated metrics, on-demand recomputes and the admin dashboard overview.
"""

from datetime import date, timedelta
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.dependencies import AdminContext
from backend.app.core.exceptions import ValidationError
from backend.app.core.guards import require_permission
from backend.app.db.session import get_db, get_session_factory
from backend.app.jobs.aggregation import AggregationJob
from backend.app.models.enums import TargetType
from backend.app.schemas.analytics import (
    MetricSeries, KPI, RecomputeRequest, RecomputeResult, RecomputeResponse, DashboardOverview,
)
from backend.app.schemas.events import EventStatsResponse
from backend.app.services import metrics, event_store
from backend.app.services.audit import AdminAction, AuditTarget, audited_action
from backend.app.services.dashboard import DashboardQueryService
from backend.app.services.permissions import Permission

admin_router = APIRouter(prefix="/admin/analytics", tags=["Admin - Analytics"])
dashboard_router = APIRouter(prefix="/admin/dashboard", tags=["Admin - Dashboard"])


@admin_router.get("/metrics/{metric_name}", response_model=MetricSeries)
async def get_metric_series(
    metric_name: str,
    start: Optional[date] = Query(None, description="Defaults to 30 days before end"),
    end: Optional[date] = Query(None, description="Defaults to today (UTC)"),
    category: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_ANALYTICS)),
    db: AsyncSession = Depends(get_db)
):
    """Stored daily values of a metric, oldest first. Dimension filters select a breakdown."""
    end = end or utcnow().date()
    start = start or end - timedelta(days=30)
    if start > end:
        raise ValidationError("start must not be after end", {"start": str(start), "end": str(end)})

    dims, _ = metrics.normalize_dimensions({"category": category, "type": type, "severity": severity, "action": action})
    metrics.get_definition(metric_name, dims)

    points = await metrics.metric_series(db, metric_name, start, end, dims)
    return MetricSeries(metric_name=metric_name, dimensions=dims, points=points)


@admin_router.get("/kpis", response_model=List[KPI])
async def get_kpis(
    admin: AdminContext = Depends(require_permission(Permission.VIEW_ANALYTICS)),
    db: AsyncSession = Depends(get_db)
):
    """Today's headline metrics against yesterday."""
    return await metrics.dashboard_kpis(db, utcnow().date())


@admin_router.get("/events", response_model=EventStatsResponse)
async def get_event_stats(
    days: int = Query(7, ge=1, le=90),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_ANALYTICS)),
    db: AsyncSession = Depends(get_db)
):
    """Raw event counts per category and type over the last N days."""
    end = utcnow()
    start = end - timedelta(days=days)
    stats = await event_store.event_stats(db, start, end)
    return EventStatsResponse(start=start, end=end, stats=stats)


@admin_router.post("/recompute", response_model=RecomputeResponse)
async def recompute_metrics(
    request: RecomputeRequest,
    admin: AdminContext = Depends(require_permission(Permission.RUN_AGGREGATION)),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory)
):
    """
    Recompute stored metrics from source data.

    A single metric for a single day runs inline; a range, or every tracked
    metric, goes through the aggregation job (per-metric retries, failures
    reported rather than raised).
    """
    end_date = request.end_date or request.date
    target_id = request.date.isoformat() if end_date == request.date else f"{request.date}..{end_date}"

    async with audited_action(
        db,
        actor_id=admin.user_id,
        action=AdminAction.METRIC_RECOMPUTE,
        target=AuditTarget.of(TargetType.METRIC, target_id),
        origin_ip=admin.origin_ip,
        user_agent=admin.user_agent,
        metadata={"metric_name": request.metric_name, "dimensions": request.dimensions},
    ) as audit:
        if request.metric_name and end_date == request.date:
            value = await metrics.recompute(
                db, request.date, request.metric_name, request.dimensions, commit=False
            )
            dims, _ = metrics.normalize_dimensions(request.dimensions)
            results = [RecomputeResult(date=request.date, metric_name=request.metric_name, dimensions=dims, value=value)]
        else:
            if request.dimensions:
                raise ValidationError("dimensions require a single metric and day", {"dimensions": request.dimensions})
            job = AggregationJob(session_factory)
            names = [request.metric_name] if request.metric_name else None
            results = await job.run_range(request.date, end_date, names)

        failed = sum(1 for r in results if not r.ok)
        audit.add_metadata(computed=len(results) - failed, failed=failed)

    return RecomputeResponse(results=results, failed=failed)


@dashboard_router.get("/overview", response_model=DashboardOverview)
async def get_dashboard_overview(
    days: int = Query(7, ge=1, le=90, description="Metric series window"),
    admin: AdminContext = Depends(require_permission(Permission.VIEW_ANALYTICS)),
    session_factory: async_sessionmaker = Depends(get_session_factory)
):
    """
    Admin dashboard overview.

    Sections are queried concurrently; a failed section comes back with
    ok=false and an error instead of failing the whole response.
    """
    return await DashboardQueryService(session_factory).overview(window=timedelta(days=days))
