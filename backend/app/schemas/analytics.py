"""
Analytics Schemas.

Daily metric rows, series and dashboard overview sections.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import date, datetime

from backend.app.schemas.audit import AuditEntryResponse
from backend.app.schemas.security import SecurityEventResponse


class DailyMetricResponse(BaseModel):
    date: date
    metric_name: str
    dimensions: Dict[str, Any]
    value: float
    updated_at: datetime

    class Config:
        from_attributes = True


class MetricPoint(BaseModel):
    date: date
    value: float


class MetricSeries(BaseModel):
    metric_name: str
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    points: List[MetricPoint]


class KPI(BaseModel):
    """Value for a day against the previous day."""
    metric_name: str
    value: float
    previous_value: float
    change_percent: float = 0.0


class RecomputeRequest(BaseModel):
    date: date
    end_date: Optional[date] = Field(None, description="Inclusive; recompute a range when set")
    metric_name: Optional[str] = Field(None, description="All tracked metrics when omitted")
    dimensions: Optional[Dict[str, Any]] = None


class RecomputeResult(BaseModel):
    date: date
    metric_name: str
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    value: Optional[float] = None
    ok: bool = True
    error: Optional[str] = None


class RecomputeResponse(BaseModel):
    results: List[RecomputeResult]
    failed: int


class SectionResult(BaseModel):
    """A dashboard section. When ok is False, data is empty and error says why."""
    ok: bool = True
    error: Optional[str] = None


class AlertsSection(SectionResult):
    events: List[SecurityEventResponse] = Field(default_factory=list)


class AuditTailSection(SectionResult):
    entries: List[AuditEntryResponse] = Field(default_factory=list)


class MetricSeriesSection(SectionResult):
    series: List[MetricSeries] = Field(default_factory=list)


class KPISection(SectionResult):
    kpis: List[KPI] = Field(default_factory=list)


class DashboardOverview(BaseModel):
    generated_at: datetime
    window_days: int
    unresolved_alerts: AlertsSection
    banner_alerts: AlertsSection
    recent_audit_tail: AuditTailSection
    metric_series: MetricSeriesSection
    kpis: KPISection
