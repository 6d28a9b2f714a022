"""
Daily Metric database model.

Pre-aggregated per-day metrics so dashboards never scan raw event history.
"""

from sqlalchemy import Column, Integer, String, Float, Date, DateTime, JSON, UniqueConstraint, Index
from backend.app.db.session import Base
from backend.app.core.clock import utcnow


class DailyMetric(Base):
    """
    Daily metric row.

    Derived data: always reconstructable from the event store. Exactly one row
    per (date, metric_name, dimensions_key); dimensions_key is the canonical
    JSON of the dimensions mapping.
    """
    __tablename__ = "analytics_daily"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    date = Column(Date, nullable=False)
    metric_name = Column(String(100), nullable=False)
    dimensions = Column(JSON, nullable=False, default=dict)
    dimensions_key = Column(String(512), nullable=False, default="{}")
    value = Column(Float, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("date", "metric_name", "dimensions_key", name="uq_analytics_daily_key"),
        Index("ix_analytics_daily_metric", "metric_name", "date"),
    )

    def __repr__(self):
        return f"<DailyMetric(date={self.date}, metric='{self.metric_name}', dims={self.dimensions_key}, value={self.value})>"
