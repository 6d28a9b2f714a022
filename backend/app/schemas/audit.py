"""
Audit Log Schema Definitions.

Pydantic schemas for the admin audit trail.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any

from backend.app.models.enums import TargetType


class AuditEntryResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: int
    action: str
    target_type: str
    target_id: Optional[str]
    before_state: Optional[Dict[str, Any]]
    after_state: Optional[Dict[str, Any]]
    reason: Optional[str]
    origin_ip: str
    user_agent: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class AuditSearchFilters(BaseModel):
    """Filters for audit log search. All optional; combined with AND."""
    action: Optional[str] = None
    target_type: Optional[TargetType] = None
    target_id: Optional[str] = None
    actor_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    text: Optional[str] = Field(None, description="Matched against action and reason")


class AuditTrailResponse(BaseModel):
    """Schema for a page of the audit trail."""
    logs: List[AuditEntryResponse]
    total: int
    page: int
    page_size: int


class AuditActionCount(BaseModel):
    action: str
    count: int


class AuditActorCount(BaseModel):
    actor_id: int
    count: int


class AuditDayCount(BaseModel):
    date: str
    count: int


class AuditStatsResponse(BaseModel):
    """Aggregate view of admin activity since a point in time."""
    since: datetime
    total: int
    by_action: List[AuditActionCount]
    by_actor: List[AuditActorCount]
    by_day: List[AuditDayCount]
