"""
Event ingestion schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict, Any, List


class EventCreate(BaseModel):
    """Schema for an emitted activity event."""
    type: str = Field(..., max_length=50, description="Event type, e.g. 'product.view'")
    category: str = Field(..., max_length=50, description="Event category, e.g. 'product'")
    actor_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    origin_ip: Optional[str] = None
    user_agent: Optional[str] = None
    session_ref: Optional[str] = None
    occurred_at: Optional[datetime] = Field(None, description="Defaults to ingestion time")


class EventResponse(BaseModel):
    """Schema for a stored event."""
    id: int
    actor_id: Optional[int]
    type: str
    category: str
    payload: Dict[str, Any]
    origin_ip: Optional[str]
    session_ref: Optional[str]
    occurred_at: datetime

    class Config:
        from_attributes = True


class EventAccepted(BaseModel):
    """Ingestion acknowledgement. Delivery is best-effort."""
    accepted: bool = True


class EventTypeStats(BaseModel):
    category: str
    type: str
    count: int
    unique_actors: int


class EventStatsResponse(BaseModel):
    start: datetime
    end: datetime
    stats: List[EventTypeStats]
