"""
Security event schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict, Any, List

from backend.app.models.enums import Severity, ResolveOutcome


class SecurityEventCreate(BaseModel):
    """Schema for raising a security event."""
    type: str = Field(..., max_length=50)
    severity: Severity
    description: Optional[str] = None
    subject_id: Optional[int] = None
    origin_ip: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SecurityEventResponse(BaseModel):
    id: int
    subject_id: Optional[int]
    type: str
    severity: Severity
    description: Optional[str]
    origin_ip: Optional[str]
    meta_data: Optional[Dict[str, Any]]
    resolved: bool
    resolved_by: Optional[int]
    resolved_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class SecurityEventListResponse(BaseModel):
    events: List[SecurityEventResponse]
    total: int


class ResolveRequest(BaseModel):
    notes: Optional[str] = Field(None, description="Stored as resolution_notes in metadata")


class ResolveResponse(BaseModel):
    event_id: int
    outcome: ResolveOutcome
