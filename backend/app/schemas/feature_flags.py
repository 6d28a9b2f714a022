"""
Feature flag schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class FeatureFlagUpdate(BaseModel):
    """Create-or-update payload. Omitted fields keep their stored value."""
    enabled: Optional[bool] = None
    description: Optional[str] = None
    rollout_percentage: Optional[int] = Field(None, ge=0, le=100)
    target_users: Optional[List[int]] = None
    reason: Optional[str] = None


class FeatureFlagResponse(BaseModel):
    id: int
    name: str
    enabled: bool
    description: Optional[str]
    rollout_percentage: int
    target_users: List[int]
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class FeatureFlagListResponse(BaseModel):
    flags: List[FeatureFlagResponse]


class FlagEvaluationResponse(BaseModel):
    name: str
    user_id: int
    enabled: bool
