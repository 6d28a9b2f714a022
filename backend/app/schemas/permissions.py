"""
Permission grant schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class PermissionGrantRequest(BaseModel):
    """Schema for granting a permission. Omitted resource fields mean wildcard."""
    user_id: int
    permission: str = Field(..., min_length=1, max_length=100)
    resource_type: Optional[str] = Field(None, max_length=50)
    resource_id: Optional[str] = Field(None, max_length=64)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class PermissionRevokeRequest(BaseModel):
    user_id: int
    permission: str = Field(..., min_length=1, max_length=100)
    resource_type: Optional[str] = Field(None, max_length=50)
    resource_id: Optional[str] = Field(None, max_length=64)
    reason: Optional[str] = None


class PermissionGrantResponse(BaseModel):
    id: int
    user_id: int
    permission: str
    resource_type: Optional[str]
    resource_id: Optional[str]
    granted_by: Optional[int]
    granted_at: datetime
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class PermissionListResponse(BaseModel):
    user_id: int
    grants: List[PermissionGrantResponse]


class PermissionRevokeResponse(BaseModel):
    revoked: bool
