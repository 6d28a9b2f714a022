"""
Admin API Schema Definitions.

Pydantic schemas for user moderation endpoints.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class SuspendUserRequest(BaseModel):
    """Schema for suspending a user."""
    reason: Optional[str] = Field(None, description="Required; recorded in the audit log")
    duration_hours: Optional[int] = Field(None, gt=0, description="Open-ended when omitted")


class BanUserRequest(BaseModel):
    """Schema for banning a user."""
    reason: Optional[str] = Field(None, description="Required; recorded in the audit log")


class ReinstateUserRequest(BaseModel):
    """Schema for lifting a suspension or ban."""
    reason: Optional[str] = Field(None, description="Reason for reinstating (for audit log)")


class UserModerationState(BaseModel):
    id: int
    email: str
    is_active: bool
    is_suspended: bool
    suspend_expires_at: Optional[datetime]
    is_banned: bool

    class Config:
        from_attributes = True


class AdminActionResponse(BaseModel):
    """Schema for admin action response."""
    success: bool
    message: str
    user_id: int
    action: str
    audit_log_id: int
    sessions_revoked: int = 0
