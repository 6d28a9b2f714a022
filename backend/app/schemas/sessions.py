"""
Admin session schemas.

Tokens are never echoed back in listings.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List


class AdminSessionResponse(BaseModel):
    id: int
    user_id: int
    origin_ip: str
    user_agent: Optional[str]
    issued_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    revoked: bool
    revoked_at: Optional[datetime]

    class Config:
        from_attributes = True


class SessionListResponse(BaseModel):
    user_id: int
    sessions: List[AdminSessionResponse]


class RevokeSessionRequest(BaseModel):
    token: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class RevokeAllRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class RevokeSessionResponse(BaseModel):
    revoked: bool


class RevokeAllResponse(BaseModel):
    user_id: int
    revoked_count: int
