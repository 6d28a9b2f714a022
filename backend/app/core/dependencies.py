"""
Authentication dependencies for FastAPI.

Admin routes authenticate with an opaque admin session token sent as a
Bearer credential. Every authenticated request is a heartbeat: the session
is touched, and a revoked or expired session is rejected on the spot.

Event ingestion is machine-to-machine: marketplace services present a shared
key in the X-Ingest-Key header.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader, HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.config import settings
from backend.app.core.exceptions import AuthenticationError, SessionInvalid
from backend.app.db.session import get_db
from backend.app.services import sessions

# HTTP Bearer security scheme; missing credentials are reported as 401 below
security = HTTPBearer(auto_error=False)
ingest_key_header = APIKeyHeader(name="X-Ingest-Key", auto_error=False)

logger = logging.getLogger("marketplace_admin.auth")


@dataclass(frozen=True)
class AdminContext:
    """The authenticated admin behind a request."""
    user_id: int
    session_id: int
    origin_ip: str
    user_agent: Optional[str]


def client_ip(request: Request) -> str:
    """Client address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> AdminContext:
    """
    FastAPI dependency for admin session authentication.

    1. Requires a Bearer token
    2. Touches the session (single conditional UPDATE; fails if revoked or expired)
    3. Loads the session owner

    Raises:
        AuthenticationError: no credentials supplied
        SessionInvalid: the session is unknown, revoked or expired
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Admin session token required")

    token = credentials.credentials
    await sessions.touch(db, token)

    session = await sessions.get_valid(db, token)
    if session is None:
        # revoked between the heartbeat and the lookup
        raise SessionInvalid()

    request.state.admin_user_id = session.user_id

    return AdminContext(
        user_id=session.user_id,
        session_id=session.id,
        origin_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def require_ingest_key(key: Optional[str] = Depends(ingest_key_header)) -> str:
    """
    FastAPI dependency for event ingestion.

    Compares against every configured key in constant time. Returns a short
    hash of the key for logging; the raw key is never logged.
    """
    if not key:
        raise AuthenticationError("Ingest key required")

    matched = False
    for valid_key in settings.event_ingest_keys:
        if hmac.compare_digest(key.encode(), valid_key.encode()):
            matched = True

    key_hash = hashlib.sha256(key.encode()).hexdigest()[:12]
    if not matched:
        logger.warning("Rejected ingest key", extra={"key_hash": key_hash})
        raise AuthenticationError("Invalid ingest key")
    return key_hash
