"""
Event ingestion endpoint.

Accepts activity events from trusted marketplace services, which
authenticate with an ingest key.
Storage happens after the response is sent; ingestion failures never reach
the caller.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import async_sessionmaker
from backend.app.core.dependencies import client_ip, require_ingest_key
from backend.app.db.session import get_session_factory
from backend.app.schemas.events import EventCreate, EventAccepted
from backend.app.services.event_store import track_event

logger = logging.getLogger("marketplace_admin.events")

router = APIRouter(tags=["Events"])


@router.post("/events", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    event: EventCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory: async_sessionmaker = Depends(get_session_factory),
    ingest_key: str = Depends(require_ingest_key),
):
    """
    Queue an event for storage (best-effort, at-least-once).

    Origin IP and user agent default to the request's own.
    """
    enriched = event.model_copy(update={
        "origin_ip": event.origin_ip or client_ip(request),
        "user_agent": event.user_agent or request.headers.get("user-agent"),
    })
    logger.debug("Event accepted", extra={"event_type": event.type, "key_hash": ingest_key})
    background_tasks.add_task(track_event, enriched, session_factory)
    return EventAccepted()
