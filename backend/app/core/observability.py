"""
Observability middleware and logging setup.

Every request gets a correlation id and one structured access log line. Admin
requests also carry the acting admin's user id once the session dependency
has resolved it, so request logs line up with the audit trail.
"""

import time
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("marketplace_admin")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

ADMIN_PREFIX = "/v1/admin"
INGEST_PATH = "/v1/events"


def configure_logging(level: str = "INFO") -> None:
    """Set the root log format and level once at startup."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logger.setLevel(level.upper())


def request_surface(path: str) -> str:
    """Which part of the API a path belongs to: admin, ingest or system."""
    if path.startswith(ADMIN_PREFIX):
        return "admin"
    if path == INGEST_PATH:
        return "ingest"
    return "system"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Request crashed", extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "surface": request_surface(request.url.path),
            })
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Correlation-ID"] = correlation_id
        response.headers["X-Process-Time"] = str(duration_ms)

        log_data = {
            "correlation_id": correlation_id,
            "method": request.method,
            "path": request.url.path,
            "surface": request_surface(request.url.path),
            "status_code": response.status_code,
            "duration_ms": duration_ms,
            "admin_user_id": getattr(request.state, "admin_user_id", None),
        }

        if response.status_code >= 500:
            logger.error("Request failed", extra=log_data)
        elif response.status_code >= 400:
            logger.warning("Request rejected", extra=log_data)
        else:
            logger.info("Request served", extra=log_data)

        return response
