"""
Reliability utilities.

Circuit breaker for best-effort event ingestion and a tenacity-based retry
decorator factory (exponential backoff with jitter) for aggregation jobs.
"""

import time
import logging
from typing import Callable, Any, Optional

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential_jitter,
    retry_if_exception_type,
    RetryCallState,
)

from backend.app.core.config import settings
from backend.app.core.exceptions import StorageUnavailable

logger = logging.getLogger("marketplace_admin.reliability")


class CircuitOpenError(Exception):
    pass


class CircuitBreaker:
    """
    Simple Circuit Breaker implementation.
    If 'failure_threshold' consecutive failures occur, the circuit opens and
    rejects calls for 'reset_timeout' seconds, then lets one trial call through.
    """
    def __init__(self, name: str, failure_threshold: int = 5, reset_timeout: int = 60):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = 0
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.reset_timeout:
                self.state = "HALF_OPEN"
            else:
                raise CircuitOpenError(f"Circuit '{self.name}' is OPEN")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise

        if self.state == "HALF_OPEN" or self.failures:
            self.reset_state()
        return result

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = time.time()
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            if self.state != "OPEN":
                logger.warning("Circuit opened", extra={"circuit": self.name, "failures": self.failures})
            self.state = "OPEN"

    def reset_state(self):
        self.failures = 0
        self.state = "CLOSED"


# Global instance guarding fire-and-forget event ingestion
ingestion_circuit_breaker = CircuitBreaker(
    "event_ingestion",
    failure_threshold=settings.ingestion_failure_threshold,
    reset_timeout=settings.ingestion_reset_timeout_seconds,
)


def _log_retry(retry_state: RetryCallState) -> None:
    fn_name = getattr(retry_state.fn, "__name__", "unknown")
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait_time = retry_state.next_action.sleep if retry_state.next_action else 0

    logger.warning(
        f"Retry attempt {retry_state.attempt_number} for {fn_name}",
        extra={
            "function": fn_name,
            "attempt": retry_state.attempt_number,
            "wait_seconds": round(wait_time, 2),
            "error": str(exc) if exc else None,
        },
    )


def create_retry_decorator(
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> Callable:
    """
    Build a retry decorator for transient storage failures.

    Only StorageUnavailable is retried; validation errors fail fast. The last
    exception is re-raised once attempts are exhausted.
    """
    _max_attempts = max_attempts or settings.aggregation_max_attempts
    _base_delay = settings.aggregation_base_delay_seconds if base_delay is None else base_delay
    _max_delay = settings.aggregation_max_delay_seconds if max_delay is None else max_delay

    return retry(
        stop=stop_after_attempt(_max_attempts),
        wait=wait_exponential_jitter(initial=_base_delay, max=_max_delay, jitter=_base_delay),
        retry=retry_if_exception_type(StorageUnavailable),
        before_sleep=_log_retry,
        reraise=True,
    )
