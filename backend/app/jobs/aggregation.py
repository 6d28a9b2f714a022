"""
Daily metric aggregation job.

Runs every tracked metric for a day (or a range of days), each metric in its
own session and retried with exponential backoff and jitter on transient
storage failures. A metric that exhausts its retries is written to the dead
letter queue and the run moves on: a missing metric is a visible gap, not a
crashed job.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional, List, Dict, Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import StorageUnavailable, ValidationError
from backend.app.core.reliability import create_retry_decorator
from backend.app.db.session import AsyncSessionLocal, storage_errors
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.schemas.analytics import RecomputeResult
from backend.app.services import metrics

logger = logging.getLogger("marketplace_admin.jobs.aggregation")

TASK_NAME = "metric.recompute"


class AggregationJob:
    """
    Aggregation runner.

    Args:
        session_factory: Source of fresh sessions (one per metric)
        retry_policy: tenacity retry decorator; defaults to the configured policy
        now: Fixed write time, for tests
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        retry_policy: Optional[Callable] = None,
        now: Optional[datetime] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.retry_policy = retry_policy or create_retry_decorator()
        self.now = now

    async def _dead_letter(self, day: date, metric_name: str, dims: Dict[str, Any], error: str) -> None:
        try:
            async with self.session_factory() as db:
                with storage_errors("dlq.write"):
                    db.add(DeadLetterQueue(
                        task_name=TASK_NAME,
                        error_message=error,
                        payload={"date": day.isoformat(), "metric_name": metric_name, "dimensions": dims},
                        status=DLQStatus.FAILED,
                    ))
                    await db.commit()
        except StorageUnavailable:
            logger.error(
                "Could not write dead letter entry",
                extra={"date": day.isoformat(), "metric": metric_name, "error": error},
            )

    async def run_metric(
        self,
        day: date,
        metric_name: str,
        dimensions: Optional[Dict[str, Any]] = None,
        dead_letter: bool = True,
    ) -> RecomputeResult:
        """Recompute one metric with retries; never raises for storage failures."""
        dims, _ = metrics.normalize_dimensions(dimensions)

        @self.retry_policy
        async def attempt() -> float:
            async with self.session_factory() as db:
                return await metrics.recompute(db, day, metric_name, dims, now=self.now)

        try:
            value = await attempt()
        except StorageUnavailable as exc:
            logger.error(
                "Metric recompute exhausted retries",
                extra={"date": day.isoformat(), "metric": metric_name, "error": exc.message},
            )
            if dead_letter:
                await self._dead_letter(day, metric_name, dims, exc.message)
            return RecomputeResult(date=day, metric_name=metric_name, dimensions=dims, ok=False, error=exc.message)

        return RecomputeResult(date=day, metric_name=metric_name, dimensions=dims, value=value)

    async def _breakdowns(self, day: date) -> List:
        @self.retry_policy
        async def attempt():
            async with self.session_factory() as db:
                return await metrics.breakdowns(db, day)

        try:
            return await attempt()
        except StorageUnavailable as exc:
            logger.error("Could not list metric breakdowns", extra={"date": day.isoformat(), "error": exc.message})
            return []

    async def run_day(self, day: date, metric_names: Optional[List[str]] = None) -> List[RecomputeResult]:
        """
        Aggregate one day.

        With metric_names, only those metrics (undimensioned) are recomputed;
        otherwise every tracked metric plus the day's dimensioned breakdowns.
        """
        names = metric_names or metrics.tracked_metrics()
        for name in names:
            if name not in metrics.METRICS:
                raise ValidationError(f"Unknown metric: {name}", {"metric_name": name})

        logger.info("Aggregation started", extra={"date": day.isoformat(), "metrics": len(names)})
        results = [await self.run_metric(day, name) for name in names]

        if metric_names is None:
            for name, dims in await self._breakdowns(day):
                results.append(await self.run_metric(day, name, dims))

        failed = sum(1 for r in results if not r.ok)
        log = logger.warning if failed else logger.info
        log("Aggregation finished", extra={"date": day.isoformat(), "computed": len(results) - failed, "failed": failed})
        return results

    async def run_range(
        self,
        start: date,
        end: date,
        metric_names: Optional[List[str]] = None,
    ) -> List[RecomputeResult]:
        """Aggregate every day in [start, end], oldest first."""
        if end < start:
            raise ValidationError("End date is before start date", {"start": str(start), "end": str(end)})

        results = []
        day = start
        while day <= end:
            results.extend(await self.run_day(day, metric_names))
            day += timedelta(days=1)
        return results

    async def retry_dead_letters(self, limit: int = 100) -> int:
        """
        Re-run failed recomputes from the dead letter queue.

        Entries that succeed are marked PROCESSED; the rest stay FAILED with
        their retry count bumped. Returns the number processed.
        """
        async with self.session_factory() as db:
            with storage_errors("dlq.read"):
                result = await db.execute(
                    select(DeadLetterQueue.id, DeadLetterQueue.payload)
                    .where(DeadLetterQueue.task_name == TASK_NAME, DeadLetterQueue.status == DLQStatus.FAILED)
                    .order_by(DeadLetterQueue.created_at, DeadLetterQueue.id)
                    .limit(limit)
                )
                pending = [(row.id, row.payload or {}) for row in result]

        outcomes = {}
        for item_id, payload in pending:
            outcomes[item_id] = await self.run_metric(
                date.fromisoformat(payload["date"]),
                payload["metric_name"],
                payload.get("dimensions"),
                dead_letter=False,
            )

        processed = 0
        async with self.session_factory() as db:
            with storage_errors("dlq.update"):
                for item_id, outcome in outcomes.items():
                    item = await db.get(DeadLetterQueue, item_id)
                    item.retry_count = (item.retry_count or 0) + 1
                    item.last_retry_at = utcnow()
                    if outcome.ok:
                        item.status = DLQStatus.PROCESSED
                        processed += 1
                    else:
                        item.error_message = outcome.error or item.error_message
                await db.commit()

        logger.info("Dead letter retry finished", extra={"attempted": len(pending), "processed": processed})
        return processed
