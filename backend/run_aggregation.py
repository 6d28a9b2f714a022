"""
Daily metric aggregation script.

Aggregates yesterday by default. Intended to run from a scheduler once a day,
after midnight UTC; safe to re-run for any date.

Examples:
    python backend/run_aggregation.py
    python backend/run_aggregation.py --date 2024-03-01
    python backend/run_aggregation.py --start 2024-03-01 --end 2024-03-31
    python backend/run_aggregation.py --retry-dead-letters
"""

import argparse
import asyncio
import logging
import sys
from datetime import date, timedelta
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.observability import configure_logging
from backend.app.db.session import engine
from backend.app.jobs.aggregation import AggregationJob

logger = logging.getLogger("marketplace_admin.jobs")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Recompute daily analytics metrics.")
    parser.add_argument("--date", type=date.fromisoformat, help="Single day to aggregate (YYYY-MM-DD)")
    parser.add_argument("--start", type=date.fromisoformat, help="First day of a range")
    parser.add_argument("--end", type=date.fromisoformat, help="Last day of a range (inclusive)")
    parser.add_argument("--metric", action="append", dest="metrics", help="Only this metric (repeatable)")
    parser.add_argument("--retry-dead-letters", action="store_true", help="Re-run failed recomputes")
    args = parser.parse_args(argv)

    if (args.start is None) != (args.end is None):
        parser.error("--start and --end must be given together")
    if args.date and args.start:
        parser.error("--date cannot be combined with --start/--end")
    return args


async def main(argv=None) -> int:
    args = parse_args(argv)
    job = AggregationJob()

    try:
        if args.retry_dead_letters:
            await job.retry_dead_letters()
            return 0

        if args.start:
            results = await job.run_range(args.start, args.end, args.metrics)
        else:
            day = args.date or (utcnow().date() - timedelta(days=1))
            results = await job.run_day(day, args.metrics)
    finally:
        await engine.dispose()

    failed = [r for r in results if not r.ok]
    for r in failed:
        logger.error("Metric missing", extra={"date": r.date.isoformat(), "metric": r.metric_name, "error": r.error})
    return 1 if failed else 0


if __name__ == "__main__":
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(main()))
