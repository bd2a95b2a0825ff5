#!/usr/bin/env python3
"""Operator maintenance for the sync queue.

Usage:
    python scripts/retry_failed_syncs.py                      # reset every FAILED job
    python scripts/retry_failed_syncs.py --pattern "Timeout%" --limit 50
    python scripts/retry_failed_syncs.py --reclaim-stuck 600  # reclaim jobs PROCESSING > 10 min
    python scripts/retry_failed_syncs.py --purge-days 7       # drop stale PENDING/FAILED jobs
    python scripts/retry_failed_syncs.py --stats

Failed jobs are returned to PENDING with their retry count cleared. Reads
DATABASE_URL (and optionally REDIS_URL, to wake running processors) from
the environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import timedelta

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

logger = structlog.get_logger(__name__)


async def main_async(args: argparse.Namespace) -> int:
    from src.pricesync.api.middleware.logging import configure_structlog
    from src.pricesync.config import get_settings
    from src.pricesync.core.database import close_db, get_session
    from src.pricesync.core.redis import QueueNotifier, close_redis, get_redis_pool
    from src.pricesync.sync.service import build_sync_services

    settings = get_settings()
    configure_structlog()

    notifier = QueueNotifier(get_redis_pool(), settings.SYNC_NOTIFY_CHANNEL)
    services = build_sync_services(settings, get_session, notifier=notifier)
    queue = services.queue

    try:
        if args.stats:
            counts = await queue.counts()
            print(json.dumps(counts.model_dump(mode="json"), indent=2))
            return 0

        if args.reclaim_stuck is not None:
            reclaimed = await queue.reclaim_stuck(timedelta(seconds=args.reclaim_stuck))
            logger.info("maintenance.reclaimed", count=reclaimed)
            print(f"Reclaimed {reclaimed} stuck job(s)")

        if args.purge_days is not None:
            purged = await queue.purge_stale(timedelta(days=args.purge_days))
            logger.info("maintenance.purged", count=purged, older_than_days=args.purge_days)
            print(f"Purged {purged} stale job(s)")

        if not args.skip_reset:
            reset = await queue.reset_failed(error_pattern=args.pattern, limit=args.limit)
            logger.info("maintenance.reset_failed", count=reset, pattern=args.pattern)
            print(f"Reset {reset} failed job(s) to PENDING")

        return 0
    finally:
        await services.close()
        await close_db()
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry failed pricing sync jobs")
    parser.add_argument(
        "--pattern",
        help="SQL LIKE pattern matched against the job error message",
    )
    parser.add_argument("--limit", type=int, help="Maximum number of jobs to reset")
    parser.add_argument(
        "--reclaim-stuck",
        type=int,
        metavar="SECONDS",
        help="Also reclaim jobs PROCESSING for longer than SECONDS",
    )
    parser.add_argument(
        "--purge-days",
        type=int,
        metavar="DAYS",
        help="Also purge PENDING/FAILED jobs not touched in DAYS days",
    )
    parser.add_argument(
        "--skip-reset",
        action="store_true",
        help="Do not reset FAILED jobs (useful with --purge-days)",
    )
    parser.add_argument("--stats", action="store_true", help="Print queue counts and exit")
    args = parser.parse_args()

    exit_code = asyncio.run(main_async(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
