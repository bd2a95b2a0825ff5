"""Standalone queue processor.

Runs the queue processor without the HTTP API, for deployments that scale
webhook intake and queue draining separately (set SYNC_PROCESSOR_ENABLED=false
on the API instances).

Usage:
    python -m src.pricesync.worker
    python -m src.pricesync.worker --once      # drain claimable jobs and exit
"""

from __future__ import annotations

import argparse
import asyncio
import signal

import structlog

from src.pricesync.api.middleware.logging import configure_structlog
from src.pricesync.config import get_settings
from src.pricesync.core.database import close_db, get_session, init_db
from src.pricesync.core.monitoring import init_sentry
from src.pricesync.core.redis import QueueNotifier, close_redis, get_redis_pool
from src.pricesync.sync.service import build_sync_services

logger = structlog.get_logger(__name__)


async def run(once: bool = False) -> int:
    settings = get_settings()
    configure_structlog()
    await init_db()
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    notifier = QueueNotifier(get_redis_pool(), settings.SYNC_NOTIFY_CHANNEL)
    services = build_sync_services(settings, get_session, notifier=notifier)

    try:
        if once:
            count = await services.processor.drain()
            logger.info("worker.drained", jobs=count)
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        services.processor.start()
        await stop.wait()
        logger.info("worker.shutdown_requested")
        return 0
    finally:
        await services.close()
        await close_db()
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the pricing sync queue processor")
    parser.add_argument("--once", action="store_true", help="Drain claimable jobs and exit")
    args = parser.parse_args()
    raise SystemExit(asyncio.run(run(once=args.once)))


if __name__ == "__main__":
    main()
