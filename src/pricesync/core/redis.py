"""Redis connection pool and queue wake-up notifier.

The queue itself lives in the database. Redis pub/sub is only used to
wake idle processor workers early when new jobs are enqueued; when
REDIS_URL is empty the processor falls back to pure polling.
"""

from __future__ import annotations

import asyncio

import redis.asyncio as aioredis
import structlog

from src.pricesync.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis | None:
    """Get or create the Redis connection pool singleton, None when disabled."""
    global _redis_pool
    settings = get_settings()
    if not settings.REDIS_URL:
        return None
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ── Queue Notifier ──────────────────────────────────────────────────────────


class QueueNotifier:
    """Publishes and listens for "jobs available" hints on a pub/sub channel.

    Notifications are advisory. A lost message only delays a job until the
    next poll, so publish failures are logged and otherwise ignored.

    Args:
        redis_client: Redis client, or None to disable notifications.
        channel: Pub/sub channel name.
    """

    def __init__(self, redis_client: aioredis.Redis | None, channel: str) -> None:
        self._redis = redis_client
        self._channel = channel
        self._event = asyncio.Event()
        self._listener: asyncio.Task | None = None

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def notify(self, count: int = 1) -> None:
        """Signal local waiters and publish to other processes."""
        self._event.set()
        if self._redis is None:
            return
        try:
            await self._redis.publish(self._channel, str(count))
        except aioredis.RedisError as exc:
            logger.warning("queue_notifier.publish_failed", error=str(exc))

    async def wait(self, timeout: float) -> bool:
        """Wait for a notification or until timeout. Returns True if notified."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._event.clear()
        return True

    def start(self) -> None:
        """Start the background subscriber (no-op without Redis)."""
        if self._redis is None or self._listener is not None:
            return
        self._listener = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        logger.info("queue_notifier.subscribed", channel=self._channel)
        try:
            while True:
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                except aioredis.RedisError:
                    logger.exception("queue_notifier.listen_error")
                    await asyncio.sleep(1.0)
                    continue
                if message is not None:
                    self._event.set()
        finally:
            await pubsub.aclose()
