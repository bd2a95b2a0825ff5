"""Wiring for the sync core.

Builds one set of collaborators (store, queue, planner, ingress, processor)
sharing a session factory, stats object and notifier. Used by the API
lifespan, the standalone worker and the operator scripts.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.pricesync.config import Settings
from src.pricesync.core.redis import QueueNotifier
from src.pricesync.sync.adapters.remote import RemoteAdapter
from src.pricesync.sync.adapters.restlet import RestletRemoteAdapter
from src.pricesync.sync.adapters.sql import SqlSourceStore
from src.pricesync.sync.cascade import CascadePlanner
from src.pricesync.sync.fields import FieldMapper
from src.pricesync.sync.ingress import WebhookIngress
from src.pricesync.sync.loop_guard import LoopGuard
from src.pricesync.sync.processor import QueueProcessor
from src.pricesync.sync.queue import SyncQueue
from src.pricesync.sync.stats import SyncStats


@dataclass
class SyncServices:
    store: SqlSourceStore
    queue: SyncQueue
    planner: CascadePlanner
    ingress: WebhookIngress
    processor: QueueProcessor
    remote: RemoteAdapter
    stats: SyncStats
    notifier: QueueNotifier

    async def close(self) -> None:
        await self.processor.stop()
        await self.remote.close()


def build_remote_adapter(settings: Settings) -> RestletRemoteAdapter:
    return RestletRemoteAdapter(
        programmatic_url=settings.remote_programmatic_url,
        interactive_url=settings.remote_interactive_url,
        api_token=settings.REMOTE_API_TOKEN,
        timeout=settings.REMOTE_TIMEOUT_SECONDS,
    )


def build_sync_services(
    settings: Settings,
    session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    *,
    remote: RemoteAdapter | None = None,
    notifier: QueueNotifier | None = None,
) -> SyncServices:
    """Assemble the sync core from settings.

    Args:
        settings: Application settings.
        session_factory: Async callable that yields AsyncSession instances.
        remote: RemoteAdapter override (defaults to the RESTlet adapter).
        notifier: QueueNotifier override (defaults to a disabled notifier).
    """
    mapper = FieldMapper()
    stats = SyncStats()
    notifier = notifier or QueueNotifier(None, settings.SYNC_NOTIFY_CHANNEL)
    remote = remote or build_remote_adapter(settings)

    store = SqlSourceStore(session_factory, mapper)
    queue = SyncQueue(
        session_factory,
        max_retries=settings.SYNC_MAX_RETRIES,
        retry_delay_base=settings.SYNC_RETRY_DELAY_BASE_SECONDS,
        max_retry_delay=settings.SYNC_MAX_RETRY_DELAY_SECONDS,
        notifier=notifier,
    )
    planner = CascadePlanner(store, queue)
    loop_guard = LoopGuard(settings.REMOTE_PROGRAMMATIC_ORIGIN)
    ingress = WebhookIngress(
        session_factory,
        store,
        planner,
        queue,
        loop_guard,
        secret=settings.WEBHOOK_SECRET,
        event_type=settings.WEBHOOK_EVENT_TYPE,
        skip_flag_field=settings.WEBHOOK_SKIP_FLAG_FIELD,
        mapper=mapper,
        stats=stats,
    )
    processor = QueueProcessor(
        queue,
        store,
        remote,
        loop_guard,
        mapper=mapper,
        stats=stats,
        notifier=notifier,
        concurrency=settings.SYNC_WORKER_CONCURRENCY,
        poll_interval=settings.SYNC_POLL_INTERVAL_SECONDS,
        remote_timeout=settings.REMOTE_TIMEOUT_SECONDS,
        stuck_timeout=settings.SYNC_STUCK_JOB_TIMEOUT_SECONDS,
        sweep_interval=settings.SYNC_SWEEP_INTERVAL_SECONDS,
        history_days=settings.SYNC_STALE_JOB_DAYS,
        shutdown_grace=settings.SYNC_SHUTDOWN_GRACE_SECONDS,
    )
    return SyncServices(
        store=store,
        queue=queue,
        planner=planner,
        ingress=ingress,
        processor=processor,
        remote=remote,
        stats=stats,
        notifier=notifier,
    )
