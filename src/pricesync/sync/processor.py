"""Queue processor -- drains the sync queue into the Remote ERP.

Runs N concurrent workers. Each worker loops: claim one job (atomic, per
entity exclusive), push it, record the outcome. Idle workers sleep for the
poll interval or until the queue notifier fires. A sweeper task returns
jobs stuck in PROCESSING (crashed worker, hung call) to PENDING.

Every push re-reads the entity's current Source fields, so a job enqueued
before a later change still sends the latest values. Fields owned by the
Remote are never part of the payload, and every push goes through the
programmatic channel chosen by the loop guard.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog

from src.pricesync.core.monitoring import processor_paused, remote_request_duration_seconds
from src.pricesync.sync.errors import (
    EntityNotFoundError,
    JobStateError,
    RemoteError,
    RemoteTransientError,
    UnmappedEntityError,
)
from src.pricesync.sync.fields import FieldMapper
from src.pricesync.sync.loop_guard import LoopGuard
from src.pricesync.sync.schemas import FailureKind, SyncJob
from src.pricesync.sync.stats import SyncStats

if TYPE_CHECKING:
    from src.pricesync.core.redis import QueueNotifier
    from src.pricesync.sync.adapters.remote import RemoteAdapter
    from src.pricesync.sync.adapters.source import SourceStore
    from src.pricesync.sync.queue import SyncQueue

logger = structlog.get_logger(__name__)


class QueueProcessor:
    """Claims jobs from the SyncQueue and pushes them to the Remote.

    Args:
        queue: SyncQueue to drain.
        store: SourceStore for link resolution and current field values.
        remote: RemoteAdapter performing the update.
        loop_guard: Provides the outbound update channel.
        mapper: FieldMapper producing Remote payloads.
        stats: Advisory process-local counters.
        notifier: Optional QueueNotifier for early wake-up.
        concurrency: Number of worker tasks.
        poll_interval: Idle sleep between claim attempts, in seconds.
        remote_timeout: Hard deadline for one Remote call, in seconds.
        stuck_timeout: PROCESSING age after which the sweeper reclaims a job.
        sweep_interval: Seconds between stuck-job sweeps.
        history_days: Finished jobs older than this are deleted by the sweeper
            (None keeps history forever).
        shutdown_grace: Seconds stop() waits for in-flight pushes to finish.
    """

    def __init__(
        self,
        queue: SyncQueue,
        store: SourceStore,
        remote: RemoteAdapter,
        loop_guard: LoopGuard,
        *,
        mapper: FieldMapper | None = None,
        stats: SyncStats | None = None,
        notifier: QueueNotifier | None = None,
        concurrency: int = 4,
        poll_interval: float = 5.0,
        remote_timeout: float = 30.0,
        stuck_timeout: float = 600.0,
        sweep_interval: float = 60.0,
        history_days: float | None = None,
        shutdown_grace: float = 35.0,
    ) -> None:
        self._queue = queue
        self._store = store
        self._remote = remote
        self._loop_guard = loop_guard
        self._mapper = mapper or FieldMapper()
        self._stats = stats or SyncStats()
        self._notifier = notifier
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._remote_timeout = remote_timeout
        self._stuck_timeout = stuck_timeout
        self._sweep_interval = sweep_interval
        self._history_days = history_days
        self._shutdown_grace = shutdown_grace
        self._instance_id = uuid.uuid4().hex[:8]
        self._running = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._tasks: list[asyncio.Task] = []
        self._in_flight: dict[int, SyncJob] = {}
        self._busy: set[str] = set()
        self._worker_tasks: dict[str, asyncio.Task] = {}
        self._paused_globally = False

    # ── Lifecycle ───────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return not self._resume_event.is_set() or self._paused_globally

    def start(self) -> None:
        """Spawn worker and sweeper tasks on the running event loop."""
        if self._running:
            return
        self._running = True
        if self._notifier is not None:
            self._notifier.start()
        for n in range(self._concurrency):
            worker_id = f"{self._instance_id}-w{n}"
            self._worker_tasks[worker_id] = asyncio.create_task(self._worker_loop(worker_id), name=worker_id)
        self._tasks.append(asyncio.create_task(self._sweep_loop(), name=f"{self._instance_id}-sweeper"))
        logger.info(
            "processor.started",
            instance_id=self._instance_id,
            concurrency=self._concurrency,
            poll_interval=self._poll_interval,
        )

    async def stop(self) -> None:
        """Stop claiming, let in-flight pushes finish, then stop all tasks.

        Idle workers are cancelled at once. Busy workers get ``shutdown_grace``
        seconds; a push still running after that is cancelled and its job goes
        back to PENDING, which releases the entity lock without waiting for
        the stuck-job sweep.
        """
        if not self._running:
            return
        self._running = False
        self._resume_event.set()

        for task in self._tasks:
            task.cancel()
        busy = []
        for worker_id, task in self._worker_tasks.items():
            if worker_id in self._busy:
                busy.append(task)
            else:
                task.cancel()

        overdue: set[asyncio.Task] = set()
        if busy:
            logger.info("processor.draining", in_flight=len(self._in_flight), grace_seconds=self._shutdown_grace)
            _, overdue = await asyncio.wait(busy, timeout=self._shutdown_grace)
        interrupted = list(self._in_flight.values()) if overdue else []
        for task in overdue:
            task.cancel()

        await asyncio.gather(*self._tasks, *self._worker_tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._worker_tasks.clear()
        self._busy.clear()

        for job in interrupted:
            await self._release_interrupted(job)
        if self._notifier is not None:
            await self._notifier.stop()
        logger.info("processor.stopped", instance_id=self._instance_id, interrupted=len(interrupted))

    def pause(self) -> None:
        """Stop claiming new jobs in this process. Jobs already in flight run to completion."""
        self._resume_event.clear()
        processor_paused.set(1)
        logger.info("processor.paused", in_flight=len(self._in_flight))

    def resume(self) -> None:
        self._resume_event.set()
        processor_paused.set(0)
        logger.info("processor.resumed")

    async def pause_all(self, reason: str | None = None) -> None:
        """Pause claiming in every process that shares the queue database."""
        await self._queue.set_processing_paused(True, reason)
        self._paused_globally = True
        self.pause()

    async def resume_all(self) -> None:
        await self._queue.set_processing_paused(False)
        self._paused_globally = False
        self.resume()

    def status(self) -> dict[str, Any]:
        return {
            "instance_id": self._instance_id,
            "running": self._running,
            "paused": self.paused,
            "paused_globally": self._paused_globally,
            "concurrency": self._concurrency,
            "in_flight": sorted(job.id for job in self._in_flight.values()),
        }

    # ── Loops ───────────────────────────────────────────────────────────────

    async def _worker_loop(self, worker_id: str) -> None:
        while self._running:
            await self._resume_event.wait()
            if not self._running:
                break
            self._busy.add(worker_id)
            try:
                processed = await self._claim_and_process(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("processor.worker_error", worker_id=worker_id)
                processed = False
            finally:
                self._busy.discard(worker_id)
            if not processed and self._running:
                await self._idle()

    async def _claim_and_process(self, worker_id: str) -> bool:
        self._paused_globally = await self._queue.processing_paused()
        if self._paused_globally:
            return False
        return await self.run_once(worker_id)

    async def _idle(self) -> None:
        if self._notifier is not None:
            await self._notifier.wait(self._poll_interval)
        else:
            await asyncio.sleep(self._poll_interval)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self._queue.reclaim_stuck(timedelta(seconds=self._stuck_timeout))
                if self._history_days:
                    await self._queue.purge_finished(timedelta(days=self._history_days))
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("processor.sweep_error")

    async def run_once(self, worker_id: str = "manual") -> bool:
        """Claim and process at most one job. Returns True if a job was processed."""
        job = await self._queue.claim_next(worker_id)
        if job is None:
            return False
        await self.process_job(job)
        return True

    async def drain(self, worker_id: str = "drain", max_jobs: int | None = None) -> int:
        """Process claimable jobs until none remain (or ``max_jobs`` is reached)."""
        count = 0
        while max_jobs is None or count < max_jobs:
            if not await self.run_once(worker_id):
                break
            count += 1
        return count

    # ── Job processing ──────────────────────────────────────────────────────

    async def process_job(self, job: SyncJob) -> SyncJob | None:
        """Push one claimed job and record its outcome.

        The job id is bound to the structlog context for the duration, so
        every log line (and Sentry event) from the push carries it.

        Returns:
            The job after its transition, or None if the job was taken away
            meanwhile (e.g. reclaimed by the stuck-job sweep).
        """
        self._in_flight[job.id] = job
        try:
            with structlog.contextvars.bound_contextvars(job_id=job.id, entity_id=job.entity_id):
                return await self._process(job)
        finally:
            self._in_flight.pop(job.id, None)

    async def _process(self, job: SyncJob) -> SyncJob | None:
        log = logger.bind(family_id=job.family_id)
        try:
            result = await self._push(job)
        except UnmappedEntityError as exc:
            return await self._record_failure(job, str(exc), retryable=False, kind=FailureKind.UNMAPPED)
        except EntityNotFoundError as exc:
            return await self._record_failure(job, str(exc), retryable=False, kind=FailureKind.UNMAPPED)
        except RemoteTransientError as exc:
            return await self._record_failure(job, str(exc), retryable=True, kind=FailureKind.TRANSIENT)
        except asyncio.TimeoutError:
            return await self._record_failure(
                job,
                f"Remote call exceeded {self._remote_timeout}s",
                retryable=True,
                kind=FailureKind.TRANSIENT,
            )
        except RemoteError as exc:
            return await self._record_failure(job, str(exc), retryable=False, kind=FailureKind.REJECTED)
        except Exception as exc:
            log.exception("processor.unexpected_error")
            return await self._record_failure(
                job, f"Unexpected error: {exc}", retryable=True, kind=FailureKind.TRANSIENT
            )

        try:
            done = await self._queue.complete(job.id, result)
        except JobStateError:
            log.warning("processor.job_lost", reason="no longer PROCESSING at completion")
            return None
        self._stats.record_job("completed")
        log.info("sync.job_completed", dry_run=result.get("dry_run", False), fields=result.get("fields"))
        return done

    async def _push(self, job: SyncJob) -> dict[str, Any]:
        link = await self._store.get_link(job.entity_id)
        if link is None:
            raise UnmappedEntityError(job.entity_id)

        fields = await self._store.read_entity_fields(job.entity_id)
        payload = self._mapper.to_remote(fields)
        summary: dict[str, Any] = {
            "remote_id": link.remote_id,
            "fields": payload,
            "dry_run": job.dry_run,
        }
        if job.dry_run:
            return summary

        channel = self._loop_guard.outbound_channel()
        start = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(
                self._remote.update_record(link.remote_id, payload, channel),
                timeout=self._remote_timeout,
            )
        finally:
            remote_request_duration_seconds.labels(channel=channel.value).observe(time.perf_counter() - start)
        summary["channel"] = channel.value
        summary["updated_fields"] = outcome.updated_fields
        return summary

    async def _record_failure(
        self, job: SyncJob, error: str, *, retryable: bool, kind: FailureKind
    ) -> SyncJob | None:
        try:
            updated = await self._queue.fail(job.id, error, retryable=retryable, kind=kind)
        except JobStateError:
            logger.warning("processor.job_lost", job_id=job.id, reason="no longer PROCESSING at failure")
            return None
        self._stats.record_job("retried" if updated.status.value == "PENDING" else "failed")
        return updated

    async def _release_interrupted(self, job: SyncJob) -> None:
        """Return a job whose push was cut off by shutdown to PENDING."""
        try:
            await self._record_failure(
                job, "Processor shut down during push", retryable=True, kind=FailureKind.TRANSIENT
            )
        except Exception:
            logger.exception("processor.release_failed", job_id=job.id, entity_id=job.entity_id)
            return
        logger.warning("processor.job_interrupted", job_id=job.id, entity_id=job.entity_id)
