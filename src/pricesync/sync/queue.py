"""Durable sync job queue backed by the sync_jobs table.

Claiming is atomic: in one transaction the claimer takes the entity's
lock row in sync_entity_locks and flips the job PENDING -> PROCESSING
with a conditional UPDATE. Two claimers can never both win the same job,
and no two jobs for the same entity are ever PROCESSING at once. The lock
row is removed in the same transaction that moves the job out of
PROCESSING (complete, fail, stuck reclaim).

Retryable failures return the job to PENDING with exponential backoff
expressed as ``available_at``; the job is not claimable before then.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.pricesync.core.database import as_utc, session_scope, utcnow
from src.pricesync.core.monitoring import sync_jobs_enqueued_total
from src.pricesync.sync.errors import JobNotFoundError, JobStateError
from src.pricesync.sync.models import EntityLockModel, SyncControlModel, SyncJobModel
from src.pricesync.sync.schemas import (
    FailureKind,
    JobPriority,
    JobStatus,
    NewJob,
    QueueCounts,
    SyncJob,
)

if TYPE_CHECKING:
    from src.pricesync.core.redis import QueueNotifier

logger = structlog.get_logger(__name__)

# Candidates examined per claim attempt before giving up until the next poll
CLAIM_BATCH_SIZE = 25

_PRIORITY_RANK = case(
    {priority.value: priority.rank for priority in JobPriority},
    value=SyncJobModel.priority,
    else_=0,
)

PROCESSING_PAUSED_KEY = "processing_paused"


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_job(model: SyncJobModel) -> SyncJob:
    """Convert SyncJobModel to SyncJob schema."""
    return SyncJob(
        id=model.id,
        entity_id=model.entity_id,
        family_id=model.family_id,
        event_type=model.event_type,
        status=model.status,
        priority=model.priority,
        trigger_source=model.trigger_source,
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        failure_kind=model.failure_kind,
        error_message=model.error_message,
        payload=model.payload or {},
        processing_result=model.processing_result,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
        available_at=as_utc(model.available_at),
        claimed_at=as_utc(model.claimed_at),
        claimed_by=model.claimed_by,
        completed_at=as_utc(model.completed_at),
    )


def retry_delay(attempt: int, base_seconds: float, max_seconds: float) -> timedelta:
    """Backoff before retry ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    seconds = base_seconds * (2 ** max(attempt - 1, 0))
    return timedelta(seconds=min(seconds, max_seconds))


# ── Queue ───────────────────────────────────────────────────────────────────


class SyncQueue:
    """Persistent job queue with atomic claim and per-entity exclusion.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        max_retries: Default retry budget for new jobs.
        retry_delay_base: Backoff base in seconds.
        max_retry_delay: Backoff cap in seconds.
        notifier: Optional QueueNotifier woken after each committed enqueue.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        *,
        max_retries: int = 3,
        retry_delay_base: float = 2.0,
        max_retry_delay: float = 30.0,
        notifier: QueueNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_retries = max_retries
        self._retry_delay_base = retry_delay_base
        self._max_retry_delay = max_retry_delay
        self._notifier = notifier

    # ── Enqueue ─────────────────────────────────────────────────────────────

    async def enqueue(self, job: NewJob, session: AsyncSession | None = None) -> SyncJob:
        """Persist one PENDING job."""
        jobs = await self.enqueue_many([job], session=session)
        return jobs[0]

    async def enqueue_many(
        self, jobs: Sequence[NewJob], session: AsyncSession | None = None
    ) -> list[SyncJob]:
        """Persist several PENDING jobs in one transaction.

        With a caller session the rows join its transaction and the caller
        commits (and should call ``notify`` afterwards). No deduplication:
        every request becomes its own row.
        """
        if not jobs:
            return []

        async with session_scope(self._session_factory, session) as s:
            now = utcnow()
            models = [
                SyncJobModel(
                    entity_id=job.entity_id,
                    family_id=job.family_id,
                    event_type=job.event_type.value,
                    status=JobStatus.PENDING.value,
                    priority=job.priority.value,
                    trigger_source=job.trigger_source.value,
                    retry_count=0,
                    max_retries=job.max_retries if job.max_retries is not None else self._max_retries,
                    payload=job.payload,
                    created_at=now,
                    updated_at=now,
                    available_at=now,
                )
                for job in jobs
            ]
            s.add_all(models)
            await s.flush()
            created = [_model_to_job(m) for m in models]
            if session is None:
                await s.commit()

        for job in created:
            sync_jobs_enqueued_total.labels(
                trigger_source=job.trigger_source.value, priority=job.priority.value
            ).inc()

        if session is None:
            await self.notify(len(created))
        return created

    async def notify(self, count: int = 1) -> None:
        """Wake idle processor workers (no-op without a notifier)."""
        if self._notifier is not None and count > 0:
            await self._notifier.notify(count)

    # ── Claim ───────────────────────────────────────────────────────────────

    async def claim_next(self, worker_id: str) -> SyncJob | None:
        """Atomically claim the next eligible job, or None when nothing is claimable.

        Eligible: PENDING, ``available_at`` reached, and no other job for the
        same entity currently holding the entity lock. Order: priority rank
        desc, created_at asc, id asc.
        """
        async with session_scope(self._session_factory) as s:
            now = utcnow()
            entity_locked = (
                select(EntityLockModel.entity_id)
                .where(EntityLockModel.entity_id == SyncJobModel.entity_id)
                .exists()
            )
            stmt = (
                select(SyncJobModel)
                .where(
                    SyncJobModel.status == JobStatus.PENDING.value,
                    SyncJobModel.available_at <= now,
                    ~entity_locked,
                )
                .order_by(_PRIORITY_RANK.desc(), SyncJobModel.created_at.asc(), SyncJobModel.id.asc())
                .limit(CLAIM_BATCH_SIZE)
                .with_for_update(skip_locked=True)
            )
            candidates = (await s.execute(stmt)).scalars().all()

            conn = await s.connection()
            insert = pg_insert if conn.dialect.name == "postgresql" else sqlite_insert
            seen_entities: set[int] = set()

            for candidate in candidates:
                if candidate.entity_id in seen_entities:
                    continue
                seen_entities.add(candidate.entity_id)

                lock_stmt = (
                    insert(EntityLockModel)
                    .values(entity_id=candidate.entity_id, job_id=candidate.id, acquired_at=now)
                    .on_conflict_do_nothing(index_elements=["entity_id"])
                )
                acquired = await s.execute(lock_stmt)
                if acquired.rowcount != 1:
                    continue

                claimed = await s.execute(
                    update(SyncJobModel)
                    .where(
                        SyncJobModel.id == candidate.id,
                        SyncJobModel.status == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        claimed_at=now,
                        claimed_by=worker_id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    await s.execute(
                        delete(EntityLockModel).where(EntityLockModel.job_id == candidate.id)
                    )
                    continue

                await s.commit()
                await s.refresh(candidate)
                job = _model_to_job(candidate)
                logger.debug(
                    "queue.job_claimed",
                    job_id=job.id,
                    entity_id=job.entity_id,
                    worker_id=worker_id,
                    priority=job.priority.value,
                )
                return job

            await s.rollback()
            return None

    # ── Transitions ─────────────────────────────────────────────────────────

    async def complete(self, job_id: int, result: dict[str, Any] | None = None) -> SyncJob:
        """Mark a PROCESSING job COMPLETED and release its entity lock.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not PROCESSING (e.g. reclaimed meanwhile).
        """
        async with session_scope(self._session_factory) as s:
            model = await self._get_for_update(s, job_id)
            if model.status != JobStatus.PROCESSING.value:
                await s.rollback()
                raise JobStateError(f"Job {job_id} is {model.status}, cannot complete")
            now = utcnow()
            model.status = JobStatus.COMPLETED.value
            model.processing_result = result or {}
            model.error_message = None
            model.failure_kind = None
            model.completed_at = now
            model.updated_at = now
            await self._release_lock(s, job_id)
            await s.commit()
            return _model_to_job(model)

    async def fail(
        self,
        job_id: int,
        error: str,
        *,
        retryable: bool,
        kind: FailureKind | None = None,
    ) -> SyncJob:
        """Record a failed attempt for a PROCESSING job and release its entity lock.

        Retryable failures go back to PENDING with ``retry_count + 1`` and a
        backoff ``available_at``; once the retry budget is spent the job is
        FAILED as exhausted. Non-retryable failures are FAILED immediately.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is not PROCESSING.
        """
        async with session_scope(self._session_factory) as s:
            model = await self._get_for_update(s, job_id)
            if model.status != JobStatus.PROCESSING.value:
                await s.rollback()
                raise JobStateError(f"Job {job_id} is {model.status}, cannot fail")
            now = utcnow()
            self._apply_failure(model, error, retryable=retryable, kind=kind, now=now)
            await self._release_lock(s, job_id)
            await s.commit()
            job = _model_to_job(model)

        log = logger.warning if job.status == JobStatus.PENDING else logger.error
        log(
            "queue.job_failed",
            job_id=job.id,
            entity_id=job.entity_id,
            status=job.status.value,
            retry_count=job.retry_count,
            failure_kind=job.failure_kind.value if job.failure_kind else None,
            error=error,
        )
        return job

    def _apply_failure(
        self,
        model: SyncJobModel,
        error: str,
        *,
        retryable: bool,
        kind: FailureKind | None,
        now: datetime,
    ) -> None:
        model.updated_at = now
        model.claimed_at = None
        model.claimed_by = None
        if retryable:
            attempt = model.retry_count + 1
            if attempt > model.max_retries:
                model.status = JobStatus.FAILED.value
                model.failure_kind = FailureKind.EXHAUSTED.value
                model.error_message = f"Max retries exceeded: {error}"
                model.completed_at = now
                return
            model.status = JobStatus.PENDING.value
            model.retry_count = attempt
            model.failure_kind = (kind or FailureKind.TRANSIENT).value
            model.error_message = error
            model.available_at = now + retry_delay(
                attempt, self._retry_delay_base, self._max_retry_delay
            )
            return
        model.status = JobStatus.FAILED.value
        model.failure_kind = (kind or FailureKind.REJECTED).value
        model.error_message = error
        model.completed_at = now

    async def cancel(self, job_id: int) -> SyncJob:
        """Delete a PENDING job.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStateError: If the job is no longer PENDING.
        """
        async with session_scope(self._session_factory) as s:
            model = await s.get(SyncJobModel, job_id)
            if model is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            job = _model_to_job(model)
            result = await s.execute(
                delete(SyncJobModel)
                .where(SyncJobModel.id == job_id, SyncJobModel.status == JobStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await s.rollback()
                raise JobStateError(f"Job {job_id} is {job.status.value}, only PENDING jobs can be cancelled")
            await s.commit()
        logger.info("queue.job_cancelled", job_id=job_id, entity_id=job.entity_id)
        return job

    # ── Bulk operations ─────────────────────────────────────────────────────

    async def reset_failed(self, error_pattern: str | None = None, limit: int | None = None) -> int:
        """Return FAILED jobs to PENDING with a fresh retry budget.

        Args:
            error_pattern: Substring matched against error_message (SQL LIKE).
            limit: Maximum number of jobs to reset (oldest first).

        Returns:
            Number of jobs reset.
        """
        async with session_scope(self._session_factory) as s:
            ids_stmt = select(SyncJobModel.id).where(SyncJobModel.status == JobStatus.FAILED.value)
            if error_pattern:
                ids_stmt = ids_stmt.where(SyncJobModel.error_message.like(f"%{error_pattern}%"))
            ids_stmt = ids_stmt.order_by(SyncJobModel.id.asc())
            if limit is not None:
                ids_stmt = ids_stmt.limit(limit)
            ids = list((await s.execute(ids_stmt)).scalars().all())
            if not ids:
                return 0
            now = utcnow()
            result = await s.execute(
                update(SyncJobModel)
                .where(SyncJobModel.id.in_(ids), SyncJobModel.status == JobStatus.FAILED.value)
                .values(
                    status=JobStatus.PENDING.value,
                    retry_count=0,
                    failure_kind=None,
                    error_message=None,
                    completed_at=None,
                    claimed_at=None,
                    claimed_by=None,
                    available_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await s.commit()
            count = result.rowcount

        logger.info("queue.failed_jobs_reset", count=count, error_pattern=error_pattern)
        await self.notify(count)
        return count

    async def purge_stale(
        self,
        older_than: timedelta,
        statuses: Iterable[JobStatus] = (JobStatus.PENDING, JobStatus.FAILED),
    ) -> int:
        """Delete jobs in ``statuses`` not updated within ``older_than``.

        PROCESSING jobs are never purged; use ``reclaim_stuck`` for those.
        """
        wanted = [JobStatus(st).value for st in statuses if JobStatus(st) != JobStatus.PROCESSING]
        if not wanted:
            return 0
        cutoff = utcnow() - older_than
        async with session_scope(self._session_factory) as s:
            result = await s.execute(
                delete(SyncJobModel)
                .where(SyncJobModel.status.in_(wanted), SyncJobModel.updated_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await s.commit()
            count = result.rowcount
        logger.info("queue.jobs_purged", count=count, statuses=wanted, cutoff=cutoff.isoformat())
        return count

    async def purge_finished(self, older_than: timedelta) -> int:
        """History cleanup: delete COMPLETED and FAILED jobs older than the cutoff."""
        return await self.purge_stale(older_than, statuses=(JobStatus.COMPLETED, JobStatus.FAILED))

    async def reclaim_stuck(self, older_than: timedelta) -> int:
        """Return PROCESSING jobs claimed before the cutoff to PENDING.

        A reclaim counts as a failed attempt: jobs whose retry budget is
        spent are FAILED instead. Entity locks are released either way.
        """
        cutoff = utcnow() - older_than
        async with session_scope(self._session_factory) as s:
            stmt = (
                select(SyncJobModel)
                .where(
                    SyncJobModel.status == JobStatus.PROCESSING.value,
                    SyncJobModel.claimed_at < cutoff,
                )
                .with_for_update(skip_locked=True)
            )
            stuck = (await s.execute(stmt)).scalars().all()
            if not stuck:
                return 0
            now = utcnow()
            for model in stuck:
                self._apply_failure(
                    model,
                    f"Processing timed out (claimed by {model.claimed_by})",
                    retryable=True,
                    kind=FailureKind.STUCK,
                    now=now,
                )
                await self._release_lock(s, model.id)
            await s.commit()
            count = len(stuck)

        logger.warning("queue.stuck_jobs_reclaimed", count=count, cutoff=cutoff.isoformat())
        await self.notify(count)
        return count

    # ── Processing switch ───────────────────────────────────────────────────

    async def set_processing_paused(self, paused: bool, reason: str | None = None) -> None:
        """Persist the pause switch every processor checks before claiming."""
        async with session_scope(self._session_factory) as s:
            model = await s.get(SyncControlModel, PROCESSING_PAUSED_KEY)
            if model is None:
                model = SyncControlModel(key=PROCESSING_PAUSED_KEY)
                s.add(model)
            model.value = {"paused": paused, "reason": reason}
            model.updated_at = utcnow()
            await s.commit()
        logger.info("queue.processing_paused" if paused else "queue.processing_resumed", reason=reason)
        if not paused:
            await self.notify()

    async def processing_paused(self) -> bool:
        async with session_scope(self._session_factory) as s:
            model = await s.get(SyncControlModel, PROCESSING_PAUSED_KEY)
            return bool(model is not None and model.value.get("paused"))

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, job_id: int) -> SyncJob | None:
        async with session_scope(self._session_factory) as s:
            model = await s.get(SyncJobModel, job_id)
            return _model_to_job(model) if model is not None else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        entity_id: int | None = None,
        family_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SyncJob]:
        """Job history, newest first."""
        async with session_scope(self._session_factory) as s:
            stmt = select(SyncJobModel)
            if status is not None:
                stmt = stmt.where(SyncJobModel.status == JobStatus(status).value)
            if entity_id is not None:
                stmt = stmt.where(SyncJobModel.entity_id == entity_id)
            if family_id is not None:
                stmt = stmt.where(SyncJobModel.family_id == family_id)
            stmt = stmt.order_by(SyncJobModel.id.desc()).limit(limit).offset(offset)
            return [_model_to_job(m) for m in (await s.execute(stmt)).scalars().all()]

    async def list_issues(
        self,
        kinds: Iterable[FailureKind] = (FailureKind.UNMAPPED, FailureKind.REJECTED),
        limit: int = 100,
    ) -> list[SyncJob]:
        """FAILED jobs that need operator attention (mapping or data problems)."""
        wanted = [FailureKind(k).value for k in kinds]
        async with session_scope(self._session_factory) as s:
            stmt = (
                select(SyncJobModel)
                .where(
                    SyncJobModel.status == JobStatus.FAILED.value,
                    SyncJobModel.failure_kind.in_(wanted),
                )
                .order_by(SyncJobModel.id.desc())
                .limit(limit)
            )
            return [_model_to_job(m) for m in (await s.execute(stmt)).scalars().all()]

    async def counts(self, since: datetime | None = None) -> QueueCounts:
        """Job counts by status (and PENDING by priority), optionally since a time."""
        async with session_scope(self._session_factory) as s:
            by_status_stmt = select(SyncJobModel.status, func.count()).group_by(SyncJobModel.status)
            if since is not None:
                by_status_stmt = by_status_stmt.where(SyncJobModel.created_at >= since)
            by_status = {row[0]: row[1] for row in (await s.execute(by_status_stmt)).all()}

            pending = SyncJobModel.status == JobStatus.PENDING.value
            by_priority_stmt = (
                select(SyncJobModel.priority, func.count()).where(pending).group_by(SyncJobModel.priority)
            )
            by_priority = {row[0]: row[1] for row in (await s.execute(by_priority_stmt)).all()}

            oldest = (
                await s.execute(select(func.min(SyncJobModel.created_at)).where(pending))
            ).scalar_one_or_none()

        for st in JobStatus:
            by_status.setdefault(st.value, 0)
        return QueueCounts(
            by_status=by_status,
            by_priority=by_priority,
            total=sum(by_status.values()),
            oldest_pending_at=as_utc(oldest),
        )

    async def entity_locks(self) -> dict[int, int]:
        """Currently held entity locks as {entity_id: job_id}."""
        async with session_scope(self._session_factory) as s:
            rows = (await s.execute(select(EntityLockModel.entity_id, EntityLockModel.job_id))).all()
            return {row[0]: row[1] for row in rows}

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    async def _get_for_update(s: AsyncSession, job_id: int) -> SyncJobModel:
        model = (
            await s.execute(
                select(SyncJobModel).where(SyncJobModel.id == job_id).with_for_update()
            )
        ).scalar_one_or_none()
        if model is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return model

    @staticmethod
    async def _release_lock(s: AsyncSession, job_id: int) -> None:
        await s.execute(
            delete(EntityLockModel)
            .where(EntityLockModel.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
