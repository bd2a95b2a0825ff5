"""REST API endpoints for sync queue management.

Operator-facing: manual triggers, job status and history, bulk retry,
stuck-job reclaim, purge, cancellation, processor pause/resume, entity
links, validation issues and statistics. All endpoints require the
operator API key when one is configured.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.pricesync.api.deps import get_sync_services, require_operator
from src.pricesync.config import get_settings
from src.pricesync.core.database import utcnow
from src.pricesync.sync.errors import (
    EntityNotFoundError,
    FamilyNotFoundError,
    JobNotFoundError,
    JobStateError,
    LinkConflictError,
)
from src.pricesync.sync.schemas import (
    CatalogItem,
    EntityLink,
    JobPriority,
    JobStatus,
    QueueCounts,
    SyncJob,
)
from src.pricesync.sync.service import SyncServices

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_operator)])


# ── Request Schemas ──────────────────────────────────────────────────────────


class TriggerRequest(BaseModel):
    """Request body for manual triggers."""

    priority: JobPriority = JobPriority.HIGH
    reason: str = "manual trigger"
    dry_run: bool = False


class RetryFailedRequest(BaseModel):
    error_pattern: str | None = None
    limit: int | None = Field(default=None, ge=1)


class ReclaimRequest(BaseModel):
    older_than_seconds: int | None = Field(default=None, ge=0)


class PurgeRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=0)
    include_completed: bool = False


class LinkRequest(BaseModel):
    remote_id: str = Field(min_length=1)


class PauseRequest(BaseModel):
    reason: str | None = None


# ── Response Schemas ─────────────────────────────────────────────────────────


class TriggerResponse(BaseModel):
    jobs: list[SyncJob]
    count: int


class CountResponse(BaseModel):
    count: int


class ValidationIssuesResponse(BaseModel):
    failed_jobs: list[SyncJob] = Field(default_factory=list)
    unmapped_items: list[CatalogItem] = Field(default_factory=list)


class StatsResponse(BaseModel):
    queue: QueueCounts
    queue_last_24h: QueueCounts
    processor: dict[str, Any]
    stats: dict[str, Any]


def _trigger_payload(body: TriggerRequest) -> dict[str, Any]:
    return {"live_sync": False} if body.dry_run else {}


# ── Triggers ─────────────────────────────────────────────────────────────────


@router.post("/items/{entity_id}/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_item(
    entity_id: int,
    body: TriggerRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> TriggerResponse:
    """Enqueue a push for one item (HIGH priority by default)."""
    body = body or TriggerRequest()
    try:
        job = await services.planner.trigger_entity(
            entity_id, body.reason, priority=body.priority, payload=_trigger_payload(body)
        )
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return TriggerResponse(jobs=[job], count=1)


@router.post(
    "/items/by-code/{item_code}/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED
)
async def trigger_item_by_code(
    item_code: str,
    body: TriggerRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> TriggerResponse:
    """Enqueue a push for one item identified by its Remote item code."""
    body = body or TriggerRequest()
    try:
        job = await services.planner.trigger_item_code(
            item_code, body.reason, priority=body.priority, payload=_trigger_payload(body)
        )
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return TriggerResponse(jobs=[job], count=1)


@router.post(
    "/families/{family_id}/trigger", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED
)
async def trigger_family(
    family_id: int,
    body: TriggerRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> TriggerResponse:
    """Enqueue a push for every live item of a product family."""
    body = body or TriggerRequest()
    try:
        jobs = await services.planner.trigger_family(
            family_id, body.reason, priority=body.priority, payload=_trigger_payload(body)
        )
    except FamilyNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return TriggerResponse(jobs=jobs, count=len(jobs))


# ── Jobs ─────────────────────────────────────────────────────────────────────


@router.get("/jobs", response_model=list[SyncJob])
async def list_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    entity_id: int | None = None,
    family_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: SyncServices = Depends(get_sync_services),
) -> list[SyncJob]:
    """Job history, newest first."""
    return await services.queue.list_jobs(
        status=status_filter, entity_id=entity_id, family_id=family_id, limit=limit, offset=offset
    )


@router.get("/jobs/{job_id}", response_model=SyncJob)
async def get_job(job_id: int, services: SyncServices = Depends(get_sync_services)) -> SyncJob:
    job = await services.queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job


@router.delete("/jobs/{job_id}", response_model=SyncJob)
async def cancel_job(job_id: int, services: SyncServices = Depends(get_sync_services)) -> SyncJob:
    """Cancel a job. Only PENDING jobs can be cancelled."""
    try:
        return await services.queue.cancel(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except JobStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/jobs/retry-failed", response_model=CountResponse)
async def retry_failed(
    body: RetryFailedRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> CountResponse:
    """Reset FAILED jobs (optionally matching an error pattern) to PENDING."""
    body = body or RetryFailedRequest()
    count = await services.queue.reset_failed(body.error_pattern, limit=body.limit)
    return CountResponse(count=count)


@router.post("/jobs/reclaim-stuck", response_model=CountResponse)
async def reclaim_stuck(
    body: ReclaimRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> CountResponse:
    body = body or ReclaimRequest()
    seconds = body.older_than_seconds
    if seconds is None:
        seconds = get_settings().SYNC_STUCK_JOB_TIMEOUT_SECONDS
    count = await services.queue.reclaim_stuck(timedelta(seconds=seconds))
    return CountResponse(count=count)


@router.post("/jobs/purge", response_model=CountResponse)
async def purge_jobs(
    body: PurgeRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> CountResponse:
    """Delete stale PENDING/FAILED jobs, plus finished history when requested."""
    body = body or PurgeRequest()
    days = body.older_than_days
    if days is None:
        days = get_settings().SYNC_STALE_JOB_DAYS
    older_than = timedelta(days=days)
    count = await services.queue.purge_stale(older_than)
    if body.include_completed:
        count += await services.queue.purge_stale(older_than, statuses=(JobStatus.COMPLETED,))
    return CountResponse(count=count)


# ── Processor ────────────────────────────────────────────────────────────────


@router.post("/pause")
async def pause_processor(
    body: PauseRequest | None = None,
    services: SyncServices = Depends(get_sync_services),
) -> dict:
    """Pause claiming in every API and worker process. In-flight jobs finish."""
    body = body or PauseRequest()
    await services.processor.pause_all(body.reason)
    return services.processor.status()


@router.post("/resume")
async def resume_processor(services: SyncServices = Depends(get_sync_services)) -> dict:
    await services.processor.resume_all()
    return services.processor.status()


# ── Links & issues ───────────────────────────────────────────────────────────


@router.put("/links/{entity_id}", response_model=EntityLink)
async def upsert_link(
    entity_id: int,
    body: LinkRequest,
    services: SyncServices = Depends(get_sync_services),
) -> EntityLink:
    """Create or replace the Remote id link for an item."""
    try:
        return await services.store.upsert_link(entity_id, body.remote_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LinkConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/validation-issues", response_model=ValidationIssuesResponse)
async def validation_issues(
    limit: int = Query(default=100, ge=1, le=1000),
    services: SyncServices = Depends(get_sync_services),
) -> ValidationIssuesResponse:
    """Failed jobs needing attention and items without a Remote link."""
    return ValidationIssuesResponse(
        failed_jobs=await services.queue.list_issues(limit=limit),
        unmapped_items=await services.store.list_unmapped_items(limit=limit),
    )


@router.get("/stats", response_model=StatsResponse)
async def sync_stats(services: SyncServices = Depends(get_sync_services)) -> StatsResponse:
    return StatsResponse(
        queue=await services.queue.counts(),
        queue_last_24h=await services.queue.counts(since=utcnow() - timedelta(hours=24)),
        processor=services.processor.status(),
        stats=services.stats.snapshot(),
    )
