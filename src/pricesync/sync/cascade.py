"""Change detector / cascade planner.

A pricing change on any family member is a change to every member, since
pricing lives on the family. The planner turns one change into one
PENDING job per live sibling (the originating item included). There is no
deduplication: two changes to the same family produce two full sets of
jobs, and per-entity exclusion in the queue keeps them serialized.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from src.pricesync.sync.errors import EntityNotFoundError, FamilyNotFoundError
from src.pricesync.sync.schemas import JobPriority, NewJob, SyncJob, TriggerSource

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.pricesync.sync.adapters.source import SourceStore
    from src.pricesync.sync.queue import SyncQueue

logger = structlog.get_logger(__name__)


class CascadePlanner:
    """Plans and enqueues sync jobs for families and single items.

    Args:
        store: SourceStore used to enumerate family members.
        queue: SyncQueue the jobs are written to.
    """

    def __init__(self, store: SourceStore, queue: SyncQueue) -> None:
        self._store = store
        self._queue = queue

    async def plan_cascade(
        self,
        family_id: int,
        reason: str,
        *,
        priority: JobPriority = JobPriority.NORMAL,
        trigger_source: TriggerSource = TriggerSource.WEBHOOK_CASCADE,
        payload: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> list[SyncJob]:
        """Enqueue one job per live member of the family.

        Args:
            family_id: Product family that changed.
            reason: Human-readable trigger description stored on each job.
            priority: Dequeue priority for every job in the cascade.
            trigger_source: What caused the cascade.
            payload: Extra metadata copied into each job's payload.
            session: Caller transaction to join (the caller commits).

        Returns:
            The created jobs, possibly empty for a family with no live items.
        """
        members = await self._store.list_family_members(family_id, session=session)
        base_payload = {**(payload or {}), "reason": reason}
        jobs = [
            NewJob(
                entity_id=entity_id,
                family_id=family_id,
                priority=priority,
                trigger_source=trigger_source,
                payload=dict(base_payload),
            )
            for entity_id in members
        ]
        created = await self._queue.enqueue_many(jobs, session=session)
        logger.info(
            "cascade.planned",
            family_id=family_id,
            siblings=len(members),
            jobs=len(created),
            priority=priority.value,
            trigger_source=trigger_source.value,
        )
        return created

    async def trigger_entity(
        self,
        entity_id: int,
        reason: str = "manual trigger",
        *,
        priority: JobPriority = JobPriority.HIGH,
        payload: dict[str, Any] | None = None,
    ) -> SyncJob:
        """Enqueue a single item push.

        Raises:
            EntityNotFoundError: If the item does not exist or is archived.
        """
        item = await self._store.get_item(entity_id)
        if item is None or item.archived:
            raise EntityNotFoundError(f"Item {entity_id} not found")
        job = await self._queue.enqueue(
            NewJob(
                entity_id=item.id,
                family_id=item.product_id,
                priority=priority,
                trigger_source=TriggerSource.MANUAL_ITEM,
                payload={**(payload or {}), "reason": reason},
            )
        )
        logger.info("cascade.entity_triggered", entity_id=entity_id, job_id=job.id, priority=priority.value)
        return job

    async def trigger_item_code(
        self,
        item_code: str,
        reason: str = "manual trigger",
        *,
        priority: JobPriority = JobPriority.HIGH,
        payload: dict[str, Any] | None = None,
    ) -> SyncJob:
        """Enqueue a single item push, looking the item up by its Remote item code.

        Raises:
            EntityNotFoundError: If no live item has that code.
        """
        item = await self._store.resolve_entity(None, item_code)
        if item is None or item.archived:
            raise EntityNotFoundError(f"Item with code {item_code} not found")
        return await self.trigger_entity(item.id, reason, priority=priority, payload=payload)

    async def trigger_family(
        self,
        family_id: int,
        reason: str = "manual trigger",
        *,
        priority: JobPriority = JobPriority.HIGH,
        payload: dict[str, Any] | None = None,
    ) -> list[SyncJob]:
        """Enqueue a push for every live item in a family.

        Raises:
            FamilyNotFoundError: If the product does not exist.
        """
        if not await self._store.family_exists(family_id):
            raise FamilyNotFoundError(f"Product {family_id} not found")
        return await self.plan_cascade(
            family_id,
            reason,
            priority=priority,
            trigger_source=TriggerSource.MANUAL_FAMILY,
            payload=payload,
        )
