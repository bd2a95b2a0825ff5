"""Webhook ingress -- applies Remote pricing changes to the Source catalog.

Processing order for one delivery:
1. Authenticate the bearer secret (constant-time compare).
2. Validate the envelope: event type, item code.
3. Classify itemData into recognized pricing fields and ignored keys.
4. Loop guard: skip-flagged or self-originated changes are accepted and
   skipped with no writes.
5. Validate values.
6. In ONE transaction: resolve the Source item, write the recognized
   fields to its family, and enqueue one sync job per sibling. If any step
   fails the whole transaction rolls back and the caller answers 5xx, so
   the Remote redelivers and no write is left without its cascade.
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.pricesync.core.database import session_scope
from src.pricesync.core.security import extract_bearer_token, verify_shared_secret
from src.pricesync.sync.errors import (
    FamilyNotFoundError,
    WebhookAuthenticationError,
    WebhookValidationError,
)
from src.pricesync.sync.fields import FieldMapper
from src.pricesync.sync.loop_guard import LoopGuard, parse_flag
from src.pricesync.sync.schemas import (
    IngressOutcome,
    IngressResult,
    WebhookEvent,
    WebhookPayload,
)
from src.pricesync.sync.stats import SyncStats

if TYPE_CHECKING:
    from src.pricesync.sync.adapters.source import SourceStore
    from src.pricesync.sync.cascade import CascadePlanner
    from src.pricesync.sync.queue import SyncQueue

logger = structlog.get_logger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


class WebhookIngress:
    """Receives Remote change notifications and applies them.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        store: SourceStore for entity resolution and field writes.
        planner: CascadePlanner enqueueing sibling jobs.
        queue: SyncQueue, notified once the transaction commits.
        loop_guard: LoopGuard deciding which deliveries to skip.
        secret: Shared bearer secret expected from the Remote.
        event_type: The single accepted eventType value.
        skip_flag_field: itemData key of the business skip flag.
        mapper: FieldMapper for classification and validation.
        stats: Advisory process-local counters.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        store: SourceStore,
        planner: CascadePlanner,
        queue: SyncQueue,
        loop_guard: LoopGuard,
        *,
        secret: str,
        event_type: str = "item.pricing.updated",
        skip_flag_field: str = "custitemf3_lisa_item",
        mapper: FieldMapper | None = None,
        stats: SyncStats | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._planner = planner
        self._queue = queue
        self._loop_guard = loop_guard
        self._secret = secret
        self._event_type = event_type
        self._skip_flag_field = skip_flag_field
        self._mapper = mapper or FieldMapper()
        self._stats = stats or SyncStats()
        self._reserved = frozenset({"itemid", "internalid", skip_flag_field})

    @property
    def stats(self) -> SyncStats:
        return self._stats

    # ── Parsing ─────────────────────────────────────────────────────────────

    def parse(self, body: Any) -> WebhookEvent:
        """Validate the delivery envelope and classify its fields.

        Raises:
            WebhookValidationError: Malformed body, unsupported event type,
                or missing item code.
        """
        if not isinstance(body, Mapping):
            raise WebhookValidationError("Request body must be a JSON object")
        try:
            payload = WebhookPayload.model_validate(body)
        except ValidationError as exc:
            raise WebhookValidationError(
                "Malformed webhook payload",
                [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()],
            ) from exc

        if payload.event_type != self._event_type:
            raise WebhookValidationError(f"Unsupported event type: {payload.event_type}")

        item_data = payload.item_data or {}
        item_code = item_data.get("itemid")
        if item_code is None or not str(item_code).strip():
            raise WebhookValidationError("Missing required field: itemData.itemid")
        remote_id = item_data.get("internalid")

        classified = self._mapper.classify(item_data, reserved=self._reserved)
        return WebhookEvent(
            event_type=payload.event_type,
            remote_item_code=str(item_code).strip(),
            remote_id=str(remote_id).strip() if remote_id not in (None, "") else "",
            fields=classified.fields,
            ignored_fields=classified.ignored,
            skip_flag=parse_flag(item_data.get(self._skip_flag_field)),
            origin=payload.source,
            timestamp=_parse_timestamp(payload.timestamp),
        )

    # ── Receive ─────────────────────────────────────────────────────────────

    async def receive(self, authorization: str | None, body: Any) -> IngressResult:
        """Authenticate, validate and apply one webhook delivery.

        Args:
            authorization: Raw Authorization header value.
            body: Decoded JSON body.

        Returns:
            IngressResult with result "updated" or "skipped".

        Raises:
            WebhookAuthenticationError: Invalid or missing secret.
            WebhookValidationError: Rejected delivery (no side effects).
            Exception: Any infrastructure failure; nothing was committed.
        """
        start = time.monotonic()
        self._stats.record_webhook_received()

        if not verify_shared_secret(extract_bearer_token(authorization), self._secret):
            self._stats.record_webhook("rejected")
            logger.warning("webhook.auth_failed")
            raise WebhookAuthenticationError("Invalid webhook secret")

        try:
            event = self.parse(body)
        except WebhookValidationError as exc:
            self._stats.record_webhook("rejected")
            logger.warning("webhook.rejected", error=str(exc), errors=exc.errors)
            raise

        logger.info(
            "webhook.received",
            item_code=event.remote_item_code,
            remote_id=event.remote_id or None,
            fields=event.fields.to_json(),
            ignored_fields=event.ignored_fields,
            skip_flag=event.skip_flag,
            origin=event.origin,
        )

        decision = self._loop_guard.should_suppress(event)
        if decision.suppress:
            self._stats.record_webhook("skipped")
            logger.info("webhook.skipped", item_code=event.remote_item_code, reason=decision.reason)
            return IngressResult(
                item_id=event.remote_item_code,
                result=IngressOutcome.SKIPPED,
                reason=decision.reason,
                ignored_fields=event.ignored_fields,
                processing_time_ms=_elapsed_ms(start),
            )

        errors = self._mapper.validate(event.fields)
        if errors:
            self._stats.record_webhook("rejected")
            logger.warning("webhook.invalid_values", item_code=event.remote_item_code, errors=errors)
            raise WebhookValidationError("Invalid pricing values", errors)

        try:
            result = await self._apply(event)
        except WebhookValidationError:
            self._stats.record_webhook("rejected")
            raise
        except Exception:
            self._stats.record_webhook("failed")
            logger.exception("webhook.apply_failed", item_code=event.remote_item_code)
            raise

        self._stats.record_webhook("updated")
        result.processing_time_ms = _elapsed_ms(start)
        logger.info(
            "webhook.applied",
            item_code=event.remote_item_code,
            entity_id=result.entity_id,
            family_id=result.family_id,
            jobs=len(result.job_ids),
            processing_time_ms=result.processing_time_ms,
        )
        return result

    async def _apply(self, event: WebhookEvent) -> IngressResult:
        async with session_scope(self._session_factory) as session:
            item = await self._store.resolve_entity(
                event.remote_id or None, event.remote_item_code, session=session
            )
            if item is None or item.archived:
                logger.warning(
                    "webhook.unknown_item",
                    item_code=event.remote_item_code,
                    remote_id=event.remote_id or None,
                )
                raise WebhookValidationError(f"Unknown item: {event.remote_item_code}")

            try:
                previous = await self._store.apply_fields(item.product_id, event.fields, session=session)
            except FamilyNotFoundError as exc:
                raise WebhookValidationError(str(exc)) from exc

            jobs = await self._planner.plan_cascade(
                item.product_id,
                reason=f"Remote pricing update for {event.remote_item_code}",
                payload={
                    "origin_entity_id": item.id,
                    "remote_item_code": event.remote_item_code,
                    "fields": event.fields.to_json(),
                    "previous_fields": previous.to_json(),
                    "event_timestamp": event.timestamp.isoformat(),
                },
                session=session,
            )
            await session.commit()

        await self._queue.notify(len(jobs))
        return IngressResult(
            item_id=event.remote_item_code,
            result=IngressOutcome.UPDATED,
            entity_id=item.id,
            family_id=item.product_id,
            applied_fields=event.fields.to_json(),
            ignored_fields=event.ignored_fields,
            job_ids=[job.id for job in jobs],
        )


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)
