"""Pydantic schemas for sync jobs, webhook deliveries and catalog reads.

SyncJob is the read model returned by the queue; the ORM rows live in
``src.pricesync.sync.models``. WebhookPayload validates the raw delivery
body shape; WebhookEvent is the classified, transient form the ingress
works with after authentication.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.pricesync.sync.fields import FieldSet


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobPriority(str, Enum):
    """Dequeue ordering hint. Never changes processing semantics."""

    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        return {"HIGH": 3, "NORMAL": 2, "LOW": 1}[self.value]


class SyncEventType(str, Enum):
    PRICING_UPDATED = "pricing.updated"


class TriggerSource(str, Enum):
    WEBHOOK_CASCADE = "webhook_cascade"
    MANUAL_ITEM = "manual_item"
    MANUAL_FAMILY = "manual_family"


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    UNMAPPED = "unmapped"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"
    STUCK = "stuck"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


# ── Queue ────────────────────────────────────────────────────────────────────


class NewJob(BaseModel):
    """A job to be enqueued."""

    entity_id: int
    family_id: int
    event_type: SyncEventType = SyncEventType.PRICING_UPDATED
    priority: JobPriority = JobPriority.NORMAL
    trigger_source: TriggerSource = TriggerSource.WEBHOOK_CASCADE
    payload: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = None


class SyncJob(BaseModel):
    """Durable unit of work to push one Source entity to the Remote."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_id: int
    family_id: int
    event_type: SyncEventType
    status: JobStatus
    priority: JobPriority
    trigger_source: TriggerSource
    retry_count: int = 0
    max_retries: int = 3
    failure_kind: FailureKind | None = None
    error_message: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    processing_result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    available_at: datetime
    claimed_at: datetime | None = None
    claimed_by: str | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def dry_run(self) -> bool:
        return self.payload.get("live_sync") is False


class QueueCounts(BaseModel):
    by_status: dict[str, int] = Field(default_factory=dict)
    by_priority: dict[str, int] = Field(default_factory=dict)
    total: int = 0
    oldest_pending_at: datetime | None = None


# ── Catalog ──────────────────────────────────────────────────────────────────


class CatalogItem(BaseModel):
    """A Source item (family member)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    code: str | None = None
    archived: bool = False


class EntityLink(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_id: int
    remote_id: str
    created_at: datetime | None = None


# ── Webhook ──────────────────────────────────────────────────────────────────


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_type: str | None = Field(default=None, alias="eventType")
    item_data: dict[str, Any] | None = Field(default=None, alias="itemData")
    timestamp: Any = None
    source: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """Classified inbound change notification (transient)."""

    event_type: str
    remote_item_code: str
    remote_id: str
    fields: FieldSet
    ignored_fields: list[str] = field(default_factory=list)
    skip_flag: bool = False
    origin: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class IngressOutcome(str, Enum):
    UPDATED = "updated"
    SKIPPED = "skipped"


class IngressResult(BaseModel):
    """Outcome of one webhook delivery."""

    success: bool = True
    item_id: str
    result: IngressOutcome
    reason: str | None = None
    entity_id: int | None = None
    family_id: int | None = None
    applied_fields: dict[str, str] = Field(default_factory=dict)
    ignored_fields: list[str] = Field(default_factory=list)
    job_ids: list[int] = Field(default_factory=list)
    processing_time_ms: float = 0.0
