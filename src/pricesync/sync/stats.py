"""Process-local sync statistics.

Advisory only: counters reset on restart and are never read for control
flow. Durable state lives in the queue tables. Every increment is mirrored
into the Prometheus counters in core.monitoring.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.pricesync.core.monitoring import sync_jobs_finished_total, webhook_events_total

WEBHOOK_OUTCOMES = ("updated", "skipped", "rejected", "failed")
JOB_OUTCOMES = ("completed", "retried", "failed")


@dataclass
class SyncStats:
    """Counters for webhook deliveries and job attempts since process start."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    webhooks_received: int = 0
    webhooks: dict[str, int] = field(default_factory=lambda: dict.fromkeys(WEBHOOK_OUTCOMES, 0))
    jobs: dict[str, int] = field(default_factory=lambda: dict.fromkeys(JOB_OUTCOMES, 0))
    last_webhook_at: datetime | None = None
    last_job_finished_at: datetime | None = None

    def record_webhook_received(self) -> None:
        self.webhooks_received += 1
        self.last_webhook_at = datetime.now(timezone.utc)

    def record_webhook(self, outcome: str) -> None:
        self.webhooks[outcome] = self.webhooks.get(outcome, 0) + 1
        webhook_events_total.labels(outcome=outcome).inc()

    def record_job(self, outcome: str) -> None:
        self.jobs[outcome] = self.jobs.get(outcome, 0) + 1
        self.last_job_finished_at = datetime.now(timezone.utc)
        sync_jobs_finished_total.labels(outcome=outcome).inc()

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for the stats endpoint."""
        handled = self.webhooks["updated"] + self.webhooks["skipped"]
        attempted = handled + self.webhooks["failed"]
        finished = self.jobs["completed"] + self.jobs["failed"]
        return {
            "started_at": self.started_at.isoformat(),
            "webhooks": {
                "received": self.webhooks_received,
                **self.webhooks,
                "success_rate": round(handled / attempted * 100, 2) if attempted else None,
                "last_received_at": self.last_webhook_at.isoformat() if self.last_webhook_at else None,
            },
            "jobs": {
                **self.jobs,
                "success_rate": round(self.jobs["completed"] / finished * 100, 2) if finished else None,
                "last_finished_at": (
                    self.last_job_finished_at.isoformat() if self.last_job_finished_at else None
                ),
            },
        }
