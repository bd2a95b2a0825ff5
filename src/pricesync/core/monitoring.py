"""Prometheus metrics and optional Sentry reporting.

The HTTP series are fed by MetricsMiddleware. The pricesync_* series are
fed by the webhook ingress, the sync queue and the queue processor, and
exposed on /metrics next to the advisory SyncStats snapshot.
"""

from __future__ import annotations

import time

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests handled, by route template",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds, by route template",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

webhook_events_total = Counter(
    "pricesync_webhook_events_total",
    "Inbound webhook deliveries by outcome",
    ["outcome"],
)

sync_jobs_enqueued_total = Counter(
    "pricesync_jobs_enqueued_total",
    "Sync jobs enqueued",
    ["trigger_source", "priority"],
)

sync_jobs_finished_total = Counter(
    "pricesync_jobs_finished_total",
    "Sync job attempts by outcome",
    ["outcome"],
)

remote_request_duration_seconds = Histogram(
    "pricesync_remote_request_duration_seconds",
    "Remote ERP update call duration in seconds",
    ["channel"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

processor_paused = Gauge(
    "pricesync_processor_paused",
    "1 while the queue processor is paused",
)



# ── HTTP middleware ──────────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count and time HTTP requests, labelled by route template.

    Scrapes of /metrics are not counted.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Unmatched paths share one label so random URLs cannot grow the series set
        route = request.scope.get("route")
        endpoint = route.path if route is not None else "<unmatched>"
        http_requests_total.labels(request.method, endpoint, str(response.status_code)).inc()
        http_request_duration_seconds.labels(request.method, endpoint).observe(elapsed)
        return response


# ── Sentry ───────────────────────────────────────────────────────────────────

_SYNC_TAGS = ("job_id", "entity_id", "family_id", "request_id")


def _sync_before_send(event: dict, hint: dict) -> dict:
    """Copy sync identifiers from the log context onto the event and drop secrets."""
    ctx = structlog.contextvars.get_contextvars()
    tags = event.setdefault("tags", {})
    for key in _SYNC_TAGS:
        if key in ctx:
            tags[key] = str(ctx[key])

    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in ("authorization", "x-api-key"):
                headers[name] = "[redacted]"
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Enable Sentry error reporting for the API process or a worker.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment name, also used as the Sentry environment.
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        send_default_pii=False,
        integrations=[FastApiIntegration()],
        before_send=_sync_before_send,
    )


def get_metrics_response() -> Response:
    """Render the default registry in the Prometheus text format."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
