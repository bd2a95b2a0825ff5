"""Structured logging setup and the per-request log line.

Every request gets an X-Request-ID (the caller's, when the Remote or an
operator sends one) that is bound into structlog contextvars, so log lines
emitted by the webhook ingress and the sync API carry it too. Requests to
/health and /metrics log at debug level to keep the worker logs readable.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.pricesync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

QUIET_PATH_PREFIXES = ("/health", "/metrics")

# Chatty third-party loggers that only matter when debugging the Remote or the DB.
_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")


def configure_structlog() -> None:
    """Set up stdlib logging and structlog once per process.

    Development renders to the console; production emits one JSON object per
    line with the service name attached.
    """
    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.insert(0, _add_service("pricesync"))
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _add_service(name: str):
    def processor(_logger, _method, event_dict: dict) -> dict:
        event_dict.setdefault("service", name)
        return event_dict

    return processor


class LoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id, time the request and log one `http.request` line."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        path = request.url.path
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=path,
                    duration_ms=_elapsed_ms(started),
                )
                raise

            response.headers["X-Request-ID"] = request_id
            status_code = response.status_code
            if status_code >= 500:
                level = logging.ERROR
            elif status_code >= 400:
                level = logging.WARNING
            elif path.startswith(QUIET_PATH_PREFIXES):
                level = logging.DEBUG
            else:
                level = logging.INFO

            logger.log(
                level,
                "http.request",
                method=request.method,
                path=path,
                status_code=status_code,
                duration_ms=_elapsed_ms(started),
            )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
