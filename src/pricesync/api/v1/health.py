"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness check verifies the database and reports the queue processor
state; Redis is optional and only reported when configured.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from src.pricesync.config import get_settings
from src.pricesync.core.database import check_db
from src.pricesync.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database and (optional) Redis connectivity. Returns check results dict."""
    checks: dict = {"database": "ok", "redis": "disabled"}

    try:
        await check_db()
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    redis = get_redis_pool()
    if redis is not None:
        try:
            pong = await redis.ping()
            checks["redis"] = "ok" if pong else "error"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database answers, 503 otherwise.

    Redis only feeds early wake-ups, so a Redis failure degrades the
    report without failing readiness.
    """
    checks = await _check_dependencies()
    services = getattr(request.app.state, "sync", None)
    ready = checks.get("database") == "ok"
    if services is not None:
        checks["processor"] = services.processor.status()
        if ready:
            counts = await services.queue.counts()
            checks["queue"] = counts.by_status

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if ready else "degraded",
            "checks": checks,
        },
    )
