"""Inbound webhook endpoint for Remote pricing change notifications.

Contract: 200 for both applied and intentionally skipped deliveries, 400
for rejected ones, 401 for a bad secret, and 500 only for infrastructure
failures, so the Remote's retry policy fires exactly when a redelivery
can help.
"""

from __future__ import annotations

from json import JSONDecodeError

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from src.pricesync.api.deps import get_sync_services
from src.pricesync.sync.errors import WebhookAuthenticationError, WebhookValidationError
from src.pricesync.sync.service import SyncServices

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["webhook"])


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, **extra},
    )


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    services: SyncServices = Depends(get_sync_services),
) -> JSONResponse:
    """Receive one Remote change notification."""
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        body = None

    try:
        result = await services.ingress.receive(request.headers.get("Authorization"), body)
    except WebhookAuthenticationError as exc:
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))
    except WebhookValidationError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc), details=exc.errors)
    except Exception:
        logger.exception("webhook.internal_error")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal error processing webhook")

    content = {
        "success": result.success,
        "message": (
            f"Pricing update skipped: {result.reason}"
            if result.reason
            else "Pricing updated successfully"
        ),
        "itemId": result.item_id,
        "result": result.result.value,
        "reason": result.reason,
        "jobIds": result.job_ids,
        "ignoredFields": result.ignored_fields,
        "processingTimeMs": result.processing_time_ms,
    }
    return JSONResponse(status_code=status.HTTP_200_OK, content=content)
