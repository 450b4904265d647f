"""Worker task routes, called on a schedule (APP_ROLE=worker only).

- POST /tasks/settlements/retry: retry pending refunds that are due.
- POST /tasks/modifications/expire: drop upgrade quotes past their TTL.

Both are safe to call repeatedly; each returns counts for monitoring.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from hotelbook.api.dependencies import Services, get_services
from hotelbook.api.task_auth import verify_task_auth
from hotelbook.observability.correlation import get_correlation_id
from hotelbook.observability.logging import get_logger
from hotelbook.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/settlements/retry", response_model=None)
def retry_settlements(
    request: Request,
    services: Services = Depends(get_services),
) -> dict | Response:
    if not verify_task_auth(request):
        return Response(status_code=401, content="unauthorized")
    result = services.settlements.retry_pending_refunds()
    logger.info(
        "settlement retry task done",
        extra={"extra_fields": safe_log_context(correlationId=get_correlation_id(), **result)},
    )
    return {"ok": True, **result}


@router.post("/modifications/expire", response_model=None)
def expire_modifications(
    request: Request,
    services: Services = Depends(get_services),
) -> dict | Response:
    if not verify_task_auth(request):
        return Response(status_code=401, content="unauthorized")
    expired = services.lifecycle.expire_modifications()
    logger.info(
        "modification expiry task done",
        extra={
            "extra_fields": safe_log_context(correlationId=get_correlation_id(), expired=expired)
        },
    )
    return {"ok": True, "expired": expired}
