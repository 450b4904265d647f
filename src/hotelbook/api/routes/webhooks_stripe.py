"""POST /webhooks/stripe: keeps payment_authorizations in step with Stripe.

Responses are plain text so Stripe's dashboard shows the outcome:

    ok                 status applied
    duplicate          event id seen before, or the status would move backwards
    ignored            event type does not touch an authorization
    invalid signature  / invalid payload (400)

A 5xx (missing secret, ledger write failed) makes Stripe redeliver. Neither
the payload nor the Stripe-Signature header is ever logged.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, Depends, Header, Request, Response

from hotelbook.api.dependencies import Services, get_services
from hotelbook.observability.correlation import get_correlation_id
from hotelbook.observability.logging import get_logger
from hotelbook.observability.redaction import safe_log_context
from hotelbook.stripe.webhook import (
    InvalidPayloadError,
    InvalidSignatureError,
    StripeWebhookEvent,
    verify_and_extract,
)

router = APIRouter(tags=["webhooks"])

logger = get_logger(__name__)


def _context(event: StripeWebhookEvent | None = None, **fields) -> dict:
    if event is not None:
        fields.update(event_id_prefix=event.event_id[:8], event_type=event.event_type)
    return {"extra_fields": safe_log_context(correlationId=get_correlation_id(), **fields)}


def _reply(status_code: int, text: str) -> Response:
    return Response(status_code=status_code, content=text, media_type="text/plain")


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Response:
    secret = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured", extra=_context())
        return _reply(500, "server configuration error")

    try:
        event = verify_and_extract(await request.body(), stripe_signature, secret)
    except InvalidSignatureError:
        return _reply(400, "invalid signature")
    except InvalidPayloadError:
        return _reply(400, "invalid payload")

    status = event.status
    if status is None or not event.payment_intent_id:
        logger.info("stripe event ignored", extra=_context(event))
        return _reply(200, "ignored")

    try:
        applied = services.ledger.apply_provider_status(
            event.payment_intent_id, status.value, event_id=event.event_id
        )
    except Exception:
        logger.exception("failed to apply stripe event", extra=_context(event))
        return _reply(500, "apply failed")

    logger.info(
        "stripe event applied" if applied else "stripe event skipped",
        extra=_context(event, status=status.value),
    )
    return _reply(200, "ok" if applied else "duplicate")
