"""Turns a signed Stripe webhook delivery into a StripeWebhookEvent.

Only the event id, its type and the PaymentIntent it concerns are kept;
the rest of the payload is dropped here and never logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import stripe

from hotelbook.domain.models import AuthorizationStatus

logger = logging.getLogger(__name__)

# Event types that move a payment authorization; everything else is ignored.
EVENT_STATUS = {
    "payment_intent.amount_capturable_updated": AuthorizationStatus.AUTHORIZED,
    "payment_intent.succeeded": AuthorizationStatus.CAPTURED,
    "charge.refunded": AuthorizationStatus.REFUNDED,
    "payment_intent.payment_failed": AuthorizationStatus.FAILED,
    "payment_intent.canceled": AuthorizationStatus.FAILED,
}


class InvalidSignatureError(Exception):
    pass


class InvalidPayloadError(Exception):
    pass


@dataclass(frozen=True)
class StripeWebhookEvent:
    event_id: str
    event_type: str
    payment_intent_id: str | None
    # None when the event does not move the authorization
    status: AuthorizationStatus | None = None


def verify_and_extract(payload: bytes, signature: str, secret: str) -> StripeWebhookEvent:
    """Check the Stripe-Signature header and pull out the routing fields.

    Raises:
        InvalidSignatureError: The signature does not match ``secret``.
        InvalidPayloadError: The body is not a Stripe event.
    """
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("stripe webhook signature rejected")
        raise InvalidSignatureError("invalid signature") from exc
    except ValueError as exc:
        logger.warning("stripe webhook body is not a valid event")
        raise InvalidPayloadError("invalid payload") from exc

    event_id, event_type = event.get("id"), event.get("type")
    if not (event_id and event_type):
        raise InvalidPayloadError("event id and type are required")

    obj = (event.get("data") or {}).get("object") or {}
    return StripeWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        payment_intent_id=_intent_id(event_type, obj),
        status=_status(event_type, obj),
    )


def _intent_id(event_type: str, obj: Any) -> str | None:
    # charge.* objects point back at their intent, possibly expanded
    if event_type.startswith("charge.") or obj.get("object") == "charge":
        intent = obj.get("payment_intent")
        return intent.get("id") if isinstance(intent, dict) else intent
    return obj.get("id")


def _status(event_type: str, obj: Any) -> AuthorizationStatus | None:
    status = EVENT_STATUS.get(event_type)
    # charge.refunded also fires for partial refunds
    if status == AuthorizationStatus.REFUNDED and not _fully_refunded(obj):
        return None
    return status


def _fully_refunded(charge: Any) -> bool:
    if charge.get("refunded"):
        return True
    captured = charge.get("amount_captured")
    refunded = charge.get("amount_refunded")
    return bool(captured) and refunded is not None and refunded >= captured
