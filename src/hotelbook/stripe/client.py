"""Thin wrapper around the Stripe SDK (PaymentIntents, manual capture).

Purpose:
- Keep stripe.* imports out of domain code.
- Pass idempotency keys through so retries never create duplicate holds.
- Translate SDK exceptions into ProviderDeclinedError / ProviderError.
- Never log full Stripe payloads (only object ids).
"""

from __future__ import annotations

import logging
import os
from typing import Any

import stripe

from hotelbook.payments.provider import (
    ProviderDeclinedError,
    ProviderError,
    ProviderIntent,
)

logger = logging.getLogger(__name__)


def _to_intent(intent: Any) -> ProviderIntent:
    return ProviderIntent(
        external_id=intent.id,
        status=intent.status,
        amount_cents=intent.amount,
        amount_received_cents=getattr(intent, "amount_received", 0) or 0,
    )


class StripePaymentProvider:
    """PaymentIntent-based provider.

    Usage:
        provider = StripePaymentProvider()  # reads STRIPE_SECRET_KEY
        intent = provider.create_authorization(
            amount_cents=20000,
            currency="usd",
            idempotency_key="reservation:abc:booking:20000",
            payment_method="pm_card_visa",
        )
    """

    def __init__(self, api_key: str | None = None, *, max_network_retries: int = 2) -> None:
        """Raises RuntimeError if no key is given and STRIPE_SECRET_KEY is unset."""
        api_key = api_key or os.environ.get("STRIPE_SECRET_KEY")
        if not api_key:
            raise RuntimeError(
                "Stripe API key not provided. "
                "Set STRIPE_SECRET_KEY or pass api_key parameter."
            )
        self._client = stripe.StripeClient(api_key, max_network_retries=max_network_retries)

    def create_authorization(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderIntent:
        """Create and confirm a PaymentIntent that holds funds until capture."""
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "capture_method": "manual",
            "metadata": metadata or {},
        }
        if payment_method:
            params["payment_method"] = payment_method
            params["confirm"] = True
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        try:
            intent = self._client.v1.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.CardError as exc:
            raise ProviderDeclinedError(exc.code or "card_declined", "card declined") from exc
        except stripe.StripeError as exc:
            raise ProviderError(_reason(exc), "authorization failed") from exc

        logger.info(
            "stripe_payment_intent_created",
            extra={"extra_fields": {"payment_intent_id": intent.id, "status": intent.status}},
        )
        return _to_intent(intent)

    def capture(self, external_id: str, *, idempotency_key: str) -> ProviderIntent:
        try:
            intent = self._client.v1.payment_intents.capture(
                external_id,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.CardError as exc:
            raise ProviderDeclinedError(exc.code or "card_declined", "capture declined") from exc
        except stripe.StripeError as exc:
            raise ProviderError(_reason(exc), "capture failed") from exc

        logger.info(
            "stripe_payment_intent_captured",
            extra={"extra_fields": {"payment_intent_id": intent.id, "status": intent.status}},
        )
        return _to_intent(intent)

    def refund(self, external_id: str, amount_cents: int, *, idempotency_key: str) -> str:
        """Refund part or all of a captured intent; returns the refund id."""
        try:
            refund = self._client.v1.refunds.create(
                params={"payment_intent": external_id, "amount": amount_cents},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise ProviderError(_reason(exc), "refund failed") from exc

        logger.info(
            "stripe_refund_created",
            extra={"extra_fields": {"payment_intent_id": external_id, "refund_id": refund.id}},
        )
        return refund.id

    def void(self, external_id: str, *, idempotency_key: str) -> None:
        """Cancel an uncaptured PaymentIntent, releasing the hold."""
        try:
            self._client.v1.payment_intents.cancel(
                external_id,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise ProviderError(_reason(exc), "void failed") from exc

        logger.info(
            "stripe_payment_intent_cancelled",
            extra={"extra_fields": {"payment_intent_id": external_id}},
        )


def _reason(exc: stripe.StripeError) -> str:
    if isinstance(exc, stripe.APIConnectionError):
        return "provider_unavailable"
    if isinstance(exc, stripe.RateLimitError):
        return "rate_limited"
    return getattr(exc, "code", None) or "provider_error"
