"""Payment coordination for reservations.

Wraps the provider with the lifecycle's money rules:
- authorize is idempotent per (reservation_id, amount, purpose): a repeated
  call returns the stored authorization instead of creating a second hold;
- the same deterministic key is sent to the provider, so a retry after a
  timeout that actually succeeded provider-side is deduplicated there too;
  after a failed or voided attempt the provider key gets an attempt counter;
- refunds on one authorization are serialized and recorded once per key;
- provider failures and timeouts surface as PaymentDeclinedError (authorize,
  capture) or PaymentRefundError (refund) and leave no partial record;
- every authorization record is written through the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from hotelbook.domain.errors import PaymentDeclinedError, PaymentRefundError
from hotelbook.domain.models import AuthorizationStatus, PaymentAuthorization
from hotelbook.infra.locks import KeyedLocks
from hotelbook.ledger.base import ReservationLedger
from hotelbook.observability.redaction import safe_log_context
from hotelbook.payments.provider import (
    AUTHORIZED_STATUSES,
    CAPTURED_STATUSES,
    PaymentProvider,
    ProviderError,
)

logger = logging.getLogger(__name__)


def authorization_key(reservation_id: str, amount_cents: int, purpose: str = "booking") -> str:
    """Deterministic idempotency key for an authorization."""
    return f"reservation:{reservation_id}:{purpose}:{amount_cents}"


def provider_authorization_key(key: str, payment_method: str | None, *, attempt: int = 0) -> str:
    """Key sent to the provider for one authorization attempt.

    A different payment method after a decline is a new provider request.
    Once an attempt under *key* has failed or been voided, the provider
    would replay its cached intent for the old key, so later attempts carry
    a counter.
    """
    provider_key = f"{key}:{payment_method or 'default'}"
    return f"{provider_key}:attempt-{attempt}" if attempt else provider_key


class PaymentCoordinator:
    def __init__(self, provider: PaymentProvider, ledger: ReservationLedger) -> None:
        self._provider = provider
        self._ledger = ledger
        self._refund_locks = KeyedLocks()

    def _require(self, external_id: str) -> PaymentAuthorization:
        auth = self._ledger.get_authorization(external_id)
        if auth is None:
            raise KeyError(f"Unknown payment authorization: {external_id}")
        return auth

    def authorize(
        self,
        reservation_id: str,
        amount_cents: int,
        currency: str,
        *,
        payment_method: str | None = None,
        purpose: str = "booking",
    ) -> PaymentAuthorization:
        """Place (or reuse) a hold for *amount_cents*.

        Raises:
            ValueError: amount is not positive.
            PaymentDeclinedError: declined, requires customer action, or
                provider failure/timeout.
        """
        if amount_cents <= 0:
            raise ValueError("authorization amount must be positive")

        key = authorization_key(reservation_id, amount_cents, purpose)
        existing = self._ledger.find_authorization_by_key(key)
        if existing is not None:
            logger.info(
                "payment authorization reused",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=reservation_id,
                        payment_ref=existing.external_id,
                        amount_cents=amount_cents,
                    )
                },
            )
            return existing

        provider_key = provider_authorization_key(
            key, payment_method, attempt=self._ledger.count_failed_authorizations(key)
        )
        try:
            intent = self._provider.create_authorization(
                amount_cents=amount_cents,
                currency=currency,
                idempotency_key=provider_key,
                payment_method=payment_method,
                metadata={"reservation_id": reservation_id, "purpose": purpose},
            )
        except ProviderError as exc:
            logger.warning(
                "payment authorization failed",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=reservation_id,
                        amount_cents=amount_cents,
                        reason_code=exc.reason_code,
                    )
                },
            )
            raise PaymentDeclinedError(
                f"Payment authorization failed for reservation {reservation_id}",
                reason_code=exc.reason_code,
            ) from exc

        if intent.status in CAPTURED_STATUSES:
            status = AuthorizationStatus.CAPTURED
        elif intent.status in AUTHORIZED_STATUSES:
            status = AuthorizationStatus.AUTHORIZED
        else:
            status = AuthorizationStatus.FAILED

        auth = PaymentAuthorization(
            external_id=intent.external_id,
            reservation_id=reservation_id,
            amount_cents=amount_cents,
            currency=currency,
            status=status,
            idempotency_key=key,
            captured_cents=intent.amount_received_cents if status == AuthorizationStatus.CAPTURED else 0,
        )
        self._ledger.save_authorization(auth)

        if status == AuthorizationStatus.FAILED:
            logger.warning(
                "payment authorization not capturable",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=reservation_id,
                        payment_ref=intent.external_id,
                        provider_status=intent.status,
                    )
                },
            )
            raise PaymentDeclinedError(
                f"Payment for reservation {reservation_id} was not authorized",
                reason_code=intent.status,
            )

        logger.info(
            "payment authorized",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    payment_ref=auth.external_id,
                    amount_cents=amount_cents,
                )
            },
        )
        return auth

    def capture(self, external_id: str) -> PaymentAuthorization:
        """Capture the full held amount. Capturing twice is a no-op.

        Raises:
            PaymentDeclinedError: provider refused or could not be reached.
        """
        auth = self._require(external_id)
        if auth.status in (AuthorizationStatus.CAPTURED, AuthorizationStatus.REFUNDED):
            return auth
        if auth.status == AuthorizationStatus.FAILED:
            raise PaymentDeclinedError(
                f"Authorization {external_id} is not capturable", reason_code="failed"
            )

        try:
            intent = self._provider.capture(
                external_id, idempotency_key=f"{external_id}:capture"
            )
        except ProviderError as exc:
            logger.warning(
                "payment capture failed",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=auth.reservation_id,
                        payment_ref=external_id,
                        reason_code=exc.reason_code,
                    )
                },
            )
            raise PaymentDeclinedError(
                f"Payment capture failed for {external_id}", reason_code=exc.reason_code
            ) from exc

        captured = replace(
            auth,
            status=AuthorizationStatus.CAPTURED,
            captured_cents=intent.amount_received_cents or auth.amount_cents,
        )
        self._ledger.save_authorization(captured)
        return captured

    def refund(
        self,
        external_id: str,
        amount_cents: int,
        *,
        idempotency_key: str | None = None,
    ) -> PaymentAuthorization:
        """Refund part or all of the captured amount.

        Refunds against one authorization run one at a time, and the ledger
        adds each provider-confirmed refund exactly once per key.

        Raises:
            ValueError: amount not positive or above the refundable balance.
            PaymentRefundError: provider refused or could not be reached.
        """
        if amount_cents <= 0:
            raise ValueError("refund amount must be positive")

        with self._refund_locks.hold(external_id):
            auth = self._require(external_id)
            if idempotency_key is not None and self._ledger.refund_recorded(idempotency_key):
                return auth
            if amount_cents > auth.net_captured_cents:
                raise ValueError(
                    f"refund of {amount_cents} exceeds refundable balance "
                    f"{auth.net_captured_cents} on {external_id}"
                )

            key = idempotency_key or (
                f"{external_id}:refund:{auth.refunded_cents}:{amount_cents}"
            )
            try:
                self._provider.refund(external_id, amount_cents, idempotency_key=key)
            except ProviderError as exc:
                logger.error(
                    "payment refund failed",
                    extra={
                        "extra_fields": safe_log_context(
                            reservation_id=auth.reservation_id,
                            payment_ref=external_id,
                            amount_cents=amount_cents,
                            reason_code=exc.reason_code,
                        )
                    },
                )
                raise PaymentRefundError(
                    f"Refund of {amount_cents} on {external_id} failed",
                    reason_code=exc.reason_code,
                ) from exc

            updated = self._ledger.record_refund(external_id, amount_cents, idempotency_key=key)

        logger.info(
            "payment refunded",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=auth.reservation_id,
                    payment_ref=external_id,
                    amount_cents=amount_cents,
                    refunded_cents=updated.refunded_cents,
                )
            },
        )
        return updated

    def void(self, external_id: str) -> PaymentAuthorization:
        """Release an uncaptured hold (compensation after a failed transition)."""
        auth = self._require(external_id)
        if auth.status != AuthorizationStatus.AUTHORIZED:
            return auth
        try:
            self._provider.void(external_id, idempotency_key=f"{external_id}:void")
        except ProviderError as exc:
            # The hold lapses provider-side; record the attempt and move on.
            logger.error(
                "payment void failed",
                extra={
                    "extra_fields": safe_log_context(
                        reservation_id=auth.reservation_id,
                        payment_ref=external_id,
                        reason_code=exc.reason_code,
                    )
                },
            )
            return auth
        voided = replace(auth, status=AuthorizationStatus.FAILED)
        self._ledger.save_authorization(voided)
        return voided
