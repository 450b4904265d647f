"""Payment provider contract.

The coordinator talks to any object with this shape; the production one is
hotelbook.stripe.client.StripePaymentProvider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

# PaymentIntent statuses that mean "funds are held and capturable"
AUTHORIZED_STATUSES = frozenset({"requires_capture"})
CAPTURED_STATUSES = frozenset({"succeeded"})


class ProviderError(Exception):
    """Provider call failed (network, timeout, API error)."""

    def __init__(self, reason_code: str, message: str) -> None:
        self.reason_code = reason_code
        super().__init__(f"{message} ({reason_code})")


class ProviderDeclinedError(ProviderError):
    """The payment method was declined."""


@dataclass(frozen=True)
class ProviderIntent:
    external_id: str
    status: str
    amount_cents: int
    amount_received_cents: int = 0


class PaymentProvider(Protocol):
    def create_authorization(
        self,
        *,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        payment_method: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProviderIntent: ...

    def capture(self, external_id: str, *, idempotency_key: str) -> ProviderIntent: ...

    def refund(self, external_id: str, amount_cents: int, *, idempotency_key: str) -> str: ...

    def void(self, external_id: str, *, idempotency_key: str) -> None: ...
