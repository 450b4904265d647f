"""Refund settlement and its retry worker.

A committed change that owes the guest money writes a pending Settlement in
the same ledger commit. The lifecycle then makes one inline refund attempt;
if the provider fails, the settlement stays pending (the reservation shows
``refund_pending``) and this worker retries it with exponential backoff:

    delay = min(base * 2**failures, cap)

After ``settlement_max_attempts`` failures the settlement is parked as
``needs_manual`` and logged at ERROR for the finance team. A pass leases
the settlements it claims, so overlapping passes never attempt the same one.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from hotelbook.domain.errors import PaymentRefundError
from hotelbook.domain.models import Settlement, SettlementStatus
from hotelbook.infra.settings import Settings
from hotelbook.infra.time import utc_now
from hotelbook.ledger.base import ReservationLedger
from hotelbook.observability.redaction import safe_log_context
from hotelbook.payments.coordinator import PaymentCoordinator

logger = logging.getLogger(__name__)


def settlement_key(settlement_id: str) -> str:
    """Provider idempotency key; inline and worker attempts share it."""
    return f"settlement:{settlement_id}:refund"


class SettlementWorker:
    def __init__(
        self,
        ledger: ReservationLedger,
        payments: PaymentCoordinator,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._payments = payments
        self._settings = settings or Settings()
        self._clock = clock

    def first_attempt_at(self, now: datetime) -> datetime:
        """When the worker may first pick up a freshly committed settlement."""
        return now + timedelta(seconds=self._settings.settlement_base_seconds)

    def backoff(self, failures: int) -> timedelta:
        seconds = self._settings.settlement_base_seconds * (2 ** max(failures, 0))
        return timedelta(seconds=min(seconds, self._settings.settlement_max_seconds))

    def attempt(self, settlement: Settlement, *, now: datetime | None = None) -> bool:
        """Try one refund for *settlement*. Returns True when it is settled."""
        now = now or self._clock()
        try:
            self._payments.refund(
                settlement.authorization_id,
                settlement.amount_cents,
                idempotency_key=settlement_key(settlement.id),
            )
        except PaymentRefundError as exc:
            return self._record_failure(settlement, f"{exc.reason_code}: {exc}", now=now)
        except ValueError as exc:
            # Refundable balance disagrees with the ledger; retrying cannot fix it.
            self._ledger.reschedule_settlement(
                settlement.id, error=str(exc), next_attempt_at=None, give_up=True
            )
            logger.error(
                "settlement needs manual review",
                extra={
                    "extra_fields": safe_log_context(
                        settlement_id=settlement.id,
                        reservation_id=settlement.reservation_id,
                        amount_cents=settlement.amount_cents,
                        error=str(exc),
                    )
                },
            )
            return False

        self._ledger.resolve_settlement(settlement.id)
        logger.info(
            "settlement refunded",
            extra={
                "extra_fields": safe_log_context(
                    settlement_id=settlement.id,
                    reservation_id=settlement.reservation_id,
                    amount_cents=settlement.amount_cents,
                    attempts=settlement.attempts + 1,
                )
            },
        )
        return True

    def _record_failure(self, settlement: Settlement, error: str, *, now: datetime) -> bool:
        failures = settlement.attempts + 1
        give_up = failures >= self._settings.settlement_max_attempts
        updated = self._ledger.reschedule_settlement(
            settlement.id,
            error=error,
            next_attempt_at=now + self.backoff(settlement.attempts),
            give_up=give_up,
        )
        log = logger.error if updated.status == SettlementStatus.NEEDS_MANUAL else logger.warning
        log(
            "settlement refund failed",
            extra={
                "extra_fields": safe_log_context(
                    settlement_id=settlement.id,
                    reservation_id=settlement.reservation_id,
                    amount_cents=settlement.amount_cents,
                    attempts=updated.attempts,
                    status=updated.status.value,
                    next_attempt_at=updated.next_attempt_at,
                )
            },
        )
        return False

    def retry_pending_refunds(self, now: datetime | None = None, *, limit: int = 50) -> dict[str, int]:
        """Claim every due pending settlement and retry it once."""
        now = now or self._clock()
        due = self._ledger.claim_due_settlements(
            now, lease=timedelta(seconds=self._settings.settlement_lease_seconds), limit=limit
        )
        settled = 0
        for settlement in due:
            if self.attempt(settlement, now=now):
                settled += 1
        result = {"due": len(due), "settled": settled, "failed": len(due) - settled}
        if due:
            logger.info("settlement retry pass", extra={"extra_fields": result})
        return result
