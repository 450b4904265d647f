"""Service container shared by the HTTP routes.

Built once per process from environment settings (PostgreSQL + Stripe).
Tests replace it through ``app.dependency_overrides[get_services]``.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from hotelbook.catalog import Catalog, PostgresCatalog
from hotelbook.domain.availability import AvailabilityIndex, PostgresAvailabilityIndex
from hotelbook.domain.lifecycle import ReservationLifecycle
from hotelbook.domain.settlement import SettlementWorker
from hotelbook.infra.settings import Settings
from hotelbook.infra.time import utc_now
from hotelbook.ledger.base import ReservationLedger
from hotelbook.ledger.postgres import PostgresLedger
from hotelbook.notifications import (
    GuestDirectory,
    GuestNotifier,
    NotificationSender,
    PostgresGuestDirectory,
    SmtpSender,
)
from hotelbook.payments.coordinator import PaymentCoordinator
from hotelbook.payments.provider import PaymentProvider


@dataclass
class Services:
    settings: Settings
    catalog: Catalog
    availability: AvailabilityIndex
    ledger: ReservationLedger
    payments: PaymentCoordinator
    settlements: SettlementWorker
    lifecycle: ReservationLifecycle


def build_services(
    settings: Settings,
    *,
    catalog: Catalog,
    availability: AvailabilityIndex,
    ledger: ReservationLedger,
    provider: PaymentProvider,
    clock: Callable[[], datetime] = utc_now,
    guest_directory: GuestDirectory | None = None,
    notification_sender: NotificationSender | None = None,
) -> Services:
    """Wire the lifecycle components around one ledger and one provider.

    Guest emails are sent only when both a directory and a sender are given.
    """
    if guest_directory is not None and notification_sender is not None:
        ledger.subscribe(GuestNotifier(ledger, guest_directory, notification_sender))
    payments = PaymentCoordinator(provider, ledger)
    settlements = SettlementWorker(ledger, payments, settings, clock=clock)
    lifecycle = ReservationLifecycle(
        catalog=catalog,
        availability=availability,
        payments=payments,
        ledger=ledger,
        settings=settings,
        settlements=settlements,
        clock=clock,
    )
    return Services(
        settings=settings,
        catalog=catalog,
        availability=availability,
        ledger=ledger,
        payments=payments,
        settlements=settlements,
        lifecycle=lifecycle,
    )


_services: Services | None = None
_services_lock = threading.Lock()


def _build_default() -> Services:
    from hotelbook.stripe.client import StripePaymentProvider

    mail_enabled = bool(os.environ.get("SMTP_HOST"))
    return build_services(
        Settings.from_env(),
        catalog=PostgresCatalog(),
        availability=PostgresAvailabilityIndex(),
        ledger=PostgresLedger(),
        provider=StripePaymentProvider(),
        guest_directory=PostgresGuestDirectory() if mail_enabled else None,
        notification_sender=SmtpSender.from_env() if mail_enabled else None,
    )


def get_services() -> Services:
    """FastAPI dependency returning the process-wide container."""
    global _services
    with _services_lock:
        if _services is None:
            _services = _build_default()
        return _services
