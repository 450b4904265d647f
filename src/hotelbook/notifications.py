"""Guest email notifications for reservation lifecycle events.

GuestNotifier subscribes to the ledger change feed and mails the guest a
confirmation, update, cancellation or thank-you note. Delivery runs after
the commit, so a failed send never affects the reservation.

Security: NEVER log addresses, names or message bodies. Only log hashes and
lengths.
"""

from __future__ import annotations

import hashlib
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Mapping, Protocol

from hotelbook.domain.models import LedgerEvent, Reservation
from hotelbook.infra.db import ConnectionFactory, fetchone, txn
from hotelbook.ledger.base import ReservationLedger
from hotelbook.observability.logging import get_logger
from hotelbook.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Timeout for SMTP connections (seconds)
SMTP_TIMEOUT = 10


def _hash_identifier(value: str) -> str:
    """Non-reversible hash for logging. First 12 chars of sha256."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


@dataclass(frozen=True)
class GuestContact:
    guest_id: str
    email: str
    first_name: str | None = None


class GuestDirectory(Protocol):
    def contact_for(self, guest_id: str) -> GuestContact | None: ...


class NotificationSender(Protocol):
    def send(self, *, to: str, subject: str, body: str) -> None: ...


class InMemoryGuestDirectory:
    def __init__(self, contacts: list[GuestContact] | None = None) -> None:
        self._contacts = {c.guest_id: c for c in contacts or []}

    def add(self, contact: GuestContact) -> None:
        self._contacts[contact.guest_id] = contact

    def contact_for(self, guest_id: str) -> GuestContact | None:
        return self._contacts.get(guest_id)


class PostgresGuestDirectory:
    def __init__(self, conn_factory: ConnectionFactory | None = None) -> None:
        self._conn_factory = conn_factory

    def contact_for(self, guest_id: str) -> GuestContact | None:
        with txn(self._conn_factory) as cur:
            row = fetchone(
                cur,
                "SELECT guest_id, email, first_name FROM guest_contacts WHERE guest_id = %s",
                (guest_id,),
            )
        if row is None:
            return None
        return GuestContact(guest_id=row[0], email=row[1], first_name=row[2])


class SmtpSender:
    """Plain-text mail over SMTP (STARTTLS when credentials are set)."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        from_addr: str,
        user: str | None = None,
        password: str | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._from_addr = from_addr
        self._user = user
        self._password = password

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SmtpSender":
        """Build a sender from SMTP_HOST, SMTP_PORT, SMTP_FROM, SMTP_USER, SMTP_PASSWORD.

        Raises:
            RuntimeError: If SMTP_HOST or SMTP_FROM is missing, or the port
                is not an integer.
        """
        if env is None:
            env = os.environ
        host = env.get("SMTP_HOST", "")
        from_addr = env.get("SMTP_FROM", "")
        if not host or not from_addr:
            raise RuntimeError("Missing SMTP config: SMTP_HOST, SMTP_FROM")
        raw_port = env.get("SMTP_PORT") or "587"
        try:
            port = int(raw_port)
        except ValueError as exc:
            raise RuntimeError(f"SMTP_PORT must be an integer, got {raw_port!r}") from exc
        return cls(
            host,
            port,
            from_addr=from_addr,
            user=env.get("SMTP_USER") or None,
            password=env.get("SMTP_PASSWORD") or None,
        )

    def send(self, *, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self._from_addr
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self._host, self._port, timeout=SMTP_TIMEOUT) as smtp:
            if self._user:
                smtp.starttls()
                smtp.login(self._user, self._password or "")
            smtp.send_message(message)


def _money(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency.upper()}"


def _stay_line(reservation: Reservation) -> str:
    return (
        f"Room {reservation.room_id}, {reservation.check_in.isoformat()} to "
        f"{reservation.check_out.isoformat()} ({reservation.stay.nights} nights)"
    )


def compose(event: LedgerEvent, reservation: Reservation, contact: GuestContact) -> tuple[str, str] | None:
    """Subject and body for *event*, or None when the guest is not told."""
    greeting = f"Hello {contact.first_name}," if contact.first_name else "Hello,"
    stay = _stay_line(reservation)
    total = _money(reservation.total_cents, reservation.currency)

    if event.event_type == "reservation.created":
        subject = f"Reservation {reservation.id} confirmed"
        lines = [greeting, "", "Your reservation is confirmed.", stay, f"Total: {total}"]
    elif event.event_type == "reservation.modified":
        subject = f"Reservation {reservation.id} updated"
        lines = [greeting, "", "Your reservation was changed.", stay, f"Total: {total}"]
    elif event.event_type in ("reservation.cancelled", "reservation.refunded"):
        subject = f"Reservation {reservation.id} cancelled"
        lines = [greeting, "", "Your reservation was cancelled.", stay]
        refund_cents = int(event.payload.get("refund_cents") or 0)
        if refund_cents:
            lines.append(f"A refund of {_money(refund_cents, reservation.currency)} is on its way.")
        else:
            lines.append("This cancellation is not eligible for a refund.")
    elif event.event_type == "reservation.checked_out":
        subject = "Thank you for staying with us"
        lines = [greeting, "", "Thank you for your stay. We hope to see you again."]
    else:
        return None
    return subject, "\n".join(lines) + "\n"


class GuestNotifier:
    """Ledger subscriber that emails the guest about their reservation."""

    def __init__(
        self,
        ledger: ReservationLedger,
        directory: GuestDirectory,
        sender: NotificationSender,
    ) -> None:
        self._ledger = ledger
        self._directory = directory
        self._sender = sender

    def __call__(self, event: LedgerEvent) -> None:
        reservation = self._ledger.get(event.reservation_id)
        contact = self._directory.contact_for(reservation.guest_id)
        if contact is None:
            logger.info(
                "guest notification skipped: no contact",
                extra={
                    "extra_fields": safe_log_context(
                        event_type=event.event_type,
                        reservation_id=reservation.id,
                    )
                },
            )
            return

        message = compose(event, reservation, contact)
        if message is None:
            return
        subject, body = message

        log_ctx = safe_log_context(
            correlation_id=event.correlation_id,
            event_type=event.event_type,
            reservation_id=reservation.id,
            to_hash=_hash_identifier(contact.email),
            body_len=len(body),
        )
        self._sender.send(to=contact.email, subject=subject, body=body)
        logger.info("guest notification sent", extra={"extra_fields": log_ctx})
