"""Service settings loaded from environment variables.

Secrets (DATABASE_URL, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET) are not
read here; the modules that need them look them up at call time so that a
missing secret fails only the feature that uses it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Mapping

AppRole = Literal["public", "worker"]

_APP_ROLES: dict[str, AppRole] = {"public": "public", "worker": "worker"}


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Lifecycle tunables.

    Attributes:
        app_role: Which route set the HTTP app mounts.
        currency: ISO currency code used for new reservations.
        timezone: Reference timezone for check-in dates (server clock).
        refund_window_hours: Minimum lead time for a refundable cancel.
        modification_ttl_minutes: How long an upgrade quote holds its claim.
        settlement_base_seconds: First retry delay for a failed refund.
        settlement_max_seconds: Retry delay cap.
        settlement_max_attempts: Attempts before a refund needs manual work.
        settlement_lease_seconds: How long a worker pass owns a claimed settlement.
    """

    app_role: AppRole = "public"
    currency: str = "usd"
    timezone: str = "UTC"
    refund_window_hours: int = 72
    modification_ttl_minutes: int = 15
    settlement_base_seconds: int = 60
    settlement_max_seconds: int = 3600
    settlement_max_attempts: int = 8
    settlement_lease_seconds: int = 300

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from the process environment (or a given mapping)."""
        if env is None:
            env = os.environ

        raw_role = env.get("APP_ROLE", "public")
        role = _APP_ROLES.get(raw_role)
        if role is None:
            raise RuntimeError(f"APP_ROLE must be 'public' or 'worker', got {raw_role!r}")

        return cls(
            app_role=role,
            currency=env.get("HOTELBOOK_CURRENCY", "usd").lower(),
            timezone=env.get("HOTELBOOK_TIMEZONE", "UTC"),
            refund_window_hours=_int_env(env, "HOTELBOOK_REFUND_WINDOW_HOURS", 72),
            modification_ttl_minutes=_int_env(
                env, "HOTELBOOK_MODIFICATION_TTL_MINUTES", 15
            ),
            settlement_base_seconds=_int_env(
                env, "HOTELBOOK_SETTLEMENT_BASE_SECONDS", 60
            ),
            settlement_max_seconds=_int_env(
                env, "HOTELBOOK_SETTLEMENT_MAX_SECONDS", 3600
            ),
            settlement_max_attempts=_int_env(
                env, "HOTELBOOK_SETTLEMENT_MAX_ATTEMPTS", 8
            ),
            settlement_lease_seconds=_int_env(
                env, "HOTELBOOK_SETTLEMENT_LEASE_SECONDS", 300
            ),
        )
