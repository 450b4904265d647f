"""Initial schema (SQL-only).

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS btree_gist;

CREATE TABLE room_types (
    id TEXT PRIMARY KEY,
    nightly_rate_cents INTEGER NOT NULL CHECK (nightly_rate_cents >= 0),
    capacity INTEGER NOT NULL CHECK (capacity >= 1)
);

CREATE TABLE rooms (
    id TEXT PRIMARY KEY,
    room_type_id TEXT NOT NULL REFERENCES room_types (id),
    accessible BOOLEAN NOT NULL DEFAULT false,
    pet_friendly BOOLEAN NOT NULL DEFAULT false,
    non_smoking BOOLEAN NOT NULL DEFAULT true
);

CREATE TABLE reservations (
    id TEXT PRIMARY KEY,
    guest_id TEXT NOT NULL,
    room_id TEXT NOT NULL REFERENCES rooms (id),
    check_in DATE NOT NULL,
    check_out DATE NOT NULL,
    guest_count INTEGER NOT NULL CHECK (guest_count >= 1),
    status TEXT NOT NULL CHECK (
        status IN ('CONFIRMED', 'CHECKED_IN', 'COMPLETED', 'CANCELLED', 'REFUNDED')
    ),
    total_cents INTEGER NOT NULL CHECK (total_cents >= 0),
    currency TEXT NOT NULL,
    payment_ref TEXT,
    checked_in_at TIMESTAMPTZ,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT reservations_stay_order CHECK (check_out > check_in)
);

CREATE INDEX idx_reservations_guest ON reservations (guest_id, check_in);
CREATE INDEX idx_reservations_room ON reservations (room_id, check_in);

CREATE TABLE payment_authorizations (
    external_id TEXT PRIMARY KEY,
    reservation_id TEXT NOT NULL,
    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
    currency TEXT NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('AUTHORIZED', 'CAPTURED', 'REFUNDED', 'FAILED')
    ),
    idempotency_key TEXT NOT NULL,
    captured_cents INTEGER NOT NULL DEFAULT 0,
    refunded_cents INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT payment_authorizations_refund_bound CHECK (refunded_cents <= captured_cents)
);

CREATE INDEX idx_payment_authorizations_key
    ON payment_authorizations (idempotency_key, created_at DESC);
CREATE INDEX idx_payment_authorizations_reservation
    ON payment_authorizations (reservation_id);

-- One row per held claim. Claims of the same reservation may overlap
-- (a modification holds its new range before releasing the old one);
-- claims of different reservations on one room may not.
CREATE TABLE room_claims (
    room_id TEXT NOT NULL REFERENCES rooms (id),
    reservation_id TEXT NOT NULL,
    check_in DATE NOT NULL,
    check_out DATE NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT room_claims_stay_order CHECK (check_out > check_in),
    CONSTRAINT room_claims_identity UNIQUE (room_id, reservation_id, check_in, check_out),
    CONSTRAINT room_claims_no_overlap EXCLUDE USING gist (
        room_id WITH =,
        daterange(check_in, check_out, '[)') WITH &&,
        reservation_id WITH <>
    )
);

CREATE TABLE pending_modifications (
    id TEXT PRIMARY KEY,
    reservation_id TEXT NOT NULL REFERENCES reservations (id),
    base_version INTEGER NOT NULL,
    room_id TEXT NOT NULL REFERENCES rooms (id),
    check_in DATE NOT NULL,
    check_out DATE NOT NULL,
    guest_count INTEGER NOT NULL,
    new_total_cents INTEGER NOT NULL,
    delta_cents INTEGER NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_pending_modifications_expiry ON pending_modifications (expires_at);
CREATE INDEX idx_pending_modifications_reservation ON pending_modifications (reservation_id);

CREATE TABLE settlements (
    id TEXT PRIMARY KEY,
    reservation_id TEXT NOT NULL REFERENCES reservations (id),
    authorization_id TEXT NOT NULL REFERENCES payment_authorizations (external_id),
    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (
        status IN ('pending', 'settled', 'needs_manual')
    ),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    next_attempt_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_settlements_due ON settlements (next_attempt_at)
    WHERE status = 'pending';
CREATE INDEX idx_settlements_reservation ON settlements (reservation_id)
    WHERE status <> 'settled';

CREATE TABLE outbox_events (
    id BIGSERIAL PRIMARY KEY,
    event_type TEXT NOT NULL,
    aggregate_type TEXT NOT NULL,
    aggregate_id TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    correlation_id TEXT,
    occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_outbox_events_aggregate ON outbox_events (aggregate_type, aggregate_id, id);

CREATE TABLE provider_events (
    event_id TEXT PRIMARY KEY,
    received_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def upgrade() -> None:
    # Raw execution so the whole script runs as written.
    conn = op.get_bind()
    conn.exec_driver_sql(SCHEMA_SQL)


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
