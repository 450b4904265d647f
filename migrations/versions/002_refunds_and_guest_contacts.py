"""Per-refund ledger rows and guest contact addresses.

Revision ID: 002_refunds_and_guest_contacts
Revises: 001_initial_schema
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "002_refunds_and_guest_contacts"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


SCHEMA_SQL = """
-- One row per provider-confirmed refund. The key is the provider idempotency
-- key, so a replayed refund is counted into refunded_cents only once.
CREATE TABLE payment_refunds (
    idempotency_key TEXT PRIMARY KEY,
    external_id TEXT NOT NULL REFERENCES payment_authorizations (external_id),
    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX idx_payment_refunds_authorization ON payment_refunds (external_id);

-- Filled by the account service; read only for guest notifications.
CREATE TABLE guest_contacts (
    guest_id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    first_name TEXT,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def upgrade() -> None:
    op.get_bind().exec_driver_sql(SCHEMA_SQL)


def downgrade() -> None:
    op.get_bind().exec_driver_sql("DROP TABLE guest_contacts; DROP TABLE payment_refunds;")
