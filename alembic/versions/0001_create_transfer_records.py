"""create transfer records

Revision ID: 0001_create_transfer_records
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_create_transfer_records"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.transfer_records (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          payment_reference text NOT NULL,
          charge_reference text NULL,
          payout_destination text NOT NULL,
          amount bigint NOT NULL CHECK (amount > 0),
          platform_fee bigint NOT NULL DEFAULT 0 CHECK (platform_fee >= 0),
          currency char(3) NOT NULL,
          service_window_end timestamptz NOT NULL,
          payment_confirmed_at timestamptz NOT NULL,
          scheduled_at timestamptz NOT NULL,
          status text NOT NULL DEFAULT 'PENDING'
            CHECK (status IN ('PENDING', 'READY', 'APPROVED', 'COMPLETED', 'FAILED')),
          external_transfer_id text NULL,
          retry_count integer NOT NULL DEFAULT 0,
          last_error_kind text NULL
            CHECK (last_error_kind IN ('TRANSIENT', 'PERMANENT', 'RETRIES_EXHAUSTED', 'PAYMENT_FAILED', 'CHARGE_REFUNDED')),
          last_error text NULL,
          last_error_code text NULL,
          next_attempt_at timestamptz NULL,
          created timestamptz NOT NULL DEFAULT now(),
          updated timestamptz NOT NULL DEFAULT now(),
          CONSTRAINT transfer_records_completed_has_transfer
            CHECK ((status = 'COMPLETED') = (external_transfer_id IS NOT NULL))
        );
        """
    )
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS transfer_records_payment_reference_key
        ON app.transfer_records (payment_reference);
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS transfer_records_charge_reference_idx
        ON app.transfer_records (charge_reference);
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS transfer_records_status_scheduled_idx
        ON app.transfer_records (status, scheduled_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.transfer_records;")
