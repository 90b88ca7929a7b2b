"""add operator hold and dispute error kind

Revision ID: 0003_add_transfer_hold
Revises: 0002_create_transfer_attempts
Create Date: 2026-10-19 00:20:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0003_add_transfer_hold"
down_revision = "0002_create_transfer_attempts"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        ALTER TABLE app.transfer_records
          ADD COLUMN IF NOT EXISTS on_hold boolean NOT NULL DEFAULT false,
          ADD COLUMN IF NOT EXISTS admin_notes text NULL;
        """
    )
    op.execute(
        """
        ALTER TABLE app.transfer_records
          DROP CONSTRAINT IF EXISTS transfer_records_last_error_kind_check;
        """
    )
    op.execute(
        """
        ALTER TABLE app.transfer_records
          ADD CONSTRAINT transfer_records_last_error_kind_check
          CHECK (last_error_kind IN (
            'TRANSIENT', 'PERMANENT', 'RETRIES_EXHAUSTED', 'PAYMENT_FAILED', 'CHARGE_REFUNDED', 'DISPUTED'
          ));
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS transfer_records_status_updated_idx
        ON app.transfer_records (status, updated DESC);
        """
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS app.transfer_records_status_updated_idx;")
    op.execute(
        """
        ALTER TABLE app.transfer_records
          DROP CONSTRAINT IF EXISTS transfer_records_last_error_kind_check;
        """
    )
    op.execute(
        """
        ALTER TABLE app.transfer_records
          ADD CONSTRAINT transfer_records_last_error_kind_check
          CHECK (last_error_kind IN (
            'TRANSIENT', 'PERMANENT', 'RETRIES_EXHAUSTED', 'PAYMENT_FAILED', 'CHARGE_REFUNDED'
          ));
        """
    )
    op.execute(
        """
        ALTER TABLE app.transfer_records
          DROP COLUMN IF EXISTS admin_notes,
          DROP COLUMN IF EXISTS on_hold;
        """
    )
