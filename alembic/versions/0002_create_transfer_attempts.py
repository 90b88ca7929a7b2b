"""create transfer attempts

Revision ID: 0002_create_transfer_attempts
Revises: 0001_create_transfer_records
Create Date: 2026-10-19 00:10:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_create_transfer_attempts"
down_revision = "0001_create_transfer_records"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.transfer_attempts (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          transfer_id uuid NOT NULL REFERENCES app.transfer_records (id),
          attempted_at timestamptz NOT NULL DEFAULT now(),
          outcome text NOT NULL
            CHECK (outcome IN ('CREATED', 'RECONCILED', 'TRANSIENT', 'PERMANENT')),
          external_transfer_id text NULL,
          error_message text NULL
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS transfer_attempts_transfer_id_idx
        ON app.transfer_attempts (transfer_id, attempted_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.transfer_attempts;")
