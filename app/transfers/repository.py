# app/transfers/repository.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from psycopg2.extras import RealDictCursor

from db import get_conn
from app.transfers.errors import DuplicatePaymentReferenceError
from app.transfers.model import (
    AttemptOutcome,
    ErrorKind,
    NewTransferRecord,
    TransferAttempt,
    TransferError,
    TransferRecord,
    TransferStatus,
)

logger = logging.getLogger("settlement.store")

_COLUMNS = """
  id,
  payment_reference,
  charge_reference,
  payout_destination,
  amount,
  platform_fee,
  currency,
  service_window_end,
  payment_confirmed_at,
  scheduled_at,
  status,
  external_transfer_id,
  retry_count,
  last_error_kind,
  last_error,
  last_error_code,
  next_attempt_at,
  created,
  updated,
  on_hold,
  admin_notes
"""


def _row_to_record(row: Optional[dict[str, Any]]) -> Optional[TransferRecord]:
    return TransferRecord.from_row(dict(row)) if row else None


class PostgresTransferStore:
    """
    app.transfer_records persistence.

    Every write is a single conditional UPDATE in its own short transaction,
    so two sweep workers touching the same row cannot both claim it.
    """

    def __init__(self, *, max_retries: int):
        self.max_retries = max_retries

    # ==========================================================
    # Create
    # ==========================================================

    def create(self, new: NewTransferRecord) -> TransferRecord:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    INSERT INTO app.transfer_records (
                      payment_reference, charge_reference, payout_destination,
                      amount, platform_fee, currency,
                      service_window_end, payment_confirmed_at, scheduled_at,
                      status, retry_count, created, updated
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 0, now(), now())
                    ON CONFLICT (payment_reference) DO NOTHING
                    RETURNING {_COLUMNS}
                    """,
                    (
                        new.payment_reference,
                        new.charge_reference,
                        new.payout_destination,
                        new.amount,
                        new.platform_fee,
                        new.currency,
                        new.service_window_end,
                        new.payment_confirmed_at,
                        new.scheduled_at,
                        new.initial_status.value,
                    ),
                )
                row = cur.fetchone()
        if row is None:
            raise DuplicatePaymentReferenceError(new.payment_reference)
        return TransferRecord.from_row(dict(row))

    # ==========================================================
    # Reads
    # ==========================================================

    def get(self, transfer_id: UUID) -> Optional[TransferRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM app.transfer_records WHERE id = %s", (transfer_id,))
                return _row_to_record(cur.fetchone())

    def get_by_payment_reference(self, payment_reference: str) -> Optional[TransferRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM app.transfer_records WHERE payment_reference = %s",
                    (payment_reference,),
                )
                return _row_to_record(cur.fetchone())

    def find_due(self, now: datetime, *, limit: Optional[int] = None) -> list[TransferRecord]:
        # served by transfer_records_status_scheduled_idx
        limit_sql = "LIMIT %s" if limit else ""
        params: list[Any] = [now, now]
        if limit:
            params.append(int(limit))
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.transfer_records
                    WHERE status IN ('PENDING', 'READY', 'APPROVED')
                      AND external_transfer_id IS NULL
                      AND NOT on_hold
                      AND scheduled_at <= %s
                      AND (next_attempt_at IS NULL OR next_attempt_at <= %s)
                    ORDER BY scheduled_at ASC
                    {limit_sql}
                    """,
                    tuple(params),
                )
                return [TransferRecord.from_row(dict(r)) for r in cur.fetchall()]

    def list_transfers(
        self,
        *,
        status: Optional[TransferStatus] = None,
        payout_destination: Optional[str] = None,
        on_hold: Optional[bool] = None,
        limit: int = 50,
    ) -> list[TransferRecord]:
        where: list[str] = []
        params: list[Any] = []
        if status is not None:
            where.append("status = %s")
            params.append(TransferStatus(status).value)
        if payout_destination:
            where.append("payout_destination = %s")
            params.append(payout_destination)
        if on_hold is not None:
            where.append("on_hold = %s")
            params.append(bool(on_hold))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        params.append(int(limit))

        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.transfer_records
                    {where_sql}
                    ORDER BY updated DESC
                    LIMIT %s
                    """,
                    tuple(params),
                )
                return [TransferRecord.from_row(dict(r)) for r in cur.fetchall()]

    def list_failed(self, *, limit: int = 50) -> list[TransferRecord]:
        return self.list_transfers(status=TransferStatus.FAILED, limit=limit)

    # ==========================================================
    # Conditional updates
    # ==========================================================

    def mark_completed(
        self, transfer_id: UUID, external_transfer_id: str, *, charge_reference: Optional[str] = None
    ) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.transfer_records t
                    SET
                      status = 'COMPLETED',
                      external_transfer_id = %s,
                      charge_reference = COALESCE(t.charge_reference, %s),
                      last_error_kind = NULL,
                      last_error = NULL,
                      last_error_code = NULL,
                      next_attempt_at = NULL,
                      updated = now()
                    FROM (
                      SELECT id, status AS prior_status
                      FROM app.transfer_records
                      WHERE id = %s
                      FOR UPDATE
                    ) p
                    WHERE t.id = p.id
                      AND t.external_transfer_id IS NULL
                      AND p.prior_status IN ('PENDING', 'READY', 'APPROVED', 'FAILED')
                    RETURNING p.prior_status
                    """,
                    (external_transfer_id, charge_reference, transfer_id),
                )
                completed = cur.fetchone()
                if completed is not None:
                    if completed[0] == TransferStatus.FAILED.value:
                        logger.warning(
                            "failed record completed by existing transfer transfer=%s external=%s",
                            transfer_id,
                            external_transfer_id,
                        )
                    return True

                cur.execute(
                    "SELECT external_transfer_id FROM app.transfer_records WHERE id = %s",
                    (transfer_id,),
                )
                row = cur.fetchone()

        if row is None:
            return False
        if row[0] == external_transfer_id:
            return True
        logger.error(
            "transfer_id_conflict transfer=%s stored=%s offered=%s",
            transfer_id,
            row[0],
            external_transfer_id,
        )
        return False

    def record_failure(
        self, transfer_id: UUID, error: TransferError, *, next_attempt_at: Optional[datetime]
    ) -> Optional[TransferRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE app.transfer_records
                    SET
                      retry_count = retry_count + 1,
                      status = CASE WHEN retry_count + 1 > %(max)s THEN 'FAILED' ELSE status END,
                      last_error_kind = CASE WHEN retry_count + 1 > %(max)s THEN %(exhausted)s ELSE %(kind)s END,
                      last_error = %(message)s,
                      last_error_code = %(code)s,
                      next_attempt_at = CASE WHEN retry_count + 1 > %(max)s THEN NULL ELSE %(next)s END,
                      updated = now()
                    WHERE id = %(id)s
                      AND external_transfer_id IS NULL
                      AND status IN ('PENDING', 'READY', 'APPROVED')
                    RETURNING {_COLUMNS}
                    """,
                    {
                        "max": self.max_retries,
                        "exhausted": ErrorKind.RETRIES_EXHAUSTED.value,
                        "kind": error.kind.value,
                        "message": error.message,
                        "code": error.code,
                        "next": next_attempt_at,
                        "id": transfer_id,
                    },
                )
                return _row_to_record(cur.fetchone())

    def mark_failed(self, transfer_id: UUID, error: TransferError) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.transfer_records
                    SET
                      status = 'FAILED',
                      last_error_kind = %s,
                      last_error = %s,
                      last_error_code = %s,
                      next_attempt_at = NULL,
                      updated = now()
                    WHERE id = %s
                      AND external_transfer_id IS NULL
                      AND status IN ('PENDING', 'READY', 'APPROVED')
                    """,
                    (error.kind.value, error.message, error.code, transfer_id),
                )
                return cur.rowcount == 1

    def reschedule_if_later(self, transfer_id: UUID, new_scheduled_at: datetime) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.transfer_records
                    SET scheduled_at = %s, updated = now()
                    WHERE id = %s
                      AND scheduled_at < %s
                      AND status <> 'COMPLETED'
                    """,
                    (new_scheduled_at, transfer_id, new_scheduled_at),
                )
                return cur.rowcount == 1

    def attach_charge(self, transfer_id: UUID, charge_reference: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.transfer_records
                    SET
                      charge_reference = %s,
                      status = CASE WHEN status = 'PENDING' THEN 'READY' ELSE status END,
                      updated = now()
                    WHERE id = %s
                      AND charge_reference IS NULL
                    """,
                    (charge_reference, transfer_id),
                )
                return cur.rowcount == 1

    def approve(self, transfer_id: UUID) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.transfer_records
                    SET
                      status = 'APPROVED',
                      retry_count = 0,
                      next_attempt_at = NULL,
                      updated = now()
                    WHERE id = %s
                      AND status = 'FAILED'
                      AND external_transfer_id IS NULL
                    """,
                    (transfer_id,),
                )
                return cur.rowcount == 1

    def set_hold(
        self, transfer_id: UUID, *, on_hold: Optional[bool] = None, admin_notes: Optional[str] = None
    ) -> Optional[TransferRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE app.transfer_records
                    SET
                      on_hold = COALESCE(%s, on_hold),
                      admin_notes = COALESCE(%s, admin_notes),
                      updated = now()
                    WHERE id = %s
                      AND status <> 'COMPLETED'
                    RETURNING {_COLUMNS}
                    """,
                    (on_hold, admin_notes, transfer_id),
                )
                return _row_to_record(cur.fetchone())

    # ==========================================================
    # Attempt history
    # ==========================================================

    def record_attempt(self, attempt: TransferAttempt) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO app.transfer_attempts (
                      transfer_id, attempted_at, outcome, external_transfer_id, error_message
                    )
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        attempt.transfer_id,
                        attempt.attempted_at,
                        attempt.outcome.value,
                        attempt.external_transfer_id,
                        attempt.error_message,
                    ),
                )

    def list_attempts(self, transfer_id: UUID) -> list[TransferAttempt]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT id, transfer_id, attempted_at, outcome, external_transfer_id, error_message
                    FROM app.transfer_attempts
                    WHERE transfer_id = %s
                    ORDER BY attempted_at ASC
                    """,
                    (transfer_id,),
                )
                rows = cur.fetchall()
        return [
            TransferAttempt(
                id=r["id"],
                transfer_id=r["transfer_id"],
                attempted_at=r["attempted_at"],
                outcome=AttemptOutcome(r["outcome"]),
                external_transfer_id=r["external_transfer_id"],
                error_message=r["error_message"],
            )
            for r in rows
        ]
