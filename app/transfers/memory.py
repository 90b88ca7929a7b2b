# app/transfers/memory.py
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from app.transfers.errors import DuplicatePaymentReferenceError
from app.transfers.model import (
    DUE_STATUSES,
    ErrorKind,
    NewTransferRecord,
    TransferAttempt,
    TransferError,
    TransferRecord,
    TransferStatus,
)
from app.transfers.state_machine import assert_completed_invariant, assert_transition

logger = logging.getLogger("settlement.store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTransferStore:
    """
    In-process store with the same conditional-write rules as PostgresTransferStore.
    The lock only guards dict mutation; nothing calls out while holding it.
    """

    def __init__(self, *, max_retries: int = 3):
        self.max_retries = max_retries
        self._lock = threading.Lock()
        self._records: dict[UUID, TransferRecord] = {}
        self._by_payment: dict[str, UUID] = {}
        self._attempts: dict[UUID, list[TransferAttempt]] = {}

    def create(self, new: NewTransferRecord) -> TransferRecord:
        now = _utcnow()
        with self._lock:
            if new.payment_reference in self._by_payment:
                raise DuplicatePaymentReferenceError(new.payment_reference)
            rec = TransferRecord(
                id=uuid4(),
                payment_reference=new.payment_reference,
                charge_reference=new.charge_reference,
                payout_destination=new.payout_destination,
                amount=new.amount,
                platform_fee=new.platform_fee,
                currency=new.currency,
                service_window_end=new.service_window_end,
                payment_confirmed_at=new.payment_confirmed_at,
                scheduled_at=new.scheduled_at,
                status=new.initial_status,
                external_transfer_id=None,
                retry_count=0,
                last_error=None,
                next_attempt_at=None,
                created=now,
                updated=now,
            )
            self._records[rec.id] = rec
            self._by_payment[rec.payment_reference] = rec.id
            return rec

    def get(self, transfer_id: UUID) -> Optional[TransferRecord]:
        with self._lock:
            return self._records.get(transfer_id)

    def get_by_payment_reference(self, payment_reference: str) -> Optional[TransferRecord]:
        with self._lock:
            rid = self._by_payment.get(payment_reference)
            return self._records.get(rid) if rid else None

    def find_due(self, now: datetime, *, limit: Optional[int] = None) -> list[TransferRecord]:
        with self._lock:
            due = [
                r
                for r in self._records.values()
                if r.status in DUE_STATUSES
                and r.external_transfer_id is None
                and not r.on_hold
                and r.scheduled_at <= now
                and (r.next_attempt_at is None or r.next_attempt_at <= now)
            ]
        due.sort(key=lambda r: r.scheduled_at)
        return due[:limit] if limit else due

    def list_transfers(
        self,
        *,
        status: Optional[TransferStatus] = None,
        payout_destination: Optional[str] = None,
        on_hold: Optional[bool] = None,
        limit: int = 50,
    ) -> list[TransferRecord]:
        wanted = TransferStatus(status) if status is not None else None
        with self._lock:
            found = [
                r
                for r in self._records.values()
                if (wanted is None or r.status == wanted)
                and (not payout_destination or r.payout_destination == payout_destination)
                and (on_hold is None or r.on_hold == on_hold)
            ]
        found.sort(key=lambda r: r.updated, reverse=True)
        return found[:limit]

    def list_failed(self, *, limit: int = 50) -> list[TransferRecord]:
        return self.list_transfers(status=TransferStatus.FAILED, limit=limit)

    def mark_completed(
        self, transfer_id: UUID, external_transfer_id: str, *, charge_reference: Optional[str] = None
    ) -> bool:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None:
                return False
            if rec.external_transfer_id is not None:
                if rec.external_transfer_id == external_transfer_id:
                    return True
                conflict = rec.external_transfer_id
            else:
                assert_transition(rec.status, TransferStatus.COMPLETED)
                assert_completed_invariant(TransferStatus.COMPLETED, external_transfer_id)
                reconciled_from = rec.status
                self._records[transfer_id] = rec.evolve(
                    status=TransferStatus.COMPLETED,
                    external_transfer_id=external_transfer_id,
                    charge_reference=rec.charge_reference or charge_reference,
                    last_error=None,
                    next_attempt_at=None,
                    updated=_utcnow(),
                )
                conflict = None

        if conflict is None:
            if reconciled_from == TransferStatus.FAILED:
                logger.warning(
                    "failed record completed by existing transfer transfer=%s external=%s",
                    transfer_id,
                    external_transfer_id,
                )
            return True

        logger.error(
            "transfer_id_conflict transfer=%s stored=%s offered=%s",
            transfer_id,
            conflict,
            external_transfer_id,
        )
        return False

    def record_failure(
        self, transfer_id: UUID, error: TransferError, *, next_attempt_at: Optional[datetime]
    ) -> Optional[TransferRecord]:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.external_transfer_id is not None or rec.status not in DUE_STATUSES:
                return None

            retry_count = rec.retry_count + 1
            if retry_count > self.max_retries:
                assert_transition(rec.status, TransferStatus.FAILED)
                updated = rec.evolve(
                    retry_count=retry_count,
                    status=TransferStatus.FAILED,
                    last_error=TransferError(ErrorKind.RETRIES_EXHAUSTED, error.message, error.code),
                    next_attempt_at=None,
                    updated=_utcnow(),
                )
            else:
                updated = rec.evolve(
                    retry_count=retry_count,
                    last_error=error,
                    next_attempt_at=next_attempt_at,
                    updated=_utcnow(),
                )
            self._records[transfer_id] = updated
            return updated

    def mark_failed(self, transfer_id: UUID, error: TransferError) -> bool:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.external_transfer_id is not None or rec.status not in DUE_STATUSES:
                return False
            assert_transition(rec.status, TransferStatus.FAILED)
            self._records[transfer_id] = rec.evolve(
                status=TransferStatus.FAILED,
                last_error=error,
                next_attempt_at=None,
                updated=_utcnow(),
            )
            return True

    def reschedule_if_later(self, transfer_id: UUID, new_scheduled_at: datetime) -> bool:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.status == TransferStatus.COMPLETED:
                return False
            if not rec.scheduled_at < new_scheduled_at:
                return False
            self._records[transfer_id] = rec.evolve(scheduled_at=new_scheduled_at, updated=_utcnow())
            return True

    def attach_charge(self, transfer_id: UUID, charge_reference: str) -> bool:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.charge_reference is not None:
                return False
            status = TransferStatus.READY if rec.status == TransferStatus.PENDING else rec.status
            self._records[transfer_id] = rec.evolve(
                charge_reference=charge_reference,
                status=status,
                updated=_utcnow(),
            )
            return True

    def approve(self, transfer_id: UUID) -> bool:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.status != TransferStatus.FAILED or rec.external_transfer_id is not None:
                return False
            assert_transition(rec.status, TransferStatus.APPROVED)
            self._records[transfer_id] = rec.evolve(
                status=TransferStatus.APPROVED,
                retry_count=0,
                next_attempt_at=None,
                updated=_utcnow(),
            )
            return True

    def set_hold(
        self, transfer_id: UUID, *, on_hold: Optional[bool] = None, admin_notes: Optional[str] = None
    ) -> Optional[TransferRecord]:
        with self._lock:
            rec = self._records.get(transfer_id)
            if rec is None or rec.status == TransferStatus.COMPLETED:
                return None
            updated = rec.evolve(
                on_hold=rec.on_hold if on_hold is None else on_hold,
                admin_notes=rec.admin_notes if admin_notes is None else admin_notes,
                updated=_utcnow(),
            )
            self._records[transfer_id] = updated
            return updated

    def record_attempt(self, attempt: TransferAttempt) -> None:
        if attempt.id is None:
            attempt = TransferAttempt(
                transfer_id=attempt.transfer_id,
                attempted_at=attempt.attempted_at,
                outcome=attempt.outcome,
                external_transfer_id=attempt.external_transfer_id,
                error_message=attempt.error_message,
                id=uuid4(),
            )
        with self._lock:
            self._attempts.setdefault(attempt.transfer_id, []).append(attempt)

    def list_attempts(self, transfer_id: UUID) -> list[TransferAttempt]:
        with self._lock:
            attempts = list(self._attempts.get(transfer_id, []))
        return sorted(attempts, key=lambda a: a.attempted_at)
