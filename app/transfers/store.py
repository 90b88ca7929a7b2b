# app/transfers/store.py
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

from settings import settings
from app.transfers.model import NewTransferRecord, TransferAttempt, TransferError, TransferRecord, TransferStatus


class TransferStore(Protocol):
    def create(self, new: NewTransferRecord) -> TransferRecord: ...
    def get(self, transfer_id: UUID) -> Optional[TransferRecord]: ...
    def get_by_payment_reference(self, payment_reference: str) -> Optional[TransferRecord]: ...
    def find_due(self, now: datetime, *, limit: Optional[int] = None) -> list[TransferRecord]: ...
    def mark_completed(
        self, transfer_id: UUID, external_transfer_id: str, *, charge_reference: Optional[str] = None
    ) -> bool: ...
    def record_failure(
        self, transfer_id: UUID, error: TransferError, *, next_attempt_at: Optional[datetime]
    ) -> Optional[TransferRecord]: ...
    def mark_failed(self, transfer_id: UUID, error: TransferError) -> bool: ...
    def reschedule_if_later(self, transfer_id: UUID, new_scheduled_at: datetime) -> bool: ...
    def attach_charge(self, transfer_id: UUID, charge_reference: str) -> bool: ...
    def approve(self, transfer_id: UUID) -> bool: ...
    def set_hold(
        self, transfer_id: UUID, *, on_hold: Optional[bool] = None, admin_notes: Optional[str] = None
    ) -> Optional[TransferRecord]: ...
    def list_transfers(
        self,
        *,
        status: Optional[TransferStatus] = None,
        payout_destination: Optional[str] = None,
        on_hold: Optional[bool] = None,
        limit: int = 50,
    ) -> list[TransferRecord]: ...
    def list_failed(self, *, limit: int = 50) -> list[TransferRecord]: ...
    def record_attempt(self, attempt: TransferAttempt) -> None: ...
    def list_attempts(self, transfer_id: UUID) -> list[TransferAttempt]: ...


_STORE: Optional[TransferStore] = None


def get_store() -> TransferStore:
    global _STORE
    if _STORE is not None:
        return _STORE

    kind = (settings.SETTLEMENT_STORE or "postgres").strip().lower()
    if kind == "memory":
        from app.transfers.memory import MemoryTransferStore
        _STORE = MemoryTransferStore(max_retries=settings.SETTLEMENT_MAX_RETRIES)
    else:
        from app.transfers.repository import PostgresTransferStore
        _STORE = PostgresTransferStore(max_retries=settings.SETTLEMENT_MAX_RETRIES)
    return _STORE


def set_store(store: Optional[TransferStore]) -> None:
    global _STORE
    _STORE = store
