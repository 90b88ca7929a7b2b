# app/transfers/state_machine.py
from __future__ import annotations

from app.transfers.model import TransferStatus


class InvalidTransition(Exception):
    pass


S = TransferStatus

ALLOWED = {
    S.PENDING: {S.READY, S.COMPLETED, S.FAILED, S.PENDING},  # PENDING->PENDING on retry scheduling
    S.READY: {S.COMPLETED, S.FAILED, S.READY},
    S.APPROVED: {S.COMPLETED, S.FAILED, S.APPROVED},
    S.COMPLETED: set(),
    # FAILED->COMPLETED only when the processor already holds a transfer for the record
    S.FAILED: {S.APPROVED, S.COMPLETED},
}


def assert_transition(old: TransferStatus | str, new: TransferStatus | str) -> None:
    old_s, new_s = TransferStatus(old), TransferStatus(new)
    if new_s not in ALLOWED.get(old_s, set()):
        raise InvalidTransition(f"Illegal transfer transition: {old_s.value} -> {new_s.value}")


def assert_completed_invariant(new_status: TransferStatus | str, external_transfer_id: str | None) -> None:
    """
    Invariant: a record carrying an external transfer id is COMPLETED, and COMPLETED needs one.
    """
    status = TransferStatus(new_status)
    if external_transfer_id and status != TransferStatus.COMPLETED:
        raise ValueError("Invariant violation: external_transfer_id requires status=COMPLETED")
    if status == TransferStatus.COMPLETED and not external_transfer_id:
        raise ValueError("Invariant violation: status=COMPLETED requires external_transfer_id")
