# app/transfers/model.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class TransferStatus(str, Enum):
    PENDING = "PENDING"      # payment confirmed, charge not resolved yet
    READY = "READY"          # payment confirmed, charge known
    APPROVED = "APPROVED"    # re-approved by an operator after FAILED
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


DUE_STATUSES = (TransferStatus.PENDING, TransferStatus.READY, TransferStatus.APPROVED)
TERMINAL_STATUSES = (TransferStatus.COMPLETED, TransferStatus.FAILED)


class ErrorKind(str, Enum):
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CHARGE_REFUNDED = "CHARGE_REFUNDED"
    DISPUTED = "DISPUTED"


class AttemptOutcome(str, Enum):
    CREATED = "CREATED"
    RECONCILED = "RECONCILED"
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"


@dataclass(frozen=True)
class TransferError:
    kind: ErrorKind
    message: str
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "code": self.code}


@dataclass(frozen=True)
class NewTransferRecord:
    payment_reference: str
    payout_destination: str
    amount: int
    platform_fee: int
    currency: str
    service_window_end: datetime
    payment_confirmed_at: datetime
    scheduled_at: datetime
    charge_reference: Optional[str] = None

    @property
    def initial_status(self) -> TransferStatus:
        return TransferStatus.READY if self.charge_reference else TransferStatus.PENDING


@dataclass(frozen=True)
class TransferRecord:
    id: UUID
    payment_reference: str
    charge_reference: Optional[str]
    payout_destination: str
    amount: int
    platform_fee: int
    currency: str
    service_window_end: datetime
    payment_confirmed_at: datetime
    scheduled_at: datetime
    status: TransferStatus
    external_transfer_id: Optional[str]
    retry_count: int
    last_error: Optional[TransferError]
    next_attempt_at: Optional[datetime]
    created: datetime
    updated: datetime
    # operator hold; the sweep skips held records whatever their status
    on_hold: bool = False
    admin_notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def evolve(self, **changes: Any) -> "TransferRecord":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TransferRecord":
        last_error = None
        if row.get("last_error_kind"):
            last_error = TransferError(
                kind=ErrorKind(row["last_error_kind"]),
                message=row.get("last_error") or "",
                code=row.get("last_error_code"),
            )
        return cls(
            id=row["id"],
            payment_reference=row["payment_reference"],
            charge_reference=row.get("charge_reference"),
            payout_destination=row["payout_destination"],
            amount=int(row["amount"]),
            platform_fee=int(row.get("platform_fee") or 0),
            currency=row["currency"],
            service_window_end=row["service_window_end"],
            payment_confirmed_at=row["payment_confirmed_at"],
            scheduled_at=row["scheduled_at"],
            status=TransferStatus(row["status"]),
            external_transfer_id=row.get("external_transfer_id"),
            retry_count=int(row.get("retry_count") or 0),
            last_error=last_error,
            next_attempt_at=row.get("next_attempt_at"),
            created=row["created"],
            updated=row["updated"],
            on_hold=bool(row.get("on_hold") or False),
            admin_notes=row.get("admin_notes"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "payment_reference": self.payment_reference,
            "charge_reference": self.charge_reference,
            "payout_destination": self.payout_destination,
            "amount": self.amount,
            "platform_fee": self.platform_fee,
            "currency": self.currency,
            "service_window_end": self.service_window_end.isoformat(),
            "payment_confirmed_at": self.payment_confirmed_at.isoformat(),
            "scheduled_at": self.scheduled_at.isoformat(),
            "status": self.status.value,
            "external_transfer_id": self.external_transfer_id,
            "retry_count": self.retry_count,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
            "on_hold": self.on_hold,
            "admin_notes": self.admin_notes,
        }


@dataclass(frozen=True)
class TransferAttempt:
    transfer_id: UUID
    attempted_at: datetime
    outcome: AttemptOutcome
    external_transfer_id: Optional[str] = None
    error_message: Optional[str] = None
    id: Optional[UUID] = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "transfer_id": str(self.transfer_id),
            "attempted_at": self.attempted_at.isoformat(),
            "outcome": self.outcome.value,
            "external_transfer_id": self.external_transfer_id,
            "error_message": self.error_message,
        }
