# schemas.py
from __future__ import annotations

from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional, List, Literal

IngestAction = Literal["created", "rescheduled", "unchanged", "rejected", "refund_required", "failed", "held"]
TransferStatusName = Literal["PENDING", "READY", "APPROVED", "COMPLETED", "FAILED"]


# -------- INGEST --------
class IngestResultOut(BaseModel):
    action: IngestAction
    transfer_id: Optional[UUID] = None
    scheduled_at: Optional[datetime] = None
    reason: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    event_type: str
    ignored: bool = False
    result: Optional[IngestResultOut] = None


# -------- SWEEP --------
class SweepRecordOut(BaseModel):
    transfer_id: UUID
    outcome: str
    external_transfer_id: Optional[str] = None
    error: Optional[str] = None


class SweepSummaryOut(BaseModel):
    processed: int = Field(ge=0)
    succeeded: int = Field(ge=0)
    reconciled: int = Field(ge=0)
    failed: int = Field(ge=0)
    skipped: int = Field(ge=0)
    aborted: bool
    details: Optional[List[SweepRecordOut]] = None


# -------- ADMIN --------
class TransferErrorOut(BaseModel):
    kind: str
    message: str
    code: Optional[str] = None


class TransferRecordOut(BaseModel):
    id: UUID
    payment_reference: str
    charge_reference: Optional[str] = None
    payout_destination: str
    amount: int
    platform_fee: int
    currency: str
    service_window_end: datetime
    payment_confirmed_at: datetime
    scheduled_at: datetime
    status: TransferStatusName
    external_transfer_id: Optional[str] = None
    retry_count: int
    last_error: Optional[TransferErrorOut] = None
    next_attempt_at: Optional[datetime] = None
    created: datetime
    updated: datetime
    on_hold: bool = False
    admin_notes: Optional[str] = None


class TransferAttemptOut(BaseModel):
    id: Optional[UUID] = None
    transfer_id: UUID
    attempted_at: datetime
    outcome: str
    external_transfer_id: Optional[str] = None
    error_message: Optional[str] = None


class FailedTransfersOut(BaseModel):
    transfers: List[TransferRecordOut]
    count: int
    limit: int


class TransferListOut(BaseModel):
    transfers: List[TransferRecordOut]
    count: int
    limit: int
    status: Optional[TransferStatusName] = None


class TransferHoldIn(BaseModel):
    on_hold: Optional[bool] = None
    admin_notes: Optional[str] = Field(default=None, max_length=2000)


class TransferDetailOut(BaseModel):
    transfer: TransferRecordOut
    attempts: List[TransferAttemptOut]
