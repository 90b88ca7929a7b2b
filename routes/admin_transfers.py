from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from app.transfers.model import TransferStatus
from app.transfers.store import get_store
from deps.admin import require_admin
from schemas import (
    FailedTransfersOut,
    TransferDetailOut,
    TransferHoldIn,
    TransferListOut,
    TransferRecordOut,
    TransferStatusName,
)


router = APIRouter(prefix="/v1/admin/transfers", tags=["admin-transfers"], dependencies=[Depends(require_admin)])
logger = logging.getLogger("settlement.admin")


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, 200))


@router.get("", response_model=TransferListOut)
def list_transfers(
    status: Optional[TransferStatusName] = None,
    destination: Optional[str] = None,
    on_hold: Optional[bool] = None,
    limit: int = 50,
):
    limit = _clamp_limit(limit)
    records = get_store().list_transfers(
        status=TransferStatus(status) if status else None,
        payout_destination=destination,
        on_hold=on_hold,
        limit=limit,
    )
    return {
        "transfers": [r.to_dict() for r in records],
        "count": len(records),
        "limit": limit,
        "status": status,
    }


@router.get("/failed", response_model=FailedTransfersOut)
def list_failed_transfers(limit: int = 50):
    limit = _clamp_limit(limit)
    records = get_store().list_failed(limit=limit)
    return {"transfers": [r.to_dict() for r in records], "count": len(records), "limit": limit}


@router.get("/{transfer_id}", response_model=TransferDetailOut)
def get_transfer(transfer_id: UUID):
    store = get_store()
    rec = store.get(transfer_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="TRANSFER_NOT_FOUND")
    return {
        "transfer": rec.to_dict(),
        "attempts": [a.to_dict() for a in store.list_attempts(transfer_id)],
    }


@router.patch("/{transfer_id}", response_model=TransferRecordOut)
def update_transfer_hold(transfer_id: UUID, body: TransferHoldIn):
    if body.on_hold is None and body.admin_notes is None:
        raise HTTPException(status_code=422, detail="NOTHING_TO_UPDATE")

    store = get_store()
    rec = store.get(transfer_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="TRANSFER_NOT_FOUND")

    updated = store.set_hold(transfer_id, on_hold=body.on_hold, admin_notes=body.admin_notes)
    if updated is None:
        raise HTTPException(
            status_code=409,
            detail={"error": "TRANSFER_COMPLETED", "status": rec.status.value},
        )

    if body.on_hold is not None and body.on_hold != rec.on_hold:
        logger.info(
            "transfer %s id=%s payment=%s",
            "held" if updated.on_hold else "released",
            transfer_id,
            rec.payment_reference,
        )
    return updated.to_dict()


@router.post("/{transfer_id}/approve", response_model=TransferRecordOut)
def approve_transfer(transfer_id: UUID):
    store = get_store()
    rec = store.get(transfer_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="TRANSFER_NOT_FOUND")
    if rec.status != TransferStatus.FAILED or not store.approve(transfer_id):
        raise HTTPException(
            status_code=409,
            detail={"error": "INVALID_TRANSITION", "status": rec.status.value},
        )

    logger.info("transfer approved for retry id=%s payment=%s", transfer_id, rec.payment_reference)
    return (store.get(transfer_id) or rec).to_dict()
