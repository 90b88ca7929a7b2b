# routes/cron.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.workers.sweep import build_dispatcher
from deps.admin import require_cron
from schemas import SweepSummaryOut

router = APIRouter(prefix="/v1/cron", tags=["cron"])
logger = logging.getLogger("settlement.sweep")


def _run_sweep(details: bool) -> dict:
    summary = build_dispatcher().run_once()
    return summary.to_dict(include_details=details)


@router.post("/process-transfers", response_model=SweepSummaryOut, dependencies=[Depends(require_cron)])
def process_transfers(details: bool = False):
    return _run_sweep(details)


# schedulers that can only issue GET
@router.get("/process-transfers", response_model=SweepSummaryOut, dependencies=[Depends(require_cron)])
def process_transfers_get(details: bool = False):
    return _run_sweep(details)
