# routes/settlements.py
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from app.ingest.handler import build_handler
from deps.admin import require_ingest
from services.redaction import redact_dict

router = APIRouter(prefix="/v1/settlements", tags=["settlements"])
logger = logging.getLogger("settlement.ingest")


@router.post("/confirmations", status_code=202, dependencies=[Depends(require_ingest)])
def ingest_confirmation(payload: Any = Body(...)):
    """
    Structured payment confirmation. Safe to redeliver: the record is keyed by
    paymentReference and its schedule only ever moves later.
    """
    if not isinstance(payload, dict):
        payload = {}
    result = build_handler().handle_confirmation(payload)
    if result.action == "rejected":
        logger.info("confirmation rejected payload=%s", redact_dict(payload))
        return JSONResponse(status_code=422, content=result.to_dict())
    return result.to_dict()
