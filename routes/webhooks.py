# routes/webhooks.py
from __future__ import annotations

import hmac
import hashlib
import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Request, HTTPException

from settings import settings
from app.ingest.handler import IngestResult, build_handler
from services.metrics import increment_webhook_event
from services.redaction import mask_reference


router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("settlement.webhooks")

_APPLIED_ACTIONS = {"created", "rescheduled", "failed", "held"}


def _parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    """Stripe-Signature: t=1700000000,v1=<hex>[,v1=<hex>...]"""
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value.strip())
    return timestamp, signatures


def _verify_signature(
    *,
    raw: bytes,
    signature_header: str | None,
    secret: str | None,
    tolerance_s: int,
    now: float | None = None,
) -> tuple[bool, str | None]:
    if not secret or not secret.strip():
        return False, "WEBHOOK_SECRET_NOT_CONFIGURED"

    if not signature_header or not signature_header.strip():
        return False, "MISSING_SIGNATURE"

    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        return False, "MALFORMED_SIGNATURE"

    now = time.time() if now is None else now
    if tolerance_s > 0 and abs(now - timestamp) > tolerance_s:
        return False, "TIMESTAMP_OUT_OF_TOLERANCE"

    signed_payload = f"{timestamp}.".encode("utf-8") + raw
    expected = hmac.new(secret.strip().encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        return False, "INVALID_SIGNATURE"

    return True, None


def _confirmation_from_payment_intent(event: dict[str, Any], pi: dict[str, Any]) -> dict[str, Any]:
    """
    Booking details travel in PaymentIntent metadata, set when the checkout was created.
    The payout amount is the captured amount minus the platform's application fee unless
    metadata carries an explicit transferAmount.
    """
    meta = pi.get("metadata") or {}
    fee = pi.get("application_fee_amount") or meta.get("platformFee") or 0
    amount = meta.get("transferAmount")
    if amount is None:
        received = pi.get("amount_received") or pi.get("amount")
        try:
            amount = int(received) - int(fee)
        except (TypeError, ValueError):
            # left for ingest validation to reject
            amount = None

    destination = meta.get("destination")
    if not destination and isinstance(pi.get("transfer_data"), dict):
        destination = pi["transfer_data"].get("destination")

    latest_charge = pi.get("latest_charge")
    if isinstance(latest_charge, dict):
        latest_charge = latest_charge.get("id")

    payload: dict[str, Any] = {
        "paymentReference": pi.get("id"),
        "chargeReference": latest_charge,
        "destination": destination,
        "amount": amount,
        "platformFee": fee,
        "currency": pi.get("currency"),
        "serviceWindowEnd": meta.get("serviceWindowEnd"),
        "paymentConfirmedAt": event.get("created"),
    }
    # only forward durations that were actually set, so defaults apply otherwise
    for key in ("agingPeriodDays", "complaintWindowHours"):
        if key in meta:
            payload[key] = meta[key]
    return payload


def _dispatch(event_type: str, event: dict[str, Any]) -> IngestResult | None:
    obj = ((event.get("data") or {}).get("object")) or {}
    handler = build_handler()

    if event_type == "payment_intent.succeeded":
        return handler.handle_confirmation(_confirmation_from_payment_intent(event, obj))

    if event_type == "payment_intent.payment_failed":
        err = obj.get("last_payment_error") or {}
        return handler.handle_payment_failed(obj.get("id") or "", err.get("message") or "payment failed")

    if event_type == "charge.refunded":
        pi_id = obj.get("payment_intent")
        if isinstance(pi_id, dict):
            pi_id = pi_id.get("id")
        if not pi_id:
            return IngestResult(action="unchanged", reason="charge has no payment_intent")
        return handler.handle_charge_refunded(pi_id, "charge refunded")

    if event_type == "charge.dispute.created":
        pi_id = obj.get("payment_intent")
        if isinstance(pi_id, dict):
            pi_id = pi_id.get("id")
        if not pi_id:
            logger.error("dispute without payment_intent dispute=%s", obj.get("id"))
            return IngestResult(action="unchanged", reason="dispute has no payment_intent")
        reason = f"dispute opened: {obj['reason']}" if obj.get("reason") else "dispute opened"
        return handler.handle_dispute_created(pi_id, dispute_id=obj.get("id"), reason=reason)

    return None


@router.post("/stripe")
async def stripe_webhook(req: Request):
    raw = await req.body()
    sig_header = req.headers.get("Stripe-Signature")

    sig_ok, sig_err = _verify_signature(
        raw=raw,
        signature_header=sig_header,
        secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_s=int(settings.STRIPE_WEBHOOK_TOLERANCE_S),
    )

    # secret missing: deployment misconfig
    if sig_err == "WEBHOOK_SECRET_NOT_CONFIGURED":
        logger.error("stripe webhook rejected: %s", sig_err)
        increment_webhook_event("unknown", False, False)
        raise HTTPException(status_code=500, detail={"error": sig_err})

    if not sig_ok:
        logger.warning("stripe webhook rejected: %s", sig_err)
        increment_webhook_event("unknown", False, False)
        raise HTTPException(status_code=401, detail={"error": sig_err})

    try:
        event = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        increment_webhook_event("unknown", True, False)
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON"})
    if not isinstance(event, dict):
        increment_webhook_event("unknown", True, False)
        raise HTTPException(status_code=400, detail={"error": "INVALID_JSON_OBJECT"})

    event_type = str(event.get("type") or "")
    result = _dispatch(event_type, event)

    if result is None:
        logger.info("stripe webhook ignored event_id=%s type=%s", event.get("id"), event_type)
        increment_webhook_event(event_type or "unknown", True, False)
        return {"received": True, "event_type": event_type, "ignored": True, "result": None}

    applied = result.action in _APPLIED_ACTIONS
    increment_webhook_event(event_type, True, applied)
    obj = ((event.get("data") or {}).get("object")) or {}
    logger.info(
        "stripe webhook handled event_id=%s type=%s object=%s action=%s",
        event.get("id"),
        event_type,
        mask_reference(obj.get("id")),
        result.action,
    )
    return {"received": True, "event_type": event_type, "ignored": False, "result": result.to_dict()}
