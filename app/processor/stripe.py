# app/processor/stripe.py
from __future__ import annotations

import logging
from typing import Any, NoReturn, Optional

import httpx

from settings import settings
from app.processor.base import DestinationAccount
from app.processor.http import HttpClient, HttpResponse, is_retryable_http
from app.transfers.errors import PermanentError, TransferAlreadyExistsError, TransientError
from services.redaction import redact_text

logger = logging.getLogger("settlement.stripe")

# metadata keys written on every transfer; the list fallback matches on them
META_RECORD_ID = "transferRecordId"
META_PAYMENT_REFERENCE = "paymentReference"


def _error_body(resp: HttpResponse) -> dict[str, Any]:
    err = (resp.json or {}).get("error")
    return err if isinstance(err, dict) else {}


def _is_already_exists(resp: HttpResponse) -> bool:
    if resp.status_code == 409:
        # idempotency_key_in_use: a concurrent request with the same key is in flight
        return True
    err = _error_body(resp)
    if err.get("type") == "idempotency_error":
        return True
    message = str(err.get("message") or "").lower()
    return "already" in message and "transfer" in message


def _raise_for(resp: HttpResponse, op: str) -> NoReturn:
    """Map a non-2xx Stripe response onto the settlement error taxonomy."""
    err = _error_body(resp)
    code = err.get("code") or err.get("type")
    message = f"{op} failed: HTTP {resp.status_code} {err.get('message') or resp.text[:200]}".strip()
    logger.warning("stripe %s error status=%s body=%s", op, resp.status_code, redact_text(resp.text[:500]))

    if is_retryable_http(resp.status_code):
        raise TransientError(message, code=code, http_status=resp.status_code)
    if err.get("type") == "api_error":
        raise TransientError(message, code=code, http_status=resp.status_code)
    raise PermanentError(message, code=code, http_status=resp.status_code)


class StripeProcessor:
    """
    Stripe Connect adapter over the REST API.

    Transfers are created with source_transaction=<charge> so Stripe itself ties
    the payout to the settled funds, and with an Idempotency-Key derived from the
    record id so a retried POST cannot mint a second transfer.
    """

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        key = (secret_key if secret_key is not None else settings.STRIPE_SECRET_KEY or "").strip()
        if not key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set.")
        base = (api_base or settings.STRIPE_API_BASE or "https://api.stripe.com").strip().rstrip("/")
        self.http = HttpClient(
            base,
            timeout_s=float(timeout_s if timeout_s is not None else settings.PROCESSOR_HTTP_TIMEOUT_S),
            auth=(key, ""),
            transport=transport,
        )

    def _get(self, path: str, op: str, *, params: Any = None) -> dict[str, Any]:
        try:
            resp = self.http.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"{op} timed out: {e}", code="timeout") from e
        except httpx.TransportError as e:
            raise TransientError(f"{op} network error: {e}", code="network") from e
        if resp.status_code != 200:
            _raise_for(resp, op)
        return resp.json or {}

    # ----------------------------------------------------------
    # Charge / transfer lookups
    # ----------------------------------------------------------

    def resolve_charge(self, payment_reference: str) -> str:
        pi = self._get(f"/v1/payment_intents/{payment_reference}", "resolve_charge")
        latest = pi.get("latest_charge")
        if isinstance(latest, dict):
            latest = latest.get("id")
        if not latest:
            # no settled charge yet; a later sweep picks it up
            raise TransientError(
                f"payment {payment_reference} has no charge yet (status={pi.get('status')})",
                code="charge_not_available",
            )
        return str(latest)

    def get_existing_transfer(
        self,
        charge_reference: str,
        *,
        payment_reference: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> Optional[str]:
        charge = self._get(
            f"/v1/charges/{charge_reference}",
            "get_existing_transfer",
            params=[("expand[]", "transfer")],
        )
        linked = charge.get("transfer")
        if isinstance(linked, dict):
            linked = linked.get("id")
        if linked:
            return str(linked)

        # Separate charges and transfers are not linked on the charge object
        listing = self._get(
            "/v1/transfers",
            "list_transfers",
            params={"source_transaction": charge_reference, "limit": 10},
        )
        for t in listing.get("data") or []:
            meta = t.get("metadata") or {}
            if record_id and meta.get(META_RECORD_ID) == record_id:
                return str(t["id"])
            if payment_reference and meta.get(META_PAYMENT_REFERENCE) == payment_reference:
                return str(t["id"])
        return None

    # ----------------------------------------------------------
    # Transfer creation
    # ----------------------------------------------------------

    def create_transfer(
        self,
        *,
        charge_reference: str,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> str:
        data: dict[str, Any] = {
            "amount": int(amount),
            "currency": currency.lower(),
            "destination": destination,
            "source_transaction": charge_reference,
        }
        for k, v in (metadata or {}).items():
            if v is not None:
                data[f"metadata[{k}]"] = str(v)

        try:
            resp = self.http.post_form("/v1/transfers", data=data, headers={"Idempotency-Key": idempotency_key})
        except httpx.TimeoutException as e:
            # outcome unknown; the next attempt reconciles before creating
            raise TransientError(f"create_transfer timed out: {e}", code="timeout") from e
        except httpx.TransportError as e:
            raise TransientError(f"create_transfer network error: {e}", code="network") from e

        if resp.status_code == 200 and resp.json and resp.json.get("id"):
            logger.info(
                "stripe transfer created id=%s charge=%s idempotency_key=%s",
                resp.json["id"],
                charge_reference,
                idempotency_key,
            )
            return str(resp.json["id"])
        if _is_already_exists(resp):
            err = _error_body(resp)
            raise TransferAlreadyExistsError(
                err.get("message") or "transfer already exists",
                code=err.get("code") or "already_exists",
                http_status=resp.status_code,
            )
        if resp.status_code == 200:
            raise TransientError("create_transfer returned no transfer id", code="missing_id")
        _raise_for(resp, "create_transfer")

    # ----------------------------------------------------------
    # Accounts
    # ----------------------------------------------------------

    def get_account(self, account_id: str) -> DestinationAccount:
        acct = self._get(f"/v1/accounts/{account_id}", "get_account")
        return DestinationAccount(
            account_id=str(acct.get("id") or account_id),
            payouts_enabled=bool(acct.get("payouts_enabled")),
            country=acct.get("country"),
            default_currency=acct.get("default_currency"),
        )
