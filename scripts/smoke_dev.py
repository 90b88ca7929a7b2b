import json
import os
import sys
import time
import uuid
from datetime import datetime, timedelta, timezone

import requests

from _webhook_signing import stripe_signature


def die(message, code=1):
    print(message)
    sys.exit(code)


def step(message):
    print("\n==> " + message)


def request(method, url, headers=None, json_body=None, data=None, allow_failure=False):
    try:
        resp = requests.request(method, url, headers=headers, json=json_body, data=data, timeout=30)
    except requests.RequestException as exc:
        die("Request failed: %s" % exc)
    if resp.status_code < 200 or resp.status_code >= 300:
        if not allow_failure:
            print("HTTP %s %s" % (resp.status_code, resp.reason))
            print(resp.text)
            sys.exit(1)
    return resp


def _safe_json(resp):
    try:
        return resp.json()
    except ValueError:
        return {}


def _iso(dt):
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _confirmation_payload(payment_ref, destination):
    now = datetime.now(timezone.utc)
    # old enough that both the aging period and the complaint window have passed
    return {
        "paymentReference": payment_ref,
        "destination": destination,
        "amount": 4200,
        "platformFee": 800,
        "currency": "usd",
        "serviceWindowEnd": _iso(now - timedelta(days=3)),
        "paymentConfirmedAt": _iso(now - timedelta(days=10)),
        "agingPeriodDays": 7,
        "complaintWindowHours": 24,
    }


def _payment_intent_event(pi_id, destination):
    now = datetime.now(timezone.utc)
    return {
        "id": "evt_smoke_" + uuid.uuid4().hex[:12],
        "type": "payment_intent.succeeded",
        "created": int((now - timedelta(days=10)).timestamp()),
        "data": {
            "object": {
                "id": pi_id,
                "object": "payment_intent",
                "amount": 5000,
                "amount_received": 5000,
                "application_fee_amount": 800,
                "currency": "usd",
                "latest_charge": "ch_" + pi_id[3:],
                "metadata": {
                    "destination": destination,
                    "serviceWindowEnd": _iso(now - timedelta(days=3)),
                },
            }
        },
    }


def main():
    base_url = os.getenv("BASE_URL", "http://127.0.0.1:8001")
    ingest_key = os.getenv("INGEST_API_KEY")
    cron_key = os.getenv("CRON_API_KEY")
    admin_key = os.getenv("ADMIN_API_KEY")
    webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    destination = os.getenv("SMOKE_DESTINATION", "acct_smoke0000000001")

    missing = [
        name
        for name in ("INGEST_API_KEY", "CRON_API_KEY", "ADMIN_API_KEY", "STRIPE_WEBHOOK_SECRET")
        if not os.getenv(name)
    ]
    if missing:
        die("Missing env vars: %s" % ", ".join(missing), code=2)

    step("Health")
    health = _safe_json(request("GET", base_url + "/healthz"))
    print(json.dumps(health))

    payment_ref = "pi_smoke" + uuid.uuid4().hex[:16]
    payload = _confirmation_payload(payment_ref, destination)

    step("Ingest confirmation")
    first = _safe_json(
        request("POST", base_url + "/v1/settlements/confirmations", headers={"X-Ingest-Key": ingest_key}, json_body=payload)
    )
    if first.get("action") != "created":
        die("Expected action=created, got %s" % first)

    step("Redeliver confirmation")
    again = _safe_json(
        request("POST", base_url + "/v1/settlements/confirmations", headers={"X-Ingest-Key": ingest_key}, json_body=payload)
    )
    if again.get("transfer_id") != first.get("transfer_id"):
        die("Redelivery created a second record: %s vs %s" % (first, again))

    step("Signed Stripe webhook")
    pi_id = "pi_smoke" + uuid.uuid4().hex[:16]
    body = json.dumps(_payment_intent_event(pi_id, destination)).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": stripe_signature(webhook_secret, body, int(time.time())),
    }
    hook = _safe_json(request("POST", base_url + "/v1/webhooks/stripe", headers=headers, data=body))
    print(json.dumps(hook))

    step("Run sweep")
    sweep = _safe_json(
        request("POST", base_url + "/v1/cron/process-transfers?details=true", headers={"X-Cron-Key": cron_key})
    )
    print(json.dumps(sweep))
    if sweep.get("succeeded", 0) + sweep.get("reconciled", 0) < 1:
        die("Sweep completed nothing")

    step("Run sweep again (nothing due)")
    sweep2 = _safe_json(
        request("POST", base_url + "/v1/cron/process-transfers", headers={"X-Cron-Key": cron_key})
    )
    print(json.dumps(sweep2))

    step("Transfer detail")
    detail = _safe_json(
        request(
            "GET",
            base_url + "/v1/admin/transfers/" + first["transfer_id"],
            headers={"X-Admin-Key": admin_key},
        )
    )
    transfer = detail.get("transfer") or {}
    if transfer.get("status") != "COMPLETED":
        die("Expected COMPLETED, got %s" % transfer.get("status"))
    print("external_transfer_id:", transfer.get("external_transfer_id"))
    print("attempts:", len(detail.get("attempts") or []))

    print("\nSmoke OK")


if __name__ == "__main__":
    main()
