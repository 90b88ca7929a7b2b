# tests/conftest.py

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from main import app
from settings import settings
from app.processor.factory import reset_processors, set_processor
from app.processor.mock import MockProcessor
from app.reconciliation.client import reset_reconciliation_client
from app.transfers.memory import MemoryTransferStore
from app.transfers.model import NewTransferRecord, TransferRecord
from app.transfers.store import set_store
from services.metrics import reset_counters


ADMIN_KEY = "test-admin-key"
CRON_KEY = "test-cron-key"
INGEST_KEY = "test-ingest-key"
WEBHOOK_SECRET = "whsec_test_secret"

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------
# Store / processor wiring
# ---------------------------

@pytest.fixture()
def store() -> MemoryTransferStore:
    return MemoryTransferStore(max_retries=3)


@pytest.fixture()
def processor() -> MockProcessor:
    return MockProcessor()


@pytest.fixture(autouse=True)
def settlement_env(monkeypatch, store, processor):
    monkeypatch.setattr(settings, "ENV", "dev", raising=False)
    monkeypatch.setattr(settings, "SETTLEMENT_STORE", "memory", raising=False)
    monkeypatch.setattr(settings, "PROCESSOR_MODE", "mock", raising=False)
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY, raising=False)
    monkeypatch.setattr(settings, "CRON_API_KEY", CRON_KEY, raising=False)
    monkeypatch.setattr(settings, "INGEST_API_KEY", INGEST_KEY, raising=False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET, raising=False)
    monkeypatch.setattr(settings, "SETTLEMENT_DEFAULT_AGING_DAYS", 7, raising=False)
    monkeypatch.setattr(settings, "SETTLEMENT_DEFAULT_COMPLAINT_WINDOW_HOURS", 24, raising=False)
    monkeypatch.setattr(settings, "SWEEP_ABORT_ON_OUTAGE", False, raising=False)
    monkeypatch.setattr(settings, "RECONCILE_REQUERY_DELAY_SECONDS", 0, raising=False)

    set_store(store)
    reset_processors()
    reset_reconciliation_client()
    set_processor(processor, "mock")
    reset_counters()
    yield
    set_store(None)
    reset_processors()
    reset_reconciliation_client()


@pytest.fixture(scope="session")
def client() -> TestClient:
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    return TestClient(app, raise_server_exceptions=False)


# ---------------------------
# Helpers
# ---------------------------

def _iso(dt: datetime) -> str:
    return dt.isoformat()


def confirmation_payload(
    payment_reference: str = "pi_test_0001",
    *,
    confirmed_at: datetime = T0,
    window_end: Optional[datetime] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    window_end = window_end or (T0 + timedelta(days=1))
    payload: Dict[str, Any] = {
        "paymentReference": payment_reference,
        "destination": "acct_test000000000001",
        "amount": 4200,
        "platformFee": 800,
        "currency": "usd",
        "serviceWindowEnd": _iso(window_end),
        "paymentConfirmedAt": _iso(confirmed_at),
        "agingPeriodDays": 7,
        "complaintWindowHours": 24,
    }
    payload.update(overrides)
    return payload


def new_record(
    store: MemoryTransferStore,
    payment_reference: str = "pi_test_0001",
    *,
    scheduled_at: datetime = T0,
    charge_reference: Optional[str] = "ch_test_0001",
    destination: str = "acct_test000000000001",
    amount: int = 4200,
) -> TransferRecord:
    return store.create(
        NewTransferRecord(
            payment_reference=payment_reference,
            payout_destination=destination,
            amount=amount,
            platform_fee=800,
            currency="usd",
            service_window_end=scheduled_at - timedelta(days=1),
            payment_confirmed_at=scheduled_at - timedelta(days=7),
            scheduled_at=scheduled_at,
            charge_reference=charge_reference,
        )
    )


def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


def cron_headers() -> Dict[str, str]:
    return {"X-Cron-Key": CRON_KEY}


def ingest_headers() -> Dict[str, str]:
    return {"X-Ingest-Key": INGEST_KEY}
