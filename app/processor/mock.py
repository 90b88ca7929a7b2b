# app/processor/mock.py
from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from app.processor.base import DestinationAccount
from app.transfers.errors import PermanentError, ProcessorError, TransferAlreadyExistsError, TransientError


class MockProcessor:
    """
    Sandbox/test processor.

    Keeps an in-process ledger with one transfer per charge: a second create for a
    charge that already funded a transfer raises TransferAlreadyExistsError, the
    same condition the real processor reports.

    Hooks:
      - before_create(charge_reference) runs before the ledger write, outside the lock
      - queue_create_failure(exc) makes the next create_transfer raise exc
    """

    def __init__(
        self,
        *,
        charges: Optional[dict[str, str]] = None,
        disabled_accounts: Optional[set[str]] = None,
        before_create: Optional[Callable[[str], None]] = None,
    ):
        self._lock = threading.Lock()
        self.charges: dict[str, str] = dict(charges or {})
        self.disabled_accounts: set[str] = set(disabled_accounts or ())
        self.before_create = before_create

        self.transfers: dict[str, dict[str, Any]] = {}  # charge -> transfer
        self.idempotency_keys: list[str] = []
        self._create_failures: list[ProcessorError] = []
        self._seq = 0

        self.create_calls = 0
        self.lookup_calls = 0
        self.account_calls = 0
        self.unavailable = False

    # test helpers
    def queue_create_failure(self, exc: ProcessorError) -> None:
        with self._lock:
            self._create_failures.append(exc)

    def seed_transfer(self, charge_reference: str, transfer_id: str, **metadata: Any) -> None:
        with self._lock:
            self.transfers[charge_reference] = {"id": transfer_id, "metadata": dict(metadata)}

    def _check_available(self, op: str) -> None:
        if self.unavailable:
            raise TransientError(f"{op}: processor unavailable", code="unavailable", http_status=503)

    # ----------------------------------------------------------

    def resolve_charge(self, payment_reference: str) -> str:
        self._check_available("resolve_charge")
        with self._lock:
            return self.charges.setdefault(payment_reference, f"ch_mock_{payment_reference}")

    def get_existing_transfer(
        self,
        charge_reference: str,
        *,
        payment_reference: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> Optional[str]:
        self._check_available("get_existing_transfer")
        with self._lock:
            self.lookup_calls += 1
            t = self.transfers.get(charge_reference)
            return t["id"] if t else None

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
        self._check_available("create_transfer")
        if self.before_create is not None:
            self.before_create(charge_reference)

        with self._lock:
            self.create_calls += 1
            self.idempotency_keys.append(idempotency_key)
            if self._create_failures:
                raise self._create_failures.pop(0)
            if destination in self.disabled_accounts:
                raise PermanentError(f"destination {destination} cannot receive transfers", code="account_invalid")
            if charge_reference in self.transfers:
                raise TransferAlreadyExistsError(
                    f"charge {charge_reference} already has a transfer",
                    code="transfer_already_exists",
                    http_status=400,
                )
            self._seq += 1
            transfer_id = f"tr_mock_{self._seq}"
            self.transfers[charge_reference] = {
                "id": transfer_id,
                "destination": destination,
                "amount": int(amount),
                "currency": currency,
                "metadata": dict(metadata or {}),
            }
            return transfer_id

    def get_account(self, account_id: str) -> DestinationAccount:
        self._check_available("get_account")
        with self._lock:
            self.account_calls += 1
        return DestinationAccount(
            account_id=account_id,
            payouts_enabled=account_id not in self.disabled_accounts,
            country="US",
            default_currency="usd",
        )
