# app/reconciliation/client.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from settings import settings
from app.processor.account_cache import AccountCache
from app.processor.base import PaymentProcessor
from app.processor.factory import get_processor
from app.processor.stripe import META_PAYMENT_REFERENCE, META_RECORD_ID
from app.transfers.errors import PermanentError, TransferAlreadyExistsError, TransientError
from app.transfers.model import TransferRecord

logger = logging.getLogger("settlement.reconcile")


@dataclass(frozen=True)
class EnsureResult:
    created: bool
    external_transfer_id: str
    charge_reference: str


def idempotency_key_for(record: TransferRecord) -> str:
    return f"transfer:{record.id}"


class ReconciliationClient:
    """
    Check-then-create against the processor.

    The processor is the tie-breaker: before creating, ask it whether the charge
    already funded a transfer. If a concurrent worker wins the create race, the
    "already exists" rejection is turned into a re-query and the winner's id is
    adopted. Never writes to the store.
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        *,
        account_cache: Optional[AccountCache] = None,
        requery_attempts: Optional[int] = None,
        requery_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.processor = processor
        self.account_cache = account_cache or AccountCache(
            processor.get_account,
            ttl_seconds=settings.ACCOUNT_CACHE_TTL_SECONDS,
        )
        attempts = requery_attempts if requery_attempts is not None else settings.RECONCILE_REQUERY_ATTEMPTS
        self.requery_attempts = max(1, int(attempts))
        delay = requery_delay_seconds if requery_delay_seconds is not None else settings.RECONCILE_REQUERY_DELAY_SECONDS
        self.requery_delay_seconds = max(0.0, float(delay))
        self._sleep = sleep

    def _lookup(self, charge_reference: str, record: TransferRecord) -> Optional[str]:
        return self.processor.get_existing_transfer(
            charge_reference,
            payment_reference=record.payment_reference,
            record_id=str(record.id),
        )

    def ensure_transfer(self, record: TransferRecord) -> EnsureResult:
        charge = record.charge_reference or self.processor.resolve_charge(record.payment_reference)

        existing = self._lookup(charge, record)
        if existing:
            logger.info("reconciled existing transfer record=%s charge=%s transfer=%s", record.id, charge, existing)
            return EnsureResult(created=False, external_transfer_id=existing, charge_reference=charge)

        account = self.account_cache.get(record.payout_destination)
        if not account.payouts_enabled:
            raise PermanentError(
                f"destination {record.payout_destination} cannot receive payouts",
                code="destination_not_enabled",
            )

        try:
            transfer_id = self.processor.create_transfer(
                charge_reference=charge,
                destination=record.payout_destination,
                amount=record.amount,
                currency=record.currency,
                idempotency_key=idempotency_key_for(record),
                metadata={
                    META_RECORD_ID: str(record.id),
                    META_PAYMENT_REFERENCE: record.payment_reference,
                    "scheduledAt": record.scheduled_at.isoformat(),
                    "platformFee": record.platform_fee,
                },
            )
        except TransferAlreadyExistsError as e:
            logger.info("create rejected as duplicate record=%s charge=%s: %s", record.id, charge, e)
            for attempt in range(1, self.requery_attempts + 1):
                # the winner's transfer can take a moment to show up in listings
                if self.requery_delay_seconds > 0:
                    self._sleep(self.requery_delay_seconds * attempt)
                existing = self._lookup(charge, record)
                if existing:
                    return EnsureResult(created=False, external_transfer_id=existing, charge_reference=charge)
                logger.warning(
                    "duplicate reported but no transfer visible yet record=%s attempt=%s/%s",
                    record.id,
                    attempt,
                    self.requery_attempts,
                )
            raise TransientError(
                f"processor reported an existing transfer for charge {charge} but none is visible",
                code="already_exists_unresolved",
            ) from e

        logger.info("created transfer record=%s charge=%s transfer=%s", record.id, charge, transfer_id)
        return EnsureResult(created=True, external_transfer_id=transfer_id, charge_reference=charge)


# ----------------------------------------------------------
# Shared client (one account cache per process)
# ----------------------------------------------------------

_CLIENT_LOCK = threading.Lock()
_CLIENT: Optional[ReconciliationClient] = None


def get_reconciliation_client() -> ReconciliationClient:
    """Reuses the client, and its account cache, for as long as the active processor stays the same."""
    global _CLIENT
    processor = get_processor()
    with _CLIENT_LOCK:
        if _CLIENT is None or _CLIENT.processor is not processor:
            _CLIENT = ReconciliationClient(processor)
        return _CLIENT


def reset_reconciliation_client() -> None:
    global _CLIENT
    with _CLIENT_LOCK:
        _CLIENT = None
