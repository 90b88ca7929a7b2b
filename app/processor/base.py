# app/processor/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class DestinationAccount:
    account_id: str
    payouts_enabled: bool
    country: Optional[str] = None
    default_currency: Optional[str] = None


class PaymentProcessor(Protocol):
    """
    Read/write port to the payment processor. The processor is the source of truth
    for whether a transfer already exists for a charge.
    """

    def resolve_charge(self, payment_reference: str) -> str: ...

    def get_existing_transfer(
        self,
        charge_reference: str,
        *,
        payment_reference: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> Optional[str]: ...

    def create_transfer(
        self,
        *,
        charge_reference: str,
        destination: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, Any],
    ) -> str: ...

    def get_account(self, account_id: str) -> DestinationAccount: ...
