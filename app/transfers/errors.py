# app/transfers/errors.py
from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    pass


class InvalidInputError(SettlementError, ValueError):
    """Malformed timing or amount input. Callers keep prior state and log."""


class DuplicatePaymentReferenceError(SettlementError):
    def __init__(self, payment_reference: str):
        super().__init__(f"Transfer record already exists for payment {payment_reference}")
        self.payment_reference = payment_reference


class ProcessorError(SettlementError):
    def __init__(self, message: str, *, code: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class TransientError(ProcessorError):
    """Network/availability problem. Retried on a later sweep."""


class PermanentError(ProcessorError):
    """Semantic rejection unrelated to duplication. Routed to manual review."""


class TransferAlreadyExistsError(ProcessorError):
    """
    The processor refused a second transfer for the same charge.
    Not a failure: the reconciliation client re-queries and adopts the existing id.
    """
