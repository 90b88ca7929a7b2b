# app/ingest/handler.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Optional

from settings import settings
from app.transfers.errors import DuplicatePaymentReferenceError, InvalidInputError
from app.transfers.model import ErrorKind, NewTransferRecord, TransferError, TransferRecord, TransferStatus
from app.transfers.schedule import aging_period_from_days, complaint_window_from_hours, compute_eligible_time
from app.transfers.store import TransferStore, get_store
from services.metrics import increment_ingest_event
from services.redaction import mask_reference

logger = logging.getLogger("settlement.ingest")

IngestAction = Literal["created", "rescheduled", "unchanged", "rejected", "refund_required", "failed", "held"]


@dataclass(frozen=True)
class PaymentConfirmation:
    payment_reference: str
    payout_destination: str
    amount: int
    platform_fee: int
    currency: str
    service_window_end: datetime
    payment_confirmed_at: datetime
    charge_reference: Optional[str] = None

    @property
    def is_late(self) -> bool:
        return self.payment_confirmed_at > self.service_window_end


@dataclass(frozen=True)
class IngestResult:
    action: IngestAction
    transfer_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "transfer_id": self.transfer_id,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "reason": self.reason,
        }


# ----------------------------------------------------------
# Payload parsing
# ----------------------------------------------------------

def _pick(payload: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


def _required_str(payload: dict[str, Any], *keys: str) -> str:
    v = _pick(payload, *keys)
    if not isinstance(v, str) or not v.strip():
        raise InvalidInputError(f"{keys[0]} is required")
    return v.strip()


def parse_timestamp(name: str, value: Any) -> datetime:
    """ISO-8601 string, epoch seconds, or datetime. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        if not math.isfinite(value):
            raise InvalidInputError(f"{name} is not a valid timestamp")
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise InvalidInputError(f"{name} is out of range: {value!r}") from None
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            raise InvalidInputError(f"{name} is not a valid timestamp: {value!r}") from None
    else:
        raise InvalidInputError(f"{name} is required")

    if dt.tzinfo is None or dt.utcoffset() is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_minor_units(name: str, value: Any, *, allow_zero: bool) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"{name} must be an integer amount in minor units")
    if isinstance(value, str):
        value = value.strip()
        if not value.lstrip("-").isdigit():
            raise InvalidInputError(f"{name} must be an integer amount in minor units")
        value = int(value)
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidInputError(f"{name} must be an integer amount in minor units")
        value = int(value)
    if not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer amount in minor units")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidInputError(f"{name} must be {'>= 0' if allow_zero else '> 0'}")
    return value


def parse_confirmation(payload: dict[str, Any]) -> PaymentConfirmation:
    if not isinstance(payload, dict):
        raise InvalidInputError("payload must be an object")

    currency = _required_str(payload, "currency")
    if len(currency) != 3 or not currency.isalpha():
        raise InvalidInputError(f"currency must be a 3-letter code, got {currency!r}")

    amount_raw = _pick(payload, "amount")
    if amount_raw is None:
        raise InvalidInputError("amount is required")
    fee_raw = _pick(payload, "platformFee", "platform_fee")

    charge = _pick(payload, "chargeReference", "charge_reference")
    if charge is not None and (not isinstance(charge, str) or not charge.strip()):
        charge = None

    return PaymentConfirmation(
        payment_reference=_required_str(payload, "paymentReference", "payment_reference"),
        payout_destination=_required_str(payload, "destination", "payout_destination"),
        amount=_parse_minor_units("amount", amount_raw, allow_zero=False),
        platform_fee=_parse_minor_units("platformFee", fee_raw, allow_zero=True) if fee_raw is not None else 0,
        currency=currency.lower(),
        service_window_end=parse_timestamp(
            "serviceWindowEnd", _pick(payload, "serviceWindowEnd", "service_window_end")
        ),
        payment_confirmed_at=parse_timestamp(
            "paymentConfirmedAt", _pick(payload, "paymentConfirmedAt", "payment_confirmed_at")
        ),
        charge_reference=charge.strip() if charge else None,
    )


# ----------------------------------------------------------
# Handler
# ----------------------------------------------------------

class IngestHandler:
    """
    Payment-confirmation intake. Creates or updates the transfer record and its
    schedule; never talks to the processor's transfer API.
    """

    def __init__(
        self,
        store: TransferStore,
        *,
        late_payment_policy: Optional[Callable[[PaymentConfirmation], bool]] = None,
        default_aging: Optional[timedelta] = None,
        default_complaint_window: Optional[timedelta] = None,
    ):
        self.store = store
        self.late_payment_policy = late_payment_policy
        self.default_aging = default_aging or aging_period_from_days(settings.SETTLEMENT_DEFAULT_AGING_DAYS)
        self.default_complaint_window = default_complaint_window or complaint_window_from_hours(
            settings.SETTLEMENT_DEFAULT_COMPLAINT_WINDOW_HOURS
        )

    def _result(self, result: IngestResult) -> IngestResult:
        increment_ingest_event(result.action)
        return result

    def _durations(self, payload: dict[str, Any]) -> tuple[timedelta, timedelta, bool]:
        """Returns (aging, complaint_window, valid). Missing values fall back to defaults."""
        valid = True
        aging = self.default_aging
        complaint = self.default_complaint_window

        raw_aging = _pick(payload, "agingPeriodDays", "aging_period_days")
        if raw_aging is not None or "agingPeriodDays" in payload or "aging_period_days" in payload:
            try:
                aging = aging_period_from_days(raw_aging)
            except InvalidInputError as e:
                logger.warning("invalid aging period, keeping prior schedule: %s", e)
                valid = False

        raw_complaint = _pick(payload, "complaintWindowHours", "complaint_window_hours")
        if raw_complaint is not None or "complaintWindowHours" in payload or "complaint_window_hours" in payload:
            try:
                complaint = complaint_window_from_hours(raw_complaint)
            except InvalidInputError as e:
                logger.warning("invalid complaint window, keeping prior schedule: %s", e)
                valid = False

        return aging, complaint, valid

    def handle_confirmation(self, payload: dict[str, Any]) -> IngestResult:
        try:
            conf = parse_confirmation(payload)
        except InvalidInputError as e:
            logger.warning("rejected payment confirmation: %s", e)
            return self._result(IngestResult(action="rejected", reason=str(e)))

        aging, complaint, durations_valid = self._durations(payload)
        schedule_error: Optional[str] = None
        try:
            scheduled_at = compute_eligible_time(
                conf.payment_confirmed_at, conf.service_window_end, aging, complaint
            )
        except InvalidInputError as e:
            # durations parsed but their sum leaves the datetime range
            logger.warning("schedule out of range, keeping prior schedule: %s", e)
            durations_valid = False
            try:
                scheduled_at = compute_eligible_time(
                    conf.payment_confirmed_at,
                    conf.service_window_end,
                    self.default_aging,
                    self.default_complaint_window,
                )
            except InvalidInputError as fallback:
                scheduled_at = None
                schedule_error = str(fallback)

        existing = self.store.get_by_payment_reference(conf.payment_reference)
        if existing is not None:
            return self._result(
                self._update_existing(existing, conf, scheduled_at if durations_valid else None)
            )

        if scheduled_at is None:
            logger.warning("rejected payment confirmation: %s", schedule_error)
            return self._result(IngestResult(action="rejected", reason=schedule_error))

        if conf.is_late:
            if self.late_payment_policy is not None and self.late_payment_policy(conf):
                logger.info(
                    "late payment routed to refund payment=%s confirmed=%s window_end=%s",
                    conf.payment_reference,
                    conf.payment_confirmed_at.isoformat(),
                    conf.service_window_end.isoformat(),
                )
                return self._result(IngestResult(action="refund_required", reason="payment confirmed after service window"))
            logger.warning(
                "late payment scheduled for payout payment=%s confirmed=%s window_end=%s",
                conf.payment_reference,
                conf.payment_confirmed_at.isoformat(),
                conf.service_window_end.isoformat(),
            )

        try:
            rec = self.store.create(
                NewTransferRecord(
                    payment_reference=conf.payment_reference,
                    payout_destination=conf.payout_destination,
                    amount=conf.amount,
                    platform_fee=conf.platform_fee,
                    currency=conf.currency,
                    service_window_end=conf.service_window_end,
                    payment_confirmed_at=conf.payment_confirmed_at,
                    scheduled_at=scheduled_at,
                    charge_reference=conf.charge_reference,
                )
            )
        except DuplicatePaymentReferenceError:
            # concurrent delivery created it first
            existing = self.store.get_by_payment_reference(conf.payment_reference)
            if existing is None:
                raise
            return self._result(
                self._update_existing(existing, conf, scheduled_at if durations_valid else None)
            )

        logger.info(
            "transfer record created id=%s payment=%s destination=%s scheduled_at=%s",
            rec.id,
            rec.payment_reference,
            mask_reference(rec.payout_destination),
            rec.scheduled_at.isoformat(),
        )
        return self._result(IngestResult(action="created", transfer_id=str(rec.id), scheduled_at=rec.scheduled_at))

    def _update_existing(
        self,
        existing: TransferRecord,
        conf: PaymentConfirmation,
        scheduled_at: Optional[datetime],
    ) -> IngestResult:
        if conf.charge_reference and existing.charge_reference is None:
            self.store.attach_charge(existing.id, conf.charge_reference)

        moved = False
        if scheduled_at is not None:
            moved = self.store.reschedule_if_later(existing.id, scheduled_at)

        current = self.store.get(existing.id) or existing
        if moved:
            logger.info(
                "transfer record rescheduled id=%s payment=%s scheduled_at=%s",
                current.id,
                current.payment_reference,
                current.scheduled_at.isoformat(),
            )
            return IngestResult(action="rescheduled", transfer_id=str(current.id), scheduled_at=current.scheduled_at)
        return IngestResult(action="unchanged", transfer_id=str(current.id), scheduled_at=current.scheduled_at)

    # ----------------------------------------------------------
    # Payment lifecycle events
    # ----------------------------------------------------------

    def _fail_record(self, payment_reference: str, kind: ErrorKind, reason: str) -> IngestResult:
        rec = self.store.get_by_payment_reference(payment_reference)
        if rec is None:
            return self._result(IngestResult(action="unchanged", reason="no transfer record"))
        if rec.status == TransferStatus.COMPLETED:
            # money already moved; needs a manual reversal, not a status change
            logger.error(
                "%s after transfer completed id=%s payment=%s transfer=%s",
                kind.value.lower(),
                rec.id,
                payment_reference,
                rec.external_transfer_id,
            )
            return self._result(IngestResult(action="unchanged", transfer_id=str(rec.id), reason="already completed"))

        if self.store.mark_failed(rec.id, TransferError(kind, reason)):
            logger.warning("transfer record failed id=%s payment=%s kind=%s", rec.id, payment_reference, kind.value)
            return self._result(IngestResult(action="failed", transfer_id=str(rec.id), reason=reason))
        return self._result(IngestResult(action="unchanged", transfer_id=str(rec.id)))

    def handle_payment_failed(self, payment_reference: str, reason: str = "payment failed") -> IngestResult:
        return self._fail_record(payment_reference, ErrorKind.PAYMENT_FAILED, reason)

    def handle_charge_refunded(self, payment_reference: str, reason: str = "charge refunded") -> IngestResult:
        return self._fail_record(payment_reference, ErrorKind.CHARGE_REFUNDED, reason)

    def handle_dispute_created(
        self,
        payment_reference: str,
        *,
        dispute_id: Optional[str] = None,
        reason: str = "dispute opened",
    ) -> IngestResult:
        """
        Holds the payout while the dispute is open. The record is failed with
        DISPUTED and put on hold, so neither the sweep nor a later operator
        approval releases funds until someone clears the hold.
        """
        rec = self.store.get_by_payment_reference(payment_reference)
        if rec is None or rec.status == TransferStatus.COMPLETED:
            return self._fail_record(payment_reference, ErrorKind.DISPUTED, reason)

        note = f"dispute {dispute_id}: {reason}" if dispute_id else f"dispute: {reason}"
        self.store.set_hold(rec.id, on_hold=True, admin_notes=note)

        if self.store.mark_failed(rec.id, TransferError(ErrorKind.DISPUTED, reason)):
            logger.warning("transfer record failed id=%s payment=%s kind=%s", rec.id, payment_reference, ErrorKind.DISPUTED.value)
            return self._result(IngestResult(action="failed", transfer_id=str(rec.id), reason=reason))

        # already FAILED; the hold keeps an operator approval from paying it out
        logger.warning("disputed record held id=%s payment=%s status=%s", rec.id, payment_reference, rec.status.value)
        return self._result(IngestResult(action="held", transfer_id=str(rec.id), reason=reason))


def build_handler() -> IngestHandler:
    return IngestHandler(get_store())
