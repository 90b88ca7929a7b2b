# app/workers/sweep.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from settings import settings
from app.reconciliation.client import ReconciliationClient, get_reconciliation_client
from app.transfers.errors import PermanentError, TransientError
from app.transfers.model import (
    AttemptOutcome,
    ErrorKind,
    TransferAttempt,
    TransferError,
    TransferRecord,
    TransferStatus,
)
from app.transfers.store import TransferStore, get_store
from services.metrics import increment_sweep_record, increment_sweep_run

logger = logging.getLogger("settlement.sweep")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecordOutcome:
    transfer_id: str
    outcome: str  # succeeded | reconciled | retry | failed | conflict | skipped
    external_transfer_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "outcome": self.outcome,
            "external_transfer_id": self.external_transfer_id,
            "error": self.error,
        }


@dataclass
class SweepSummary:
    processed: int = 0
    succeeded: int = 0
    reconciled: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    details: list[RecordOutcome] = field(default_factory=list)

    def add(self, outcome: RecordOutcome) -> None:
        self.details.append(outcome)
        if outcome.outcome == "skipped":
            self.skipped += 1
            return
        self.processed += 1
        if outcome.outcome == "succeeded":
            self.succeeded += 1
        elif outcome.outcome == "reconciled":
            self.reconciled += 1
        else:
            self.failed += 1

    def to_dict(self, *, include_details: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "reconciled": self.reconciled,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
        }
        if include_details:
            out["details"] = [d.to_dict() for d in self.details]
        return out


class _OutageTracker:
    """Consecutive transient failures with no success in between."""

    def __init__(self, *, enabled: bool, threshold: int):
        self.enabled = enabled
        self.threshold = max(1, int(threshold))
        self._lock = threading.Lock()
        self._consecutive = 0
        self.tripped = False

    def success(self) -> None:
        with self._lock:
            self._consecutive = 0

    def transient(self) -> None:
        with self._lock:
            self._consecutive += 1
            if self.enabled and self._consecutive >= self.threshold and not self.tripped:
                self.tripped = True
                logger.error("sweep aborting: %s consecutive transient failures", self._consecutive)


class SweepDispatcher:
    def __init__(
        self,
        store: TransferStore,
        client: ReconciliationClient,
        *,
        batch_size: Optional[int] = None,
        workers: Optional[int] = None,
        backoff_base_seconds: Optional[int] = None,
        backoff_max_seconds: Optional[int] = None,
        abort_on_outage: Optional[bool] = None,
        outage_threshold: Optional[int] = None,
    ):
        self.store = store
        self.client = client
        self.batch_size = int(batch_size if batch_size is not None else settings.SWEEP_BATCH_SIZE)
        self.workers = max(1, int(workers if workers is not None else settings.SWEEP_WORKERS))
        self.backoff_base_seconds = int(
            backoff_base_seconds if backoff_base_seconds is not None else settings.SETTLEMENT_BACKOFF_BASE_SECONDS
        )
        self.backoff_max_seconds = int(
            backoff_max_seconds if backoff_max_seconds is not None else settings.SETTLEMENT_BACKOFF_MAX_SECONDS
        )
        self.abort_on_outage = bool(abort_on_outage if abort_on_outage is not None else settings.SWEEP_ABORT_ON_OUTAGE)
        self.outage_threshold = int(outage_threshold if outage_threshold is not None else settings.SWEEP_OUTAGE_THRESHOLD)

    def next_attempt_at(self, now: datetime, retry_count: int) -> datetime:
        # base, 2*base, 4*base ... capped
        delay = self.backoff_base_seconds * (2 ** max(0, retry_count - 1))
        return now + timedelta(seconds=min(delay, self.backoff_max_seconds))

    # ----------------------------------------------------------

    def run_once(self, now: Optional[datetime] = None) -> SweepSummary:
        now = now or _now()
        due = self.store.find_due(now, limit=self.batch_size or None)
        summary = SweepSummary()
        tracker = _OutageTracker(enabled=self.abort_on_outage, threshold=self.outage_threshold)

        logger.info("sweep start due=%s workers=%s", len(due), self.workers)

        if due:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(due)), thread_name_prefix="sweep") as pool:
                futures = [pool.submit(self._guarded, rec, now, tracker) for rec in due]
                for fut in futures:
                    summary.add(fut.result())

        summary.aborted = tracker.tripped
        increment_sweep_run(summary.aborted)
        logger.info(
            "sweep done processed=%s succeeded=%s reconciled=%s failed=%s skipped=%s aborted=%s",
            summary.processed,
            summary.succeeded,
            summary.reconciled,
            summary.failed,
            summary.skipped,
            summary.aborted,
        )
        return summary

    def _guarded(self, rec: TransferRecord, now: datetime, tracker: _OutageTracker) -> RecordOutcome:
        if tracker.tripped:
            outcome = RecordOutcome(transfer_id=str(rec.id), outcome="skipped", error="sweep aborted")
        else:
            try:
                outcome = self._process_one(rec, now, tracker)
            except Exception as e:
                # store failure while recording the outcome; the record stays due
                logger.exception("sweep record crashed id=%s", rec.id)
                outcome = RecordOutcome(transfer_id=str(rec.id), outcome="failed", error=f"{type(e).__name__}: {e}")
        increment_sweep_record(outcome.outcome)
        return outcome

    def _process_one(self, rec: TransferRecord, now: datetime, tracker: _OutageTracker) -> RecordOutcome:
        try:
            result = self.client.ensure_transfer(rec)
        except PermanentError as e:
            return self._on_permanent(rec, now, e)
        except TransientError as e:
            tracker.transient()
            return self._on_transient(rec, now, str(e), e.code)
        except Exception as e:
            logger.exception("unexpected error ensuring transfer id=%s", rec.id)
            tracker.transient()
            return self._on_transient(rec, now, f"{type(e).__name__}: {e}", None)

        tracker.success()
        stored = self.store.mark_completed(
            rec.id, result.external_transfer_id, charge_reference=result.charge_reference
        )
        self.store.record_attempt(
            TransferAttempt(
                transfer_id=rec.id,
                attempted_at=now,
                outcome=AttemptOutcome.CREATED if result.created else AttemptOutcome.RECONCILED,
                external_transfer_id=result.external_transfer_id,
            )
        )
        if not stored:
            return RecordOutcome(
                transfer_id=str(rec.id),
                outcome="conflict",
                external_transfer_id=result.external_transfer_id,
                error="record already carries a different transfer id",
            )

        outcome = "succeeded" if result.created else "reconciled"
        logger.info("transfer %s id=%s transfer=%s", outcome, rec.id, result.external_transfer_id)
        return RecordOutcome(transfer_id=str(rec.id), outcome=outcome, external_transfer_id=result.external_transfer_id)

    def _on_transient(self, rec: TransferRecord, now: datetime, message: str, code: Optional[str]) -> RecordOutcome:
        retry_at = self.next_attempt_at(now, rec.retry_count + 1)
        updated = self.store.record_failure(
            rec.id,
            TransferError(ErrorKind.TRANSIENT, message, code),
            next_attempt_at=retry_at,
        )
        self.store.record_attempt(
            TransferAttempt(transfer_id=rec.id, attempted_at=now, outcome=AttemptOutcome.TRANSIENT, error_message=message)
        )

        if updated is not None and updated.status == TransferStatus.FAILED:
            logger.warning("transfer retries exhausted id=%s retry_count=%s: %s", rec.id, updated.retry_count, message)
            return RecordOutcome(transfer_id=str(rec.id), outcome="failed", error=message)

        logger.warning("transfer attempt failed (transient) id=%s next_attempt_at=%s: %s", rec.id, retry_at.isoformat(), message)
        return RecordOutcome(transfer_id=str(rec.id), outcome="retry", error=message)

    def _on_permanent(self, rec: TransferRecord, now: datetime, e: PermanentError) -> RecordOutcome:
        self.store.mark_failed(rec.id, TransferError(ErrorKind.PERMANENT, str(e), e.code))
        self.store.record_attempt(
            TransferAttempt(transfer_id=rec.id, attempted_at=now, outcome=AttemptOutcome.PERMANENT, error_message=str(e))
        )
        logger.error("transfer rejected (permanent) id=%s code=%s: %s", rec.id, e.code, e)
        return RecordOutcome(transfer_id=str(rec.id), outcome="failed", error=str(e))

    # ----------------------------------------------------------

    def run_forever(self, interval_seconds: Optional[int] = None, *, stop: Optional[threading.Event] = None) -> None:
        interval = max(1, int(interval_seconds if interval_seconds is not None else settings.SWEEP_INTERVAL_SECONDS))
        stop = stop or threading.Event()
        logger.info("sweep loop starting; interval=%ss", interval)
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                # find_due failed (db down); try again next tick
                logger.exception("sweep run failed")
            stop.wait(interval)


def build_dispatcher() -> SweepDispatcher:
    return SweepDispatcher(get_store(), get_reconciliation_client())
