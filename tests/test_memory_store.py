from __future__ import annotations

import logging
from dataclasses import FrozenInstanceError
from datetime import timedelta
from uuid import uuid4

import pytest

from app.transfers.errors import DuplicatePaymentReferenceError
from app.transfers.model import (
    AttemptOutcome,
    ErrorKind,
    NewTransferRecord,
    TransferAttempt,
    TransferError,
    TransferStatus,
)
from tests.conftest import T0, new_record


def test_create_sets_initial_status_from_charge(store):
    ready = new_record(store, "pi_ready", charge_reference="ch_1")
    pending = new_record(store, "pi_pending", charge_reference=None)
    assert ready.status == TransferStatus.READY
    assert pending.status == TransferStatus.PENDING
    assert ready.retry_count == 0
    assert ready.external_transfer_id is None


def test_create_duplicate_payment_reference_rejected(store):
    new_record(store, "pi_dup")
    with pytest.raises(DuplicatePaymentReferenceError):
        new_record(store, "pi_dup")


def test_find_due_filters_and_orders(store):
    late = new_record(store, "pi_late", scheduled_at=T0 + timedelta(hours=2))
    early = new_record(store, "pi_early", scheduled_at=T0 - timedelta(hours=2))
    new_record(store, "pi_future", scheduled_at=T0 + timedelta(days=3))
    done = new_record(store, "pi_done", scheduled_at=T0 - timedelta(days=1))
    store.mark_completed(done.id, "tr_done")

    due = store.find_due(T0 + timedelta(hours=3))
    assert [r.id for r in due] == [early.id, late.id]
    assert [r.id for r in store.find_due(T0 + timedelta(hours=3), limit=1)] == [early.id]


def test_find_due_respects_backoff_gate(store):
    rec = new_record(store, "pi_backoff")
    store.record_failure(
        rec.id,
        TransferError(ErrorKind.TRANSIENT, "timeout"),
        next_attempt_at=T0 + timedelta(minutes=30),
    )
    assert store.find_due(T0 + timedelta(minutes=10)) == []
    assert [r.id for r in store.find_due(T0 + timedelta(minutes=31))] == [rec.id]


def test_held_record_is_never_due(store):
    rec = new_record(store, "pi_hold", scheduled_at=T0 - timedelta(hours=1))

    held = store.set_hold(rec.id, on_hold=True, admin_notes="waiting on customer call")
    assert held.on_hold is True
    assert held.admin_notes == "waiting on customer call"
    assert store.find_due(T0) == []

    released = store.set_hold(rec.id, on_hold=False)
    assert released.admin_notes == "waiting on customer call"
    assert [r.id for r in store.find_due(T0)] == [rec.id]


def test_set_hold_refused_once_completed(store):
    rec = new_record(store, "pi_hold_done")
    store.mark_completed(rec.id, "tr_1")
    assert store.set_hold(rec.id, on_hold=True) is None
    assert store.set_hold(uuid4(), on_hold=True) is None
    assert store.get(rec.id).on_hold is False


def test_list_transfers_filters(store):
    ready = new_record(store, "pi_list_ready", destination="acct_list_a")
    failed = new_record(store, "pi_list_failed", destination="acct_list_b")
    store.mark_failed(failed.id, TransferError(ErrorKind.PERMANENT, "closed"))
    held = new_record(store, "pi_list_held", destination="acct_list_a")
    store.set_hold(held.id, on_hold=True)

    assert {r.id for r in store.list_transfers()} == {ready.id, failed.id, held.id}
    assert [r.id for r in store.list_transfers(status=TransferStatus.FAILED)] == [failed.id]
    assert {r.id for r in store.list_transfers(payout_destination="acct_list_a")} == {ready.id, held.id}
    assert [r.id for r in store.list_transfers(on_hold=True)] == [held.id]
    assert len(store.list_transfers(limit=2)) == 2


def test_reschedule_never_moves_earlier(store):
    rec = new_record(store, "pi_sched", scheduled_at=T0)

    assert store.reschedule_if_later(rec.id, T0 - timedelta(hours=1)) is False
    assert store.get(rec.id).scheduled_at == T0

    assert store.reschedule_if_later(rec.id, T0) is False
    assert store.reschedule_if_later(rec.id, T0 + timedelta(hours=5)) is True
    assert store.get(rec.id).scheduled_at == T0 + timedelta(hours=5)

    assert store.reschedule_if_later(rec.id, T0 + timedelta(hours=1)) is False
    assert store.get(rec.id).scheduled_at == T0 + timedelta(hours=5)


def test_reschedule_is_noop_on_completed(store):
    rec = new_record(store, "pi_sched_done")
    store.mark_completed(rec.id, "tr_1")
    assert store.reschedule_if_later(rec.id, T0 + timedelta(days=1)) is False


def test_mark_completed_is_idempotent(store):
    rec = new_record(store, "pi_complete")
    assert store.mark_completed(rec.id, "tr_1") is True
    assert store.mark_completed(rec.id, "tr_1") is True

    got = store.get(rec.id)
    assert got.status == TransferStatus.COMPLETED
    assert got.external_transfer_id == "tr_1"


def test_mark_completed_conflict_never_overwrites(store, caplog):
    rec = new_record(store, "pi_conflict")
    store.mark_completed(rec.id, "tr_1")

    caplog.set_level(logging.ERROR, logger="settlement.store")
    assert store.mark_completed(rec.id, "tr_2") is False
    assert store.get(rec.id).external_transfer_id == "tr_1"
    assert "transfer_id_conflict" in caplog.text


def test_mark_completed_fills_missing_charge(store):
    rec = new_record(store, "pi_charge_fill", charge_reference=None)
    store.mark_completed(rec.id, "tr_1", charge_reference="ch_resolved")
    assert store.get(rec.id).charge_reference == "ch_resolved"


def test_mark_completed_unknown_id(store):
    assert store.mark_completed(uuid4(), "tr_1") is False


def test_mark_completed_on_failed_record_records_existing_transfer(store, caplog):
    rec = new_record(store, "pi_failed_then_found")
    store.mark_failed(rec.id, TransferError(ErrorKind.PAYMENT_FAILED, "payment failed"))

    caplog.set_level(logging.WARNING, logger="settlement.store")
    assert store.mark_completed(rec.id, "tr_found") is True

    got = store.get(rec.id)
    assert got.status == TransferStatus.COMPLETED
    assert got.external_transfer_id == "tr_found"
    assert got.last_error is None
    assert store.list_failed() == []
    assert "failed record completed by existing transfer" in caplog.text


def test_record_failure_keeps_status_until_exhausted(store):
    rec = new_record(store, "pi_retry")
    err = TransferError(ErrorKind.TRANSIENT, "503 from processor", "unavailable")

    for expected in (1, 2, 3):
        updated = store.record_failure(rec.id, err, next_attempt_at=T0 + timedelta(minutes=expected))
        assert updated.retry_count == expected
        assert updated.status == TransferStatus.READY
        assert updated.last_error == err

    exhausted = store.record_failure(rec.id, err, next_attempt_at=T0 + timedelta(hours=1))
    assert exhausted.retry_count == 4
    assert exhausted.status == TransferStatus.FAILED
    assert exhausted.last_error.kind == ErrorKind.RETRIES_EXHAUSTED
    assert exhausted.next_attempt_at is None

    # terminal: further failures are ignored
    assert store.record_failure(rec.id, err, next_attempt_at=None) is None


def test_record_failure_ignored_once_completed(store):
    rec = new_record(store, "pi_retry_done")
    store.mark_completed(rec.id, "tr_1")
    assert store.record_failure(rec.id, TransferError(ErrorKind.TRANSIENT, "late"), next_attempt_at=None) is None
    assert store.get(rec.id).status == TransferStatus.COMPLETED


def test_mark_failed_and_approve(store):
    rec = new_record(store, "pi_review")
    store.record_failure(rec.id, TransferError(ErrorKind.TRANSIENT, "x"), next_attempt_at=T0)
    assert store.mark_failed(rec.id, TransferError(ErrorKind.PERMANENT, "account closed", "account_invalid")) is True
    assert [r.id for r in store.list_failed()] == [rec.id]

    assert store.approve(rec.id) is True
    approved = store.get(rec.id)
    assert approved.status == TransferStatus.APPROVED
    assert approved.retry_count == 0
    assert approved.next_attempt_at is None
    assert store.list_failed() == []

    # only FAILED records can be approved
    assert store.approve(rec.id) is False


def test_attach_charge_promotes_pending(store):
    rec = new_record(store, "pi_attach", charge_reference=None)
    assert store.attach_charge(rec.id, "ch_1") is True
    got = store.get(rec.id)
    assert got.charge_reference == "ch_1"
    assert got.status == TransferStatus.READY

    # never replaces a known charge
    assert store.attach_charge(rec.id, "ch_2") is False
    assert store.get(rec.id).charge_reference == "ch_1"


def test_attempt_history(store):
    rec = new_record(store, "pi_hist")
    store.record_attempt(TransferAttempt(rec.id, T0 + timedelta(minutes=5), AttemptOutcome.CREATED, "tr_1"))
    store.record_attempt(TransferAttempt(rec.id, T0, AttemptOutcome.TRANSIENT, error_message="timeout"))

    attempts = store.list_attempts(rec.id)
    assert [a.outcome for a in attempts] == [AttemptOutcome.TRANSIENT, AttemptOutcome.CREATED]
    assert all(a.id is not None for a in attempts)
    assert store.list_attempts(uuid4()) == []


def test_new_record_dataclass_is_frozen():
    rec = NewTransferRecord(
        payment_reference="pi",
        payout_destination="acct",
        amount=1,
        platform_fee=0,
        currency="usd",
        service_window_end=T0,
        payment_confirmed_at=T0,
        scheduled_at=T0,
    )
    with pytest.raises(FrozenInstanceError):
        rec.amount = 2
