from __future__ import annotations

import pytest

from app.processor.factory import set_processor
from app.processor.mock import MockProcessor
from app.reconciliation.client import (
    ReconciliationClient,
    get_reconciliation_client,
    idempotency_key_for,
    reset_reconciliation_client,
)
from app.transfers.errors import PermanentError, TransferAlreadyExistsError, TransientError
from tests.conftest import new_record


class _StaleLookupProcessor(MockProcessor):
    """First lookup misses, as if the processor's read side lagged behind a concurrent create."""

    def __init__(self, misses: int = 1, **kwargs):
        super().__init__(**kwargs)
        self.misses = misses

    def get_existing_transfer(self, charge_reference, *, payment_reference=None, record_id=None):
        found = super().get_existing_transfer(
            charge_reference, payment_reference=payment_reference, record_id=record_id
        )
        if self.misses > 0:
            self.misses -= 1
            return None
        return found


def test_ensure_transfer_creates_once(store, processor):
    rec = new_record(store, "pi_once", charge_reference="ch_once")
    client = ReconciliationClient(processor)

    results = [client.ensure_transfer(rec) for _ in range(5)]

    assert results[0].created is True
    assert all(r.created is False for r in results[1:])
    assert len({r.external_transfer_id for r in results}) == 1
    assert processor.create_calls == 1
    assert len(processor.transfers) == 1


def test_ensure_transfer_uses_record_idempotency_key_and_metadata(store, processor):
    rec = new_record(store, "pi_meta", charge_reference="ch_meta")
    ReconciliationClient(processor).ensure_transfer(rec)

    assert processor.idempotency_keys == [f"transfer:{rec.id}"]
    assert idempotency_key_for(rec) == f"transfer:{rec.id}"
    transfer = processor.transfers["ch_meta"]
    assert transfer["amount"] == rec.amount
    assert transfer["destination"] == rec.payout_destination
    assert transfer["metadata"]["transferRecordId"] == str(rec.id)
    assert transfer["metadata"]["paymentReference"] == "pi_meta"


def test_ensure_transfer_resolves_missing_charge(store, processor):
    processor.charges["pi_pending"] = "ch_resolved"
    rec = new_record(store, "pi_pending", charge_reference=None)

    result = ReconciliationClient(processor).ensure_transfer(rec)

    assert result.created is True
    assert result.charge_reference == "ch_resolved"
    assert "ch_resolved" in processor.transfers


def test_existing_transfer_is_adopted_without_create(store, processor):
    rec = new_record(store, "pi_existing", charge_reference="ch_existing")
    processor.seed_transfer("ch_existing", "tr_from_earlier_run")

    result = ReconciliationClient(processor).ensure_transfer(rec)

    assert result.created is False
    assert result.external_transfer_id == "tr_from_earlier_run"
    assert processor.create_calls == 0


def test_already_exists_rejection_requeries_and_adopts(store):
    processor = _StaleLookupProcessor(misses=1)
    processor.seed_transfer("ch_race", "tr_winner")
    rec = new_record(store, "pi_race", charge_reference="ch_race")

    result = ReconciliationClient(processor, requery_attempts=3).ensure_transfer(rec)

    assert result.created is False
    assert result.external_transfer_id == "tr_winner"
    assert processor.create_calls == 1


def test_already_exists_without_visible_transfer_is_transient(store, processor):
    rec = new_record(store, "pi_ghost", charge_reference="ch_ghost")
    processor.queue_create_failure(TransferAlreadyExistsError("duplicate", code="transfer_already_exists"))

    with pytest.raises(TransientError):
        ReconciliationClient(processor, requery_attempts=2).ensure_transfer(rec)

    # initial check + 2 re-queries
    assert processor.lookup_calls == 3


def test_requeries_wait_between_lookups(store, processor):
    rec = new_record(store, "pi_ghost_wait", charge_reference="ch_ghost_wait")
    processor.queue_create_failure(TransferAlreadyExistsError("duplicate", code="transfer_already_exists"))
    waits = []

    client = ReconciliationClient(processor, requery_attempts=3, requery_delay_seconds=0.25, sleep=waits.append)
    with pytest.raises(TransientError):
        client.ensure_transfer(rec)

    assert waits == [0.25, 0.5, 0.75]
    assert processor.lookup_calls == 4


def test_requery_stops_waiting_once_transfer_is_visible(store):
    processor = _StaleLookupProcessor(misses=2)
    processor.seed_transfer("ch_race_wait", "tr_winner")
    rec = new_record(store, "pi_race_wait", charge_reference="ch_race_wait")
    waits = []

    client = ReconciliationClient(processor, requery_attempts=5, requery_delay_seconds=0.1, sleep=waits.append)
    result = client.ensure_transfer(rec)

    assert result.external_transfer_id == "tr_winner"
    assert waits == [0.1, 0.2]


def test_disabled_destination_is_permanent(store):
    processor = MockProcessor(disabled_accounts={"acct_closed"})
    rec = new_record(store, "pi_closed", destination="acct_closed")

    with pytest.raises(PermanentError):
        ReconciliationClient(processor).ensure_transfer(rec)
    assert processor.create_calls == 0


def test_processor_outage_propagates_as_transient(store, processor):
    rec = new_record(store, "pi_outage")
    processor.unavailable = True

    with pytest.raises(TransientError):
        ReconciliationClient(processor).ensure_transfer(rec)


def test_destination_lookups_are_cached(store, processor):
    client = ReconciliationClient(processor)
    client.ensure_transfer(new_record(store, "pi_a", charge_reference="ch_a"))
    client.ensure_transfer(new_record(store, "pi_b", charge_reference="ch_b"))

    assert processor.account_calls == 1


def test_shared_client_keeps_one_account_cache(processor):
    first = get_reconciliation_client()
    second = get_reconciliation_client()

    assert first is second
    assert first.processor is processor
    assert first.account_cache is second.account_cache


def test_shared_client_follows_processor_swap():
    first = get_reconciliation_client()
    replacement = MockProcessor()
    set_processor(replacement, "mock")

    second = get_reconciliation_client()
    assert second is not first
    assert second.processor is replacement

    reset_reconciliation_client()
    assert get_reconciliation_client() is not second
