"""Tests for intent records and their storage."""

import pytest

from conftest import SENDER, TOKEN
from relayb0t.data.storage import IntentRecordDB
from relayb0t.errors import IntentNotFound
from relayb0t.execution.intents import BroadcastOutcome, IntentManager, IntentStatus


def test_create_and_load(db_session, make_intent):
    """Test a created record round-trips through the database."""
    manager = IntentManager(db_session)
    intent = make_intent(amount=10**30, max_fee=10**27)

    record = manager.create(intent, IntentStatus.VALIDATED, priority=3)
    loaded = manager.get(record.intent_id)

    assert loaded.intent == intent
    assert loaded.status == IntentStatus.VALIDATED
    assert loaded.priority == 3
    assert loaded.attempt_count == 0


def test_require_unknown_intent(db_session):
    with pytest.raises(IntentNotFound):
        IntentManager(db_session).require("nope")


def test_terminal_records_are_immutable(db_session, make_intent):
    manager = IntentManager(db_session)
    record = manager.create(make_intent())

    assert manager.transition(record, IntentStatus.QUEUED)
    assert manager.transition(record, IntentStatus.CONFIRMED, actual_fee=1_500_000)
    assert not manager.transition(record, IntentStatus.FAILED, error="late")

    loaded = manager.get(record.intent_id)
    assert loaded.status == IntentStatus.CONFIRMED
    assert loaded.actual_fee == 1_500_000
    assert loaded.last_error is None
    assert loaded.finalized_at is not None


def test_status_history_is_kept(db_session, make_intent):
    manager = IntentManager(db_session)
    record = manager.create(make_intent())
    manager.transition(record, IntentStatus.QUEUED)
    manager.transition(record, IntentStatus.EXPIRED, error="deadline passed")

    row = db_session.query(IntentRecordDB).filter_by(intent_id=record.intent_id).one()
    assert [h["status"] for h in row.status_history] == ["validated", "queued", "expired"]
    assert row.status_history[-1]["error"] == "deadline passed"


def test_broadcast_attempts(db_session, make_intent):
    manager = IntentManager(db_session)
    record = manager.create(make_intent(), IntentStatus.QUEUED)

    first = manager.add_broadcast(record, 10**12)
    manager.mark_submitted(record, first, "0xaaa")
    manager.update_broadcast(first, BroadcastOutcome.TIMED_OUT, error="slow")
    second = manager.add_broadcast(record, 11 * 10**11)

    loaded = manager.get(record.intent_id)
    assert loaded.status == IntentStatus.SUBMITTED
    assert loaded.attempt_count == 1
    assert loaded.submission_ids == ["0xaaa"]
    assert [(b.attempt, b.outcome) for b in loaded.broadcasts] == [
        (1, BroadcastOutcome.TIMED_OUT),
        (2, BroadcastOutcome.PENDING_SUBMIT),
    ]
    assert loaded.broadcasts[1].fee_rate == second.fee_rate


def test_lookups(db_session, make_intent):
    manager = IntentManager(db_session)
    intent = make_intent(nonce=3)
    record = manager.create(intent)

    assert manager.find_by_signature(intent).intent_id == record.intent_id
    assert manager.find_by_signature(make_intent(nonce=3, amount=1)) is None
    assert manager.find_active_by_nonce(make_intent(nonce=3, amount=1)).intent_id == record.intent_id

    manager.transition(record, IntentStatus.REJECTED, error="cancelled")
    assert manager.find_active_by_nonce(intent) is None


def test_load_active_in_nonce_order(db_session, make_intent):
    manager = IntentManager(db_session)
    for nonce in (2, 0, 1):
        manager.create(make_intent(nonce=nonce))
    done = manager.create(make_intent(nonce=5))
    manager.transition(done, IntentStatus.FAILED, error="boom")

    assert [r.intent.nonce for r in manager.load_active()] == [0, 1, 2]


def test_sender_nonce_counter(db_session):
    manager = IntentManager(db_session)

    assert manager.get_next_nonce(TOKEN, SENDER) is None
    manager.set_next_nonce(TOKEN, SENDER, 4)
    manager.set_next_nonce(TOKEN.upper().replace("0X", "0x"), SENDER, 5)

    assert manager.get_next_nonce(TOKEN, SENDER) == 5
