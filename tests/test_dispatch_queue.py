"""Tests for the dispatch queue."""

import asyncio
from decimal import Decimal

import pytest

from conftest import BASE_FEE_RATE
from relayb0t.execution.dispatch_queue import DispatchQueue
from relayb0t.execution.fees import FeeQuote
from relayb0t.execution.intents import BroadcastRecord, IntentStatus


def _quote(fee: int = 1_500_000) -> FeeQuote:
    return FeeQuote(
        asset="0x" + "aa" * 20,
        fee=fee,
        token_cost=fee,
        native_cost_wei=75_000 * BASE_FEE_RATE,
        fee_rate=BASE_FEE_RATE,
        predicted_fee_rate=BASE_FEE_RATE,
        resource_usage=75_000,
        price=Decimal("0.05"),
        markup_pct=Decimal(0),
        quote_timestamp=0.0,
        quote_source="static",
    )


@pytest.fixture
def queue(clock):
    return DispatchQueue(clock=clock)


@pytest.fixture
def queued(store, make_intent):
    def _make(nonce=0, priority=0, **kwargs):
        return store.create(make_intent(nonce=nonce, **kwargs), IntentStatus.QUEUED, priority)

    return _make


@pytest.mark.asyncio
async def test_priority_then_fifo(queue, queued, clock):
    """Test higher priority first, then earliest enqueue time."""
    low = queued(nonce=0, priority=0)
    first = queued(nonce=1, priority=5)
    second = queued(nonce=2, priority=5)

    await queue.enqueue(low, _quote())
    await queue.enqueue(first, _quote())
    clock.advance(1)
    await queue.enqueue(second, _quote())

    order = [(await queue.dequeue_next()).record.intent_id for _ in range(3)]

    assert order == [first.intent_id, second.intent_id, low.intent_id]
    assert await queue.dequeue_next() is None


@pytest.mark.asyncio
async def test_same_enqueue_time_keeps_insertion_order(queue, queued):
    records = [queued(nonce=n) for n in range(3)]
    for record in records:
        await queue.enqueue(record, _quote())

    order = [(await queue.dequeue_next()).record.intent_id for _ in range(3)]

    assert order == [r.intent_id for r in records]


@pytest.mark.asyncio
async def test_duplicate_key_rejected(queue, queued):
    record = queued()

    assert await queue.enqueue(record, _quote())
    assert not await queue.enqueue(record, _quote())

    entry = await queue.dequeue_next()
    assert queue.is_in_flight(entry.key)
    assert not await queue.enqueue(record, _quote())
    assert len(queue) == 0
    assert queue.in_flight == 1


@pytest.mark.asyncio
async def test_defer_low_priority(queue, queued):
    await queue.enqueue(queued(nonce=0, priority=-1), _quote())

    assert await queue.dequeue_next(defer_low_priority=True) is None

    await queue.enqueue(queued(nonce=1, priority=0), _quote())
    entry = await queue.dequeue_next(defer_low_priority=True)

    # Default priority is never deferred
    assert entry.priority == 0
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_requeue_with_backoff(queue, queued, clock):
    await queue.enqueue(queued(), _quote())
    entry = await queue.dequeue_next()

    await queue.requeue(entry, delay=5, fee_quote=_quote(fee=2_000_000), error="ledger down")

    assert entry.requeues == 1
    assert entry.last_error == "ledger down"
    assert entry.fee_quote.fee == 2_000_000
    assert await queue.dequeue_next() is None

    clock.advance(5)
    assert (await queue.dequeue_next()) is entry


@pytest.mark.asyncio
async def test_remove_only_waiting(queue, queued):
    waiting, dispatching = queued(nonce=0, priority=0), queued(nonce=1, priority=9)
    await queue.enqueue(waiting, _quote())
    await queue.enqueue(dispatching, _quote())
    in_flight = await queue.dequeue_next()

    assert await queue.remove(in_flight.key) is None
    assert (await queue.remove(waiting.intent.key)).record is waiting
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_reprice_waiting_entry(queue, queued):
    record = queued()
    await queue.enqueue(record, _quote())

    assert await queue.reprice(record.intent.key, _quote(fee=1_700_000))
    assert queue.get(record.intent.key).fee_quote.fee == 1_700_000

    await queue.dequeue_next()
    assert not await queue.reprice(record.intent.key, _quote(fee=1_800_000))


@pytest.mark.asyncio
async def test_expire_skips_submitted_entries(queue, queued, clock):
    deadline = int(clock.now) + 10
    fresh = queued(nonce=0, deadline=deadline)
    submitted = queued(nonce=1, deadline=deadline)
    submitted.broadcasts.append(
        BroadcastRecord(intent_id=submitted.intent_id, attempt=1, fee_rate=1, submission_id="0x01")
    )
    await queue.enqueue(fresh, _quote())
    await queue.enqueue(submitted, _quote())

    assert await queue.expire(clock.now) == []

    clock.advance(60)
    expired = await queue.expire(clock.now)

    assert [e.record for e in expired] == [fresh]
    assert submitted.intent.key in queue


@pytest.mark.asyncio
async def test_wait_next_times_out(queue):
    assert await queue.wait_next(timeout=0.02) is None


@pytest.mark.asyncio
async def test_wait_next_wakes_on_enqueue(queue, queued):
    record = queued()

    async def produce():
        await asyncio.sleep(0.01)
        await queue.enqueue(record, _quote())

    entry, _ = await asyncio.gather(queue.wait_next(timeout=2), produce())

    assert entry.record is record


@pytest.mark.asyncio
async def test_snapshot(queue, queued):
    await queue.enqueue(queued(nonce=0), _quote())
    await queue.enqueue(queued(nonce=1), _quote())
    await queue.dequeue_next()

    snapshot = queue.snapshot()

    assert snapshot["depth"] == 1
    assert snapshot["in_flight"] == 1
    assert snapshot["waiting"][0]["nonce"] == 1
    assert snapshot["dispatching"][0]["nonce"] == 0

