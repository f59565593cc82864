"""Tests for the fee-rate monitor."""

import asyncio

import pytest

from conftest import BASE_FEE_RATE
from relayb0t.errors import PricingError
from relayb0t.services.fee_rate_monitor import FeeRateMonitor


@pytest.fixture
def monitor(ledger, clock):
    return FeeRateMonitor(
        ledger,
        sample_interval_seconds=0.01,
        stale_after_seconds=30,
        min_samples=5,
        prediction_horizon=3,
        clock=clock,
    )


def test_no_sample_yet(monitor):
    assert not monitor.has_sample
    with pytest.raises(PricingError):
        monitor.current()


@pytest.mark.asyncio
async def test_sample_reads_ledger(monitor):
    rate = await monitor.sample()

    estimate = monitor.current()
    assert rate == BASE_FEE_RATE
    assert estimate.rate == BASE_FEE_RATE
    assert not estimate.stale
    assert not estimate.elevated


@pytest.mark.asyncio
async def test_failed_sample_keeps_last_rate_and_flags_stale(monitor, ledger):
    await monitor.sample()
    ledger.online = False

    assert await monitor.sample() is None

    estimate = monitor.current()
    assert estimate.rate == BASE_FEE_RATE
    assert estimate.stale
    assert monitor.consecutive_failures == 1
    assert monitor.last_error

    ledger.online = True
    await monitor.sample()
    assert not monitor.current().stale
    assert monitor.consecutive_failures == 0


def test_old_sample_is_stale(monitor, clock):
    monitor.record(BASE_FEE_RATE)
    clock.advance(31)

    assert monitor.current().stale


def test_prediction_follows_trend(monitor):
    for rate in (100, 200, 300, 400):
        monitor.record(rate)

    assert monitor.predict() == 700


def test_prediction_with_few_samples(monitor):
    monitor.record(100)
    monitor.record(200)

    assert monitor.predict() == 200


def test_prediction_never_negative(monitor):
    for rate in (400, 300, 200, 100):
        monitor.record(rate)

    assert monitor.predict() == 0


def test_spike_detection(monitor):
    for _ in range(4):
        monitor.record(100)
    assert not monitor.is_elevated()

    monitor.record(200)
    assert monitor.is_elevated()
    assert monitor.current().elevated


def test_small_rise_is_not_a_spike(monitor):
    for _ in range(4):
        monitor.record(100)
    monitor.record(105)

    assert not monitor.is_elevated()


@pytest.mark.asyncio
async def test_sampling_loop(monitor):
    monitor.start()
    await asyncio.sleep(0.05)
    await monitor.stop()

    assert monitor.has_sample
    assert monitor.to_dict()["samples"] >= 1
