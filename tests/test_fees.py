"""Tests for fee calculation."""

import time
from decimal import Decimal

import httpx
import pytest

from conftest import BASE_FEE_RATE, UNIT
from relayb0t.data.assets import AssetRegistry
from relayb0t.data.price_client import HttpPriceSource, PriceQuoteChain, StaticPriceSource
from relayb0t.errors import FeeExceedsMaximum, PricingError, ProfitabilityError
from relayb0t.execution.fees import FeeCalculator, FeeQuote, max_affordable_fee_rate, token_fee
from relayb0t.services.fee_rate_monitor import FeeRateMonitor


@pytest.fixture
def monitor(ledger):
    monitor = FeeRateMonitor(ledger, stale_after_seconds=30)
    monitor.record(BASE_FEE_RATE)
    return monitor


@pytest.fixture
def calculator(registry, prices, monitor):
    return FeeCalculator(registry, prices, monitor, markup_pct=0)


def test_token_fee_rounds_up():
    """Test native cost conversion into asset base units."""
    assert token_fee(75_000 * BASE_FEE_RATE, Decimal("0.05"), 6) == 1_500_000
    # One extra wei of cost still costs a whole base unit
    assert token_fee(75_000 * BASE_FEE_RATE + 1, Decimal("0.05"), 6) == 1_500_001
    assert token_fee(75_000 * BASE_FEE_RATE, Decimal("0.05"), 6, Decimal("0.1")) == 1_650_000


def test_token_fee_rejects_non_positive_price():
    with pytest.raises(PricingError):
        token_fee(1, Decimal(0), 6)


def test_max_affordable_fee_rate():
    """Test the highest fee rate a signed maxFee can pay for."""
    # 2 units * 0.05 native = 0.1 native over 75k gas
    assert max_affordable_fee_rate(2 * UNIT, Decimal("0.05"), 6, 75_000) == 1_333_333_333_333
    assert max_affordable_fee_rate(2 * UNIT, Decimal("0.05"), 6, 0) == 0


@pytest.mark.asyncio
async def test_quote_at_current_rate(calculator):
    quote = await calculator.quote("0x" + "AA" * 20)

    assert quote.fee == 1_500_000
    assert quote.token_cost == 1_500_000
    assert quote.native_cost_wei == 75_000 * BASE_FEE_RATE
    assert quote.fee_rate == BASE_FEE_RATE
    assert quote.quote_source == "static"
    assert not quote.fee_rate_stale


@pytest.mark.asyncio
async def test_quote_applies_markup(registry, prices, monitor):
    calculator = FeeCalculator(registry, prices, monitor, markup_pct=10)

    quote = await calculator.quote("0x" + "aa" * 20)

    assert quote.token_cost == 1_500_000
    assert quote.fee == 1_650_000
    assert quote.markup_pct == Decimal("10")


@pytest.mark.asyncio
async def test_price_intent_within_max_fee(calculator, make_intent):
    """Test the 100-unit transfer at 1.5 units of fee."""
    quote = await calculator.price_intent(make_intent())

    assert quote.fee == 1_500_000
    assert quote.max_affordable_fee_rate == 1_333_333_333_333


@pytest.mark.asyncio
async def test_fee_rate_spike_exceeds_max_fee(calculator, make_intent):
    """Test a 2.5-unit fee against a 2-unit signed maximum."""
    with pytest.raises(FeeExceedsMaximum) as exc_info:
        await calculator.price_intent(make_intent(), fee_rate=5 * BASE_FEE_RATE // 3)

    assert exc_info.value.fee == 2_500_000
    assert exc_info.value.cap == 2 * UNIT


@pytest.mark.asyncio
async def test_fee_not_below_amount(calculator, make_intent):
    intent = make_intent(amount=1_500_000, max_fee=2 * UNIT)

    with pytest.raises(FeeExceedsMaximum) as exc_info:
        await calculator.price_intent(intent)

    assert exc_info.value.cap == 1_500_000


@pytest.mark.asyncio
async def test_fee_below_minimum(asset, prices, monitor, make_intent):
    registry = AssetRegistry([asset.model_copy(update={"min_fee": 2 * UNIT})])
    calculator = FeeCalculator(registry, prices, monitor, markup_pct=0)

    with pytest.raises(ProfitabilityError):
        await calculator.price_intent(make_intent(max_fee=5 * UNIT))


@pytest.mark.asyncio
async def test_unsupported_asset(calculator):
    with pytest.raises(PricingError):
        await calculator.quote("0x" + "bb" * 20)


@pytest.mark.asyncio
async def test_stale_fee_rate_widens_markup(registry, prices, ledger):
    monitor = FeeRateMonitor(ledger, stale_after_seconds=30)
    monitor.record(BASE_FEE_RATE, at=time.time() - 600)
    calculator = FeeCalculator(
        registry, prices, monitor, markup_pct=0, stale_policy="widen", stale_extra_markup_pct=20
    )

    quote = await calculator.quote("0x" + "aa" * 20)

    assert quote.fee_rate_stale
    assert quote.markup_pct == Decimal("20")
    assert quote.fee == 1_800_000


@pytest.mark.asyncio
async def test_stale_fee_rate_refused(registry, prices, ledger):
    monitor = FeeRateMonitor(ledger, stale_after_seconds=30)
    monitor.record(BASE_FEE_RATE, at=time.time() - 600)
    calculator = FeeCalculator(registry, prices, monitor, markup_pct=0, stale_policy="refuse")

    with pytest.raises(PricingError, match="stale"):
        await calculator.quote("0x" + "aa" * 20)


@pytest.mark.asyncio
async def test_stale_price_quote_refused(registry, monitor):
    """Test a cached quote older than the staleness limit is never priced with."""
    old = PriceQuoteChain(
        [StaticPriceSource(clock=lambda: time.time() - 600)], staleness_seconds=3600
    )
    calculator = FeeCalculator(registry, old, monitor, markup_pct=0, staleness_seconds=120)

    with pytest.raises(PricingError, match="stale"):
        await calculator.quote("0x" + "aa" * 20)


@pytest.mark.asyncio
async def test_oracle_outage_refuses_unpegged_asset(registry, monitor):
    """Test a configured static price never stands in for a failed oracle."""
    now = {"t": time.time()}
    healthy = {"up": True}

    def handler(request):
        if not healthy["up"]:
            return httpx.Response(503, json={"error": "down"})
        return httpx.Response(200, json={"price": "0.05", "timestamp": now["t"]})

    client = httpx.AsyncClient(base_url="https://oracle.test", transport=httpx.MockTransport(handler))
    chain = PriceQuoteChain(
        [
            HttpPriceSource("https://oracle.test", name="primary", client=client),
            StaticPriceSource(pegged_only=True),
        ],
        staleness_seconds=120,
        cache_ttl_seconds=0,
        clock=lambda: now["t"],
    )
    calculator = FeeCalculator(
        registry, chain, monitor, markup_pct=0, staleness_seconds=120, clock=lambda: now["t"]
    )
    assert (await calculator.quote("0x" + "aa" * 20)).fee == 1_500_000

    healthy["up"] = False
    now["t"] += 600

    with pytest.raises(PricingError, match="stale"):
        await calculator.quote("0x" + "aa" * 20)


@pytest.mark.asyncio
async def test_no_fee_rate_sample(registry, prices, ledger):
    calculator = FeeCalculator(registry, prices, FeeRateMonitor(ledger), markup_pct=0)

    with pytest.raises(PricingError):
        await calculator.quote("0x" + "aa" * 20)


@pytest.mark.asyncio
async def test_fee_quote_dict_restores(calculator):
    quote = await calculator.quote("0x" + "aa" * 20)

    restored = FeeQuote.from_dict(quote.to_dict())

    assert restored == quote
    assert isinstance(restored.price, Decimal)
