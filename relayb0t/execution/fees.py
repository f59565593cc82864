"""Fee calculation: settlement cost converted into the transferred asset.

    native_cost = resource_usage * fee_rate              (wei)
    token_cost  = native_cost / 10**18 / price           (whole asset units)
    fee         = token_cost * (1 + markup)              (rounded up to base units)

All arithmetic is Decimal; floats never touch an amount.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, replace
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import TYPE_CHECKING, Any, Callable

from relayb0t.data.assets import AssetRegistry
from relayb0t.data.models import AssetConfig
from relayb0t.data.price_client import PriceQuote, PriceQuoteChain
from relayb0t.errors import FeeExceedsMaximum, PricingError, ProfitabilityError

if TYPE_CHECKING:
    from relayb0t.config import Settings
    from relayb0t.execution.intents import TransferIntent
    from relayb0t.services.fee_rate_monitor import FeeRateMonitor

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = Decimal(10) ** 18


def token_fee(
    native_cost_wei: int, price: Decimal, decimals: int, markup: Decimal = Decimal(0)
) -> int:
    """Convert a native cost into asset base units, rounding up."""
    if price <= 0:
        raise PricingError(f"price must be positive, got {price}")
    token_cost = Decimal(native_cost_wei) / WEI_PER_NATIVE / price
    units = token_cost * (1 + markup) * (Decimal(10) ** decimals)
    return int(units.to_integral_value(rounding=ROUND_CEILING))


def max_affordable_fee_rate(
    max_fee: int, price: Decimal, decimals: int, resource_usage: int
) -> int:
    """Highest fee rate (wei) at which the settlement charge stays within `max_fee`."""
    if resource_usage <= 0:
        return 0
    native_wei = Decimal(max_fee) / (Decimal(10) ** decimals) * price * WEI_PER_NATIVE
    return int((native_wei / resource_usage).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class FeeQuote:
    """Fee computed for one asset at one price and fee rate. Advisory only."""

    asset: str
    fee: int
    token_cost: int
    native_cost_wei: int
    fee_rate: int
    predicted_fee_rate: int
    resource_usage: int
    price: Decimal
    markup_pct: Decimal
    quote_timestamp: float
    quote_source: str
    fee_rate_stale: bool = False
    fee_rate_elevated: bool = False
    max_affordable_fee_rate: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["price"] = str(self.price)
        data["markup_pct"] = str(self.markup_pct)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeeQuote":
        return cls(
            **{
                **data,
                "price": Decimal(data["price"]),
                "markup_pct": Decimal(data["markup_pct"]),
            }
        )


class FeeCalculator:
    """Prices settlement in the transferred asset and checks viability."""

    def __init__(
        self,
        assets: AssetRegistry,
        prices: PriceQuoteChain,
        monitor: "FeeRateMonitor",
        markup_pct: float = 10.0,
        staleness_seconds: float = 120.0,
        stale_policy: str = "widen",
        stale_extra_markup_pct: float = 20.0,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.assets = assets
        self.prices = prices
        self.monitor = monitor
        self.markup_pct = Decimal(str(markup_pct))
        self.staleness_seconds = staleness_seconds
        self.stale_policy = stale_policy
        self.stale_extra_markup_pct = Decimal(str(stale_extra_markup_pct))
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        assets: AssetRegistry,
        prices: PriceQuoteChain,
        monitor: "FeeRateMonitor",
    ) -> "FeeCalculator":
        return cls(
            assets,
            prices,
            monitor,
            markup_pct=settings.fee_markup_pct,
            staleness_seconds=settings.quote_staleness_seconds,
            stale_policy=settings.stale_fee_rate_policy,
            stale_extra_markup_pct=settings.stale_fee_rate_extra_markup_pct,
            timeout_seconds=settings.quote_timeout_seconds,
        )

    def _asset(self, asset: str) -> AssetConfig:
        cfg = self.assets.snapshot().get(asset)
        if cfg is None:
            raise PricingError(f"asset {asset} is not supported")
        return cfg

    async def _fresh_quote(self, cfg: AssetConfig) -> PriceQuote:
        try:
            quote = await asyncio.wait_for(self.prices.get_quote(cfg), self.timeout_seconds)
        except asyncio.TimeoutError:
            raise PricingError(f"price lookup for {cfg.symbol} timed out")
        if quote.is_stale(self.staleness_seconds, self._clock()):
            raise PricingError(
                f"price quote for {cfg.symbol} is stale "
                f"({quote.age(self._clock()):.0f}s old, source {quote.source})"
            )
        return quote

    async def quote(self, asset: str, fee_rate: int | None = None) -> FeeQuote:
        """Compute the fee for a transfer of `asset`.

        Args:
            asset: Asset address.
            fee_rate: Fee rate to price at; defaults to the monitor's current rate.

        Returns:
            FeeQuote with the fee in base units.

        Raises:
            PricingError: No fresh quote, no fee-rate sample, or stale fee rate
                under the refuse policy.
        """
        cfg = self._asset(asset)
        price_quote = await self._fresh_quote(cfg)
        estimate = self.monitor.current()

        markup = self.markup_pct
        if estimate.stale:
            if self.stale_policy == "refuse":
                raise PricingError("fee-rate estimate is stale")
            markup += self.stale_extra_markup_pct
            logger.warning(
                "Pricing with a stale fee-rate estimate; widening markup",
                extra={"asset": cfg.key, "markup_pct": str(markup)},
            )

        rate = estimate.rate if fee_rate is None else fee_rate
        native_cost = cfg.transfer_gas * rate
        token_cost = token_fee(native_cost, price_quote.price, cfg.decimals)
        fee = token_fee(native_cost, price_quote.price, cfg.decimals, markup / 100)

        return FeeQuote(
            asset=cfg.key,
            fee=fee,
            token_cost=token_cost,
            native_cost_wei=native_cost,
            fee_rate=rate,
            predicted_fee_rate=estimate.predicted,
            resource_usage=cfg.transfer_gas,
            price=price_quote.price,
            markup_pct=markup,
            quote_timestamp=price_quote.timestamp,
            quote_source=price_quote.source,
            fee_rate_stale=estimate.stale,
            fee_rate_elevated=estimate.elevated,
        )

    async def price_intent(
        self, intent: "TransferIntent", fee_rate: int | None = None
    ) -> FeeQuote:
        """Quote the fee for `intent` and check it is viable.

        Raises:
            PricingError: See `quote`.
            ProfitabilityError: Fee below the asset's configured minimum.
            FeeExceedsMaximum: Fee above the signed max fee, or not below the amount.
        """
        cfg = self._asset(intent.asset)
        fee_quote = await self.quote(intent.asset, fee_rate)
        fee = fee_quote.fee

        if fee < cfg.min_fee:
            raise ProfitabilityError(f"fee {fee} below minimum {cfg.min_fee} for {cfg.symbol}")
        if fee > intent.max_fee:
            raise FeeExceedsMaximum(fee, intent.max_fee)
        if fee >= intent.amount:
            raise FeeExceedsMaximum(
                fee, intent.amount, f"fee {fee} is not below transfer amount {intent.amount}"
            )

        affordable = max_affordable_fee_rate(
            intent.max_fee, fee_quote.price, cfg.decimals, cfg.transfer_gas
        )
        return replace(fee_quote, max_affordable_fee_rate=affordable)
