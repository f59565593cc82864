"""Price quote sources.

Quotes are expressed in the settlement layer's native fee unit per whole unit
of the asset. `PriceQuoteChain` tries its sources in order (primary,
secondary, ...) and falls back to the last good quote it cached; staleness is
judged by the caller, so a cached fallback can still be refused.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Sequence

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from relayb0t.data.models import AssetConfig
from relayb0t.errors import PricingError
from relayb0t.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    asset: str
    price: Decimal
    timestamp: float
    source: str

    def age(self, now: float) -> float:
        return max(0.0, now - self.timestamp)

    def is_stale(self, max_age_seconds: float, now: float) -> bool:
        return self.age(now) > max_age_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "price": str(self.price),
            "timestamp": self.timestamp,
            "source": self.source,
        }


class PriceSource(ABC):
    """A single place a quote can come from."""

    name = "source"

    @abstractmethod
    async def fetch(self, asset: AssetConfig) -> PriceQuote:
        """Quote for one whole unit of `asset`."""

    async def close(self) -> None:
        return None


class StaticPriceSource(PriceSource):
    """Fixed prices from the asset configuration.

    With `pegged_only` set, only assets flagged `pegged` are quoted; any other
    configured price is a paper-mode stand-in and never a live quote.
    """

    name = "static"

    def __init__(
        self, clock: Callable[[], float] = time.time, pegged_only: bool = False
    ) -> None:
        self._clock = clock
        self.pegged_only = pegged_only

    async def fetch(self, asset: AssetConfig) -> PriceQuote:
        if asset.static_price is None:
            raise PricingError(f"no static price configured for {asset.symbol}")
        if self.pegged_only and not asset.pegged:
            raise PricingError(f"{asset.symbol} is not pegged; static price not used")
        return PriceQuote(
            asset=asset.key,
            price=Decimal(asset.static_price),
            timestamp=self._clock(),
            source=self.name,
        )


class HttpPriceSource(PriceSource):
    """Price API client: `GET {base_url}/price/{feed}` -> `{"price", "timestamp"}`."""

    def __init__(
        self,
        base_url: str,
        name: str = "http",
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url
        headers = {"Accept": "application/json", "User-Agent": "relayb0t/0.1.0"}
        if api_key:
            headers["X-API-Key"] = api_key
        self.client = client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )
        self.limiter = limiter or RateLimiter(calls_per_second=5.0, name=f"price:{name}")

    async def __aenter__(self) -> "HttpPriceSource":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(multiplier=0.2, max=2),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _get(self, endpoint: str) -> Any:
        await self.limiter.acquire()
        logger.debug(f"GET {endpoint}", extra={"source": self.name})
        response = await self.client.get(endpoint)
        response.raise_for_status()
        return response.json()

    async def fetch(self, asset: AssetConfig) -> PriceQuote:
        data = await self._get(f"/price/{asset.price_feed}")
        try:
            price = Decimal(str(data["price"]))
            timestamp = float(data["timestamp"])
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise PricingError(f"{self.name}: malformed quote for {asset.symbol}: {e}")
        if price <= 0:
            raise PricingError(f"{self.name}: non-positive price for {asset.symbol}")
        return PriceQuote(asset=asset.key, price=price, timestamp=timestamp, source=self.name)


class PriceQuoteChain:
    """Chain of responsibility over price sources with a last-known-good cache."""

    def __init__(
        self,
        sources: Sequence[PriceSource],
        staleness_seconds: float = 120.0,
        timeout_seconds: float = 5.0,
        cache_ttl_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not sources:
            raise ValueError("at least one price source is required")
        self.sources = list(sources)
        self.staleness_seconds = staleness_seconds
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, PriceQuote] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def cached(self, asset: str) -> PriceQuote | None:
        return self._cache.get(asset.lower())

    async def get_quote(self, asset: AssetConfig) -> PriceQuote:
        """Return the first fresh quote, else the cached one, else raise PricingError."""
        async with self._lock_for(asset.key):
            cached = self._cache.get(asset.key)
            if cached is not None and cached.age(self._clock()) <= self.cache_ttl_seconds:
                return cached

            for source in self.sources:
                try:
                    quote = await asyncio.wait_for(source.fetch(asset), self.timeout_seconds)
                except asyncio.TimeoutError:
                    logger.warning(f"Price source {source.name} timed out for {asset.symbol}")
                    continue
                except (PricingError, httpx.HTTPError) as e:
                    logger.warning(f"Price source {source.name} failed for {asset.symbol}: {e}")
                    continue

                if quote.is_stale(self.staleness_seconds, self._clock()):
                    logger.warning(
                        f"Price source {source.name} returned a stale quote for {asset.symbol}",
                        extra={"quote_timestamp": quote.timestamp},
                    )
                    continue

                self._cache[asset.key] = quote
                return quote

            if cached is not None:
                logger.warning(
                    f"All price sources failed for {asset.symbol}; using last known quote",
                    extra={"source": cached.source, "age": cached.age(self._clock())},
                )
                return cached

            raise PricingError(f"no price quote available for {asset.symbol}")

    async def close(self) -> None:
        for source in self.sources:
            await source.close()
