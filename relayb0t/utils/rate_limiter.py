"""Rate limiting and circuit breaking for outbound calls.

The token bucket throttles price API lookups; the circuit breaker tracks
settlement layer reachability and drives the engine's accept-and-queue-only
mode.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterStats:
    """Statistics for rate limiter."""

    total_requests: int = 0
    throttled_requests: int = 0
    total_wait_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "throttled_requests": self.throttled_requests,
            "total_wait_time": self.total_wait_time,
            "throttle_rate": self.throttled_requests / self.total_requests if self.total_requests > 0 else 0,
        }


class RateLimiter:
    """Token bucket rate limiter for API calls."""

    def __init__(
        self,
        calls_per_second: float = 10.0,
        burst_size: Optional[int] = None,
        name: str = "default",
    ):
        """Initialize rate limiter.

        Args:
            calls_per_second: Maximum sustained rate
            burst_size: Maximum burst size (defaults to 2x rate)
            name: Name for logging
        """
        self.rate = calls_per_second
        self.burst_size = burst_size or max(1, int(calls_per_second * 2))
        self.name = name

        self.tokens = float(self.burst_size)
        self.last_update = time.monotonic()
        self.stats = RateLimiterStats()
        self._lock = asyncio.Lock()

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_update
        self.last_update = now
        self.tokens = min(self.burst_size, self.tokens + elapsed * self.rate)

    async def acquire(self, tokens: int = 1) -> float:
        """Acquire tokens, waiting if necessary.

        Returns:
            Time waited in seconds
        """
        async with self._lock:
            self._refill_tokens()
            self.stats.total_requests += 1

            if self.tokens >= tokens:
                self.tokens -= tokens
                return 0.0

            self.stats.throttled_requests += 1
            tokens_needed = tokens - self.tokens
            wait_time = tokens_needed / self.rate
            self.stats.total_wait_time += wait_time

            logger.debug(
                f"Rate limiter '{self.name}' throttling: "
                f"waiting {wait_time:.3f}s for {tokens_needed:.1f} tokens"
            )

            await asyncio.sleep(wait_time)

            self._refill_tokens()
            self.tokens -= tokens
            return wait_time

    def get_stats(self) -> dict:
        return self.stats.to_dict()


class CircuitBreaker:
    """Circuit breaker for the settlement layer.

    Opens after `failure_threshold` consecutive failures. While open, callers
    should stop submitting; after `reset_timeout` a single probe is allowed.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._is_open = False
        self.last_error: Optional[str] = None

    @property
    def is_open(self) -> bool:
        """True while requests should be blocked."""
        if not self._is_open:
            return False
        return not self.probe_due

    @property
    def probe_due(self) -> bool:
        """True when an open breaker may try a probe request."""
        if not self._is_open or self._last_failure_time is None:
            return False
        return self._clock() - self._last_failure_time >= self.reset_timeout

    @property
    def tripped(self) -> bool:
        """True while the breaker is open, regardless of probe timing."""
        return self._is_open

    def record_success(self) -> None:
        if self._is_open:
            logger.info(f"Circuit breaker '{self.name}' closed after success")
        self._failures = 0
        self._is_open = False
        self.last_error = None

    def record_failure(self, error: str | None = None) -> None:
        self._failures += 1
        self._last_failure_time = self._clock()
        self.last_error = error

        if self._failures >= self.failure_threshold:
            if not self._is_open:
                logger.warning(
                    f"Circuit breaker '{self.name}' opened after "
                    f"{self._failures} failures",
                    extra={"error": error},
                )
            self._is_open = True

    def reset(self) -> None:
        self._failures = 0
        self._is_open = False
        self._last_failure_time = None
        self.last_error = None
