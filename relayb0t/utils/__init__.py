"""Utilities - logging setup, rate limiting and circuit breaking."""

from relayb0t.utils.logging import setup_logging
from relayb0t.utils.rate_limiter import CircuitBreaker, RateLimiter

__all__ = [
    "setup_logging",
    "RateLimiter",
    "CircuitBreaker",
]
