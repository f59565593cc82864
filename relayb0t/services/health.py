"""Health check and status monitoring."""

import logging
from collections import Counter
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)


class HealthStatus:
    """Relay health status.

    `degraded` means the settlement layer is unreachable: intents are still
    accepted and queued, but nothing is broadcast.
    """

    def __init__(self) -> None:
        """Initialize health status."""
        self.started_at = datetime.utcnow()
        self.last_dispatch_at: datetime | None = None
        self.outcomes: Counter[str] = Counter()
        self.is_degraded = False
        self.degraded_reason: str | None = None
        self.degraded_since: datetime | None = None

    def record_dispatch(self, status: str) -> None:
        """Count a dispatch that ended in `status`."""
        self.last_dispatch_at = datetime.utcnow()
        self.outcomes[status] += 1

    def mark_degraded(self, reason: str) -> None:
        """Enter accept-and-queue-only mode.

        Args:
            reason: Why the settlement layer is considered down.
        """
        if not self.is_degraded:
            self.degraded_since = datetime.utcnow()
            logger.error(f"Relay degraded: {reason}")
        self.is_degraded = True
        self.degraded_reason = reason

    def mark_healthy(self) -> None:
        """Leave degraded mode."""
        if self.is_degraded:
            logger.info("Relay recovered; broadcasting resumed")
        self.is_degraded = False
        self.degraded_reason = None
        self.degraded_since = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary.

        Returns:
            Health status as dict.
        """
        uptime = (datetime.utcnow() - self.started_at).total_seconds()

        return {
            "is_healthy": not self.is_degraded,
            "degraded": self.is_degraded,
            "degraded_reason": self.degraded_reason,
            "degraded_since": self.degraded_since.isoformat() if self.degraded_since else None,
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": uptime,
            "last_dispatch_at": self.last_dispatch_at.isoformat() if self.last_dispatch_at else None,
            "outcomes": dict(self.outcomes),
        }
