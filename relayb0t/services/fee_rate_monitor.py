"""Fee-rate monitor: rolling samples of the settlement layer's fee rate."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import numpy as np

from relayb0t.errors import PricingError

if TYPE_CHECKING:
    from relayb0t.config import Settings
    from relayb0t.data.ledger_client import Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeRateEstimate:
    rate: int
    predicted: int
    sampled_at: float
    stale: bool = False
    elevated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate": self.rate,
            "predicted": self.predicted,
            "sampled_at": self.sampled_at,
            "stale": self.stale,
            "elevated": self.elevated,
        }


class FeeRateMonitor:
    """Samples the fee rate, predicts its short-term trend and flags spikes.

    A failed sample never raises out of the sampling loop. The last good
    sample is kept and the estimate is flagged stale until sampling recovers.
    """

    def __init__(
        self,
        ledger: "Ledger",
        sample_interval_seconds: float = 5.0,
        history_size: int = 60,
        stale_after_seconds: float = 30.0,
        spike_sigma: float = 2.0,
        spike_floor_pct: float = 10.0,
        min_samples: int = 5,
        prediction_horizon: int = 3,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the monitor.

        Args:
            ledger: Settlement layer to sample.
            sample_interval_seconds: How often `run` samples.
            history_size: Number of recent samples kept.
            stale_after_seconds: Age after which the last sample is stale.
            spike_sigma: Standard deviations above the rolling mean that count as elevated.
            spike_floor_pct: Minimum percent above the rolling mean that counts as elevated.
            min_samples: Samples needed before spike detection is active.
            prediction_horizon: Prediction distance in sampling intervals.
            timeout_seconds: Upper bound for one sample.
        """
        self.ledger = ledger
        self.sample_interval = sample_interval_seconds
        self.stale_after = stale_after_seconds
        self.spike_sigma = spike_sigma
        self.spike_floor = spike_floor_pct / 100
        self.min_samples = min_samples
        self.prediction_horizon = prediction_horizon
        self.timeout = timeout_seconds
        self._clock = clock

        self._history: deque[tuple[float, int]] = deque(maxlen=history_size)
        self._sample_failed = False
        self.consecutive_failures = 0
        self.last_error: str | None = None
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, ledger: "Ledger", settings: "Settings") -> "FeeRateMonitor":
        return cls(
            ledger,
            sample_interval_seconds=settings.fee_rate_sample_interval_seconds,
            history_size=settings.fee_rate_history_size,
            stale_after_seconds=settings.fee_rate_stale_after_seconds,
            spike_sigma=settings.fee_rate_spike_sigma,
            spike_floor_pct=settings.fee_rate_spike_floor_pct,
            min_samples=settings.fee_rate_min_samples,
            prediction_horizon=settings.fee_rate_prediction_horizon,
            timeout_seconds=settings.quote_timeout_seconds,
        )

    @property
    def has_sample(self) -> bool:
        return bool(self._history)

    def record(self, rate: int, at: float | None = None) -> None:
        """Add a sample taken elsewhere (e.g. a fresh read before resubmission)."""
        self._history.append((self._clock() if at is None else at, int(rate)))
        self._sample_failed = False
        self.consecutive_failures = 0
        self.last_error = None

    async def sample(self) -> int | None:
        """Take one sample. Returns the rate, or None if sampling failed."""
        try:
            rate = await asyncio.wait_for(self.ledger.current_fee_rate(), self.timeout)
        except Exception as e:
            self._sample_failed = True
            self.consecutive_failures += 1
            self.last_error = str(e) or type(e).__name__
            logger.warning(
                f"Fee-rate sample failed: {self.last_error}",
                extra={"consecutive_failures": self.consecutive_failures},
            )
            return None

        self.record(rate)
        logger.debug(f"Fee rate sample: {rate}", extra={"fee_rate": rate})
        return rate

    async def refresh(self) -> FeeRateEstimate:
        await self.sample()
        return self.current()

    def current(self) -> FeeRateEstimate:
        """Current estimate.

        Raises:
            PricingError: No sample has ever succeeded.
        """
        if not self._history:
            raise PricingError("no fee-rate sample available")
        sampled_at, rate = self._history[-1]
        stale = self._sample_failed or (self._clock() - sampled_at) > self.stale_after
        return FeeRateEstimate(
            rate=rate,
            predicted=self.predict(),
            sampled_at=sampled_at,
            stale=stale,
            elevated=self.is_elevated(),
        )

    def predict(self) -> int:
        """Linear-trend prediction `prediction_horizon` samples ahead."""
        rates = np.array([r for _, r in self._history], dtype=float)
        if len(rates) < 3:
            return int(rates[-1]) if len(rates) else 0

        x = np.arange(len(rates))
        slope, _ = np.polyfit(x, rates, 1)
        predicted = rates[-1] + slope * self.prediction_horizon
        return max(0, int(round(predicted)))

    def is_elevated(self) -> bool:
        """True when the latest sample spikes above the rolling baseline."""
        if len(self._history) < self.min_samples:
            return False

        rates = np.array([r for _, r in self._history], dtype=float)
        baseline = rates[:-1]
        mean = float(np.mean(baseline))
        std = float(np.std(baseline))
        threshold = max(mean + self.spike_sigma * std, mean * (1 + self.spike_floor))
        return bool(rates[-1] > threshold)

    async def run(self) -> None:
        """Sampling loop; runs until cancelled."""
        while True:
            await self.sample()
            await asyncio.sleep(self.sample_interval)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="fee-rate-monitor")
        logger.info("Fee-rate monitor started", extra={"interval": self.sample_interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Fee-rate monitor stopped")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "samples": len(self._history),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }
        if self._history:
            data["estimate"] = self.current().to_dict()
        return data
