"""Services layer - relay engine, fee-rate monitor, health."""

from relayb0t.services.fee_rate_monitor import FeeRateMonitor
from relayb0t.services.health import HealthStatus
from relayb0t.services.relay_engine import RelayEngine

__all__ = ["RelayEngine", "FeeRateMonitor", "HealthStatus"]
