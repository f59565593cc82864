"""Execution layer - validation, ordering, pricing, queueing and broadcast."""

from relayb0t.execution.intents import IntentManager, IntentRecord, IntentStatus, TransferIntent
from relayb0t.execution.simulator import PaperLedger

__all__ = ["TransferIntent", "IntentRecord", "IntentStatus", "IntentManager", "PaperLedger"]
