"""Per-sender nonce ordering.

Each (asset, sender) nonce space has at most one outstanding intent: the one
whose nonce equals the expected next nonce. Later nonces are held until every
earlier one is terminal.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from relayb0t.data.ledger_client import Ledger
from relayb0t.errors import ReplayError
from relayb0t.execution.intents import IntentManager, IntentRecord, TransferIntent

logger = logging.getLogger(__name__)

SenderKey = tuple[str, str]


class Admission(str, Enum):
    READY = "ready"
    HELD = "held"
    DUPLICATE = "duplicate"


@dataclass
class SenderState:
    expected: int
    outstanding: int | None = None
    held: dict[int, IntentRecord] = field(default_factory=dict)
    terminal_held: set[int] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "expected": self.expected,
            "outstanding": self.outstanding,
            "held": sorted(self.held),
            "terminal_held": sorted(self.terminal_held),
        }


class NonceSequencer:
    """Admits intents in strict nonce order per sender key.

    The expected nonce is loaded on first touch (persisted value, else the
    ledger's on-chain nonce) and persisted every time it moves.
    """

    def __init__(self, ledger: Ledger, store: IntentManager) -> None:
        self.ledger = ledger
        self.store = store
        self._states: dict[SenderKey, SenderState] = {}
        self._locks: dict[SenderKey, asyncio.Lock] = {}

    def _lock_for(self, key: SenderKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _state(self, key: SenderKey) -> SenderState:
        state = self._states.get(key)
        if state is not None:
            return state

        asset, sender = key
        expected = self.store.get_next_nonce(asset, sender)
        if expected is None:
            # LedgerUnavailable propagates: ordering cannot be decided without it
            expected = await self.ledger.get_nonce(asset, sender)
            self.store.set_next_nonce(asset, sender, expected)
        state = self._states[key] = SenderState(expected=expected)
        logger.debug(f"Loaded nonce state for {sender}", extra={"asset": asset, "expected": expected})
        return state

    async def admit(
        self,
        intent: TransferIntent,
        create_held: Callable[[TransferIntent], IntentRecord],
    ) -> tuple[Admission, IntentRecord | None]:
        """Place an intent in its sender's nonce order.

        Args:
            intent: Validated intent.
            create_held: Called under the sender lock to produce the record
                that is held until the intent's turn comes.

        Returns:
            (READY, None) when the intent is now outstanding, (HELD, record)
            when it waits behind an earlier nonce, (DUPLICATE, None) when the
            nonce is already outstanding or held.

        Raises:
            ReplayError: The nonce is below the expected next nonce.
        """
        key = intent.sender_key
        async with self._lock_for(key):
            state = await self._state(key)
            nonce = intent.nonce

            if nonce < state.expected:
                raise ReplayError(
                    f"nonce {nonce} already used for {intent.sender} (next is {state.expected})"
                )
            if nonce == state.outstanding or nonce in state.held:
                return Admission.DUPLICATE, None
            if nonce == state.expected and state.outstanding is None:
                state.outstanding = nonce
                return Admission.READY, None

            record = create_held(intent)
            state.held[nonce] = record
            logger.info(
                f"Holding nonce {nonce} for {intent.sender} until {state.expected} is final",
                extra={"intent_id": record.intent_id, "asset": intent.asset},
            )
            return Admission.HELD, record

    async def abort(self, intent: TransferIntent) -> None:
        """Free the outstanding slot after a failed admission without advancing."""
        key = intent.sender_key
        async with self._lock_for(key):
            state = self._states.get(key)
            if state is not None and state.outstanding == intent.nonce:
                state.outstanding = None

    async def finalize(self, intent: TransferIntent) -> IntentRecord | None:
        """Record that `intent` reached a terminal state.

        Returns:
            The held record released into the outstanding slot, if any.
        """
        key = intent.sender_key
        async with self._lock_for(key):
            state = await self._state(key)
            nonce = intent.nonce

            if nonce in state.held:
                del state.held[nonce]
                state.terminal_held.add(nonce)
                return None
            if state.outstanding != nonce:
                return None

            state.outstanding = None
            state.expected = nonce + 1
            while state.expected in state.terminal_held:
                state.terminal_held.discard(state.expected)
                state.expected += 1
            self.store.set_next_nonce(key[0], key[1], state.expected)

            released = state.held.pop(state.expected, None)
            if released is not None:
                state.outstanding = released.intent.nonce
                logger.info(
                    f"Released nonce {released.intent.nonce} for {intent.sender}",
                    extra={"intent_id": released.intent_id, "asset": intent.asset},
                )
            return released

    async def restore(self, record: IntentRecord) -> Admission:
        """Re-admit a persisted non-terminal record during recovery."""
        admission, _ = await self.admit(record.intent, lambda _: record)
        return admission

    def held_records(self) -> list[IntentRecord]:
        return [r for state in self._states.values() for r in state.held.values()]

    def state(self, asset: str, sender: str) -> SenderState | None:
        return self._states.get((asset.lower(), sender.lower()))

    def snapshot(self) -> dict[str, Any]:
        return {f"{asset}:{sender}": s.to_dict() for (asset, sender), s in self._states.items()}
