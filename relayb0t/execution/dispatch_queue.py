"""Priority queue of priced intents awaiting broadcast."""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from relayb0t.execution.fees import FeeQuote
from relayb0t.execution.intents import IntentRecord

logger = logging.getLogger(__name__)

EntryKey = tuple[str, str, int]


@dataclass
class QueueEntry:
    record: IntentRecord
    fee_quote: FeeQuote
    priority: int
    enqueued_at: float
    seq: int
    requeues: int = 0
    not_before: float = 0.0
    last_error: str | None = None

    @property
    def key(self) -> EntryKey:
        return self.record.intent.key

    def is_ready(self, now: float) -> bool:
        return now >= self.not_before

    def order_key(self) -> tuple[int, float, int]:
        return (-self.priority, self.enqueued_at, self.seq)

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_id": self.record.intent_id,
            "asset": self.record.intent.asset,
            "sender": self.record.intent.sender,
            "nonce": self.record.intent.nonce,
            "priority": self.priority,
            "fee": self.fee_quote.fee,
            "enqueued_at": self.enqueued_at,
            "requeues": self.requeues,
            "not_before": self.not_before,
            "last_error": self.last_error,
        }


class DispatchQueue:
    """Waiting entries ordered by (ready, priority desc, enqueue time).

    An entry is either waiting or in flight (dequeued by a worker and not yet
    completed or requeued). Keys are unique across both.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._waiting: dict[EntryKey, QueueEntry] = {}
        self._in_flight: dict[EntryKey, QueueEntry] = {}
        self._lock = asyncio.Lock()
        self._changed = asyncio.Event()
        self._seq = itertools.count()

    def __len__(self) -> int:
        return len(self._waiting)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def __contains__(self, key: EntryKey) -> bool:
        return key in self._waiting or key in self._in_flight

    def get(self, key: EntryKey) -> QueueEntry | None:
        return self._waiting.get(key) or self._in_flight.get(key)

    def is_in_flight(self, key: EntryKey) -> bool:
        return key in self._in_flight

    async def enqueue(
        self, record: IntentRecord, fee_quote: FeeQuote, priority: int | None = None
    ) -> bool:
        """Add an entry. Returns False if the key is already queued or in flight."""
        async with self._lock:
            key = record.intent.key
            if key in self._waiting or key in self._in_flight:
                return False
            entry = QueueEntry(
                record=record,
                fee_quote=fee_quote,
                priority=record.priority if priority is None else priority,
                enqueued_at=self._clock(),
                seq=next(self._seq),
            )
            self._waiting[key] = entry
            self._changed.set()

        logger.debug(
            f"Enqueued intent {record.intent_id[:8]}",
            extra={"intent_id": record.intent_id, "priority": entry.priority, "depth": len(self)},
        )
        return True

    async def dequeue_next(self, defer_low_priority: bool = False) -> QueueEntry | None:
        """Move the best ready entry in flight.

        Args:
            defer_low_priority: Skip entries below the default priority (< 0).
        """
        async with self._lock:
            now = self._clock()
            candidates = [
                e
                for e in self._waiting.values()
                if e.is_ready(now) and not (defer_low_priority and e.priority < 0)
            ]
            if not candidates:
                return None
            entry = min(candidates, key=QueueEntry.order_key)
            del self._waiting[entry.key]
            self._in_flight[entry.key] = entry
            return entry

    async def wait_next(
        self, timeout: float, defer_low_priority: bool = False
    ) -> QueueEntry | None:
        """Dequeue the next entry, waiting up to `timeout` seconds for one."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            self._changed.clear()
            entry = await self.dequeue_next(defer_low_priority)
            if entry is not None:
                return entry

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            wake_in = remaining
            backoffs = [e.not_before - self._clock() for e in self._waiting.values()]
            pending = [b for b in backoffs if b > 0]
            if pending:
                wake_in = min(wake_in, min(pending))
            try:
                await asyncio.wait_for(self._changed.wait(), max(wake_in, 0.001))
            except asyncio.TimeoutError:
                pass

    async def requeue(
        self,
        entry: QueueEntry,
        delay: float = 0.0,
        fee_quote: FeeQuote | None = None,
        error: str | None = None,
    ) -> None:
        """Return an in-flight entry to the waiting set, keeping its position."""
        async with self._lock:
            self._in_flight.pop(entry.key, None)
            entry.requeues += 1
            entry.not_before = self._clock() + delay
            entry.last_error = error
            if fee_quote is not None:
                entry.fee_quote = fee_quote
            self._waiting[entry.key] = entry
            self._changed.set()

        logger.info(
            f"Requeued intent {entry.record.intent_id[:8]}",
            extra={"intent_id": entry.record.intent_id, "delay": delay, "error": error},
        )

    async def complete(self, key: EntryKey) -> None:
        async with self._lock:
            self._in_flight.pop(key, None)

    async def remove(self, key: EntryKey) -> QueueEntry | None:
        """Remove a waiting entry. In-flight entries are not removed."""
        async with self._lock:
            return self._waiting.pop(key, None)

    async def reprice(self, key: EntryKey, fee_quote: FeeQuote) -> bool:
        async with self._lock:
            entry = self._waiting.get(key)
            if entry is None:
                return False
            entry.fee_quote = fee_quote
            return True

    async def expire(self, now: float) -> list[QueueEntry]:
        """Remove and return never-submitted waiting entries whose deadline has passed.

        Entries with earlier submissions stay: only the broadcaster may decide
        that none of those submissions was included.
        """
        async with self._lock:
            expired = [
                e
                for e in self._waiting.values()
                if e.record.intent.is_expired(now) and not e.record.submission_ids
            ]
            for entry in expired:
                del self._waiting[entry.key]
        return expired

    def snapshot(self) -> dict[str, Any]:
        waiting = sorted(self._waiting.values(), key=QueueEntry.order_key)
        return {
            "depth": len(self._waiting),
            "in_flight": len(self._in_flight),
            "waiting": [e.to_dict() for e in waiting],
            "dispatching": [e.to_dict() for e in self._in_flight.values()],
        }
