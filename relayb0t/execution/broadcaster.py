"""Submission, inclusion tracking and replace-by-fee resubmission."""

import asyncio
import logging
import time
from decimal import ROUND_CEILING, Decimal
from typing import TYPE_CHECKING, Callable

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from relayb0t.data.ledger_client import Ledger, LedgerReceipt, ReceiptStatus
from relayb0t.errors import (
    BroadcastDropped,
    BroadcastError,
    BroadcastRejected,
    BroadcastTimedOut,
    ExpiredInQueue,
    LedgerUnavailable,
)
from relayb0t.execution.dispatch_queue import QueueEntry
from relayb0t.execution.intents import (
    BroadcastOutcome,
    BroadcastRecord,
    IntentManager,
    IntentRecord,
    IntentStatus,
)

if TYPE_CHECKING:
    from relayb0t.config import Settings
    from relayb0t.services.fee_rate_monitor import FeeRateMonitor

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BroadcastError) and exc.retryable


class Broadcaster:
    """Drives one queued intent to a terminal state.

    Each attempt goes pending_submit -> submitted -> confirmed, dropped,
    rejected or timed_out. Dropped and timed-out attempts are resubmitted as
    replacements at a bumped fee rate until the attempt limit or the intent
    deadline is reached. Every poll checks all earlier submissions too, so a
    late inclusion of a replaced attempt is still recognised.

    A LedgerUnavailable raised before the first submission propagates to the
    caller with the record untouched, so the entry can be requeued.
    """

    def __init__(
        self,
        ledger: Ledger,
        store: IntentManager,
        monitor: "FeeRateMonitor",
        inclusion_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
        max_attempts: int = 5,
        fee_bump_pct: float = 12.5,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.monitor = monitor
        self.inclusion_timeout = inclusion_timeout_seconds
        self.poll_interval = poll_interval_seconds
        self.max_attempts = max_attempts
        self.fee_bump = Decimal(str(fee_bump_pct)) / 100
        self.backoff_base = backoff_base_seconds
        self.backoff_max = backoff_max_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        ledger: Ledger,
        store: IntentManager,
        monitor: "FeeRateMonitor",
    ) -> "Broadcaster":
        return cls(
            ledger,
            store,
            monitor,
            inclusion_timeout_seconds=settings.inclusion_timeout_seconds,
            poll_interval_seconds=settings.inclusion_poll_interval_seconds,
            max_attempts=settings.max_broadcast_attempts,
            fee_bump_pct=settings.fee_bump_pct,
            backoff_base_seconds=settings.retry_backoff_base_seconds,
            backoff_max_seconds=settings.retry_backoff_max_seconds,
        )

    async def dispatch(self, entry: QueueEntry) -> IntentStatus:
        """Broadcast until the record is terminal.

        Returns:
            The record's terminal status.

        Raises:
            LedgerUnavailable: Settlement layer unreachable before any submission.
        """
        record = entry.record
        intent = record.intent

        try:
            outstanding = self._outstanding(record)
            if outstanding is not None:
                # Resuming after a restart: watch what is already out there first
                try:
                    await self._await_inclusion(record, outstanding)
                    return record.status
                except (BroadcastDropped, BroadcastTimedOut) as e:
                    logger.info(
                        f"Resumed submission for {record.intent_id[:8]} not included: {e}",
                        extra={"intent_id": record.intent_id},
                    )

            remaining = self.max_attempts - record.attempt_count
            if remaining <= 0:
                raise BroadcastDropped(f"attempt limit {self.max_attempts} reached")

            def past_deadline(retry_state: object) -> bool:
                return self._clock() > intent.deadline

            retrying = AsyncRetrying(
                stop=stop_any(stop_after_attempt(remaining), past_deadline),
                wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    await self._attempt(record, entry)
        except BroadcastRejected as e:
            # A replacement is refused once an earlier submission has executed
            if not await self._late_confirmation(record):
                self.store.transition(record, IntentStatus.REJECTED, error=e.reason)
        except ExpiredInQueue as e:
            if not await self._late_confirmation(record):
                self.store.transition(record, IntentStatus.EXPIRED, error=str(e))
        except BroadcastError as e:
            if not await self._late_confirmation(record):
                if self._clock() > intent.deadline:
                    self.store.transition(
                        record, IntentStatus.EXPIRED, error=f"deadline passed after {e.code}: {e}"
                    )
                else:
                    self.store.transition(
                        record,
                        IntentStatus.FAILED,
                        error=f"retries exhausted after {record.attempt_count} attempts: {e}",
                    )
        return record.status

    async def _attempt(self, record: IntentRecord, entry: QueueEntry) -> None:
        intent = record.intent
        if intent.is_expired(self._clock()):
            raise ExpiredInQueue("deadline passed before submission")

        fee_rate = await self._next_fee_rate(record, entry.fee_quote.max_affordable_fee_rate)
        previous = self._last_pending(record)
        if previous is not None and fee_rate <= previous.fee_rate:
            # Nodes refuse a replacement that does not raise the fee rate
            logger.info(
                f"Intent {record.intent_id[:8]} at its fee cap; "
                f"waiting on {previous.submission_id} instead of replacing it",
                extra={"intent_id": record.intent_id, "fee_rate": fee_rate},
            )
            await self._await_inclusion(record, previous)
            return

        replaces = record.submission_ids[-1] if record.submission_ids else None
        broadcast = self.store.add_broadcast(record, fee_rate)

        try:
            submission_id = await self.ledger.submit(intent, fee_rate, replaces=replaces)
        except LedgerUnavailable as e:
            self.store.update_broadcast(broadcast, BroadcastOutcome.DROPPED, error=str(e))
            if not record.submission_ids:
                raise
            raise BroadcastDropped(f"submission failed: {e}")
        except BroadcastRejected as e:
            self.store.update_broadcast(broadcast, BroadcastOutcome.REJECTED, error=e.reason)
            raise
        except BroadcastDropped as e:
            self.store.update_broadcast(broadcast, BroadcastOutcome.DROPPED, error=str(e))
            raise

        self.store.mark_submitted(record, broadcast, submission_id)
        logger.info(
            f"Intent {record.intent_id[:8]} submitted (attempt {record.attempt_count})",
            extra={
                "intent_id": record.intent_id,
                "submission_id": submission_id,
                "fee_rate": fee_rate,
                "replaces": replaces,
            },
        )
        await self._await_inclusion(record, broadcast)

    async def _next_fee_rate(self, record: IntentRecord, cap: int | None) -> int:
        """Current rate on the first attempt, bumped fresh rate on resubmission."""
        previous = [b.fee_rate for b in record.broadcasts if b.submission_id]
        if not previous:
            rate = self.monitor.current().rate
        else:
            estimate = await self.monitor.refresh()
            bumped = Decimal(previous[-1]) * (1 + self.fee_bump)
            rate = max(estimate.rate, int(bumped.to_integral_value(rounding=ROUND_CEILING)))

        if cap is not None and rate > cap:
            logger.warning(
                f"Fee rate {rate} clamped to affordable cap {cap}",
                extra={"intent_id": record.intent_id},
            )
            rate = cap
        return rate

    async def _await_inclusion(self, record: IntentRecord, broadcast: BroadcastRecord) -> None:
        """Poll until a submission of this intent is confirmed.

        Raises:
            BroadcastTimedOut: Nothing included within the inclusion timeout.
            BroadcastDropped: The current submission left the mempool.
            BroadcastRejected: The ledger refused execution.
        """
        try:
            await asyncio.wait_for(self._poll(record, broadcast), self.inclusion_timeout)
        except asyncio.TimeoutError:
            self.store.update_broadcast(
                broadcast,
                BroadcastOutcome.TIMED_OUT,
                error=f"not included within {self.inclusion_timeout}s",
            )
            raise BroadcastTimedOut(
                f"submission {broadcast.submission_id} not included within "
                f"{self.inclusion_timeout}s"
            )

    async def _poll(self, record: IntentRecord, current: BroadcastRecord) -> None:
        while True:
            if await self._check_receipts(record, current):
                return
            await asyncio.sleep(self.poll_interval)

    async def _check_receipts(
        self, record: IntentRecord, current: BroadcastRecord | None
    ) -> bool:
        """One pass over every submission of the intent, newest last."""
        watched = [
            b
            for b in record.broadcasts
            if b.submission_id
            and b.outcome in (BroadcastOutcome.SUBMITTED, BroadcastOutcome.TIMED_OUT)
        ]
        for broadcast in watched:
            try:
                receipt = await self.ledger.get_receipt(broadcast.submission_id)
            except LedgerUnavailable as e:
                logger.warning(
                    f"Receipt lookup failed for {broadcast.submission_id}: {e}",
                    extra={"intent_id": record.intent_id},
                )
                return False
            if receipt is None:
                continue

            if receipt.status == ReceiptStatus.CONFIRMED:
                self._confirm(record, broadcast, receipt)
                return True
            if receipt.status == ReceiptStatus.REJECTED:
                reason = receipt.reason or "rejected by ledger"
                self.store.update_broadcast(broadcast, BroadcastOutcome.REJECTED, error=reason)
                raise BroadcastRejected(reason)

            self.store.update_broadcast(
                broadcast, BroadcastOutcome.DROPPED, error=receipt.reason or "dropped"
            )
            if broadcast is current:
                raise BroadcastDropped(f"submission {broadcast.submission_id} dropped: {receipt.reason}")
        return False

    def _confirm(
        self, record: IntentRecord, broadcast: BroadcastRecord, receipt: LedgerReceipt
    ) -> None:
        self.store.update_broadcast(broadcast, BroadcastOutcome.CONFIRMED)
        for other in record.broadcasts:
            if other is not broadcast and other.outstanding:
                self.store.update_broadcast(other, BroadcastOutcome.DROPPED, error="superseded")
        self.store.transition(
            record,
            IntentStatus.CONFIRMED,
            actual_fee=receipt.actual_fee,
            settlement_reference=receipt.reference,
        )
        logger.info(
            f"Intent {record.intent_id[:8]} confirmed",
            extra={
                "intent_id": record.intent_id,
                "submission_id": receipt.submission_id,
                "actual_fee": receipt.actual_fee,
                "attempts": record.attempt_count,
            },
        )

    async def _late_confirmation(self, record: IntentRecord) -> bool:
        """Last look at earlier submissions before giving up on the intent."""
        if not record.submission_ids:
            return False
        try:
            return await self._check_receipts(record, current=None)
        except BroadcastRejected as e:
            self.store.transition(record, IntentStatus.REJECTED, error=e.reason)
            return True

    @staticmethod
    def _last_pending(record: IntentRecord) -> BroadcastRecord | None:
        """Latest submission that may still be mined, if it is the newest one."""
        submitted = [b for b in record.broadcasts if b.submission_id]
        if submitted and submitted[-1].outcome in (
            BroadcastOutcome.SUBMITTED,
            BroadcastOutcome.TIMED_OUT,
        ):
            return submitted[-1]
        return None

    @staticmethod
    def _outstanding(record: IntentRecord) -> BroadcastRecord | None:
        for broadcast in reversed(record.broadcasts):
            if broadcast.outstanding:
                return broadcast
        return None
