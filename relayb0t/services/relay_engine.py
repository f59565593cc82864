"""Relay engine: intake, ordering, pricing, dispatch workers and recovery.

Control flow per intent:
    validate -> deduplicate -> admit (nonce order) -> price -> persist -> enqueue
    -> broadcast -> terminal -> release the sender's next held nonce
"""

import asyncio
import logging
import time
from decimal import ROUND_CEILING, Decimal
from typing import Callable

from relayb0t.config import Settings
from relayb0t.data.assets import AssetRegistry, AssetSnapshot
from relayb0t.data.ledger_client import Ledger, Web3Ledger
from relayb0t.data.models import FeeEstimateRequest, FeeEstimateResponse, IntentSubmission
from relayb0t.data.price_client import (
    HttpPriceSource,
    PriceQuoteChain,
    PriceSource,
    StaticPriceSource,
)
from relayb0t.errors import (
    CancellationError,
    FeeExceedsMaximum,
    InvalidState,
    LedgerUnavailable,
    RelayError,
    ReplayError,
    ValidationError,
)
from relayb0t.execution.broadcaster import Broadcaster
from relayb0t.execution.dispatch_queue import DispatchQueue, QueueEntry
from relayb0t.execution.fees import FeeCalculator, FeeQuote
from relayb0t.execution.intents import IntentManager, IntentRecord, IntentStatus, TransferIntent
from relayb0t.execution.sequencer import Admission, NonceSequencer
from relayb0t.execution.signing import SigningDomain
from relayb0t.execution.simulator import PaperLedger
from relayb0t.execution.validator import IntentValidator
from relayb0t.services.fee_rate_monitor import FeeRateMonitor
from relayb0t.services.health import HealthStatus
from relayb0t.utils.rate_limiter import CircuitBreaker

logger = logging.getLogger(__name__)

# How long an idle worker waits on the queue before re-checking state
WORKER_POLL_SECONDS = 1.0


class RelayEngine:
    """Owns every intent record and the components that move it along."""

    def __init__(
        self,
        settings: Settings,
        ledger: Ledger,
        assets: AssetRegistry,
        prices: PriceQuoteChain,
        store: IntentManager,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Application settings.
            ledger: Settlement layer.
            assets: Supported-asset registry.
            prices: Price quote chain.
            store: Intent record persistence.
            clock: Wall clock (unix seconds).
        """
        self.settings = settings
        self.ledger = ledger
        self.assets = assets
        self.prices = prices
        self.store = store
        self._clock = clock

        self.domain = SigningDomain.from_settings(settings)
        self.monitor = FeeRateMonitor.from_settings(ledger, settings)
        self.validator = IntentValidator(assets, self.domain, clock=clock)
        self.fees = FeeCalculator.from_settings(settings, assets, prices, self.monitor)
        self.sequencer = NonceSequencer(ledger, store)
        self.queue = DispatchQueue(clock=clock)
        self.broadcaster = Broadcaster.from_settings(settings, ledger, store, self.monitor)
        self.breaker = CircuitBreaker(
            failure_threshold=settings.settlement_failure_threshold,
            reset_timeout=settings.settlement_reset_seconds,
            name="settlement",
        )
        self.health = HealthStatus()

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def build(cls, settings: Settings, store: IntentManager) -> "RelayEngine":
        """Wire the engine from settings (asset file, price sources, ledger by mode)."""
        assets = AssetRegistry.from_file(settings.assets_file)

        sources: list[PriceSource] = []
        if settings.price_api_url:
            sources.append(
                HttpPriceSource(
                    settings.price_api_url,
                    name="primary",
                    api_key=settings.price_api_key,
                    timeout=settings.quote_timeout_seconds,
                )
            )
        if settings.price_fallback_api_url:
            sources.append(
                HttpPriceSource(
                    settings.price_fallback_api_url,
                    name="secondary",
                    api_key=settings.price_api_key,
                    timeout=settings.quote_timeout_seconds,
                )
            )
        sources.append(StaticPriceSource(pegged_only=settings.mode == "live"))
        prices = PriceQuoteChain(
            sources,
            staleness_seconds=settings.quote_staleness_seconds,
            timeout_seconds=settings.quote_timeout_seconds,
        )

        ledger: Ledger
        if settings.mode == "live":
            ledger = Web3Ledger(
                rpc_url=settings.rpc_url or "",
                forwarder_address=settings.forwarder_address,
                relayer_private_key=settings.relayer_private_key or "",
                chain_id=settings.chain_id,
                priority_fee_wei=settings.priority_fee_wei,
                timeout=settings.rpc_timeout_seconds,
            )
        else:
            ledger = PaperLedger(
                assets,
                prices,
                SigningDomain.from_settings(settings),
                fee_collector=settings.fee_collector_address,
            )
        return cls(settings, ledger, assets, prices, store)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def submit_intent(
        self, submission: IntentSubmission | TransferIntent, priority: int | None = None
    ) -> IntentRecord:
        """Accept a signed intent.

        Returns:
            The new record, or the existing one for a duplicate submission.

        Raises:
            ValidationError, ReplayError, PricingError, ProfitabilityError,
            FeeExceedsMaximum: Nothing was stored.
        """
        if isinstance(submission, IntentSubmission):
            intent = TransferIntent.from_submission(submission)
            priority = submission.priority if priority is None else priority
        else:
            intent = submission
        priority = priority or 0

        self.validator.validate(intent)

        existing = self.store.find_by_signature(intent)
        if existing is not None:
            logger.info(
                f"Duplicate submission of intent {existing.intent_id[:8]}",
                extra={"intent_id": existing.intent_id, "status": existing.status.value},
            )
            return existing

        await self._ensure_fee_rate()
        admission, held = await self.sequencer.admit(
            intent, lambda i: self.store.create(i, IntentStatus.VALIDATED, priority)
        )

        if admission == Admission.HELD and held is not None:
            return held

        if admission == Admission.DUPLICATE:
            record = self.store.find_active_by_nonce(intent)
            if record is None:
                raise ReplayError(f"nonce {intent.nonce} for {intent.sender} is being finalized")
            if record.status == IntentStatus.QUEUED:
                await self._reprice(record)
            return record

        try:
            quote = await self.fees.price_intent(intent)
            record = self.store.create(intent, IntentStatus.VALIDATED, priority)
        except Exception:
            await self.sequencer.abort(intent)
            raise

        await self._enqueue(record, quote)
        return record

    async def _ensure_fee_rate(self) -> None:
        if not self.monitor.has_sample:
            await self.monitor.sample()

    async def _enqueue(self, record: IntentRecord, quote: FeeQuote) -> None:
        self.store.set_fee(record, quote.fee, quote.to_dict())
        self.store.transition(record, IntentStatus.QUEUED)
        await self.queue.enqueue(record, quote)

    async def _reprice(self, record: IntentRecord) -> bool:
        try:
            quote = await self.fees.price_intent(record.intent)
        except RelayError as e:
            logger.warning(
                f"Re-pricing intent {record.intent_id[:8]} failed: {e}",
                extra={"intent_id": record.intent_id},
            )
            return False
        if not await self.queue.reprice(record.intent.key, quote):
            return False
        self.store.set_fee(record, quote.fee, quote.to_dict())
        return True

    # ------------------------------------------------------------------
    # Queries and operator actions
    # ------------------------------------------------------------------

    async def estimate_fee(self, request: FeeEstimateRequest) -> FeeEstimateResponse:
        """Fee a transfer would pay right now, plus a maxFee recommendation."""
        snapshot = self.assets.snapshot()
        if snapshot.get(request.asset) is None:
            raise ValidationError(
                ValidationError.UNSUPPORTED_ASSET, f"asset {request.asset} is not supported"
            )
        if snapshot.is_paused(request.asset):
            raise ValidationError(ValidationError.ASSET_PAUSED, f"asset {request.asset} is paused")
        if request.amount <= 0:
            raise ValidationError(ValidationError.MALFORMED, "amount must be positive")

        await self._ensure_fee_rate()
        quote = await self.fees.quote(request.asset)
        if quote.fee >= request.amount:
            raise FeeExceedsMaximum(
                quote.fee,
                request.amount,
                f"fee {quote.fee} is not below transfer amount {request.amount}",
            )

        peak = quote
        if quote.predicted_fee_rate > quote.fee_rate:
            peak = await self.fees.quote(request.asset, fee_rate=quote.predicted_fee_rate)
        headroom = 1 + Decimal(str(self.settings.max_recommended_fee_headroom_pct)) / 100
        max_recommended = int((Decimal(peak.fee) * headroom).to_integral_value(ROUND_CEILING))

        depth = len(self.queue) + self.queue.in_flight
        eta = self.settings.block_time_seconds * (depth / self.settings.dispatch_workers + 1)
        if quote.fee_rate_elevated:
            eta *= 2

        return FeeEstimateResponse(
            fee_in_asset=quote.fee,
            amount_after_fee=request.amount - quote.fee,
            estimated_inclusion_seconds=round(eta, 2),
            max_recommended_fee=max_recommended,
        )

    def get_status(self, intent_id: str) -> IntentRecord:
        return self.store.require(intent_id)

    def supported_assets(self) -> AssetSnapshot:
        return self.assets.snapshot()

    async def cancel(self, intent_id: str) -> IntentRecord:
        """Cancel an intent that has not been submitted yet.

        Raises:
            IntentNotFound: Unknown id.
            CancellationError: Already terminal, being dispatched, or submitted.
        """
        record = self.store.require(intent_id)
        if record.is_terminal:
            raise CancellationError(f"intent {intent_id} is already {record.status.value}")
        if record.status == IntentStatus.SUBMITTED or record.submission_ids:
            raise CancellationError(
                f"intent {intent_id} was already submitted; only a resubmission can supersede it"
            )
        if record.status == IntentStatus.QUEUED:
            entry = await self.queue.remove(record.intent.key)
            if entry is None:
                raise CancellationError(f"intent {intent_id} is being dispatched")
            record = entry.record

        if record.intent.is_expired(self._clock()):
            self.store.transition(record, IntentStatus.EXPIRED, error="deadline passed")
        else:
            self.store.transition(record, IntentStatus.REJECTED, error="cancelled")
        await self._on_terminal(record)
        return record

    async def resubmit(self, intent_id: str) -> IntentRecord:
        """Re-price a queued intent in place.

        Raises:
            InvalidState: The intent is not waiting in the queue.
            PricingError, ProfitabilityError, FeeExceedsMaximum: Entry left unchanged.
        """
        record = self.store.require(intent_id)
        entry = self.queue.get(record.intent.key)
        if (
            record.status != IntentStatus.QUEUED
            or entry is None
            or self.queue.is_in_flight(record.intent.key)
        ):
            raise InvalidState(f"intent {intent_id} is not waiting in the queue")

        quote = await self.fees.price_intent(record.intent)
        if not await self.queue.reprice(record.intent.key, quote):
            raise InvalidState(f"intent {intent_id} left the queue while re-pricing")
        self.store.set_fee(entry.record, quote.fee, quote.to_dict())
        return entry.record

    # ------------------------------------------------------------------
    # Terminal handling
    # ------------------------------------------------------------------

    async def _on_terminal(self, record: IntentRecord) -> None:
        """Advance the sender's nonce order and start its next held intent."""
        released = await self.sequencer.finalize(record.intent)
        while released is not None:
            current = self.store.get(released.intent_id) or released
            if current.is_terminal:
                released = await self.sequencer.finalize(current.intent)
                continue

            if current.intent.is_expired(self._clock()):
                self.store.transition(
                    current, IntentStatus.EXPIRED, error="deadline passed while held"
                )
                released = await self.sequencer.finalize(current.intent)
                continue

            try:
                quote = await self.fees.price_intent(current.intent)
            except RelayError as e:
                self.store.transition(
                    current, IntentStatus.REJECTED, error=f"{e.code}: {e.message}"
                )
                released = await self.sequencer.finalize(current.intent)
                continue

            await self._enqueue(current, quote)
            return

    async def sweep_expired(self) -> int:
        """Expire queued and held intents whose deadline has passed."""
        now = self._clock()
        count = 0

        for entry in await self.queue.expire(now):
            if self.store.transition(
                entry.record, IntentStatus.EXPIRED, error="deadline passed while queued"
            ):
                count += 1
            await self._on_terminal(entry.record)

        for held in self.sequencer.held_records():
            if not held.intent.is_expired(now):
                continue
            record = self.store.get(held.intent_id)
            if record is None or record.is_terminal:
                continue
            if self.store.transition(
                record, IntentStatus.EXPIRED, error="deadline passed while held"
            ):
                count += 1
            await self._on_terminal(record)

        if count:
            logger.info(f"Expired {count} intents", extra={"count": count})
        return count

    # ------------------------------------------------------------------
    # Workers and lifecycle
    # ------------------------------------------------------------------

    def _defer_low_priority(self) -> bool:
        return (
            self.settings.defer_low_priority_when_elevated
            and self.monitor.has_sample
            and self.monitor.is_elevated()
        )

    async def _probe_settlement(self) -> bool:
        try:
            healthy = await self.ledger.is_healthy()
        except Exception as e:
            logger.warning(f"Settlement probe failed: {e}")
            healthy = False

        if healthy:
            self.breaker.record_success()
            self.health.mark_healthy()
            return True
        self.breaker.record_failure("settlement probe failed")
        return False

    async def process_entry(self, entry: QueueEntry) -> IntentStatus | None:
        """Broadcast one dequeued entry. Returns None when the entry was requeued."""
        record = entry.record
        try:
            status = await self.broadcaster.dispatch(entry)
        except LedgerUnavailable as e:
            self.breaker.record_failure(str(e))
            if self.breaker.tripped:
                self.health.mark_degraded(f"settlement layer unavailable: {e}")
            await self.queue.requeue(
                entry, delay=self.settings.retry_backoff_base_seconds, error=str(e)
            )
            return None
        except Exception as e:
            logger.exception(
                f"Dispatch of intent {record.intent_id[:8]} crashed",
                extra={"intent_id": record.intent_id},
            )
            self.store.transition(record, IntentStatus.FAILED, error=f"internal error: {e}")
            status = record.status

        self.breaker.record_success()
        self.health.mark_healthy()
        await self.queue.complete(entry.key)
        self.health.record_dispatch(status.value)
        await self._on_terminal(record)
        return status

    async def _worker(self, index: int) -> None:
        logger.debug(f"Dispatch worker {index} started")
        while self._running:
            if self.breaker.tripped:
                if not self.breaker.probe_due or not await self._probe_settlement():
                    await asyncio.sleep(WORKER_POLL_SECONDS)
                    continue

            entry = await self.queue.wait_next(
                WORKER_POLL_SECONDS, defer_low_priority=self._defer_low_priority()
            )
            if entry is None:
                continue
            await self.process_entry(entry)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.expiry_sweep_interval_seconds)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}", exc_info=True)

    async def recover(self) -> int:
        """Rebuild nonce order and the queue from persisted non-terminal records."""
        restored = 0
        for record in self.store.load_active():
            try:
                admission = await self.sequencer.restore(record)
            except ReplayError as e:
                self.store.transition(record, IntentStatus.FAILED, error=f"recovery: {e}")
                continue
            except LedgerUnavailable as e:
                logger.error(
                    f"Cannot restore intent {record.intent_id[:8]}: {e}",
                    extra={"intent_id": record.intent_id},
                )
                continue

            restored += 1
            if admission != Admission.READY:
                continue

            if record.status == IntentStatus.SUBMITTED and record.fee_quote:
                await self.queue.enqueue(record, FeeQuote.from_dict(record.fee_quote))
                continue

            try:
                quote = await self.fees.price_intent(record.intent)
            except RelayError as e:
                self.store.transition(
                    record, IntentStatus.REJECTED, error=f"{e.code}: {e.message}"
                )
                await self._on_terminal(record)
                continue
            await self._enqueue(record, quote)

        logger.info(f"Recovered {restored} active intents", extra={"queued": len(self.queue)})
        return restored

    async def start(self, run_workers: bool = True) -> None:
        """Start sampling, recover persisted state and launch workers."""
        if self._running:
            return
        self._running = True

        await self._ensure_fee_rate()
        self.monitor.start()
        await self.recover()

        if run_workers:
            self._tasks = [
                asyncio.create_task(self._worker(i), name=f"dispatch-worker-{i}")
                for i in range(self.settings.dispatch_workers)
            ]
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="expiry-sweep"))
        logger.info(
            "Relay engine started",
            extra={"mode": self.settings.mode, "workers": self.settings.dispatch_workers},
        )

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.monitor.stop()
        logger.info("Relay engine stopped")

    async def close(self) -> None:
        await self.stop()
        await self.prices.close()
        await self.ledger.close()
