"""Paper settlement layer with contract-faithful transfer semantics."""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from relayb0t.data.assets import AssetRegistry
from relayb0t.data.ledger_client import Ledger, LedgerReceipt, ReceiptStatus
from relayb0t.data.price_client import PriceQuoteChain
from relayb0t.errors import LedgerUnavailable, PricingError
from relayb0t.execution.fees import token_fee
from relayb0t.execution.intents import TransferIntent
from relayb0t.execution.signing import SigningDomain, recover_signer

logger = logging.getLogger(__name__)


@dataclass
class PaperSubmission:
    submission_id: str
    intent: TransferIntent
    fee_rate: int
    submitted_at: float
    replaces: str | None = None
    replaced: bool = False
    dropped: bool = False
    polls: int = 0
    receipt: LedgerReceipt | None = None


class PaperLedger(Ledger):
    """Simulates the forwarder contract.

    Execution Logic:
        - A submission is included only once its fee rate meets the network
          clearing rate; below it, it stays pending until the caller times out.
        - Inclusion re-checks everything the contract checks (deadline,
          signature, nonce, pause flag, fee cap, balance) and either applies the
          whole transfer or rejects with no effect.
        - Replacing a submission evicts the replaced one.
        - `drop_next` and `online` script mempool drops and outages.
    """

    name = "paper"

    def __init__(
        self,
        assets: AssetRegistry,
        prices: PriceQuoteChain,
        domain: SigningDomain,
        fee_collector: str,
        fee_rate: int = 30_000_000_000,
        inclusion_polls: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the paper ledger.

        Args:
            assets: Supported assets (decimals, gas, pause flags).
            prices: Price source for the authoritative fee conversion.
            domain: Signing domain the forwarder verifies against.
            fee_collector: Account credited with fees.
            fee_rate: Initial network fee rate (wei).
            inclusion_polls: Pending polls before an eligible submission is included.
        """
        self.assets = assets
        self.prices = prices
        self.domain = domain
        self.fee_collector = fee_collector.lower()
        self.network_fee_rate = fee_rate
        self.clearing_fee_rate = fee_rate
        self.inclusion_polls = inclusion_polls
        self._clock = clock

        self.online = True
        self.drop_next = 0
        self.balances: dict[tuple[str, str], int] = {}
        self.last_nonce: dict[tuple[str, str], int] = {}
        self.executed: list[dict[str, Any]] = []
        self.submissions: dict[str, PaperSubmission] = {}
        self.block_number = 0

    def set_fee_rate(self, fee_rate: int, clearing_fee_rate: int | None = None) -> None:
        """Move the network fee rate (and, by default, the clearing rate with it)."""
        self.network_fee_rate = fee_rate
        self.clearing_fee_rate = fee_rate if clearing_fee_rate is None else clearing_fee_rate

    def credit(self, asset: str, account: str, amount: int) -> None:
        key = (asset.lower(), account.lower())
        self.balances[key] = self.balances.get(key, 0) + amount

    def balance_of(self, asset: str, account: str) -> int:
        return self.balances.get((asset.lower(), account.lower()), 0)

    def _require_online(self) -> None:
        if not self.online:
            raise LedgerUnavailable("paper ledger offline")

    async def submit(
        self, intent: TransferIntent, fee_rate: int, replaces: str | None = None
    ) -> str:
        self._require_online()
        submission = PaperSubmission(
            submission_id="0x" + secrets.token_hex(32),
            intent=intent,
            fee_rate=fee_rate,
            submitted_at=self._clock(),
            replaces=replaces,
        )
        if replaces is not None:
            previous = self.submissions.get(replaces)
            if previous is not None and previous.receipt is None:
                previous.replaced = True
        if self.drop_next > 0:
            self.drop_next -= 1
            submission.dropped = True

        self.submissions[submission.submission_id] = submission
        logger.info(
            f"Paper submission {submission.submission_id[:10]}",
            extra={
                "asset": intent.asset,
                "sender": intent.sender,
                "nonce": intent.nonce,
                "fee_rate": fee_rate,
                "replaces": replaces,
            },
        )
        return submission.submission_id

    async def get_receipt(self, submission_id: str) -> LedgerReceipt | None:
        self._require_online()
        submission = self.submissions.get(submission_id)
        if submission is None:
            return LedgerReceipt(submission_id, ReceiptStatus.DROPPED, reason="unknown submission")
        if submission.receipt is not None:
            return submission.receipt
        if submission.replaced:
            return LedgerReceipt(submission_id, ReceiptStatus.DROPPED, reason="replaced")
        if submission.dropped:
            return LedgerReceipt(submission_id, ReceiptStatus.DROPPED, reason="evicted from mempool")
        if submission.fee_rate < self.clearing_fee_rate:
            return None

        submission.polls += 1
        if submission.polls <= self.inclusion_polls:
            return None

        submission.receipt = await self._execute(submission)
        return submission.receipt

    async def _execute(self, submission: PaperSubmission) -> LedgerReceipt:
        intent = submission.intent
        sid = submission.submission_id
        self.block_number += 1
        reference = f"paper:{self.block_number}:{sid}"

        def reject(reason: str) -> LedgerReceipt:
            logger.warning(
                f"Paper ledger rejected {sid[:10]}: {reason}",
                extra={"sender": intent.sender, "nonce": intent.nonce},
            )
            return LedgerReceipt(sid, ReceiptStatus.REJECTED, reason=reason, reference=reference)

        snapshot = self.assets.snapshot()
        cfg = snapshot.get(intent.asset)
        if cfg is None:
            return reject("unsupported asset")
        if snapshot.is_paused(intent.asset):
            return reject("asset paused")
        if self._clock() > intent.deadline:
            return reject("deadline passed")

        try:
            signer = recover_signer(intent, self.domain)
        except Exception as e:
            return reject(f"invalid signature: {e}")
        if signer.lower() != intent.sender.lower():
            return reject("invalid signature")

        nonce_key = intent.sender_key
        if intent.nonce <= self.last_nonce.get(nonce_key, -1):
            return reject("nonce already used")

        try:
            quote = await self.prices.get_quote(cfg)
        except PricingError as e:
            return reject(f"price unavailable: {e}")
        actual_fee = token_fee(cfg.transfer_gas * submission.fee_rate, quote.price, cfg.decimals)
        if actual_fee > intent.max_fee:
            return reject(f"fee {actual_fee} exceeds maxFee {intent.max_fee}")
        if actual_fee >= intent.amount:
            return reject(f"fee {actual_fee} not below amount {intent.amount}")

        sender_key = (intent.asset, intent.sender)
        if self.balances.get(sender_key, 0) < intent.amount:
            return reject("insufficient balance")

        self.balances[sender_key] -= intent.amount
        self.credit(intent.asset, intent.recipient, intent.amount - actual_fee)
        self.credit(intent.asset, self.fee_collector, actual_fee)
        self.last_nonce[nonce_key] = intent.nonce
        self.executed.append(
            {
                "submission_id": sid,
                "asset": intent.asset,
                "sender": intent.sender,
                "recipient": intent.recipient,
                "nonce": intent.nonce,
                "amount": intent.amount,
                "fee": actual_fee,
                "fee_rate": submission.fee_rate,
                "block": self.block_number,
            }
        )
        logger.info(
            f"Paper transfer executed {sid[:10]}",
            extra={"sender": intent.sender, "nonce": intent.nonce, "fee": actual_fee},
        )
        return LedgerReceipt(
            sid, ReceiptStatus.CONFIRMED, actual_fee=actual_fee, reference=reference
        )

    async def get_nonce(self, asset: str, sender: str) -> int:
        self._require_online()
        return self.last_nonce.get((asset.lower(), sender.lower()), -1) + 1

    async def current_fee_rate(self) -> int:
        self._require_online()
        return self.network_fee_rate

    async def is_healthy(self) -> bool:
        return self.online
