"""Settlement layer (Ledger Interface) clients.

The ledger call is all-or-nothing: it verifies the intent's signature and
nonce, then moves `amount - fee` to the recipient and `fee` to the fee
collector, or reverts with no effect. Nothing here assumes a partially
applied transfer can be observed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD

from relayb0t.errors import BroadcastDropped, BroadcastRejected, LedgerUnavailable

if TYPE_CHECKING:
    from relayb0t.execution.intents import TransferIntent

logger = logging.getLogger(__name__)


class ReceiptStatus(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    DROPPED = "dropped"


@dataclass(frozen=True)
class LedgerReceipt:
    """Final word from the settlement layer on one submission."""

    submission_id: str
    status: ReceiptStatus
    actual_fee: int | None = None
    reason: str | None = None
    reference: str | None = None


class Ledger(ABC):
    """Boundary to the settlement layer."""

    name = "ledger"

    @abstractmethod
    async def submit(
        self, intent: "TransferIntent", fee_rate: int, replaces: str | None = None
    ) -> str:
        """Submit the transfer at `fee_rate`; `replaces` supersedes an earlier submission.

        Raises LedgerUnavailable when the settlement layer cannot be reached,
        BroadcastRejected when it refuses the call outright.
        """

    @abstractmethod
    async def get_receipt(self, submission_id: str) -> LedgerReceipt | None:
        """Receipt for a submission, or None while it is still pending."""

    @abstractmethod
    async def get_nonce(self, asset: str, sender: str) -> int:
        """Next nonce the settlement layer will accept for `sender` on `asset`."""

    @abstractmethod
    async def current_fee_rate(self) -> int:
        """Current fee rate in wei per resource unit."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Whether the settlement layer is reachable."""

    async def close(self) -> None:
        return None


FORWARDER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "transferWithFee",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "maxFee", "type": "uint256"},
            {"name": "nonce", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "nonces",
        "stateMutability": "view",
        "inputs": [
            {"name": "token", "type": "address"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "FeeTransfer",
        "anonymous": False,
        "inputs": [
            {"name": "token", "type": "address", "indexed": True},
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "fee", "type": "uint256", "indexed": False},
        ],
    },
]

# Gas limit headroom over the node's estimate
GAS_LIMIT_MULTIPLIER = 1.2

_UNREACHABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class Web3Ledger(Ledger):
    """Forwarder contract client over JSON-RPC.

    Replacement submissions reuse the relayer account nonce of the submission
    they replace, so at most one of them can ever be mined.
    """

    name = "web3"

    def __init__(
        self,
        rpc_url: str,
        forwarder_address: str,
        relayer_private_key: str,
        chain_id: int,
        priority_fee_wei: int = 1_000_000_000,
        timeout: float = 10.0,
        w3: Web3 | None = None,
    ) -> None:
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.account = Account.from_key(relayer_private_key)
        self.chain_id = chain_id
        self.priority_fee_wei = priority_fee_wei
        self.forwarder = self.w3.eth.contract(
            address=Web3.to_checksum_address(forwarder_address), abi=FORWARDER_ABI
        )
        self._nonce_lock = asyncio.Lock()
        self._next_tx_nonce: int | None = None
        self._tx_nonces: dict[str, int] = {}

    async def submit(
        self, intent: "TransferIntent", fee_rate: int, replaces: str | None = None
    ) -> str:
        async with self._nonce_lock:
            try:
                if replaces is not None and replaces in self._tx_nonces:
                    tx_nonce = self._tx_nonces[replaces]
                else:
                    pending = await asyncio.to_thread(
                        self.w3.eth.get_transaction_count, self.account.address, "pending"
                    )
                    tx_nonce = max(pending, self._next_tx_nonce or 0)
                    self._next_tx_nonce = tx_nonce + 1
                tx_hash = await asyncio.to_thread(self._send, intent, fee_rate, tx_nonce)
            except _UNREACHABLE as e:
                self._next_tx_nonce = None
                raise LedgerUnavailable(f"settlement layer unreachable: {e}")
            except ContractLogicError as e:
                self._next_tx_nonce = None
                raise BroadcastRejected(str(e))
            except (Web3RPCError, ValueError) as e:
                # Node-level refusals: underpriced replacement, nonce races, mempool limits
                self._next_tx_nonce = None
                raise BroadcastDropped(f"node refused submission: {e}")

        self._tx_nonces[tx_hash] = tx_nonce
        logger.info(
            f"Submitted transfer {tx_hash}",
            extra={
                "tx_hash": tx_hash,
                "tx_nonce": tx_nonce,
                "fee_rate": fee_rate,
                "replaces": replaces,
            },
        )
        return tx_hash

    def _send(self, intent: "TransferIntent", fee_rate: int, tx_nonce: int) -> str:
        fn = self.forwarder.functions.transferWithFee(
            Web3.to_checksum_address(intent.asset),
            Web3.to_checksum_address(intent.sender),
            Web3.to_checksum_address(intent.recipient),
            intent.amount,
            intent.max_fee,
            intent.nonce,
            intent.deadline,
            Web3.to_bytes(hexstr=intent.signature),
        )
        # Reverts here (bad signature, used nonce, paused asset) surface as ContractLogicError
        gas = fn.estimate_gas({"from": self.account.address})
        tx = fn.build_transaction(
            {
                "from": self.account.address,
                "nonce": tx_nonce,
                "gas": int(gas * GAS_LIMIT_MULTIPLIER),
                "maxFeePerGas": fee_rate,
                "maxPriorityFeePerGas": min(self.priority_fee_wei, fee_rate),
                "chainId": self.chain_id,
            }
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    async def get_receipt(self, submission_id: str) -> LedgerReceipt | None:
        try:
            return await asyncio.to_thread(self._get_receipt, submission_id)
        except _UNREACHABLE as e:
            raise LedgerUnavailable(f"settlement layer unreachable: {e}")

    def _get_receipt(self, submission_id: str) -> LedgerReceipt | None:
        try:
            receipt = self.w3.eth.get_transaction_receipt(submission_id)
        except TransactionNotFound:
            return self._pending_or_dropped(submission_id)

        reference = f"{submission_id}@{receipt['blockNumber']}"
        if receipt["status"] != 1:
            return LedgerReceipt(
                submission_id=submission_id,
                status=ReceiptStatus.REJECTED,
                reason="execution reverted",
                reference=reference,
            )

        events = self.forwarder.events.FeeTransfer().process_receipt(receipt, errors=DISCARD)
        actual_fee = int(events[0]["args"]["fee"]) if events else None
        return LedgerReceipt(
            submission_id=submission_id,
            status=ReceiptStatus.CONFIRMED,
            actual_fee=actual_fee,
            reference=reference,
        )

    def _pending_or_dropped(self, submission_id: str) -> LedgerReceipt | None:
        tx_nonce = self._tx_nonces.get(submission_id)
        if tx_nonce is not None:
            mined = self.w3.eth.get_transaction_count(self.account.address, "latest")
            if mined > tx_nonce:
                # Relayer nonce consumed by a different transaction (a replacement)
                return LedgerReceipt(
                    submission_id=submission_id,
                    status=ReceiptStatus.DROPPED,
                    reason="replaced by another transaction",
                )
        try:
            self.w3.eth.get_transaction(submission_id)
        except TransactionNotFound:
            return LedgerReceipt(
                submission_id=submission_id,
                status=ReceiptStatus.DROPPED,
                reason="evicted from mempool",
            )
        return None

    async def get_nonce(self, asset: str, sender: str) -> int:
        fn = self.forwarder.functions.nonces(
            Web3.to_checksum_address(asset), Web3.to_checksum_address(sender)
        )
        try:
            return int(await asyncio.to_thread(fn.call))
        except _UNREACHABLE as e:
            raise LedgerUnavailable(f"settlement layer unreachable: {e}")

    async def current_fee_rate(self) -> int:
        try:
            return int(await asyncio.to_thread(lambda: self.w3.eth.gas_price))
        except _UNREACHABLE as e:
            raise LedgerUnavailable(f"settlement layer unreachable: {e}")

    async def is_healthy(self) -> bool:
        return bool(await asyncio.to_thread(self.w3.is_connected))
