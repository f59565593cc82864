"""EIP-712 typed structured signing for transfer intents.

The domain binds a signature to one chain and one forwarder contract, so an
intent signed for one deployment cannot be replayed against another.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

if TYPE_CHECKING:
    from relayb0t.config import Settings
    from relayb0t.execution.intents import TransferIntent

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_TYPE = [
    {"name": "token", "type": "address"},
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "amount", "type": "uint256"},
    {"name": "maxFee", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "deadline", "type": "uint256"},
]


@dataclass(frozen=True)
class SigningDomain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SigningDomain":
        return cls(
            name=settings.domain_name,
            version=settings.domain_version,
            chain_id=settings.chain_id,
            verifying_contract=settings.forwarder_address,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": Web3.to_checksum_address(self.verifying_contract),
        }


def typed_data(intent: "TransferIntent", domain: SigningDomain) -> dict[str, Any]:
    """Full EIP-712 payload for an intent (what wallets sign)."""
    return {
        "types": {"EIP712Domain": EIP712_DOMAIN_TYPE, "Transfer": TRANSFER_TYPE},
        "primaryType": "Transfer",
        "domain": domain.to_dict(),
        "message": {
            "token": Web3.to_checksum_address(intent.asset),
            "from": Web3.to_checksum_address(intent.sender),
            "to": Web3.to_checksum_address(intent.recipient),
            "amount": intent.amount,
            "maxFee": intent.max_fee,
            "nonce": intent.nonce,
            "deadline": intent.deadline,
        },
    }


def recover_signer(intent: "TransferIntent", domain: SigningDomain) -> str:
    """Return the checksum address that produced `intent.signature`."""
    signable = encode_typed_data(full_message=typed_data(intent, domain))
    return Account.recover_message(signable, signature=intent.signature)


def sign_intent(
    intent: "TransferIntent", private_key: str, domain: SigningDomain
) -> "TransferIntent":
    """Sign an intent with `private_key` and return a copy carrying the signature."""
    signable = encode_typed_data(full_message=typed_data(intent, domain))
    signed = Account.sign_message(signable, private_key=private_key)
    return replace(intent, signature=Web3.to_hex(signed.signature))
