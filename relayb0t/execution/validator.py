"""Intent validation. Stateless apart from the asset snapshot it reads."""

import logging
import time
from typing import Callable

from web3 import Web3

from relayb0t.data.assets import AssetRegistry
from relayb0t.errors import ValidationError
from relayb0t.execution.intents import TransferIntent
from relayb0t.execution.signing import SigningDomain, recover_signer

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40
UINT256_MAX = 2**256 - 1


class IntentValidator:
    """Runs the validation checks in order: deadline, signature, asset, amounts.

    The first failing check raises ValidationError with its cause code.
    """

    def __init__(
        self,
        assets: AssetRegistry,
        domain: SigningDomain,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.assets = assets
        self.domain = domain
        self._clock = clock

    def validate(self, intent: TransferIntent) -> None:
        """Validate an intent.

        Args:
            intent: Signed transfer intent.

        Raises:
            ValidationError: On the first failed check.
        """
        self._check_deadline(intent)
        self._check_signature(intent)
        self._check_asset(intent)
        self._check_amounts(intent)

    def _check_deadline(self, intent: TransferIntent) -> None:
        if intent.is_expired(self._clock()):
            raise ValidationError(
                ValidationError.EXPIRED, f"deadline {intent.deadline} has passed"
            )

    def _check_signature(self, intent: TransferIntent) -> None:
        # Fields that cannot be typed-data encoded make the signature meaningless
        for name in ("asset", "sender", "recipient"):
            if not Web3.is_address(getattr(intent, name)):
                raise ValidationError(ValidationError.MALFORMED, f"{name} is not a valid address")
        for name in ("amount", "max_fee", "nonce", "deadline"):
            if not 0 <= getattr(intent, name) <= UINT256_MAX:
                raise ValidationError(ValidationError.MALFORMED, f"{name} is out of range")
        try:
            signer = recover_signer(intent, self.domain)
        except Exception as e:
            # Undecodable signature bytes or unencodable fields
            logger.debug(f"Signature recovery failed: {e}", extra={"sender": intent.sender})
            raise ValidationError(ValidationError.BAD_SIGNATURE, "signature could not be recovered")
        if signer.lower() != intent.sender.lower():
            raise ValidationError(
                ValidationError.BAD_SIGNATURE, "signature does not match sender"
            )

    def _check_asset(self, intent: TransferIntent) -> None:
        snapshot = self.assets.snapshot()
        if snapshot.get(intent.asset) is None:
            raise ValidationError(
                ValidationError.UNSUPPORTED_ASSET, f"asset {intent.asset} is not supported"
            )
        if snapshot.is_paused(intent.asset):
            raise ValidationError(ValidationError.ASSET_PAUSED, f"asset {intent.asset} is paused")

    def _check_amounts(self, intent: TransferIntent) -> None:
        if intent.amount <= 0:
            raise ValidationError(ValidationError.MALFORMED, "amount must be positive")
        if intent.recipient.lower() == ZERO_ADDRESS:
            raise ValidationError(ValidationError.MALFORMED, "recipient is the zero address")
