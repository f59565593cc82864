"""Relay error taxonomy.

Synchronous errors (validation, replay, pricing) are raised to the caller
before any state is created. Broadcast errors drive the retry policy and end
up attached to the intent record.
"""


class RelayError(Exception):
    """Base class for all relay errors."""

    code = "relay_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.message}


class ValidationError(RelayError):
    """Intent failed validation. `cause` names the failed check."""

    code = "validation_error"

    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"
    UNSUPPORTED_ASSET = "unsupported_asset"
    ASSET_PAUSED = "asset_paused"
    MALFORMED = "malformed"

    def __init__(self, cause: str, message: str) -> None:
        super().__init__(message)
        self.cause = cause

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "cause": self.cause, "detail": self.message}


class ReplayError(RelayError):
    """Nonce already finalized for this sender."""

    code = "replay"


class PricingError(RelayError):
    """No fresh price quote or usable fee-rate estimate."""

    code = "pricing_error"


class ProfitabilityError(RelayError):
    """Fee falls below the operator's minimum."""

    code = "unprofitable"


class FeeExceedsMaximum(RelayError):
    """Computed fee exceeds the signed maximum (or is not below the amount)."""

    code = "fee_exceeds_maximum"

    def __init__(self, fee: int, cap: int, message: str | None = None) -> None:
        super().__init__(message or f"fee {fee} exceeds maximum {cap}")
        self.fee = fee
        self.cap = cap


class BroadcastError(RelayError):
    """Base for settlement submission outcomes other than confirmation."""

    code = "broadcast_error"
    retryable = False


class BroadcastDropped(BroadcastError):
    code = "dropped"
    retryable = True


class BroadcastTimedOut(BroadcastError):
    code = "timed_out"
    retryable = True


class BroadcastRejected(BroadcastError):
    """Ledger refused execution. The reason is passed through verbatim."""

    code = "rejected"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ExpiredInQueue(BroadcastError):
    code = "expired_in_queue"


class LedgerUnavailable(RelayError):
    """Settlement layer unreachable."""

    code = "ledger_unavailable"


class CancellationError(RelayError):
    code = "cannot_cancel"


class IntentNotFound(RelayError):
    code = "not_found"


class InvalidState(RelayError):
    """Operation not allowed in the intent's current state."""

    code = "invalid_state"
