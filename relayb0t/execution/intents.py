"""Transfer intents, their mutable records, and durable storage of both."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from relayb0t.data.models import IntentSubmission
from relayb0t.data.storage import BroadcastRecordDB, IntentRecordDB, SenderNonceDB
from relayb0t.errors import IntentNotFound

logger = logging.getLogger(__name__)


class IntentStatus(str, Enum):
    """Intent lifecycle states."""

    RECEIVED = "received"
    VALIDATED = "validated"
    QUEUED = "queued"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {IntentStatus.CONFIRMED, IntentStatus.REJECTED, IntentStatus.EXPIRED, IntentStatus.FAILED}
)


class BroadcastOutcome(str, Enum):
    """Per-attempt submission states."""

    PENDING_SUBMIT = "pending_submit"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    DROPPED = "dropped"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class TransferIntent:
    """A signed transfer authorization. Never mutated after signing."""

    asset: str
    sender: str
    recipient: str
    amount: int
    max_fee: int
    nonce: int
    deadline: int
    signature: str = ""

    @classmethod
    def from_submission(cls, submission: IntentSubmission) -> "TransferIntent":
        return cls(
            asset=submission.asset.lower(),
            sender=submission.from_.lower(),
            recipient=submission.to.lower(),
            amount=submission.amount,
            max_fee=submission.max_fee,
            nonce=submission.nonce,
            deadline=submission.deadline,
            signature=submission.signature,
        )

    @property
    def sender_key(self) -> tuple[str, str]:
        """Nonce space this intent belongs to."""
        return (self.asset.lower(), self.sender.lower())

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.asset.lower(), self.sender.lower(), self.nonce)

    def is_expired(self, now: float) -> bool:
        return now > self.deadline

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset": self.asset,
            "from": self.sender,
            "to": self.recipient,
            "amount": self.amount,
            "maxFee": self.max_fee,
            "nonce": self.nonce,
            "deadline": self.deadline,
            "signature": self.signature,
        }


@dataclass
class BroadcastRecord:
    """One submission attempt."""

    intent_id: str
    attempt: int
    fee_rate: int
    outcome: BroadcastOutcome = BroadcastOutcome.PENDING_SUBMIT
    submission_id: str | None = None
    error: str | None = None
    row_id: int | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def outstanding(self) -> bool:
        return self.outcome == BroadcastOutcome.SUBMITTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "submission_id": self.submission_id,
            "fee_rate": self.fee_rate,
            "outcome": self.outcome.value,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


class IntentRecord:
    """Relay-owned mutable companion of a TransferIntent."""

    def __init__(
        self,
        intent_id: str,
        intent: TransferIntent,
        status: IntentStatus = IntentStatus.RECEIVED,
        priority: int = 0,
    ) -> None:
        self.intent_id = intent_id
        self.intent = intent
        self.status = status
        self.priority = priority
        self.attempt_count = 0
        self.last_error: str | None = None
        self.computed_fee: int | None = None
        self.actual_fee: int | None = None
        self.fee_quote: dict[str, Any] | None = None
        self.settlement_reference: str | None = None
        self.broadcasts: list[BroadcastRecord] = []
        self.created_at = datetime.utcnow()
        self.finalized_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def submission_ids(self) -> list[str]:
        return [b.submission_id for b in self.broadcasts if b.submission_id]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "intent_id": self.intent_id,
            "intent": self.intent.to_dict(),
            "status": self.status.value,
            "priority": self.priority,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "computed_fee": self.computed_fee,
            "actual_fee": self.actual_fee,
            "settlement_reference": self.settlement_reference,
            "submission_ids": self.submission_ids,
            "broadcasts": [b.to_dict() for b in self.broadcasts],
            "created_at": self.created_at.isoformat(),
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


# Integer columns stored as decimal strings
_STRING_FIELDS = frozenset({"actual_fee", "computed_fee"})


def _opt_int(value: str | None) -> int | None:
    return int(value) if value is not None else None


class IntentManager:
    """Persists intent records, broadcast attempts and per-sender nonce counters.

    All status changes go through `transition`, which refuses to touch a
    record once it is terminal.
    """

    def __init__(self, db_session: Session) -> None:
        """Initialize intent manager.

        Args:
            db_session: Database session.
        """
        self.db_session = db_session

    def create(
        self,
        intent: TransferIntent,
        status: IntentStatus = IntentStatus.VALIDATED,
        priority: int = 0,
    ) -> IntentRecord:
        """Persist a new record for a validated intent."""
        record = IntentRecord(str(uuid.uuid4()), intent, status=status, priority=priority)
        db_record = IntentRecordDB(
            intent_id=record.intent_id,
            asset=intent.asset.lower(),
            sender=intent.sender.lower(),
            recipient=intent.recipient.lower(),
            amount=str(intent.amount),
            max_fee=str(intent.max_fee),
            nonce=str(intent.nonce),
            deadline=intent.deadline,
            signature=intent.signature,
            priority=priority,
            status=status.value,
            attempt_count=0,
            status_history=[self._history_entry(status)],
            created_at=record.created_at,
        )
        self.db_session.add(db_record)
        self.db_session.commit()

        logger.info(
            f"Created intent record: {record.intent_id[:8]}",
            extra={
                "intent_id": record.intent_id,
                "asset": intent.asset,
                "sender": intent.sender,
                "nonce": intent.nonce,
                "status": status.value,
            },
        )
        return record

    def get(self, intent_id: str) -> IntentRecord | None:
        db_record = self._row(intent_id)
        if db_record is None:
            return None
        return self._load(db_record)

    def require(self, intent_id: str) -> IntentRecord:
        record = self.get(intent_id)
        if record is None:
            raise IntentNotFound(f"intent {intent_id} not found")
        return record

    def find_by_signature(self, intent: TransferIntent) -> IntentRecord | None:
        """Record for the exact same signed intent, if it was seen before."""
        db_record = (
            self.db_session.query(IntentRecordDB)
            .filter_by(
                asset=intent.asset.lower(),
                sender=intent.sender.lower(),
                nonce=str(intent.nonce),
                signature=intent.signature,
            )
            .first()
        )
        return self._load(db_record) if db_record else None

    def find_active_by_nonce(self, intent: TransferIntent) -> IntentRecord | None:
        """Non-terminal record occupying the intent's (asset, sender, nonce) slot."""
        db_record = (
            self.db_session.query(IntentRecordDB)
            .filter_by(
                asset=intent.asset.lower(),
                sender=intent.sender.lower(),
                nonce=str(intent.nonce),
            )
            .filter(IntentRecordDB.status.notin_([s.value for s in TERMINAL_STATUSES]))
            .first()
        )
        return self._load(db_record) if db_record else None

    def load_active(self) -> list[IntentRecord]:
        """All non-terminal records, ordered by sender key then nonce."""
        rows = (
            self.db_session.query(IntentRecordDB)
            .filter(IntentRecordDB.status.notin_([s.value for s in TERMINAL_STATUSES]))
            .all()
        )
        records = [self._load(r) for r in rows]
        records.sort(key=lambda r: (r.intent.sender_key, r.intent.nonce))
        return records

    def transition(
        self,
        record: IntentRecord,
        status: IntentStatus,
        error: str | None = None,
        **fields: Any,
    ) -> bool:
        """Move a record to `status`. Returns False if the record is already terminal."""
        db_record = self._row(record.intent_id)
        if db_record is None:
            raise IntentNotFound(f"intent {record.intent_id} not found")

        if IntentStatus(db_record.status) in TERMINAL_STATUSES:
            logger.warning(
                f"Refusing to change terminal intent {record.intent_id[:8]}",
                extra={
                    "intent_id": record.intent_id,
                    "current": db_record.status,
                    "requested": status.value,
                },
            )
            return False

        record.status = status
        db_record.status = status.value
        if error is not None:
            record.last_error = error
            db_record.last_error = error
        for name, value in fields.items():
            setattr(record, name, value)
            setattr(db_record, name, str(value) if name in _STRING_FIELDS and value is not None else value)
        if status in TERMINAL_STATUSES:
            record.finalized_at = datetime.utcnow()
            db_record.finalized_at = record.finalized_at
        db_record.status_history = [
            *(db_record.status_history or []),
            self._history_entry(status, error),
        ]
        self.db_session.commit()

        log = logger.error if status == IntentStatus.FAILED else logger.info
        log(
            f"Intent {record.intent_id[:8]} -> {status.value}",
            extra={"intent_id": record.intent_id, "status": status.value, "error": error},
        )
        return True

    def set_fee(self, record: IntentRecord, fee: int, quote: dict[str, Any]) -> None:
        """Store the advisory fee computed for a (re)pricing."""
        db_record = self._row(record.intent_id)
        if db_record is None or IntentStatus(db_record.status) in TERMINAL_STATUSES:
            return
        record.computed_fee = fee
        record.fee_quote = quote
        db_record.computed_fee = str(fee)
        db_record.fee_quote = quote
        self.db_session.commit()

    def add_broadcast(self, record: IntentRecord, fee_rate: int) -> BroadcastRecord:
        """Start a new submission attempt in `pending_submit`."""
        broadcast = BroadcastRecord(
            intent_id=record.intent_id,
            attempt=len(record.broadcasts) + 1,
            fee_rate=fee_rate,
        )
        row = BroadcastRecordDB(
            intent_id=record.intent_id,
            attempt=broadcast.attempt,
            fee_rate=str(fee_rate),
            outcome=broadcast.outcome.value,
            created_at=broadcast.created_at,
        )
        self.db_session.add(row)
        self.db_session.commit()
        broadcast.row_id = row.id
        record.broadcasts.append(broadcast)
        return broadcast

    def mark_submitted(
        self, record: IntentRecord, broadcast: BroadcastRecord, submission_id: str
    ) -> None:
        """Attach the ledger's submission id and count the attempt."""
        self.update_broadcast(broadcast, BroadcastOutcome.SUBMITTED, submission_id=submission_id)
        self.transition(
            record, IntentStatus.SUBMITTED, attempt_count=record.attempt_count + 1
        )

    def update_broadcast(
        self,
        broadcast: BroadcastRecord,
        outcome: BroadcastOutcome,
        submission_id: str | None = None,
        error: str | None = None,
    ) -> None:
        row = self.db_session.get(BroadcastRecordDB, broadcast.row_id)
        broadcast.outcome = outcome
        row.outcome = outcome.value
        if submission_id is not None:
            broadcast.submission_id = submission_id
            row.submission_id = submission_id
        if error is not None:
            broadcast.error = error
            row.error = error
        self.db_session.commit()

    def get_next_nonce(self, asset: str, sender: str) -> int | None:
        row = (
            self.db_session.query(SenderNonceDB)
            .filter_by(asset=asset.lower(), sender=sender.lower())
            .first()
        )
        return int(row.next_nonce) if row else None

    def set_next_nonce(self, asset: str, sender: str, next_nonce: int) -> None:
        row = (
            self.db_session.query(SenderNonceDB)
            .filter_by(asset=asset.lower(), sender=sender.lower())
            .first()
        )
        if row is None:
            row = SenderNonceDB(asset=asset.lower(), sender=sender.lower(), next_nonce=str(next_nonce))
            self.db_session.add(row)
        else:
            row.next_nonce = str(next_nonce)
        self.db_session.commit()

    def _row(self, intent_id: str) -> IntentRecordDB | None:
        return self.db_session.query(IntentRecordDB).filter_by(intent_id=intent_id).first()

    def _load(self, db_record: IntentRecordDB) -> IntentRecord:
        intent = TransferIntent(
            asset=db_record.asset,
            sender=db_record.sender,
            recipient=db_record.recipient,
            amount=int(db_record.amount),
            max_fee=int(db_record.max_fee),
            nonce=int(db_record.nonce),
            deadline=db_record.deadline,
            signature=db_record.signature,
        )
        record = IntentRecord(
            db_record.intent_id,
            intent,
            status=IntentStatus(db_record.status),
            priority=db_record.priority or 0,
        )
        record.attempt_count = db_record.attempt_count or 0
        record.last_error = db_record.last_error
        record.computed_fee = _opt_int(db_record.computed_fee)
        record.actual_fee = _opt_int(db_record.actual_fee)
        record.fee_quote = db_record.fee_quote
        record.settlement_reference = db_record.settlement_reference
        record.created_at = db_record.created_at
        record.finalized_at = db_record.finalized_at

        rows = (
            self.db_session.query(BroadcastRecordDB)
            .filter_by(intent_id=db_record.intent_id)
            .order_by(BroadcastRecordDB.attempt)
            .all()
        )
        record.broadcasts = [
            BroadcastRecord(
                intent_id=row.intent_id,
                attempt=row.attempt,
                fee_rate=int(row.fee_rate),
                outcome=BroadcastOutcome(row.outcome),
                submission_id=row.submission_id,
                error=row.error,
                row_id=row.id,
                created_at=row.created_at,
            )
            for row in rows
        ]
        return record

    @staticmethod
    def _history_entry(status: IntentStatus, error: str | None = None) -> dict[str, Any]:
        return {"status": status.value, "at": datetime.utcnow().isoformat(), "error": error}
