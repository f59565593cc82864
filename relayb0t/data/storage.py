"""Database schema and storage using SQLAlchemy."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from relayb0t.config import get_settings

# uint256 needs up to 78 decimal digits; stored as strings so SQLite keeps precision.
UINT_DIGITS = 78


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class IntentRecordDB(Base):
    """One durable record per transfer intent (audit trail + status queries)."""

    __tablename__ = "intent_records"
    __table_args__ = (
        UniqueConstraint("asset", "sender", "nonce", "signature", name="uq_intent_signed"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(36), unique=True, nullable=False, index=True)
    asset = Column(String(42), nullable=False, index=True)
    sender = Column(String(42), nullable=False, index=True)
    recipient = Column(String(42), nullable=False)
    amount = Column(String(UINT_DIGITS), nullable=False)
    max_fee = Column(String(UINT_DIGITS), nullable=False)
    nonce = Column(String(UINT_DIGITS), nullable=False, index=True)
    deadline = Column(Integer, nullable=False, index=True)
    signature = Column(String(132), nullable=False)
    priority = Column(Integer, default=0)
    status = Column(
        String(20), default="received", index=True
    )  # received, validated, queued, submitted, confirmed, rejected, expired, failed
    attempt_count = Column(Integer, default=0)
    computed_fee = Column(String(UINT_DIGITS), nullable=True)
    actual_fee = Column(String(UINT_DIGITS), nullable=True)
    fee_quote = Column(JSON, nullable=True)  # inputs behind computed_fee
    last_error = Column(Text, nullable=True)
    settlement_reference = Column(String(255), nullable=True, index=True)
    status_history = Column(JSON, nullable=True)  # append-only [{status, at, error}]
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    finalized_at = Column(DateTime, nullable=True)


class BroadcastRecordDB(Base):
    """One row per submission attempt of an intent."""

    __tablename__ = "broadcast_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(
        String(36), ForeignKey("intent_records.intent_id"), nullable=False, index=True
    )
    attempt = Column(Integer, nullable=False)
    submission_id = Column(String(255), nullable=True, index=True)
    fee_rate = Column(String(UINT_DIGITS), nullable=False)
    outcome = Column(
        String(20), default="pending_submit", index=True
    )  # pending_submit, submitted, confirmed, dropped, rejected, timed_out
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SenderNonceDB(Base):
    """Durable per-sender nonce counter (next nonce the relay will dispatch)."""

    __tablename__ = "sender_nonces"
    __table_args__ = (UniqueConstraint("asset", "sender", name="uq_sender_nonce"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset = Column(String(42), nullable=False, index=True)
    sender = Column(String(42), nullable=False, index=True)
    next_nonce = Column(String(UINT_DIGITS), nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Database engine and session management
_engine = None
_SessionLocal = None


def init_db(db_url: str | None = None) -> None:
    """Initialize database connection and create tables."""
    global _engine, _SessionLocal

    if db_url is None:
        settings = get_settings()
        db_url = settings.db_url

    _engine = create_engine(
        db_url,
        echo=False,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if "sqlite" in db_url else {},
    )

    Base.metadata.create_all(bind=_engine)
    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)


def get_session() -> Session:
    """Get a database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()
