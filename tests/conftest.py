"""Pytest fixtures and configuration."""

import time
from decimal import Decimal
from typing import Callable

import pytest
from eth_account import Account
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from relayb0t.config import Settings
from relayb0t.data.assets import AssetRegistry
from relayb0t.data.models import AssetConfig
from relayb0t.data.price_client import PriceQuoteChain, StaticPriceSource
from relayb0t.data.storage import Base
from relayb0t.execution.intents import IntentManager, TransferIntent
from relayb0t.execution.signing import SigningDomain, sign_intent
from relayb0t.execution.simulator import PaperLedger
from relayb0t.services.relay_engine import RelayEngine

SENDER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
SENDER = Account.from_key(SENDER_KEY).address.lower()
OTHER = Account.from_key(OTHER_KEY).address.lower()
RECIPIENT = "0x" + "33" * 20
TOKEN = "0x" + "aa" * 20
FORWARDER = "0x" + "f0" * 20
COLLECTOR = "0x" + "c0" * 20

# 1 whole unit of a 6-decimal asset
UNIT = 10**6
# 75_000 gas at this rate costs 0.075 native units: 1.5 units of an asset priced at 0.05
BASE_FEE_RATE = 10**12


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float | None = None) -> None:
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure required env vars exist for Settings in tests."""
    monkeypatch.setenv("RELAYBOT_MODE", "paper")
    monkeypatch.setenv("RELAYBOT_CHAIN_ID", "31337")
    monkeypatch.setenv("RELAYBOT_FORWARDER_ADDRESS", FORWARDER)
    monkeypatch.setenv("RELAYBOT_FEE_COLLECTOR_ADDRESS", COLLECTOR)

    # Clear cached settings between tests
    from relayb0t.config.settings import get_settings

    get_settings.cache_clear()


@pytest.fixture
def db_session() -> Session:
    """Create in-memory test database session (shared across threads)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(engine)


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        fee_markup_pct=0,
        fee_bump_pct=10,
        inclusion_timeout_seconds=0.1,
        inclusion_poll_interval_seconds=0.01,
        retry_backoff_base_seconds=0.01,
        retry_backoff_max_seconds=0.02,
        max_broadcast_attempts=5,
        dispatch_workers=2,
        expiry_sweep_interval_seconds=0.05,
        settlement_failure_threshold=1,
        settlement_reset_seconds=0.05,
        fee_rate_stale_after_seconds=3600,
    )


@pytest.fixture
def asset() -> AssetConfig:
    return AssetConfig(
        address=TOKEN,
        symbol="USDX",
        decimals=6,
        transfer_gas=75_000,
        static_price=Decimal("0.05"),
    )


@pytest.fixture
def registry(asset: AssetConfig) -> AssetRegistry:
    return AssetRegistry([asset])


@pytest.fixture
def prices() -> PriceQuoteChain:
    return PriceQuoteChain([StaticPriceSource()])


@pytest.fixture
def domain(settings: Settings) -> SigningDomain:
    return SigningDomain.from_settings(settings)


@pytest.fixture
def ledger(registry: AssetRegistry, prices: PriceQuoteChain, domain: SigningDomain) -> PaperLedger:
    paper = PaperLedger(registry, prices, domain, fee_collector=COLLECTOR, fee_rate=BASE_FEE_RATE)
    paper.credit(TOKEN, SENDER, 1_000 * UNIT)
    return paper


@pytest.fixture
def store(db_session: Session) -> IntentManager:
    return IntentManager(db_session)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(
    settings: Settings,
    ledger: PaperLedger,
    registry: AssetRegistry,
    prices: PriceQuoteChain,
    store: IntentManager,
    clock: FakeClock,
) -> RelayEngine:
    return RelayEngine(settings, ledger, registry, prices, store, clock=clock)


@pytest.fixture
def make_intent(domain: SigningDomain) -> Callable[..., TransferIntent]:
    """Factory for signed intents (100 units, maxFee 2 units, 1h deadline by default)."""

    def _make(
        nonce: int = 0,
        amount: int = 100 * UNIT,
        max_fee: int = 2 * UNIT,
        deadline: int | None = None,
        key: str = SENDER_KEY,
        recipient: str = RECIPIENT,
        asset: str = TOKEN,
    ) -> TransferIntent:
        intent = TransferIntent(
            asset=asset,
            sender=Account.from_key(key).address.lower(),
            recipient=recipient,
            amount=amount,
            max_fee=max_fee,
            nonce=nonce,
            deadline=deadline if deadline is not None else int(time.time()) + 3600,
        )
        return sign_intent(intent, key, domain)

    return _make
