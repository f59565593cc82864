"""Application settings using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_prefix="RELAYBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Mode Configuration
    # Required (fail-fast enforced by env_loader + Settings instantiation)
    mode: Literal["paper", "live"] = Field(
        ..., description="Settlement mode: paper (simulated ledger) or live (web3)"
    )
    chain_id: int = Field(..., description="Chain id used in the signing domain")
    forwarder_address: str = Field(
        ..., description="Forwarder contract address (signing domain verifyingContract)"
    )
    fee_collector_address: str = Field(
        ..., description="Account that receives the fee portion of each transfer"
    )

    # Signing domain
    domain_name: str = Field(default="GaslessTransfer", description="EIP-712 domain name")
    domain_version: str = Field(default="1", description="EIP-712 domain version")

    # Database
    db_url: str = Field(default="sqlite:///./relaybot.db", description="Database connection URL")

    # Assets
    assets_file: str = Field(
        default="assets.json", description="JSON file listing supported assets"
    )

    # Settlement layer (live mode)
    rpc_url: str | None = Field(default=None, description="Settlement layer JSON-RPC URL")
    relayer_private_key: str | None = Field(
        default=None, description="Relayer account key that pays fees (NEVER commit or print)"
    )
    rpc_timeout_seconds: float = Field(default=10.0, description="JSON-RPC request timeout")
    priority_fee_wei: int = Field(
        default=1_000_000_000, description="EIP-1559 priority fee tip (wei)"
    )

    # Price quotes
    price_api_url: str | None = Field(default=None, description="Primary price API base URL")
    price_fallback_api_url: str | None = Field(
        default=None, description="Secondary price API base URL"
    )
    price_api_key: str | None = Field(default=None, description="Price API key (NEVER print)")
    quote_staleness_seconds: float = Field(
        default=120.0, description="Quotes older than this are never used for pricing"
    )
    quote_timeout_seconds: float = Field(
        default=5.0, description="Upper bound for a single quote or fee-rate lookup"
    )

    # Fee-rate monitor
    fee_rate_sample_interval_seconds: float = Field(default=5.0, description="Sampling interval")
    fee_rate_history_size: int = Field(default=60, description="Rolling sample window")
    fee_rate_stale_after_seconds: float = Field(
        default=30.0, description="Last good sample older than this is flagged stale"
    )
    fee_rate_spike_sigma: float = Field(
        default=2.0, description="Std-devs above the rolling mean that count as elevated"
    )
    fee_rate_spike_floor_pct: float = Field(
        default=10.0, description="Minimum % above the rolling mean that counts as elevated"
    )
    fee_rate_min_samples: int = Field(
        default=5, description="Samples required before spike detection is active"
    )
    fee_rate_prediction_horizon: int = Field(
        default=3, description="Prediction horizon in sampling intervals"
    )

    # Fee calculation
    fee_markup_pct: float = Field(default=10.0, description="Safety markup on settlement cost (%)")
    stale_fee_rate_policy: Literal["widen", "refuse"] = Field(
        default="widen", description="How to price with a stale fee-rate estimate"
    )
    stale_fee_rate_extra_markup_pct: float = Field(
        default=20.0, description="Extra markup (%) when the fee-rate estimate is stale"
    )
    max_recommended_fee_headroom_pct: float = Field(
        default=50.0, description="Headroom (%) on top of the predicted fee for maxFee advice"
    )

    # Dispatch
    dispatch_workers: int = Field(default=4, description="Concurrent broadcast workers")
    defer_low_priority_when_elevated: bool = Field(
        default=True, description="Hold negative-priority entries while the fee rate is elevated"
    )
    expiry_sweep_interval_seconds: float = Field(
        default=5.0, description="How often queued/held intents are checked for expiry"
    )
    block_time_seconds: float = Field(default=2.0, description="Average settlement block time")

    # Broadcast
    inclusion_timeout_seconds: float = Field(
        default=60.0, description="How long to wait for inclusion per attempt"
    )
    inclusion_poll_interval_seconds: float = Field(default=2.0, description="Receipt polling")
    max_broadcast_attempts: int = Field(default=5, description="Absolute submission attempt limit")
    fee_bump_pct: float = Field(default=12.5, description="Minimum fee-rate bump on resubmission (%)")
    retry_backoff_base_seconds: float = Field(default=1.0, description="Resubmission backoff base")
    retry_backoff_max_seconds: float = Field(default=30.0, description="Resubmission backoff cap")

    # Settlement circuit breaker
    settlement_failure_threshold: int = Field(
        default=3, description="Consecutive settlement failures before degrading"
    )
    settlement_reset_seconds: float = Field(
        default=30.0, description="Seconds before probing the settlement layer again"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="FastAPI host")
    api_port: int = Field(default=8000, description="FastAPI port")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log output format"
    )

    @field_validator("fee_markup_pct", "stale_fee_rate_extra_markup_pct", "fee_bump_pct")
    @classmethod
    def validate_non_negative_pct(cls, v: float) -> float:
        """Validate percentage values are non-negative."""
        if v < 0:
            raise ValueError(f"Percentage must be >= 0, got {v}")
        return v

    @field_validator("max_broadcast_attempts", "dispatch_workers", "fee_rate_history_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counts are positive."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v

    @field_validator("inclusion_poll_interval_seconds", "inclusion_timeout_seconds")
    @classmethod
    def validate_intervals(cls, v: float) -> float:
        """Validate timing values are positive."""
        if v <= 0:
            raise ValueError(f"Interval must be positive, got {v}")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
