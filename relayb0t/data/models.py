"""Pydantic models for the external interfaces and asset configuration."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AssetConfig(BaseModel):
    """A supported fungible asset."""

    model_config = ConfigDict(frozen=True)

    address: str
    symbol: str
    decimals: int = 18
    feed_id: str | None = None  # price API identifier, defaults to symbol
    transfer_gas: int = 90_000  # expected resource usage of one relayed transfer
    min_fee: int = 0  # base units; lower fees are not worth relaying
    static_price: Decimal | None = None  # native units per whole asset unit
    pegged: bool = False  # static_price may stand in for a live quote
    paused: bool = False

    @property
    def key(self) -> str:
        return self.address.lower()

    @property
    def price_feed(self) -> str:
        return self.feed_id or self.symbol


class IntentSubmission(BaseModel):
    """Body of the intent submission endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    asset: str
    from_: str = Field(alias="from")
    to: str
    amount: int
    max_fee: int = Field(alias="maxFee")
    nonce: int
    deadline: int
    signature: str
    priority: int = 0


class IntentAccepted(BaseModel):
    """Response of the intent submission endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    intent_id: str = Field(alias="intentId")
    status: str


class FeeEstimateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset: str
    amount: int
    from_: str | None = Field(default=None, alias="from")
    to: str | None = None


class FeeEstimateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fee_in_asset: int = Field(alias="feeInAsset")
    amount_after_fee: int = Field(alias="amountAfterFee")
    estimated_inclusion_seconds: float = Field(alias="estimatedInclusionSeconds")
    max_recommended_fee: int = Field(alias="maxRecommendedFee")


class IntentStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intent_id: str = Field(alias="intentId")
    status: str
    attempt_count: int = Field(alias="attemptCount")
    settlement_reference: str | None = Field(default=None, alias="settlementReference")
    computed_fee: int | None = Field(default=None, alias="computedFee")
    actual_fee: int | None = Field(default=None, alias="actualFee")
    last_error: str | None = Field(default=None, alias="lastError")
    broadcasts: list[dict[str, Any]] = Field(default_factory=list)


class SupportedAssetsResponse(BaseModel):
    version: int
    assets: list[AssetConfig]
    paused: list[str]
