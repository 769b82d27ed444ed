"""
Settlement Schemas
==================

Normalized platform settlement rows and per-day summaries.

Rows arrive from platform exports with inconsistent naming, so every
field accepts both snake_case and the camelCase spelling used by the
exports.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from app.models.event import Platform


class SettlementEventKind(str, Enum):
    """Kind of financial movement on a settlement row."""

    PURCHASE = "purchase"
    RENEWAL = "renewal"
    REFUND = "refund"
    CHARGEBACK = "chargeback"
    TAX_ADJUSTMENT = "tax_adjustment"
    FEE_ADJUSTMENT = "fee_adjustment"

    @property
    def is_reversal(self) -> bool:
        return self in (SettlementEventKind.REFUND, SettlementEventKind.CHARGEBACK)

    @property
    def is_adjustment(self) -> bool:
        """Tax or fee correction with no matching customer transaction."""
        return self in (SettlementEventKind.TAX_ADJUSTMENT, SettlementEventKind.FEE_ADJUSTMENT)


class SettlementRecord(BaseModel):
    """Authoritative per-transaction record issued by a platform."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    id: str = Field(validation_alias=AliasChoices("id", "recordId", "settlementId"))
    platform: Platform
    settlement_date: date = Field(
        validation_alias=AliasChoices("settlement_date", "settlementDate", "date")
    )
    transaction_ref: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transaction_ref", "transactionRef", "transactionId", "orderId"),
    )
    original_transaction_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("original_transaction_ref", "originalTransactionRef", "originalTransactionId"),
    )
    product_ref: str = Field(
        default="",
        validation_alias=AliasChoices("product_ref", "productRef", "productId", "sku"),
    )
    event_kind: SettlementEventKind = Field(
        default=SettlementEventKind.PURCHASE,
        validation_alias=AliasChoices("event_kind", "eventKind", "eventType"),
    )
    gross_amount: Decimal = Field(
        validation_alias=AliasChoices("gross_amount", "grossAmount", "amount"),
    )
    platform_fee: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("platform_fee", "platformFee", "fee"),
    )
    net_amount: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("net_amount", "netAmount", "net"),
    )
    tax_amount: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("tax_amount", "taxAmount", "tax"),
    )
    currency: str = Field(min_length=3, max_length=3)
    country_code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("country_code", "countryCode"),
    )

    @model_validator(mode="after")
    def fill_net_amount(self) -> "SettlementRecord":
        if self.net_amount is None:
            # Frozen model: bypass __setattr__ for the derived field
            object.__setattr__(self, "net_amount", self.gross_amount - self.platform_fee)
        return self


class SkippedRow(BaseModel):
    """Settlement row that failed shape validation."""

    model_config = ConfigDict(frozen=True)

    index: int
    reason: str
    transaction_ref: Optional[str] = None


class CollectionResult(BaseModel):
    """Output of the settlement collector for one (date, platform)."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    settlement_date: date
    records: tuple[SettlementRecord, ...] = ()
    skipped: tuple[SkippedRow, ...] = ()

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


class SettlementSummary(BaseModel):
    """Per-day settlement totals for one platform."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    settlement_date: date
    total_transactions: int = 0
    gross_amount: Decimal = Decimal("0")
    fee_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    counts_by_kind: dict[SettlementEventKind, int] = Field(default_factory=dict)
    data_available: bool = True

    @classmethod
    def placeholder(cls, platform: Platform, settlement_date: date) -> "SettlementSummary":
        """Zero-filled summary for a platform with no settlement data."""
        return cls(platform=platform, settlement_date=settlement_date, data_available=False)
