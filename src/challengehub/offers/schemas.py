"""Pydantic schemas for offers, conversions and admin promo codes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

# Whop requires a stock value even for unlimited promo codes.
UNLIMITED_STOCK = 999999


class OfferType(str, Enum):
    COMPLETION = "completion"
    MID_CHALLENGE = "mid_challenge"
    WINNER = "winner"


class ConversionType(str, Enum):
    CLAIMED = "claimed"
    PAID_ENTRY = "paid_entry"


class OfferCreate(BaseModel):
    offer_type: OfferType
    whop_plan_id: str = Field(min_length=1)
    discount_percentage: int = Field(ge=1, le=100)
    original_price_cents: int | None = Field(default=None, ge=0)
    min_completion_rate: int | None = Field(default=None, ge=0, le=100)
    max_completion_rate: int | None = Field(default=None, ge=0, le=100)
    custom_message: str | None = None

    @model_validator(mode="after")
    def _check_rates(self) -> OfferCreate:
        if (
            self.min_completion_rate is not None
            and self.max_completion_rate is not None
            and self.min_completion_rate > self.max_completion_rate
        ):
            raise ValueError("min_completion_rate must not exceed max_completion_rate")
        return self


class OfferRead(BaseModel):
    id: str
    challenge_id: str
    offer_type: OfferType
    whop_plan_id: str
    discount_percentage: int
    original_price_cents: int | None = None
    min_completion_rate: int | None = None
    max_completion_rate: int | None = None
    custom_message: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @property
    def discounted_price_cents(self) -> int | None:
        if self.original_price_cents is None:
            return None
        return round(self.original_price_cents * (100 - self.discount_percentage) / 100)


class EligibleOffer(BaseModel):
    offer: OfferRead
    eligible: bool
    completion_rate: int
    claimed: bool = False


class ConversionRead(BaseModel):
    id: str
    offer_id: str | None = None
    challenge_id: str | None = None
    user_id: str
    conversion_type: ConversionType
    promo_code: str | None = None
    checkout_url: str | None = None
    revenue_cents: int | None = None
    created_at: datetime | None = None


class ClaimResult(BaseModel):
    conversion: ConversionRead
    promo_code: str | None = None
    checkout_url: str | None = None
    discount_percentage: int
    message: str


# ── Admin promo codes ───────────────────────────────────────────────────────


class PromoType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT_AMOUNT = "flat_amount"


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=100)
    amount_off: float = Field(gt=0)
    promo_type: PromoType = PromoType.PERCENTAGE
    plan_ids: list[str] = Field(default_factory=list)
    unlimited_stock: bool = True
    stock: int = Field(default=100, ge=1)
    expiration_datetime: datetime | None = None
    new_users_only: bool = False

    def to_platform_payload(self, currency: str = "usd") -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "amount_off": self.amount_off,
            "promo_type": self.promo_type.value,
            "plan_ids": self.plan_ids,
            "unlimited_stock": self.unlimited_stock,
            "stock": UNLIMITED_STOCK if self.unlimited_stock else self.stock,
            "new_users_only": self.new_users_only,
            "base_currency": currency.lower(),
        }
        if self.expiration_datetime is not None:
            payload["expiration_datetime"] = self.expiration_datetime.isoformat()
        return payload
