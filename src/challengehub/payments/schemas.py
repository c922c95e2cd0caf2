"""Pydantic schemas for charges, webhook payloads and subscriptions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class EntityType(str, Enum):
    CHALLENGE_ENTRY = "challenge_entry"
    CHALLENGE_REWARD = "challenge_reward"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


# ── Charges ─────────────────────────────────────────────────────────────────


class ChargeCreate(BaseModel):
    """Member request for an in-app charge.

    Entry charges take the price from the challenge; reward charges need an
    explicit amount.
    """

    challenge_id: str
    entity_type: EntityType = EntityType.CHALLENGE_ENTRY
    amount_cents: int | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_reward_amount(self) -> ChargeCreate:
        if self.entity_type == EntityType.CHALLENGE_REWARD and self.amount_cents is None:
            raise ValueError("amount_cents is required for challenge_reward charges")
        return self


class ChargeRead(BaseModel):
    charge_id: str
    challenge_id: str
    entity_type: EntityType
    amount_cents: int
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    checkout_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingPaymentCreate(BaseModel):
    charge_id: str
    user_id: str
    whop_user_id: str
    whop_experience_id: str | None = None
    challenge_id: str | None = None
    entity_type: EntityType
    amount_cents: int
    currency: str = "usd"
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Webhook processing ──────────────────────────────────────────────────────


class ChargeMetadata(BaseModel):
    """Metadata attached to a charge at creation and echoed by the webhook."""

    experience_id: str | None = Field(default=None, alias="experienceId")
    challenge_id: str | None = Field(default=None, alias="challengeId")
    company_id: str | None = Field(default=None, alias="companyId")
    entity_type: EntityType = Field(default=EntityType.CHALLENGE_ENTRY, alias="entityType")
    entity_id: str | None = Field(default=None, alias="entityId")

    model_config = {"populate_by_name": True}


class PaymentSucceeded(BaseModel):
    """``data`` object of a payment-succeeded webhook."""

    charge_id: str = Field(alias="id", min_length=1)
    final_amount: int = 0
    currency: str = "usd"
    whop_user_id: str = Field(alias="user_id", min_length=1)
    company_id: str | None = None
    metadata: ChargeMetadata

    model_config = {"populate_by_name": True}


class CompletedPaymentRecord(BaseModel):
    """Everything written by the completion transaction."""

    charge_id: str
    whop_user_id: str
    user_id: str | None = None
    whop_experience_id: str | None = None
    challenge_id: str | None = None
    entity_type: EntityType
    amount_cents: int
    currency: str = "usd"
    creator_cents: int
    platform_fee_cents: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class CompletedPaymentRead(BaseModel):
    id: str
    tenant_id: str
    charge_id: str
    user_id: str | None = None
    whop_user_id: str
    challenge_id: str | None = None
    entity_type: EntityType
    amount_cents: int
    currency: str
    processed_at: datetime | None = None


class WebhookResult(BaseModel):
    received: bool = True
    event: str
    outcome: WebhookOutcome
    charge_id: str | None = None


# ── Subscriptions ───────────────────────────────────────────────────────────


class MembershipEvent(BaseModel):
    """``data`` object of a membership went_valid / went_invalid webhook."""

    membership_id: str = Field(alias="id", min_length=1)
    whop_user_id: str | None = Field(default=None, alias="user_id")
    product_id: str | None = None
    plan_id: str | None = None
    company_id: str | None = None
    expires_at: datetime | None = None

    model_config = {"populate_by_name": True}


class SubscriptionRead(BaseModel):
    id: str
    tenant_id: str
    whop_membership_id: str
    whop_user_id: str | None = None
    whop_product_id: str | None = None
    whop_plan_id: str | None = None
    status: SubscriptionStatus
    valid_until: datetime | None = None
