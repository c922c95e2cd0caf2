"""Payment persistence models.

- PendingPaymentModel: Charge created by the app, awaiting the webhook
- CompletedPaymentModel: Charge confirmed by the webhook (unique charge_id)
- ChallengeRewardModel: Reward granted by a completed challenge_reward charge
- RevenueShareModel: Creator/platform split of a completed charge
- WhopSubscriptionModel: A company's membership state from membership events

The unique constraint on completed_payments.charge_id is what makes webhook
processing idempotent: a second delivery of the same charge cannot commit.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.challengehub.core.database import Base


class PendingPaymentModel(Base):
    __tablename__ = "pending_payments"
    __table_args__ = (
        UniqueConstraint("charge_id", name="uq_pending_payments_charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    charge_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    whop_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_experience_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    challenge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True
    )
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="usd", server_default=text("'usd'"))
    status: Mapped[str] = mapped_column(String(20), default="pending", server_default=text("'pending'"))
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class CompletedPaymentModel(Base):
    __tablename__ = "completed_payments"
    __table_args__ = (
        UniqueConstraint("charge_id", name="uq_completed_payments_charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    charge_id: Mapped[str] = mapped_column(String(100), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    whop_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_experience_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    challenge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True
    )
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="usd", server_default=text("'usd'"))
    status: Mapped[str] = mapped_column(String(20), default="completed", server_default=text("'completed'"))
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class ChallengeRewardModel(Base):
    __tablename__ = "challenge_rewards"
    __table_args__ = (
        UniqueConstraint("charge_id", name="uq_challenge_rewards_charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    challenge_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    charge_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reward_type: Mapped[str] = mapped_column(String(40), default="premium_access")
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class RevenueShareModel(Base):
    __tablename__ = "revenue_shares"
    __table_args__ = (
        UniqueConstraint("charge_id", name="uq_revenue_shares_charge_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    charge_id: Mapped[str] = mapped_column(String(100), nullable=False)
    challenge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True
    )
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    creator_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", server_default=text("'pending'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class WhopSubscriptionModel(Base):
    __tablename__ = "whop_subscriptions"
    __table_args__ = (
        UniqueConstraint("whop_membership_id", name="uq_whop_subscriptions_membership_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_membership_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    whop_product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    whop_plan_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
