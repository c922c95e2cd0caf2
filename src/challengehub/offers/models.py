"""Offer persistence models.

- ChallengeOfferModel: Discount offered to participants of a challenge
- OfferConversionModel: A user claiming an offer (or paying a challenge entry)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.challengehub.core.database import Base


class ChallengeOfferModel(Base):
    """Discount on a Whop plan unlocked by challenge performance."""

    __tablename__ = "challenge_offers"

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
    offer_type: Mapped[str] = mapped_column(String(30), nullable=False)
    whop_plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    discount_percentage: Mapped[int] = mapped_column(Integer, nullable=False)
    original_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    min_completion_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_completion_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    custom_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class OfferConversionModel(Base):
    """One claim of an offer by one user, or one paid challenge entry.

    Paid entries have no offer_id; claims are unique per (offer, user).
    """

    __tablename__ = "offer_conversions"
    __table_args__ = (
        UniqueConstraint("offer_id", "user_id", name="uq_offer_conversions_offer_user"),
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
    offer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenge_offers.id", ondelete="SET NULL"), nullable=True
    )
    challenge_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("challenges.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    conversion_type: Mapped[str] = mapped_column(String(30), nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    revenue_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
