"""Pydantic schemas for access tiers and monthly usage."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class AccessTier(str, Enum):
    BASIC = "Basic"
    PLUS = "Plus"
    PRO_PLUS = "ProPlus"


class TierLimits(BaseModel):
    """What a tier allows; ``challenges_per_month`` of None means unlimited."""

    challenges_per_month: int | None = None
    can_create_paid_challenges: bool = False
    can_set_custom_entry_price: bool = False


class MonthlyUsageRead(BaseModel):
    tenant_id: str
    month: str
    challenges_created: int = 0


class AccessTierRead(BaseModel):
    """Tier summary shown to company admins."""

    tier: AccessTier
    limits: TierLimits
    month: str
    challenges_created: int = 0
    challenges_remaining: int | None = None
    revenue_share_percent: int
