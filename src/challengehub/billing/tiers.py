"""Pure tier rules: limits per tier and tier selection from subscriptions."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from src.challengehub.billing.schemas import AccessTier, TierLimits
from src.challengehub.config import Settings
from src.challengehub.payments.schemas import SubscriptionRead, SubscriptionStatus

DEFAULT_BASIC_CHALLENGES_PER_MONTH = 3

# Higher tiers first; the first one with an active subscription wins.
_TIER_ORDER = (AccessTier.PRO_PLUS, AccessTier.PLUS)


def tier_limits(tier: AccessTier, basic_per_month: int = DEFAULT_BASIC_CHALLENGES_PER_MONTH) -> TierLimits:
    if tier == AccessTier.PRO_PLUS:
        return TierLimits(can_create_paid_challenges=True, can_set_custom_entry_price=True)
    if tier == AccessTier.PLUS:
        return TierLimits()
    return TierLimits(challenges_per_month=basic_per_month)


def month_key(now: datetime) -> str:
    """Usage bucket for ``now``, e.g. "2026-10"."""
    return now.strftime("%Y-%m")


def _split_ids(raw: str) -> set[str]:
    return {part.strip() for part in raw.split(",") if part.strip()}


def _is_active(subscription: SubscriptionRead, now: datetime) -> bool:
    if subscription.status != SubscriptionStatus.ACTIVE:
        return False
    return subscription.valid_until is None or subscription.valid_until > now


def tier_for_subscriptions(
    subscriptions: Iterable[SubscriptionRead], settings: Settings, now: datetime
) -> AccessTier:
    """Highest tier whose product or plan id matches an active subscription.

    Companies without a matching subscription are on Basic.
    """
    tier_ids = {
        AccessTier.PRO_PLUS: _split_ids(settings.PRO_PLUS_TIER_PRODUCT_IDS),
        AccessTier.PLUS: _split_ids(settings.PLUS_TIER_PRODUCT_IDS),
    }
    owned: set[str] = set()
    for subscription in subscriptions:
        if _is_active(subscription, now):
            owned.update(i for i in (subscription.whop_product_id, subscription.whop_plan_id) if i)

    for tier in _TIER_ORDER:
        if owned & tier_ids[tier]:
            return tier
    return AccessTier.BASIC
