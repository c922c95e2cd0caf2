"""Access tier lookup and challenge-creation gating for company admins."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.challengehub.billing.repository import UsageRepository
from src.challengehub.billing.schemas import AccessTier, AccessTierRead, TierLimits
from src.challengehub.billing.tiers import month_key, tier_for_subscriptions, tier_limits
from src.challengehub.config import Settings
from src.challengehub.core.scoping import TenantScope
from src.challengehub.payments.repository import PaymentRepository

logger = structlog.get_logger(__name__)


class TierError(Exception):
    """The company's tier does not allow the requested change."""


class PaidChallengesNotAllowedError(TierError):
    pass


class MonthlyLimitReachedError(TierError):
    pass


def _require_paid_entry(tier: AccessTier, limits: TierLimits, entry_price_cents: int | None) -> None:
    if entry_price_cents and not limits.can_create_paid_challenges:
        raise PaidChallengesNotAllowedError(
            f"Paid challenges require the {AccessTier.PRO_PLUS.value} tier (current tier: {tier.value})"
        )


class TierService:
    """Derives a company's tier from its subscriptions and enforces its limits.

    Args:
        payments: Payment repository holding the company's subscriptions.
        usage: Monthly usage counters.
        settings: Tier product ids, Basic allowance and revenue share.
    """

    def __init__(self, payments: PaymentRepository, usage: UsageRepository, settings: Settings) -> None:
        self._payments = payments
        self._usage = usage
        self._settings = settings

    async def get_tier(self, scope: TenantScope, now: datetime | None = None) -> tuple[AccessTier, TierLimits]:
        now = now or datetime.now(timezone.utc)
        subscriptions = await self._payments.list_subscriptions(scope)
        tier = tier_for_subscriptions(subscriptions, self._settings, now)
        return tier, tier_limits(tier, self._settings.BASIC_TIER_CHALLENGES_PER_MONTH)

    async def describe(self, scope: TenantScope) -> AccessTierRead:
        now = datetime.now(timezone.utc)
        tier, limits = await self.get_tier(scope, now)
        usage = await self._usage.get_usage(scope, month_key(now))
        remaining = None
        if limits.challenges_per_month is not None:
            remaining = max(limits.challenges_per_month - usage.challenges_created, 0)
        return AccessTierRead(
            tier=tier,
            limits=limits,
            month=usage.month,
            challenges_created=usage.challenges_created,
            challenges_remaining=remaining,
            revenue_share_percent=self._settings.PLATFORM_FEE_PERCENT,
        )

    async def check_entry_price(self, scope: TenantScope, entry_price_cents: int | None) -> None:
        """Raise PaidChallengesNotAllowedError for a priced challenge on a tier without paid entry."""
        if not entry_price_cents:
            return
        tier, limits = await self.get_tier(scope)
        _require_paid_entry(tier, limits, entry_price_cents)

    async def reserve_challenge(self, scope: TenantScope, entry_price_cents: int = 0) -> str:
        """Check the tier for a new challenge and count it against this month.

        Returns:
            The month the slot was taken from, for release_challenge().

        Raises:
            PaidChallengesNotAllowedError: Priced challenge on a tier without paid entry.
            MonthlyLimitReachedError: The tier's monthly allowance is used up.
        """
        now = datetime.now(timezone.utc)
        tier, limits = await self.get_tier(scope, now)
        _require_paid_entry(tier, limits, entry_price_cents)
        month = month_key(now)
        count = await self._usage.reserve_slot(scope, month, limits.challenges_per_month)
        if count is None:
            logger.info(
                "tier.monthly_limit_reached",
                tenant_id=scope.tenant_id,
                tier=tier.value,
                month=month,
                limit=limits.challenges_per_month,
            )
            raise MonthlyLimitReachedError(
                f"Monthly limit of {limits.challenges_per_month} challenges reached on the "
                f"{tier.value} tier"
            )
        return month

    async def release_challenge(self, scope: TenantScope, month: str) -> None:
        await self._usage.release_slot(scope, month)
