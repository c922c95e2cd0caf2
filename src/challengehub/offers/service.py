"""Offer listing and claiming for challenge participants."""

from __future__ import annotations

import secrets

import structlog

from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.service import ChallengeNotFoundError, NotEnrolledError, RuleViolationError
from src.challengehub.clients.whop import WhopClient
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.offers.eligibility import completion_rate, is_eligible
from src.challengehub.offers.repository import OfferRepository
from src.challengehub.offers.schemas import ClaimResult, EligibleOffer, OfferRead, OfferType

logger = structlog.get_logger(__name__)


class OfferNotFoundError(Exception):
    pass


def personalized_code(offer_type: OfferType, user_id: str) -> str:
    return f"{offer_type.value.upper()}_{user_id[:4].upper()}_{secrets.token_hex(3).upper()}"


class OfferService:
    """Eligibility checks and claims against the Whop promo-code API.

    Args:
        offers: Offer repository.
        challenges: Challenge repository (enrollments, proofs, winners).
        whop: Whop client used to create the single-use promo code.
        checkout_domain: Host used to build checkout links.
        currency: Base currency for created promo codes.
    """

    def __init__(
        self,
        offers: OfferRepository,
        challenges: ChallengeRepository,
        whop: WhopClient,
        checkout_domain: str = "whop.com",
        currency: str = "usd",
    ) -> None:
        self._offers = offers
        self._challenges = challenges
        self._whop = whop
        self._checkout_domain = checkout_domain
        self._currency = currency

    async def _standing(self, ctx: IdentityContext, challenge_id: str) -> tuple[int, bool]:
        """Return (completion rate, is winner) for the caller."""
        challenge = await self._challenges.get_challenge(ctx.scope, challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(f"Challenge {challenge_id} not found")
        enrollment = await self._challenges.get_enrollment(ctx.scope, challenge_id, ctx.user_id)
        if enrollment is None:
            raise NotEnrolledError("User not enrolled in challenge")
        proofs = await self._challenges.list_proofs(ctx.scope, [enrollment.id], active_only=True)
        winners = await self._challenges.list_winners(ctx.scope, challenge_id)
        return completion_rate(challenge, proofs), any(w.user_id == ctx.user_id for w in winners)

    async def list_for_member(self, ctx: IdentityContext, challenge_id: str) -> list[EligibleOffer]:
        rate, is_winner = await self._standing(ctx, challenge_id)
        offers = await self._offers.list_offers(ctx.scope, challenge_id)
        claimed = {c.offer_id for c in await self._offers.list_conversions(ctx.scope, ctx.user_id)}
        return [
            EligibleOffer(
                offer=offer,
                eligible=is_eligible(offer, rate, is_winner),
                completion_rate=rate,
                claimed=offer.id in claimed,
            )
            for offer in offers
            if offer.is_active
        ]

    async def claim(self, ctx: IdentityContext, challenge_id: str, offer_id: str) -> ClaimResult:
        """Claim an offer once; a repeated claim returns the original code.

        Raises:
            OfferNotFoundError: Unknown offer, or it belongs to another challenge.
            RuleViolationError: The caller is not (or no longer) eligible.
        """
        offer = await self._offers.get_offer(ctx.scope, offer_id)
        if offer is None or offer.challenge_id != challenge_id:
            raise OfferNotFoundError("Offer not found")
        if not offer.is_active:
            raise RuleViolationError("Offer is no longer active")

        existing = await self._offers.get_conversion(ctx.scope, offer.id, ctx.user_id)
        if existing is not None:
            return self._result(offer, existing)

        rate, is_winner = await self._standing(ctx, challenge_id)
        if not is_eligible(offer, rate, is_winner):
            raise RuleViolationError("User not eligible for this offer")

        code = personalized_code(offer.offer_type, ctx.user_id)
        await self._whop.create_promo_code(
            ctx.whop_company_id,
            {
                "code": code,
                "amount_off": offer.discount_percentage,
                "promo_type": "percentage",
                "plan_ids": [offer.whop_plan_id],
                "unlimited_stock": False,
                "stock": 1,
                "new_users_only": False,
                "base_currency": self._currency,
                "user_id": ctx.whop_user_id,
            },
        )
        checkout_url = f"https://{self._checkout_domain}/checkout/{offer.whop_plan_id}?promo={code}"
        conversion = await self._offers.record_claim(
            ctx.scope,
            offer,
            ctx.user_id,
            promo_code=code,
            checkout_url=checkout_url,
            metadata={
                "completion_rate": rate,
                "original_price_cents": offer.original_price_cents,
                "discounted_price_cents": offer.discounted_price_cents,
            },
        )
        logger.info(
            "offer.claimed",
            offer_id=offer.id,
            challenge_id=challenge_id,
            user_id=ctx.user_id,
            completion_rate=rate,
        )
        return self._result(offer, conversion)

    @staticmethod
    def _result(offer: OfferRead, conversion) -> ClaimResult:
        return ClaimResult(
            conversion=conversion,
            promo_code=conversion.promo_code,
            checkout_url=conversion.checkout_url,
            discount_percentage=offer.discount_percentage,
            message=offer.custom_message
            or f"Congratulations! You've earned {offer.discount_percentage}% off!",
        )
