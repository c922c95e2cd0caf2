"""Offer repository -- tenant-scoped offers and conversions."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.core.database import is_unique_violation
from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp
from src.challengehub.offers.models import ChallengeOfferModel, OfferConversionModel
from src.challengehub.offers.schemas import ConversionRead, ConversionType, OfferCreate, OfferRead

logger = structlog.get_logger(__name__)


def _model_to_offer(model: ChallengeOfferModel) -> OfferRead:
    return OfferRead(
        id=str(model.id),
        challenge_id=str(model.challenge_id),
        offer_type=model.offer_type,
        whop_plan_id=model.whop_plan_id,
        discount_percentage=model.discount_percentage,
        original_price_cents=model.original_price_cents,
        min_completion_rate=model.min_completion_rate,
        max_completion_rate=model.max_completion_rate,
        custom_message=model.custom_message,
        is_active=model.is_active,
        created_at=model.created_at,
    )


def _model_to_conversion(model: OfferConversionModel) -> ConversionRead:
    return ConversionRead(
        id=str(model.id),
        offer_id=str(model.offer_id) if model.offer_id else None,
        challenge_id=str(model.challenge_id) if model.challenge_id else None,
        user_id=str(model.user_id),
        conversion_type=model.conversion_type,
        promo_code=model.promo_code,
        checkout_url=model.checkout_url,
        revenue_cents=model.revenue_cents,
        created_at=model.created_at,
    )


class OfferRepository:
    """Async persistence for challenge offers and their conversions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Offers ──────────────────────────────────────────────────────────────

    async def create_offer(self, scope: TenantScope, challenge_id: str, data: OfferCreate) -> OfferRead:
        async for session in self._session_factory():
            model = ChallengeOfferModel(
                **stamp(scope),
                challenge_id=uuid.UUID(challenge_id),
                offer_type=data.offer_type.value,
                whop_plan_id=data.whop_plan_id,
                discount_percentage=data.discount_percentage,
                original_price_cents=data.original_price_cents,
                min_completion_rate=data.min_completion_rate,
                max_completion_rate=data.max_completion_rate,
                custom_message=data.custom_message,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_offer(model)

    async def list_offers(self, scope: TenantScope, challenge_id: str) -> list[OfferRead]:
        async for session in self._session_factory():
            stmt = (
                select(ChallengeOfferModel)
                .where(
                    *scope_clauses(ChallengeOfferModel, scope),
                    ChallengeOfferModel.challenge_id == uuid.UUID(challenge_id),
                )
                .order_by(ChallengeOfferModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_offer(m) for m in result.scalars().all()]

    async def get_offer(self, scope: TenantScope, offer_id: str) -> OfferRead | None:
        try:
            offer_uuid = uuid.UUID(offer_id)
        except ValueError:
            return None
        async for session in self._session_factory():
            stmt = select(ChallengeOfferModel).where(
                *scope_clauses(ChallengeOfferModel, scope),
                ChallengeOfferModel.id == offer_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_offer(model) if model is not None else None

    async def delete_offer(self, scope: TenantScope, offer_id: str) -> bool:
        try:
            offer_uuid = uuid.UUID(offer_id)
        except ValueError:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(ChallengeOfferModel).where(
                    *scope_clauses(ChallengeOfferModel, scope),
                    ChallengeOfferModel.id == offer_uuid,
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Conversions ─────────────────────────────────────────────────────────

    async def get_conversion(self, scope: TenantScope, offer_id: str, user_id: str) -> ConversionRead | None:
        async for session in self._session_factory():
            stmt = select(OfferConversionModel).where(
                *scope_clauses(OfferConversionModel, scope),
                OfferConversionModel.offer_id == uuid.UUID(offer_id),
                OfferConversionModel.user_id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_conversion(model) if model is not None else None

    async def list_conversions(self, scope: TenantScope, user_id: str) -> list[ConversionRead]:
        async for session in self._session_factory():
            stmt = select(OfferConversionModel).where(
                *scope_clauses(OfferConversionModel, scope),
                OfferConversionModel.user_id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            return [_model_to_conversion(m) for m in result.scalars().all()]

    async def record_claim(
        self,
        scope: TenantScope,
        offer: OfferRead,
        user_id: str,
        promo_code: str,
        checkout_url: str,
        metadata: dict[str, Any],
    ) -> ConversionRead:
        """Record a claim. A concurrent second claim returns the first one."""
        async for session in self._session_factory():
            model = OfferConversionModel(
                **stamp(scope),
                offer_id=uuid.UUID(offer.id),
                challenge_id=uuid.UUID(offer.challenge_id),
                user_id=uuid.UUID(user_id),
                conversion_type=ConversionType.CLAIMED.value,
                promo_code=promo_code,
                checkout_url=checkout_url,
                metadata_json=metadata,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not is_unique_violation(exc):
                    raise
                existing = await self.get_conversion(scope, offer.id, user_id)
                if existing is None:
                    raise
                logger.info("offer.claim_already_recorded", offer_id=offer.id, user_id=user_id)
                return existing
            await session.refresh(model)
            return _model_to_conversion(model)
