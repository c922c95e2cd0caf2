"""Payment repository -- pending charges, completion transaction, subscriptions.

complete_payment() is the single transaction behind webhook processing. All
of its writes commit together or not at all, and the unique constraint on
completed_payments.charge_id turns a concurrent second delivery into a
DuplicateChargeError instead of a second grant.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.challenges.models import EnrollmentModel
from src.challengehub.core.database import is_unique_violation
from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp
from src.challengehub.offers.models import OfferConversionModel
from src.challengehub.offers.schemas import ConversionType
from src.challengehub.payments.models import (
    ChallengeRewardModel,
    CompletedPaymentModel,
    PendingPaymentModel,
    RevenueShareModel,
    WhopSubscriptionModel,
)
from src.challengehub.payments.schemas import (
    CompletedPaymentRead,
    CompletedPaymentRecord,
    EntityType,
    PaymentStatus,
    PendingPaymentCreate,
    SubscriptionRead,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)


class DuplicateChargeError(Exception):
    """The charge was already completed by another delivery."""

    def __init__(self, charge_id: str) -> None:
        self.charge_id = charge_id
        super().__init__(f"Charge {charge_id} already processed")


def _model_to_completed(model: CompletedPaymentModel) -> CompletedPaymentRead:
    return CompletedPaymentRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        charge_id=model.charge_id,
        user_id=str(model.user_id) if model.user_id else None,
        whop_user_id=model.whop_user_id,
        challenge_id=str(model.challenge_id) if model.challenge_id else None,
        entity_type=model.entity_type,
        amount_cents=model.amount_cents,
        currency=model.currency,
        processed_at=model.processed_at,
    )


def _model_to_subscription(model: WhopSubscriptionModel) -> SubscriptionRead:
    return SubscriptionRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        whop_membership_id=model.whop_membership_id,
        whop_user_id=model.whop_user_id,
        whop_product_id=model.whop_product_id,
        whop_plan_id=model.whop_plan_id,
        status=model.status,
        valid_until=model.valid_until,
    )


def _optional_uuid(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


class PaymentRepository:
    """Async persistence for the payment flow.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Pending charges ─────────────────────────────────────────────────────

    async def record_pending(self, scope: TenantScope, data: PendingPaymentCreate) -> None:
        async for session in self._session_factory():
            session.add(
                PendingPaymentModel(
                    **stamp(scope),
                    charge_id=data.charge_id,
                    user_id=uuid.UUID(data.user_id),
                    whop_user_id=data.whop_user_id,
                    whop_experience_id=data.whop_experience_id,
                    challenge_id=_optional_uuid(data.challenge_id),
                    entity_type=data.entity_type.value,
                    amount_cents=data.amount_cents,
                    currency=data.currency,
                    status=PaymentStatus.PENDING.value,
                    metadata_json=data.metadata,
                )
            )
            await session.commit()

    # ── Completion ──────────────────────────────────────────────────────────

    async def get_completed_by_charge(self, charge_id: str) -> CompletedPaymentRead | None:
        """Look up a completed payment by platform charge id.

        Charge ids are globally unique on the platform; the lookup is not
        tenant-scoped.
        """
        async for session in self._session_factory():
            stmt = select(CompletedPaymentModel).where(CompletedPaymentModel.charge_id == charge_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_completed(model) if model is not None else None

    async def complete_payment(
        self, scope: TenantScope, record: CompletedPaymentRecord
    ) -> CompletedPaymentRead:
        """Record a confirmed charge and everything it grants, atomically.

        Raises:
            DuplicateChargeError: Another delivery of the same charge committed first.
        """
        challenge_uuid = _optional_uuid(record.challenge_id)
        user_uuid = _optional_uuid(record.user_id)
        async for session in self._session_factory():
            completed = CompletedPaymentModel(
                **stamp(scope),
                charge_id=record.charge_id,
                user_id=user_uuid,
                whop_user_id=record.whop_user_id,
                whop_experience_id=record.whop_experience_id,
                challenge_id=challenge_uuid,
                entity_type=record.entity_type.value,
                amount_cents=record.amount_cents,
                currency=record.currency,
                metadata_json=record.metadata,
            )
            session.add(completed)
            try:
                # Surface the charge_id conflict before any grant is written.
                await session.flush()

                await session.execute(
                    update(PendingPaymentModel)
                    .where(
                        *scope_clauses(PendingPaymentModel, scope),
                        PendingPaymentModel.charge_id == record.charge_id,
                    )
                    .values(status=PaymentStatus.COMPLETED.value)
                )

                if challenge_uuid is not None and user_uuid is not None:
                    if record.entity_type == EntityType.CHALLENGE_REWARD:
                        session.add(
                            ChallengeRewardModel(
                                **stamp(scope),
                                challenge_id=challenge_uuid,
                                user_id=user_uuid,
                                charge_id=record.charge_id,
                            )
                        )
                    else:
                        await session.execute(
                            pg_insert(EnrollmentModel)
                            .values(
                                **stamp(scope),
                                challenge_id=challenge_uuid,
                                user_id=user_uuid,
                                source="paid",
                            )
                            .on_conflict_do_nothing(constraint="uq_enrollments_challenge_user")
                        )
                        session.add(
                            OfferConversionModel(
                                **stamp(scope),
                                challenge_id=challenge_uuid,
                                user_id=user_uuid,
                                conversion_type=ConversionType.PAID_ENTRY.value,
                                revenue_cents=record.amount_cents,
                                metadata_json={"charge_id": record.charge_id},
                            )
                        )

                session.add(
                    RevenueShareModel(
                        **stamp(scope),
                        charge_id=record.charge_id,
                        challenge_id=challenge_uuid,
                        total_cents=record.amount_cents,
                        creator_cents=record.creator_cents,
                        platform_fee_cents=record.platform_fee_cents,
                    )
                )
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not is_unique_violation(exc):
                    raise
                logger.info("payment.completion_conflict", charge_id=record.charge_id)
                raise DuplicateChargeError(record.charge_id) from exc

            await session.refresh(completed)
            return _model_to_completed(completed)

    # ── Subscriptions ───────────────────────────────────────────────────────

    async def upsert_subscription(
        self,
        scope: TenantScope,
        whop_membership_id: str,
        status: SubscriptionStatus,
        whop_user_id: str | None = None,
        whop_product_id: str | None = None,
        whop_plan_id: str | None = None,
        valid_until: datetime | None = None,
    ) -> SubscriptionRead:
        """Insert or update the subscription for a membership.

        Ids already stored are kept when the event omits them.
        """
        values = {
            "whop_user_id": whop_user_id,
            "whop_product_id": whop_product_id,
            "whop_plan_id": whop_plan_id,
            "status": status.value,
            "valid_until": valid_until,
        }
        updates = {key: value for key, value in values.items() if value is not None}
        updates["status"] = status.value
        updates["valid_until"] = valid_until

        async for session in self._session_factory():
            stmt = (
                pg_insert(WhopSubscriptionModel)
                .values(**stamp(scope), whop_membership_id=whop_membership_id, **values)
                .on_conflict_do_update(
                    constraint="uq_whop_subscriptions_membership_id",
                    set_=updates,
                    where=(WhopSubscriptionModel.tenant_id == scope.tenant_uuid),
                )
                .returning(WhopSubscriptionModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            await session.commit()
            if model is None:
                raise ValueError(f"Membership {whop_membership_id} belongs to another tenant")
            return _model_to_subscription(model)

    async def list_subscriptions(self, scope: TenantScope) -> list[SubscriptionRead]:
        async for session in self._session_factory():
            stmt = (
                select(WhopSubscriptionModel)
                .where(*scope_clauses(WhopSubscriptionModel, scope))
                .order_by(WhopSubscriptionModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_subscription(m) for m in result.scalars().all()]
