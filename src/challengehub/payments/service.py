"""Charge creation and webhook processing.

Phase 1 (create_charge) asks the platform for an in-app charge and records
it as pending. Phase 2 is the member paying in the platform's checkout and
never touches this service. Phase 3 (handle_payment_succeeded) runs once
per charge no matter how many times the webhook is delivered.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from pydantic import ValidationError

from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.rules import is_ended
from src.challengehub.challenges.service import ChallengeNotFoundError, RuleViolationError
from src.challengehub.clients.exceptions import WhopAPIError
from src.challengehub.clients.whop import WhopClient
from src.challengehub.core.monitoring import payment_webhooks_total
from src.challengehub.core.scoping import TenantScope
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.payments.repository import DuplicateChargeError, PaymentRepository
from src.challengehub.payments.schemas import (
    ChargeCreate,
    ChargeRead,
    CompletedPaymentRecord,
    EntityType,
    MembershipEvent,
    PaymentSucceeded,
    PendingPaymentCreate,
    SubscriptionStatus,
    WebhookOutcome,
    WebhookResult,
)
from src.challengehub.payments.webhooks import InvalidWebhookError
from src.challengehub.tenancy.resolver import TenantResolver
from src.challengehub.tenancy.users import UserProvisioner

logger = structlog.get_logger(__name__)

PAYMENT_SUCCEEDED = "payment_succeeded"
MEMBERSHIP_WENT_VALID = "membership_went_valid"
MEMBERSHIP_WENT_INVALID = "membership_went_invalid"

DEFAULT_SUBSCRIPTION_DAYS = 30


def split_revenue(total_cents: int, platform_fee_percent: int) -> tuple[int, int]:
    """Return (creator share, platform fee) in cents; the fee is rounded."""
    fee = round(total_cents * platform_fee_percent / 100)
    return total_cents - fee, fee


class PaymentService:
    """Three-phase payment flow plus membership events.

    Args:
        payments: Payment repository.
        challenges: Challenge repository, used to validate the paid challenge.
        resolver: Tenant resolver; webhooks carry a company id, not a session.
        users: User provisioner, used to map the payer to a local user.
        whop: Whop client used to create charges.
        platform_fee_percent: Platform share recorded on every completed charge.
        currency: Currency used when the challenge does not set one.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        challenges: ChallengeRepository,
        resolver: TenantResolver,
        users: UserProvisioner,
        whop: WhopClient,
        platform_fee_percent: int = 10,
        currency: str = "usd",
    ) -> None:
        self._payments = payments
        self._challenges = challenges
        self._resolver = resolver
        self._users = users
        self._whop = whop
        self._platform_fee_percent = platform_fee_percent
        self._currency = currency

    # ── Phase 1 ─────────────────────────────────────────────────────────────

    async def create_charge(self, ctx: IdentityContext, data: ChargeCreate) -> ChargeRead:
        """Create a platform charge for a challenge and record it as pending.

        Entry charges always use the challenge's own price.

        Raises:
            ChallengeNotFoundError: Challenge absent from the caller's tenant.
            RuleViolationError: Free, ended, or already joined challenge.
            WhopAPIError: The platform rejected the charge.
        """
        challenge = await self._challenges.get_challenge(ctx.scope, data.challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(f"Challenge {data.challenge_id} not found")

        if data.entity_type == EntityType.CHALLENGE_ENTRY:
            if challenge.entry_price_cents <= 0:
                raise RuleViolationError("Challenge is free to join")
            if is_ended(challenge):
                raise RuleViolationError("Challenge has already ended")
            enrolled = await self._challenges.get_enrollment(ctx.scope, challenge.id, ctx.user_id)
            if enrolled is not None:
                raise RuleViolationError("Already enrolled in this challenge")
            amount_cents = challenge.entry_price_cents
        else:
            amount_cents = data.amount_cents or 0

        currency = (challenge.currency or self._currency).lower()
        experience_id = ctx.whop_experience_id or challenge.whop_experience_id
        metadata = {
            "experienceId": experience_id,
            "challengeId": challenge.id,
            "companyId": ctx.whop_company_id,
            "entityType": data.entity_type.value,
            "entityId": challenge.id,
        }

        charge = await self._whop.create_charge(
            ctx.whop_user_id, amount_cents, currency, metadata=metadata
        )
        charge_id = charge.get("id")
        if not charge_id:
            raise WhopAPIError("Charge response has no id", body=str(charge))

        await self._payments.record_pending(
            ctx.scope,
            PendingPaymentCreate(
                charge_id=charge_id,
                user_id=ctx.user_id,
                whop_user_id=ctx.whop_user_id,
                whop_experience_id=experience_id,
                challenge_id=challenge.id,
                entity_type=data.entity_type,
                amount_cents=amount_cents,
                currency=currency,
                metadata=metadata,
            ),
        )
        logger.info(
            "payment.charge_pending",
            charge_id=charge_id,
            challenge_id=challenge.id,
            user_id=ctx.user_id,
            amount_cents=amount_cents,
        )
        return ChargeRead(
            charge_id=charge_id,
            challenge_id=challenge.id,
            entity_type=data.entity_type,
            amount_cents=amount_cents,
            currency=currency,
            checkout_url=charge.get("checkout_url") or charge.get("purchase_url"),
            metadata=metadata,
        )

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def dispatch(self, event: str, data: dict[str, Any]) -> WebhookResult:
        """Route a normalized webhook event to its handler.

        Unknown events are acknowledged and ignored.
        """
        if event == PAYMENT_SUCCEEDED:
            return await self.handle_payment_succeeded(data)
        if event in (MEMBERSHIP_WENT_VALID, MEMBERSHIP_WENT_INVALID):
            return await self.handle_membership(data, valid=event == MEMBERSHIP_WENT_VALID)
        logger.info("webhook.unhandled_event", webhook_event=event)
        return WebhookResult(event=event, outcome=WebhookOutcome.IGNORED)

    async def handle_payment_succeeded(self, data: dict[str, Any]) -> WebhookResult:
        """Phase 3: record a confirmed charge exactly once.

        Raises:
            InvalidWebhookError: Payload misses the charge id, payer or company.
        """
        if not isinstance(data.get("metadata"), dict):
            logger.info("payment.ignored_without_metadata", charge_id=data.get("id"))
            return self._outcome(PAYMENT_SUCCEEDED, WebhookOutcome.IGNORED, data.get("id"))

        try:
            payment = PaymentSucceeded.model_validate(data)
        except ValidationError as exc:
            raise InvalidWebhookError(f"Invalid payment payload: {exc.error_count()} errors") from exc

        meta = payment.metadata
        if not meta.challenge_id:
            logger.info("payment.ignored_without_challenge", charge_id=payment.charge_id)
            return self._outcome(PAYMENT_SUCCEEDED, WebhookOutcome.IGNORED, payment.charge_id)

        company_id = meta.company_id or payment.company_id
        if not company_id:
            raise InvalidWebhookError("Payment metadata has no company id")

        if await self._payments.get_completed_by_charge(payment.charge_id) is not None:
            logger.info("payment.duplicate_webhook", charge_id=payment.charge_id)
            return self._outcome(PAYMENT_SUCCEEDED, WebhookOutcome.DUPLICATE, payment.charge_id)

        tenant = await self._resolver.resolve(company_id)
        scope = TenantScope(tenant_id=tenant.id, whop_company_id=company_id)

        challenge = await self._challenges.get_challenge(scope, meta.challenge_id)
        if challenge is None:
            logger.warning(
                "payment.challenge_not_found",
                charge_id=payment.charge_id,
                challenge_id=meta.challenge_id,
                tenant_id=tenant.id,
            )
        user = await self._users.get_user(tenant, payment.whop_user_id)
        if user is None:
            logger.warning(
                "payment.user_not_found",
                charge_id=payment.charge_id,
                whop_user_id=payment.whop_user_id,
                tenant_id=tenant.id,
            )

        creator_cents, fee_cents = split_revenue(payment.final_amount, self._platform_fee_percent)
        record = CompletedPaymentRecord(
            charge_id=payment.charge_id,
            whop_user_id=payment.whop_user_id,
            user_id=user.id if user else None,
            whop_experience_id=meta.experience_id,
            challenge_id=challenge.id if challenge else None,
            entity_type=meta.entity_type,
            amount_cents=payment.final_amount,
            currency=payment.currency.lower(),
            creator_cents=creator_cents,
            platform_fee_cents=fee_cents,
            metadata=meta.model_dump(by_alias=True),
        )
        try:
            await self._payments.complete_payment(scope, record)
        except DuplicateChargeError:
            logger.info("payment.duplicate_webhook", charge_id=payment.charge_id, raced=True)
            return self._outcome(PAYMENT_SUCCEEDED, WebhookOutcome.DUPLICATE, payment.charge_id)

        logger.info(
            "payment.completed",
            charge_id=payment.charge_id,
            tenant_id=tenant.id,
            challenge_id=record.challenge_id,
            entity_type=meta.entity_type.value,
            amount_cents=payment.final_amount,
            platform_fee_cents=fee_cents,
        )
        return self._outcome(PAYMENT_SUCCEEDED, WebhookOutcome.PROCESSED, payment.charge_id)

    async def handle_membership(self, data: dict[str, Any], valid: bool) -> WebhookResult:
        """Activate or cancel the company's subscription for a membership."""
        event = MEMBERSHIP_WENT_VALID if valid else MEMBERSHIP_WENT_INVALID
        try:
            membership = MembershipEvent.model_validate(data)
        except ValidationError as exc:
            raise InvalidWebhookError(f"Invalid membership payload: {exc.error_count()} errors") from exc

        if not membership.company_id:
            logger.info("subscription.ignored_without_company", membership_id=membership.membership_id)
            return self._outcome(event, WebhookOutcome.IGNORED)

        tenant = await self._resolver.resolve(membership.company_id)
        scope = TenantScope(tenant_id=tenant.id, whop_company_id=membership.company_id)
        now = datetime.now(timezone.utc)
        if valid:
            status = SubscriptionStatus.ACTIVE
            valid_until = membership.expires_at or now + timedelta(days=DEFAULT_SUBSCRIPTION_DAYS)
        else:
            status = SubscriptionStatus.CANCELLED
            valid_until = now

        try:
            subscription = await self._payments.upsert_subscription(
                scope,
                membership.membership_id,
                status,
                whop_user_id=membership.whop_user_id,
                whop_product_id=membership.product_id,
                whop_plan_id=membership.plan_id,
                valid_until=valid_until,
            )
        except ValueError as exc:
            raise InvalidWebhookError(str(exc)) from exc
        logger.info(
            "subscription.activated" if valid else "subscription.cancelled",
            tenant_id=tenant.id,
            membership_id=membership.membership_id,
            subscription_id=subscription.id,
        )
        return self._outcome(event, WebhookOutcome.PROCESSED)

    @staticmethod
    def _outcome(event: str, outcome: WebhookOutcome, charge_id: str | None = None) -> WebhookResult:
        payment_webhooks_total.labels(outcome=outcome.value).inc()
        return WebhookResult(event=event, outcome=outcome, charge_id=charge_id)
