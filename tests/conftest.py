"""Shared test doubles and fixtures.

Provides:
- In-memory repositories for tenancy, challenges, notifications, offers,
  payments and monthly usage that honour the same uniqueness rules as the
  database
- grant_tier(): an active subscription to a tier product for a company
- FakeWhop: access oracle plus charge / promo-code calls, no network
- A FastAPI test app wired with the real RequestContextBuilder and services
  on top of the doubles, and an httpx AsyncClient for it
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.challengehub.billing.schemas import MonthlyUsageRead
from src.challengehub.billing.service import TierService
from src.challengehub.challenges.schemas import (
    ChallengeCreate,
    ChallengeRead,
    ChallengeUpdate,
    CheckinCreate,
    CheckinRead,
    EnrollmentRead,
    ProofCreate,
    ProofRead,
    WinnerRead,
)
from src.challengehub.challenges.service import ChallengeService
from src.challengehub.challenges.winners import WinnerResult
from src.challengehub.clients.exceptions import InvalidUserTokenError, WhopUnavailableError
from src.challengehub.config import Settings
from src.challengehub.core.roles import AccessCheck, AccessLevel
from src.challengehub.core.scoping import TenantScope
from src.challengehub.notifications.schemas import NotificationCreate, NotificationRead
from src.challengehub.offers.schemas import ConversionRead, ConversionType, OfferCreate, OfferRead
from src.challengehub.offers.service import OfferService
from src.challengehub.payments.repository import DuplicateChargeError
from src.challengehub.payments.schemas import (
    CompletedPaymentRead,
    CompletedPaymentRecord,
    EntityType,
    PendingPaymentCreate,
    SubscriptionRead,
    SubscriptionStatus,
)
from src.challengehub.payments.service import PaymentService
from src.challengehub.tenancy.context import RequestContextBuilder
from src.challengehub.tenancy.repository import TenantConflictError, UserConflictError
from src.challengehub.tenancy.resolver import TenantResolver
from src.challengehub.tenancy.schemas import TenantRead, UserRead
from src.challengehub.tenancy.users import UserProvisioner


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _key(scope: TenantScope) -> tuple[str, str]:
    return scope.tenant_id, scope.whop_company_id


# ── Tenancy ──────────────────────────────────────────────────────────────────


class InMemoryTenantRepository:
    """In-memory TenantRepository with the unique constraints of the real tables.

    Every call yields to the event loop first so concurrent callers interleave
    the way they would against a database.
    """

    def __init__(self) -> None:
        self.tenants: dict[str, TenantRead] = {}
        self.users: dict[str, UserRead] = {}
        self.create_tenant_calls = 0

    async def get_by_company_id(self, whop_company_id: str) -> TenantRead | None:
        await asyncio.sleep(0)
        for tenant in self.tenants.values():
            if tenant.whop_company_id == whop_company_id:
                return tenant
        return None

    async def create_tenant(self, name: str, whop_company_id: str) -> TenantRead:
        await asyncio.sleep(0)
        self.create_tenant_calls += 1
        if any(t.whop_company_id == whop_company_id for t in self.tenants.values()):
            raise TenantConflictError(whop_company_id)
        tenant = TenantRead(
            id=str(uuid.uuid4()),
            name=name,
            whop_company_id=whop_company_id,
            created_at=_now(),
        )
        self.tenants[tenant.id] = tenant
        return tenant

    async def get_user(self, scope: TenantScope, whop_user_id: str) -> UserRead | None:
        await asyncio.sleep(0)
        for user in self.users.values():
            if (user.tenant_id, user.whop_company_id) == _key(scope) and user.whop_user_id == whop_user_id:
                return user
        return None

    async def create_user(
        self,
        scope: TenantScope,
        whop_user_id: str,
        role: str,
        whop_experience_id: str | None = None,
    ) -> UserRead:
        await asyncio.sleep(0)
        for user in self.users.values():
            if (user.tenant_id, user.whop_company_id) == _key(scope) and user.whop_user_id == whop_user_id:
                raise UserConflictError(whop_user_id)
        user = UserRead(
            id=str(uuid.uuid4()),
            tenant_id=scope.tenant_id,
            whop_company_id=scope.whop_company_id,
            whop_user_id=whop_user_id,
            whop_experience_id=whop_experience_id,
            role=role,
            created_at=_now(),
        )
        self.users[user.id] = user
        return user

    async def update_user(
        self,
        scope: TenantScope,
        user_id: str,
        role: str,
        whop_experience_id: str | None = None,
    ) -> UserRead | None:
        user = self.users.get(user_id)
        if user is None or (user.tenant_id, user.whop_company_id) != _key(scope):
            return None
        changes: dict[str, Any] = {"role": role}
        if whop_experience_id:
            changes["whop_experience_id"] = whop_experience_id
        updated = user.model_copy(update=changes)
        self.users[user_id] = updated
        return updated

    async def list_users(self, scope: TenantScope, user_ids: list[str] | None = None) -> list[UserRead]:
        return [
            u
            for u in self.users.values()
            if (u.tenant_id, u.whop_company_id) == _key(scope) and (user_ids is None or u.id in user_ids)
        ]


# ── Whop ─────────────────────────────────────────────────────────────────────


class FakeWhop:
    """Access oracle and platform calls backed by dictionaries.

    Args:
        levels: (whop_user_id, resource_id) -> AccessLevel; absent pairs are no_access.
        unavailable: Every access check raises WhopUnavailableError.
        tokens: user token -> whop user id accepted by verify_user_token.
        experiences: experience id -> owning company id.
    """

    def __init__(
        self,
        levels: dict[tuple[str, str], AccessLevel] | None = None,
        unavailable: bool = False,
        tokens: dict[str, str] | None = None,
        experiences: dict[str, str] | None = None,
    ) -> None:
        self.levels = levels or {}
        self.unavailable = unavailable
        self.tokens = tokens or {}
        self.experiences = experiences or {}
        self.access_calls: list[tuple[str, str]] = []
        self.charges: list[dict[str, Any]] = []
        self.promo_codes: list[tuple[str, dict[str, Any]]] = []

    def grant(self, whop_user_id: str, resource_id: str, level: AccessLevel) -> None:
        self.levels[(whop_user_id, resource_id)] = level

    async def check_access(self, whop_user_id: str, resource_id: str) -> AccessCheck:
        self.access_calls.append((whop_user_id, resource_id))
        await asyncio.sleep(0)
        if self.unavailable:
            raise WhopUnavailableError("Whop API unavailable (503)", status_code=503)
        level = self.levels.get((whop_user_id, resource_id), AccessLevel.no_access)
        return AccessCheck(
            has_access=level != AccessLevel.no_access,
            access_level=level,
            resource_id=resource_id,
        )

    async def verify_user_token(self, token: str) -> str:
        if token not in self.tokens:
            raise InvalidUserTokenError("Signature verification failed")
        return self.tokens[token]

    async def get_experience_company(self, experience_id: str) -> str | None:
        return self.experiences.get(experience_id)

    async def create_charge(
        self,
        whop_user_id: str,
        amount_cents: int,
        currency: str,
        metadata: dict[str, Any],
        product_id: str | None = None,
    ) -> dict[str, Any]:
        charge = {
            "id": f"ch_{len(self.charges) + 1}",
            "user_id": whop_user_id,
            "amount": amount_cents,
            "currency": currency,
            "metadata": metadata,
            "checkout_url": f"https://whop.com/checkout/ch_{len(self.charges) + 1}",
        }
        self.charges.append(charge)
        return charge

    async def create_promo_code(self, company_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.promo_codes.append((company_id, payload))
        return {"id": f"promo_{len(self.promo_codes)}", **payload}

    async def list_promo_codes(self, company_id: str) -> list[dict[str, Any]]:
        return [{"id": f"promo_{i + 1}", **p} for i, (c, p) in enumerate(self.promo_codes) if c == company_id]


# ── Challenges ───────────────────────────────────────────────────────────────


class InMemoryChallengeRepository:
    """In-memory ChallengeRepository; rows are keyed by (tenant_id, company id)."""

    def __init__(self) -> None:
        self.challenges: dict[str, tuple[tuple[str, str], ChallengeRead]] = {}
        self.enrollments: dict[str, tuple[tuple[str, str], EnrollmentRead]] = {}
        self.checkins: dict[str, tuple[tuple[str, str], CheckinRead]] = {}
        self.proofs: dict[str, tuple[tuple[str, str], ProofRead]] = {}
        self.winners: dict[str, tuple[tuple[str, str], list[WinnerRead]]] = {}

    def _owned(self, table: dict, scope: TenantScope, row_id: str):
        entry = table.get(row_id)
        if entry is None or entry[0] != _key(scope):
            return None
        return entry[1]

    def _count(self, challenge_id: str) -> int:
        return sum(1 for _, e in self.enrollments.values() if e.challenge_id == challenge_id)

    def seed(self, scope: TenantScope, **fields: Any) -> ChallengeRead:
        """Insert a challenge directly, bypassing create-time validation."""
        now = _now()
        values: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "tenant_id": scope.tenant_id,
            "whop_company_id": scope.whop_company_id,
            "title": "30 Day Fitness",
            "description": "",
            "category": "General",
            "proof_type": "PHOTO",
            "cadence": "DAILY",
            "start_at": now - timedelta(days=1),
            "end_at": now + timedelta(days=29),
            "created_at": now,
        }
        values.update(fields)
        challenge = ChallengeRead(**values)
        self.challenges[challenge.id] = (_key(scope), challenge)
        return challenge

    async def list_challenges(self, scope: TenantScope, whop_experience_id: str | None = None) -> list[ChallengeRead]:
        rows = [
            c.model_copy(update={"participant_count": self._count(c.id)})
            for key, c in self.challenges.values()
            if key == _key(scope)
            and (not whop_experience_id or c.whop_experience_id in (None, whop_experience_id))
        ]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    async def get_challenge(self, scope: TenantScope, challenge_id: str) -> ChallengeRead | None:
        challenge = self._owned(self.challenges, scope, challenge_id)
        if challenge is None:
            return None
        return challenge.model_copy(update={"participant_count": self._count(challenge_id)})

    async def create_challenge(self, scope: TenantScope, creator_id: str | None, data: ChallengeCreate) -> ChallengeRead:
        return self.seed(
            scope,
            creator_id=creator_id,
            whop_experience_id=data.whop_experience_id,
            title=data.title,
            description=data.description,
            image_url=data.image_url,
            category=data.category,
            proof_type=data.proof_type,
            cadence=data.cadence,
            start_at=data.start_at,
            end_at=data.end_at,
            rules=data.rules_document(),
            entry_price_cents=data.entry_price_cents,
        )

    async def update_challenge(self, scope: TenantScope, challenge_id: str, data: ChallengeUpdate) -> ChallengeRead | None:
        challenge = self._owned(self.challenges, scope, challenge_id)
        if challenge is None:
            return None
        changes = data.model_dump(exclude_unset=True)
        rules = dict(challenge.rules)
        for key in ("max_participants", "rewards", "policy"):
            if key in changes:
                rules[key] = changes.pop(key)
        updated = challenge.model_copy(update={**changes, "rules": rules})
        self.challenges[challenge_id] = (_key(scope), updated)
        return updated

    async def delete_challenge(self, scope: TenantScope, challenge_id: str) -> bool:
        if self._owned(self.challenges, scope, challenge_id) is None:
            return False
        del self.challenges[challenge_id]
        return True

    async def duplicate_challenge(self, scope: TenantScope, challenge_id: str, creator_id: str | None) -> ChallengeRead | None:
        original = self._owned(self.challenges, scope, challenge_id)
        if original is None:
            return None
        now = _now()
        return self.seed(
            scope,
            **{
                **original.model_dump(exclude={"id", "participant_count", "created_at"}),
                "title": f"{original.title} (Copy)",
                "creator_id": creator_id,
                "start_at": now + timedelta(days=7),
                "end_at": now + timedelta(days=14),
            },
        )

    async def get_enrollment(self, scope: TenantScope, challenge_id: str, user_id: str) -> EnrollmentRead | None:
        for key, enrollment in self.enrollments.values():
            if key == _key(scope) and enrollment.challenge_id == challenge_id and enrollment.user_id == user_id:
                return enrollment
        return None

    async def create_enrollment(
        self, scope: TenantScope, challenge_id: str, user_id: str, source: str = "free"
    ) -> EnrollmentRead:
        existing = await self.get_enrollment(scope, challenge_id, user_id)
        if existing is not None:
            return existing
        enrollment = EnrollmentRead(
            id=str(uuid.uuid4()),
            challenge_id=challenge_id,
            user_id=user_id,
            source=source,
            joined_at=_now(),
        )
        self.enrollments[enrollment.id] = (_key(scope), enrollment)
        return enrollment

    async def list_enrollments(self, scope: TenantScope, challenge_id: str) -> list[EnrollmentRead]:
        return [e for key, e in self.enrollments.values() if key == _key(scope) and e.challenge_id == challenge_id]

    async def list_checkins(self, scope: TenantScope, enrollment_ids) -> list[CheckinRead]:
        ids = set(enrollment_ids)
        rows = [c for key, c in self.checkins.values() if key == _key(scope) and c.enrollment_id in ids]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    async def save_checkin(
        self, scope: TenantScope, enrollment_id: str, data: CheckinCreate, replaces: str | None = None
    ) -> CheckinRead:
        previous = self._owned(self.checkins, scope, replaces) if replaces else None
        checkin = CheckinRead(
            id=previous.id if previous else str(uuid.uuid4()),
            enrollment_id=enrollment_id,
            content=data.content,
            image_url=data.image_url,
            link_url=data.link_url,
            created_at=previous.created_at if previous else _now(),
            updated_at=_now() if previous else None,
        )
        self.checkins[checkin.id] = (_key(scope), checkin)
        return checkin

    async def list_proofs(self, scope: TenantScope, enrollment_ids, active_only: bool = False) -> list[ProofRead]:
        ids = set(enrollment_ids)
        rows = [
            p
            for key, p in self.proofs.values()
            if key == _key(scope) and p.enrollment_id in ids and (p.is_active or not active_only)
        ]
        return sorted(rows, key=lambda p: p.created_at, reverse=True)

    async def add_proof(
        self, scope: TenantScope, enrollment_id: str, data: ProofCreate, replaces: str | None = None
    ) -> ProofRead:
        version = 1
        previous = self._owned(self.proofs, scope, replaces) if replaces else None
        if previous is not None:
            self.proofs[previous.id] = (_key(scope), previous.model_copy(update={"is_active": False}))
            version = previous.version + 1
        proof = ProofRead(
            id=str(uuid.uuid4()),
            enrollment_id=enrollment_id,
            type=data.type,
            url=data.url,
            content=data.content,
            version=version,
            created_at=_now(),
        )
        self.proofs[proof.id] = (_key(scope), proof)
        return proof

    async def replace_winners(self, scope: TenantScope, challenge_id: str, winners: list[WinnerResult]) -> list[WinnerRead]:
        rows = [
            WinnerRead(
                id=str(uuid.uuid4()),
                challenge_id=challenge_id,
                user_id=w.user_id,
                place=w.place,
                title=w.title,
                description=w.description,
                score=float(w.score),
                selection_reason=w.selection_reason,
                created_at=_now(),
            )
            for w in sorted(winners, key=lambda w: w.place)
        ]
        self.winners[challenge_id] = (_key(scope), rows)
        return rows

    async def list_winners(self, scope: TenantScope, challenge_id: str) -> list[WinnerRead]:
        return self._owned(self.winners, scope, challenge_id) or []


# ── Notifications ────────────────────────────────────────────────────────────


class InMemoryNotificationRepository:
    def __init__(self) -> None:
        self.rows: list[tuple[tuple[str, str], NotificationRead]] = []

    async def create_many(self, scope: TenantScope, notifications: list[NotificationCreate]) -> list[NotificationRead]:
        created = [
            NotificationRead(
                id=str(uuid.uuid4()),
                user_id=n.user_id,
                challenge_id=n.challenge_id,
                type=n.type,
                title=n.title,
                message=n.message,
                metadata=n.metadata,
                created_at=_now(),
            )
            for n in notifications
        ]
        self.rows.extend((_key(scope), n) for n in created)
        return created

    async def list_for_user(
        self, scope: TenantScope, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        rows = [
            n
            for key, n in self.rows
            if key == _key(scope) and n.user_id == user_id and not (unread_only and n.is_read)
        ]
        return rows[:limit]

    async def mark_read(self, scope: TenantScope, user_id: str, notification_ids: list[str] | None = None) -> int:
        updated = 0
        for index, (key, n) in enumerate(self.rows):
            if key != _key(scope) or n.user_id != user_id or n.is_read:
                continue
            if notification_ids is not None and n.id not in notification_ids:
                continue
            self.rows[index] = (key, n.model_copy(update={"is_read": True}))
            updated += 1
        return updated


# ── Offers ───────────────────────────────────────────────────────────────────


class InMemoryOfferRepository:
    def __init__(self) -> None:
        self.offers: dict[str, tuple[tuple[str, str], OfferRead]] = {}
        self.conversions: list[tuple[tuple[str, str], ConversionRead]] = []

    async def create_offer(self, scope: TenantScope, challenge_id: str, data: OfferCreate) -> OfferRead:
        offer = OfferRead(id=str(uuid.uuid4()), challenge_id=challenge_id, created_at=_now(), **data.model_dump())
        self.offers[offer.id] = (_key(scope), offer)
        return offer

    async def list_offers(self, scope: TenantScope, challenge_id: str) -> list[OfferRead]:
        return [o for key, o in self.offers.values() if key == _key(scope) and o.challenge_id == challenge_id]

    async def get_offer(self, scope: TenantScope, offer_id: str) -> OfferRead | None:
        entry = self.offers.get(offer_id)
        return entry[1] if entry is not None and entry[0] == _key(scope) else None

    async def delete_offer(self, scope: TenantScope, offer_id: str) -> bool:
        if await self.get_offer(scope, offer_id) is None:
            return False
        del self.offers[offer_id]
        return True

    async def get_conversion(self, scope: TenantScope, offer_id: str, user_id: str) -> ConversionRead | None:
        for key, c in self.conversions:
            if key == _key(scope) and c.offer_id == offer_id and c.user_id == user_id:
                return c
        return None

    async def list_conversions(self, scope: TenantScope, user_id: str) -> list[ConversionRead]:
        return [c for key, c in self.conversions if key == _key(scope) and c.user_id == user_id]

    async def record_claim(
        self,
        scope: TenantScope,
        offer: OfferRead,
        user_id: str,
        promo_code: str,
        checkout_url: str,
        metadata: dict[str, Any],
    ) -> ConversionRead:
        existing = await self.get_conversion(scope, offer.id, user_id)
        if existing is not None:
            return existing
        conversion = ConversionRead(
            id=str(uuid.uuid4()),
            offer_id=offer.id,
            challenge_id=offer.challenge_id,
            user_id=user_id,
            conversion_type=ConversionType.CLAIMED,
            promo_code=promo_code,
            checkout_url=checkout_url,
            created_at=_now(),
        )
        self.conversions.append((_key(scope), conversion))
        return conversion


# ── Payments ─────────────────────────────────────────────────────────────────


class InMemoryPaymentRepository:
    """In-memory PaymentRepository; charge_id is unique across all tables.

    Paid entries are enrolled through the challenge double so the grant is
    visible to ChallengeService.
    """

    def __init__(self, challenges: InMemoryChallengeRepository | None = None) -> None:
        self._challenges = challenges
        self.pending: dict[str, tuple[tuple[str, str], PendingPaymentCreate]] = {}
        self.completed: dict[str, CompletedPaymentRead] = {}
        self.rewards: list[tuple[str, str, str]] = []
        self.revenue_shares: list[tuple[str, int, int, int]] = []
        self.subscriptions: dict[str, SubscriptionRead] = {}

    async def record_pending(self, scope: TenantScope, data: PendingPaymentCreate) -> None:
        self.pending[data.charge_id] = (_key(scope), data)

    async def get_completed_by_charge(self, charge_id: str) -> CompletedPaymentRead | None:
        await asyncio.sleep(0)
        return self.completed.get(charge_id)

    async def complete_payment(self, scope: TenantScope, record: CompletedPaymentRecord) -> CompletedPaymentRead:
        await asyncio.sleep(0)
        if record.charge_id in self.completed:
            raise DuplicateChargeError(record.charge_id)
        completed = CompletedPaymentRead(
            id=str(uuid.uuid4()),
            tenant_id=scope.tenant_id,
            charge_id=record.charge_id,
            user_id=record.user_id,
            whop_user_id=record.whop_user_id,
            challenge_id=record.challenge_id,
            entity_type=record.entity_type,
            amount_cents=record.amount_cents,
            currency=record.currency,
            processed_at=_now(),
        )
        self.completed[record.charge_id] = completed
        if record.challenge_id and record.user_id:
            if record.entity_type == EntityType.CHALLENGE_REWARD:
                self.rewards.append((record.challenge_id, record.user_id, record.charge_id))
            elif self._challenges is not None:
                await self._challenges.create_enrollment(scope, record.challenge_id, record.user_id, source="paid")
        self.revenue_shares.append(
            (record.charge_id, record.amount_cents, record.creator_cents, record.platform_fee_cents)
        )
        return completed

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
        existing = self.subscriptions.get(whop_membership_id)
        if existing is not None and existing.tenant_id != scope.tenant_id:
            raise ValueError(f"Membership {whop_membership_id} belongs to another tenant")
        subscription = SubscriptionRead(
            id=existing.id if existing else str(uuid.uuid4()),
            tenant_id=scope.tenant_id,
            whop_membership_id=whop_membership_id,
            whop_user_id=whop_user_id,
            whop_product_id=whop_product_id,
            whop_plan_id=whop_plan_id,
            status=status,
            valid_until=valid_until,
        )
        self.subscriptions[whop_membership_id] = subscription
        return subscription

    async def list_subscriptions(self, scope: TenantScope) -> list[SubscriptionRead]:
        return [s for s in self.subscriptions.values() if s.tenant_id == scope.tenant_id]


# ── Billing ──────────────────────────────────────────────────────────────────


class InMemoryUsageRepository:
    """In-memory UsageRepository; counters keyed by (tenant, company, month)."""

    def __init__(self) -> None:
        self.counts: dict[tuple[str, str, str], int] = {}

    async def get_usage(self, scope: TenantScope, month: str) -> MonthlyUsageRead:
        count = self.counts.get((*_key(scope), month), 0)
        return MonthlyUsageRead(tenant_id=scope.tenant_id, month=month, challenges_created=count)

    async def reserve_slot(self, scope: TenantScope, month: str, limit: int | None) -> int | None:
        key = (*_key(scope), month)
        count = self.counts.get(key, 0)
        if limit is not None and count >= limit:
            return None
        self.counts[key] = count + 1
        return count + 1

    async def release_slot(self, scope: TenantScope, month: str) -> None:
        key = (*_key(scope), month)
        if self.counts.get(key, 0) > 0:
            self.counts[key] -= 1


# ── App Fixtures ─────────────────────────────────────────────────────────────


@dataclass
class Harness:
    """Everything behind the test app, for arranging and asserting."""

    app: FastAPI
    settings: Settings
    whop: FakeWhop
    tenants: InMemoryTenantRepository
    challenges: InMemoryChallengeRepository
    notifications: InMemoryNotificationRepository
    offers: InMemoryOfferRepository
    payments: InMemoryPaymentRepository
    usage: InMemoryUsageRepository
    resolver: TenantResolver
    builder: RequestContextBuilder


def build_harness(settings: Settings | None = None, whop: FakeWhop | None = None) -> Harness:
    """Create the v1 app on top of in-memory doubles (no lifespan, no database)."""
    from src.challengehub.api.v1.router import router

    settings = settings or Settings(
        TENANT_CACHE_TTL_SECONDS=0,
        PLUS_TIER_PRODUCT_IDS="prod_plus",
        PRO_PLUS_TIER_PRODUCT_IDS="prod_proplus",
    )
    whop = whop or FakeWhop()
    tenants = InMemoryTenantRepository()
    challenges = InMemoryChallengeRepository()
    notifications = InMemoryNotificationRepository()
    offers = InMemoryOfferRepository()
    payments = InMemoryPaymentRepository(challenges)
    usage = InMemoryUsageRepository()
    resolver = TenantResolver(tenants, ttl=0)
    users = UserProvisioner(tenants)
    builder = RequestContextBuilder(resolver, users, whop, settings)

    app = FastAPI()
    app.include_router(router)
    app.state.whop_client = whop
    app.state.tenant_repository = tenants
    app.state.challenge_repository = challenges
    app.state.notification_repository = notifications
    app.state.offer_repository = offers
    app.state.payment_repository = payments
    app.state.tier_service = TierService(payments, usage, settings)
    app.state.context_builder = builder
    app.state.challenge_service = ChallengeService(challenges, tenants, notifications)
    app.state.offer_service = OfferService(offers, challenges, whop)
    app.state.payment_service = PaymentService(payments, challenges, resolver, users, whop)

    return Harness(
        app=app,
        settings=settings,
        whop=whop,
        tenants=tenants,
        challenges=challenges,
        notifications=notifications,
        offers=offers,
        payments=payments,
        usage=usage,
        resolver=resolver,
        builder=builder,
    )


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest_asyncio.fixture
async def client(harness: Harness) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the test app."""
    transport = ASGITransport(app=harness.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def whop_headers(company_id: str = "biz_ABC", user_id: str = "user_123", **extra: str) -> dict[str, str]:
    """Identity headers as the platform's iframe proxy sends them."""
    headers = {"x-whop-company-id": company_id, "x-whop-user-id": user_id}
    headers.update(extra)
    return headers


async def grant_tier(harness: Harness, company_id: str = "biz_ABC", product_id: str = "prod_proplus") -> None:
    """Give the company an active subscription to a tier product."""
    tenant = await harness.resolver.resolve(company_id)
    await harness.payments.upsert_subscription(
        TenantScope(tenant_id=tenant.id, whop_company_id=company_id),
        f"mem_{company_id}_{product_id}",
        SubscriptionStatus.ACTIVE,
        whop_product_id=product_id,
        valid_until=_now() + timedelta(days=30),
    )
