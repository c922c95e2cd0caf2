"""Admin endpoints: challenge management, analytics, broadcasts, winners,
offers, promo codes and the company's access tier.

All endpoints require the ADMIN role for the caller's company and only ever
touch rows of that company's tenant.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel

from src.challengehub.api.deps import domain_http_error, require_admin, require_capability
from src.challengehub.billing.schemas import AccessTierRead
from src.challengehub.billing.service import TierError, TierService
from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.schemas import (
    ChallengeAnalytics,
    ChallengeCreate,
    ChallengeRead,
    ChallengeUpdate,
    WinnerRead,
    WinnerSelectRequest,
)
from src.challengehub.challenges.service import ChallengeError, ChallengeNotFoundError, ChallengeService
from src.challengehub.clients.whop import WhopClient
from src.challengehub.config import get_settings
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.notifications.schemas import BroadcastCreate, BroadcastResult
from src.challengehub.offers.repository import OfferRepository
from src.challengehub.offers.schemas import OfferCreate, OfferRead, PromoCodeCreate
from src.challengehub.payments.repository import PaymentRepository
from src.challengehub.payments.schemas import SubscriptionRead
from src.challengehub.tenancy.repository import TenantRepository

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class ParticipantResponse(BaseModel):
    """One enrolled user with their submission counts."""

    user_id: str
    whop_user_id: str | None = None
    name: str | None = None
    email: str | None = None
    source: str
    joined_at: datetime | None = None
    active_proofs: int = 0


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _state(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return value


def _get_challenge_repository(request: Request) -> ChallengeRepository:
    return _state(request, "challenge_repository", "Challenges")


def _get_challenge_service(request: Request) -> ChallengeService:
    return _state(request, "challenge_service", "Challenges")


def _get_tenant_repository(request: Request) -> TenantRepository:
    return _state(request, "tenant_repository", "Tenancy")


def _get_offer_repository(request: Request) -> OfferRepository:
    return _state(request, "offer_repository", "Offers")


def _get_payment_repository(request: Request) -> PaymentRepository:
    return _state(request, "payment_repository", "Payments")


def _get_whop_client(request: Request) -> WhopClient:
    return _state(request, "whop_client", "Whop client")


def _get_tier_service(request: Request) -> TierService:
    return _state(request, "tier_service", "Access tiers")


def _tier_http_error(exc: TierError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


async def _require_challenge(
    repo: ChallengeRepository, ctx: IdentityContext, challenge_id: str
) -> ChallengeRead:
    challenge = await repo.get_challenge(ctx.scope, challenge_id)
    if challenge is None:
        raise domain_http_error(ChallengeNotFoundError(f"Challenge not found: {challenge_id}"))
    return challenge


# ── Challenges ───────────────────────────────────────────────────────────────


@router.get("/challenges", response_model=list[ChallengeRead])
async def list_challenges(
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[ChallengeRead]:
    repo = _get_challenge_repository(request)
    return await repo.list_challenges(ctx.scope)


@router.post("/challenges", response_model=ChallengeRead, status_code=201)
async def create_challenge(
    body: ChallengeCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> ChallengeRead:
    """Create a challenge in the caller's tenant, owned by the caller.

    Counts against the company's monthly allowance; priced challenges need a
    tier that allows paid entry.
    """
    repo = _get_challenge_repository(request)
    tiers = _get_tier_service(request)
    if body.whop_experience_id is None and ctx.whop_experience_id:
        body = body.model_copy(update={"whop_experience_id": ctx.whop_experience_id})
    try:
        month = await tiers.reserve_challenge(ctx.scope, body.entry_price_cents)
    except TierError as exc:
        raise _tier_http_error(exc) from exc
    try:
        return await repo.create_challenge(ctx.scope, ctx.user_id, body)
    except Exception:
        await tiers.release_challenge(ctx.scope, month)
        raise


@router.patch("/challenges/{challenge_id}", response_model=ChallengeRead)
async def update_challenge(
    challenge_id: str,
    body: ChallengeUpdate,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> ChallengeRead:
    repo = _get_challenge_repository(request)
    try:
        await _get_tier_service(request).check_entry_price(ctx.scope, body.entry_price_cents)
    except TierError as exc:
        raise _tier_http_error(exc) from exc
    challenge = await repo.update_challenge(ctx.scope, challenge_id, body)
    if challenge is None:
        raise domain_http_error(ChallengeNotFoundError(f"Challenge not found: {challenge_id}"))
    return challenge


@router.delete("/challenges/{challenge_id}", status_code=204)
async def delete_challenge(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> Response:
    repo = _get_challenge_repository(request)
    if not await repo.delete_challenge(ctx.scope, challenge_id):
        raise domain_http_error(ChallengeNotFoundError(f"Challenge not found: {challenge_id}"))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/challenges/{challenge_id}/duplicate", response_model=ChallengeRead, status_code=201)
async def duplicate_challenge(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> ChallengeRead:
    repo = _get_challenge_repository(request)
    tiers = _get_tier_service(request)
    original = await _require_challenge(repo, ctx, challenge_id)
    try:
        month = await tiers.reserve_challenge(ctx.scope, original.entry_price_cents)
    except TierError as exc:
        raise _tier_http_error(exc) from exc
    try:
        copy = await repo.duplicate_challenge(ctx.scope, challenge_id, ctx.user_id)
    except Exception:
        await tiers.release_challenge(ctx.scope, month)
        raise
    if copy is None:
        await tiers.release_challenge(ctx.scope, month)
        raise domain_http_error(ChallengeNotFoundError(f"Challenge not found: {challenge_id}"))
    return copy


@router.get("/challenges/{challenge_id}/analytics", response_model=ChallengeAnalytics)
async def challenge_analytics(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_capability("can_view_analytics")),
) -> ChallengeAnalytics:
    """Participation, completion and engagement figures for one challenge."""
    service = _get_challenge_service(request)
    try:
        return await service.analytics(ctx.scope, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.post("/challenges/{challenge_id}/notify", response_model=BroadcastResult)
async def notify_participants(
    challenge_id: str,
    body: BroadcastCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> BroadcastResult:
    """Send an in-app update to every participant of the challenge."""
    service = _get_challenge_service(request)
    try:
        notified = await service.notify_participants(ctx.scope, challenge_id, body, sender_id=ctx.user_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc
    return BroadcastResult(challenge_id=challenge_id, notified=notified)


@router.get("/challenges/{challenge_id}/participants", response_model=list[ParticipantResponse])
async def list_participants(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[ParticipantResponse]:
    repo = _get_challenge_repository(request)
    tenants = _get_tenant_repository(request)
    await _require_challenge(repo, ctx, challenge_id)

    enrollments = await repo.list_enrollments(ctx.scope, challenge_id)
    if not enrollments:
        return []
    users = {u.id: u for u in await tenants.list_users(ctx.scope, [e.user_id for e in enrollments])}
    proofs = await repo.list_proofs(ctx.scope, [e.id for e in enrollments], active_only=True)
    proof_counts: dict[str, int] = {}
    for proof in proofs:
        proof_counts[proof.enrollment_id] = proof_counts.get(proof.enrollment_id, 0) + 1

    result = []
    for enrollment in enrollments:
        user = users.get(enrollment.user_id)
        result.append(
            ParticipantResponse(
                user_id=enrollment.user_id,
                whop_user_id=user.whop_user_id if user else None,
                name=user.name if user else None,
                email=user.email if user else None,
                source=enrollment.source,
                joined_at=enrollment.joined_at,
                active_proofs=proof_counts.get(enrollment.id, 0),
            )
        )
    return result


@router.post("/challenges/{challenge_id}/winners", response_model=list[WinnerRead])
async def select_winners(
    challenge_id: str,
    body: WinnerSelectRequest,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[WinnerRead]:
    """Pick winners automatically by score or manually; notifies each winner."""
    service = _get_challenge_service(request)
    try:
        return await service.choose_winners(ctx.scope, challenge_id, body)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


# ── Offers ───────────────────────────────────────────────────────────────────


@router.get("/challenges/{challenge_id}/offers", response_model=list[OfferRead])
async def list_offers(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[OfferRead]:
    await _require_challenge(_get_challenge_repository(request), ctx, challenge_id)
    return await _get_offer_repository(request).list_offers(ctx.scope, challenge_id)


@router.post("/challenges/{challenge_id}/offers", response_model=OfferRead, status_code=201)
async def create_offer(
    challenge_id: str,
    body: OfferCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> OfferRead:
    await _require_challenge(_get_challenge_repository(request), ctx, challenge_id)
    return await _get_offer_repository(request).create_offer(ctx.scope, challenge_id, body)


@router.delete("/offers/{offer_id}", status_code=204)
async def delete_offer(
    offer_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> Response:
    if not await _get_offer_repository(request).delete_offer(ctx.scope, offer_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Offer not found: {offer_id}",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Promo codes ──────────────────────────────────────────────────────────────


@router.post("/promo-codes", status_code=201)
async def create_promo_code(
    body: PromoCodeCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> dict[str, Any]:
    """Create a promo code for the caller's company on the platform."""
    whop = _get_whop_client(request)
    payload = body.to_platform_payload(get_settings().DEFAULT_CURRENCY)
    return await whop.create_promo_code(ctx.whop_company_id, payload)


@router.get("/promo-codes")
async def list_promo_codes(
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[dict[str, Any]]:
    whop = _get_whop_client(request)
    return await whop.list_promo_codes(ctx.whop_company_id)


# ── Subscription ─────────────────────────────────────────────────────────────


@router.get("/subscriptions", response_model=list[SubscriptionRead])
async def list_subscriptions(
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> list[SubscriptionRead]:
    """Memberships recorded for the caller's company from platform webhooks."""
    return await _get_payment_repository(request).list_subscriptions(ctx.scope)


@router.get("/access-tier", response_model=AccessTierRead)
async def access_tier(
    request: Request,
    ctx: IdentityContext = Depends(require_admin),
) -> AccessTierRead:
    """The company's tier, its limits and this month's challenge usage."""
    return await _get_tier_service(request).describe(ctx.scope)
