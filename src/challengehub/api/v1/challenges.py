"""Member-facing challenge endpoints.

Every endpoint runs inside the caller's tenant: challenges, enrollments,
proofs and offers of other companies are invisible here and come back as 404.
Browsing needs only a resolved identity; participating needs the
can_participate capability.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.challengehub.api.deps import domain_http_error, get_identity_context, require_participant
from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.schemas import (
    ChallengeRead,
    CheckinCreate,
    CheckinRead,
    EnrollmentRead,
    LeaderboardEntry,
    ProgressRead,
    ProofCreate,
    ProofRead,
    WinnerRead,
)
from src.challengehub.challenges.service import ChallengeError, ChallengeService
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.offers.schemas import ClaimResult, EligibleOffer
from src.challengehub.offers.service import OfferNotFoundError, OfferService

router = APIRouter(prefix="/api/v1/challenges", tags=["challenges"])


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_challenge_service(request: Request) -> ChallengeService:
    service = getattr(request.app.state, "challenge_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Challenges not initialized",
        )
    return service


def _get_challenge_repository(request: Request) -> ChallengeRepository:
    repo = getattr(request.app.state, "challenge_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Challenges not initialized",
        )
    return repo


def _get_offer_service(request: Request) -> OfferService:
    service = getattr(request.app.state, "offer_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Offers not initialized",
        )
    return service


# ── Browsing ─────────────────────────────────────────────────────────────────


@router.get("", response_model=list[ChallengeRead])
async def list_challenges(
    request: Request,
    experience_id: str | None = Query(default=None, description="Only challenges of this experience"),
    ctx: IdentityContext = Depends(get_identity_context),
) -> list[ChallengeRead]:
    """List the tenant's challenges, newest first."""
    repo = _get_challenge_repository(request)
    return await repo.list_challenges(ctx.scope, experience_id)


@router.get("/{challenge_id}", response_model=ChallengeRead)
async def get_challenge(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(get_identity_context),
) -> ChallengeRead:
    service = _get_challenge_service(request)
    try:
        return await service.get(ctx.scope, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.get("/{challenge_id}/leaderboard", response_model=list[LeaderboardEntry])
async def leaderboard(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(get_identity_context),
) -> list[LeaderboardEntry]:
    service = _get_challenge_service(request)
    try:
        return await service.leaderboard(ctx.scope, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.get("/{challenge_id}/winners", response_model=list[WinnerRead])
async def list_winners(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(get_identity_context),
) -> list[WinnerRead]:
    service = _get_challenge_service(request)
    repo = _get_challenge_repository(request)
    try:
        await service.get(ctx.scope, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc
    return await repo.list_winners(ctx.scope, challenge_id)


# ── Participation ────────────────────────────────────────────────────────────


@router.post("/{challenge_id}/join", response_model=EnrollmentRead, status_code=201)
async def join_challenge(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> EnrollmentRead:
    """Join a free challenge. Paid challenges answer 402; use /payments/charges."""
    service = _get_challenge_service(request)
    try:
        return await service.join(ctx, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.post("/{challenge_id}/checkin", response_model=CheckinRead, status_code=201)
async def check_in(
    challenge_id: str,
    body: CheckinCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> CheckinRead:
    service = _get_challenge_service(request)
    try:
        return await service.checkin(ctx, challenge_id, body)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.post("/{challenge_id}/proof", response_model=ProofRead, status_code=201)
async def submit_proof(
    challenge_id: str,
    body: ProofCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> ProofRead:
    service = _get_challenge_service(request)
    try:
        return await service.submit_proof(ctx, challenge_id, body)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.get("/{challenge_id}/progress", response_model=ProgressRead)
async def progress(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> ProgressRead:
    service = _get_challenge_service(request)
    try:
        return await service.progress(ctx, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


# ── Offers ───────────────────────────────────────────────────────────────────


@router.get("/{challenge_id}/offers", response_model=list[EligibleOffer])
async def list_offers(
    challenge_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> list[EligibleOffer]:
    """Active offers of the challenge with the caller's eligibility."""
    service = _get_offer_service(request)
    try:
        return await service.list_for_member(ctx, challenge_id)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc


@router.post("/{challenge_id}/offers/{offer_id}/claim", response_model=ClaimResult)
async def claim_offer(
    challenge_id: str,
    offer_id: str,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> ClaimResult:
    service = _get_offer_service(request)
    try:
        return await service.claim(ctx, challenge_id, offer_id)
    except (ChallengeError, OfferNotFoundError) as exc:
        raise domain_http_error(exc) from exc
