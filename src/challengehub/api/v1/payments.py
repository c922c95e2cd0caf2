"""In-app charge endpoint (phase 1 of the payment flow)."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.challengehub.api.deps import domain_http_error, require_participant
from src.challengehub.challenges.service import ChallengeError
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.payments.schemas import ChargeCreate, ChargeRead
from src.challengehub.payments.service import PaymentService

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def _get_payment_service(request: Request) -> PaymentService:
    """Retrieve PaymentService from app.state, 503 if not available."""
    service = getattr(request.app.state, "payment_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments not initialized",
        )
    return service


@router.post("/charges", response_model=ChargeRead, status_code=201)
async def create_charge(
    body: ChargeCreate,
    request: Request,
    ctx: IdentityContext = Depends(require_participant),
) -> ChargeRead:
    """Create a platform charge for a paid challenge.

    The member completes the payment in the platform's checkout; enrollment
    happens when the payment webhook arrives.
    """
    service = _get_payment_service(request)
    try:
        return await service.create_charge(ctx, body)
    except ChallengeError as exc:
        raise domain_http_error(exc) from exc
