"""Whop webhook receiver.

Authenticated by HMAC signature only; there is no user context. The tenant
is resolved from the company id carried in the event.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Request, status

from src.challengehub.config import get_settings
from src.challengehub.payments.schemas import WebhookResult
from src.challengehub.payments.service import PaymentService
from src.challengehub.payments.webhooks import (
    InvalidWebhookError,
    WebhookSignatureError,
    parse_event,
    verify_signature,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _get_payment_service(request: Request) -> PaymentService:
    service = getattr(request.app.state, "payment_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments not initialized",
        )
    return service


@router.post("/whop", response_model=WebhookResult)
async def whop_webhook(request: Request) -> WebhookResult:
    """Verify, parse and dispatch one webhook delivery.

    A missing or wrong signature is 401; a malformed body is 400. Duplicate
    deliveries of a processed charge are acknowledged with 200 so the
    platform stops retrying them.
    """
    service = _get_payment_service(request)
    settings = get_settings()
    body = await request.body()
    try:
        verify_signature(
            body,
            request.headers,
            settings.WHOP_WEBHOOK_SECRET,
            required=settings.webhook_signature_required,
        )
    except WebhookSignatureError as exc:
        logger.warning("webhook.unauthenticated", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Invalid webhook signature", "details": str(exc)},
        ) from exc

    try:
        event, data = parse_event(body)
        return await service.dispatch(event, data)
    except InvalidWebhookError as exc:
        logger.warning("webhook.rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Invalid webhook", "details": str(exc)},
        ) from exc
