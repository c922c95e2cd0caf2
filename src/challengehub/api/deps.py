"""FastAPI dependency injection for the per-request identity context.

Every tenant-scoped endpoint depends on get_identity_context, which runs the
shared RequestContextBuilder once per request. Handlers never read identity
headers themselves.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable

import structlog
from fastapi import Depends, HTTPException, Request, status

from src.challengehub.challenges.service import (
    ChallengeError,
    ChallengeFullError,
    ChallengeNotFoundError,
    NotEnrolledError,
    PaymentRequiredError,
    RuleViolationError,
)
from src.challengehub.config import get_settings
from src.challengehub.core.identity import extract_identity
from src.challengehub.core.tenant import IdentityContext, reset_request_context, set_request_context
from src.challengehub.offers.service import OfferNotFoundError
from src.challengehub.tenancy.context import ContextError, RequestContextBuilder


def get_context_builder(request: Request) -> RequestContextBuilder:
    """Retrieve RequestContextBuilder from app.state, 503 if not available."""
    builder = getattr(request.app.state, "context_builder", None)
    if builder is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity context not initialized",
        )
    return builder


async def get_identity_context(request: Request) -> AsyncGenerator[IdentityContext, None]:
    """Resolve identity, tenant and role for the current request.

    The context is also published on ``request.state.identity``, in the
    request contextvar, and in structlog's contextvars for the request's
    log lines.

    Raises:
        HTTPException(400): No company id could be found.
        HTTPException(401): No user id, or an invalid user token.
    """
    builder = get_context_builder(request)
    identity = extract_identity(request.headers, request.cookies, get_settings())
    try:
        ctx = await builder.build(identity)
    except ContextError as exc:
        raise HTTPException(
            status_code=exc.status_code,
            detail={"error": exc.message, "hint": exc.hint},
        ) from exc

    request.state.identity = ctx
    token = set_request_context(ctx)
    structlog.contextvars.bind_contextvars(tenant_id=ctx.tenant_id, user_id=ctx.user_id)
    try:
        yield ctx
    finally:
        structlog.contextvars.unbind_contextvars("tenant_id", "user_id")
        reset_request_context(token)


async def require_participant(
    ctx: IdentityContext = Depends(get_identity_context),
) -> IdentityContext:
    """Allow members and admins; guests get 403."""
    if not ctx.capabilities.can_participate:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this community",
        )
    return ctx


async def require_admin(
    ctx: IdentityContext = Depends(get_identity_context),
) -> IdentityContext:
    if not ctx.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return ctx


def require_capability(name: str) -> Callable[..., Awaitable[IdentityContext]]:
    """Dependency factory checking one capability flag by name."""

    async def _check(ctx: IdentityContext = Depends(get_identity_context)) -> IdentityContext:
        if not getattr(ctx.capabilities, name, False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing capability: {name}",
            )
        return ctx

    return _check


# ── Domain error mapping ────────────────────────────────────────────────────

_DOMAIN_STATUS: dict[type[Exception], int] = {
    ChallengeNotFoundError: status.HTTP_404_NOT_FOUND,
    OfferNotFoundError: status.HTTP_404_NOT_FOUND,
    NotEnrolledError: status.HTTP_403_FORBIDDEN,
    ChallengeFullError: status.HTTP_409_CONFLICT,
    PaymentRequiredError: status.HTTP_402_PAYMENT_REQUIRED,
    RuleViolationError: status.HTTP_400_BAD_REQUEST,
}


def domain_http_error(exc: ChallengeError | OfferNotFoundError) -> HTTPException:
    """HTTPException for a challenge or offer domain error."""
    for error_type, status_code in _DOMAIN_STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
