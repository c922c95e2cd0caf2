"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the Whop client, repositories and services, and
the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.challengehub.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.challengehub.api.v1.router import router as v1_router
from src.challengehub.billing.repository import UsageRepository
from src.challengehub.billing.service import TierService
from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.service import ChallengeService
from src.challengehub.clients.exceptions import WhopAPIError
from src.challengehub.clients.whop import WhopClient
from src.challengehub.config import get_settings
from src.challengehub.core.database import close_db, get_session, init_db
from src.challengehub.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.challengehub.core.redis import close_redis, tenant_cache
from src.challengehub.notifications.repository import NotificationRepository
from src.challengehub.offers.repository import OfferRepository
from src.challengehub.offers.service import OfferService
from src.challengehub.payments.repository import PaymentRepository
from src.challengehub.payments.service import PaymentService
from src.challengehub.tenancy.context import RequestContextBuilder
from src.challengehub.tenancy.repository import TenantRepository
from src.challengehub.tenancy.resolver import TenantResolver
from src.challengehub.tenancy.users import UserProvisioner

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services on startup, close on shutdown."""
    settings = get_settings()
    if settings.webhook_signature_required and not settings.WHOP_WEBHOOK_SECRET:
        raise RuntimeError(
            f"WHOP_WEBHOOK_SECRET must be set in {settings.ENVIRONMENT.value}; "
            "payment webhooks cannot be authenticated without it"
        )
    configure_structlog()
    await init_db()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    whop_client = WhopClient.from_settings(settings)
    if not settings.WHOP_API_KEY:
        logger.warning("startup.whop_api_key_missing")

    tenant_repository = TenantRepository(session_factory=get_session)
    challenge_repository = ChallengeRepository(session_factory=get_session)
    notification_repository = NotificationRepository(session_factory=get_session)
    offer_repository = OfferRepository(session_factory=get_session)
    payment_repository = PaymentRepository(session_factory=get_session)
    usage_repository = UsageRepository(session_factory=get_session)

    cache = tenant_cache(settings)
    resolver = TenantResolver(
        tenant_repository,
        cache=cache,
        ttl=settings.TENANT_CACHE_TTL_SECONDS,
        company_prefix=settings.COMPANY_ID_PREFIX,
    )
    users = UserProvisioner(tenant_repository)

    app.state.whop_client = whop_client
    app.state.tenant_repository = tenant_repository
    app.state.challenge_repository = challenge_repository
    app.state.notification_repository = notification_repository
    app.state.offer_repository = offer_repository
    app.state.payment_repository = payment_repository
    app.state.tier_service = TierService(payment_repository, usage_repository, settings)
    app.state.context_builder = RequestContextBuilder(resolver, users, whop_client, settings)
    app.state.challenge_service = ChallengeService(
        challenge_repository, tenant_repository, notification_repository
    )
    app.state.offer_service = OfferService(
        offer_repository,
        challenge_repository,
        whop_client,
        checkout_domain=settings.WHOP_PLATFORM_DOMAIN,
        currency=settings.DEFAULT_CURRENCY,
    )
    app.state.payment_service = PaymentService(
        payment_repository,
        challenge_repository,
        resolver,
        users,
        whop_client,
        platform_fee_percent=settings.PLATFORM_FEE_PERCENT,
        currency=settings.DEFAULT_CURRENCY,
    )
    logger.info(
        "startup.complete",
        environment=settings.ENVIRONMENT.value,
        tenant_cache=cache is not None,
        oracle_admin_fallback=settings.ORACLE_FAILURE_ADMIN_FALLBACK,
    )

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await close_db()
    await close_redis()


async def whop_api_error_handler(request: Request, exc: WhopAPIError) -> JSONResponse:
    """Upstream platform failures surface as 500 with the upstream message."""
    logger.error(
        "whop.request_failed",
        path=request.url.path,
        upstream_status=exc.status_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Platform request failed", "details": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Challenge Hub API",
        version="0.1.0",
        description="Multi-tenant community challenges for Whop companies",
        lifespan=lifespan,
    )

    app.add_exception_handler(WhopAPIError, whop_api_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, auth, challenges, admin, payments, ...)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
