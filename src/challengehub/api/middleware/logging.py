"""Structured request logging.

One ``request.completed`` (or ``request.error``) event per request, carrying
method, path, status and duration plus the resolved identity: tenant, user,
role and where the role came from. Public endpoints (health, metrics,
webhooks) log without identity fields.

The request id is taken from an inbound ``X-Request-ID`` header when Whop's
proxy supplies one, otherwise generated, and echoed on the response. It is
bound into structlog contextvars for the duration of the request so every
log line emitted by handlers carries it.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.challengehub.config import Environment, get_settings

logger = structlog.get_logger(__name__)


def configure_structlog() -> None:
    """JSON lines in production, coloured console output elsewhere."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _identity_fields(request: Request) -> dict:
    ctx = getattr(request.state, "identity", None)
    if ctx is None:
        return {}
    return {
        "tenant_id": ctx.tenant_id,
        "user_id": ctx.user_id,
        "role": ctx.role.value,
        "role_source": ctx.role_source,
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once, with timing and the caller's identity."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.monotonic()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        def fields(status_code: int) -> dict:
            return {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "request_id": request_id,
                **_identity_fields(request),
            }

        try:
            response = await call_next(request)
        except Exception:
            logger.error("request.error", **fields(500))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        if response.status_code >= 500:
            logger.error("request.completed", **fields(response.status_code))
        elif response.status_code >= 400:
            logger.warning("request.completed", **fields(response.status_code))
        else:
            logger.info("request.completed", **fields(response.status_code))
        return response
