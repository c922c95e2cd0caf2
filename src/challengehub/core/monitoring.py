"""Prometheus metrics and Sentry integration.

HTTP metrics are labelled by route template and caller role rather than by
tenant: tenants are auto-provisioned on first sight, so a tenant label
would grow without bound. Per-tenant breakdowns live in the logs and in
Sentry tags.
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route, status and caller role",
    ["method", "endpoint", "status_code", "role"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Domain Metrics ───────────────────────────────────────────────────────────

tenants_provisioned_total = Counter(
    "tenants_provisioned_total",
    "Tenants auto-provisioned on first request from an unseen company",
)

role_decisions_total = Counter(
    "role_decisions_total",
    "Role decisions by resulting role and decision source",
    ["role", "source"],
)

access_oracle_failures_total = Counter(
    "access_oracle_failures_total",
    "Platform access checks that failed with an outage",
)

payment_webhooks_total = Counter(
    "payment_webhooks_total",
    "Payment webhook deliveries by outcome",
    ["outcome"],
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count and time every request except scrapes of /metrics.

    Requests that never reached identity resolution (health checks,
    webhooks, rejected calls) are labelled with role ``anonymous``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route template, not the raw path: /challenges/{challenge_id}
        endpoint = getattr(request.scope.get("route"), "path", "unmatched")
        identity = getattr(request.state, "identity", None)
        role = identity.role.value if identity is not None else "anonymous"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            role=role,
        ).inc()
        http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(elapsed)
        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def _tag_identity(event: dict, hint: dict) -> dict:
    """Tag Sentry events raised inside a tenant-scoped request."""
    from src.challengehub.core.tenant import get_current_context

    try:
        ctx = get_current_context()
    except RuntimeError:
        return event
    event.setdefault("tags", {}).update(
        {
            "tenant_id": ctx.tenant_id,
            "whop_company_id": ctx.whop_company_id,
            "role": ctx.role.value,
            "role_source": ctx.role_source,
        }
    )
    event["user"] = {"id": ctx.whop_user_id}
    return event


def init_sentry(dsn: str, environment: str) -> None:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if environment == "production" else 1.0,
        send_default_pii=False,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=_tag_identity,
    )


def get_metrics_response() -> Response:
    """Prometheus text exposition for /metrics."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
