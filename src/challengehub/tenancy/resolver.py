"""Tenant resolution by external company id, with auto-provisioning.

The first request from an unseen Whop company creates its tenant. Two
concurrent first requests race on the unique constraint on
tenants.whop_company_id; the loser catches TenantConflictError, re-reads, and
returns the winner's row. Neither request fails and only one tenant exists.

The company -> tenant mapping never changes once written, so it may be cached
in Redis. Cache failures are logged and otherwise ignored.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from src.challengehub.core.monitoring import tenants_provisioned_total
from src.challengehub.tenancy.repository import TenantConflictError, TenantRepository
from src.challengehub.tenancy.schemas import TenantRead

logger = structlog.get_logger(__name__)

_CACHE_KEY = "tenant:company:{company_id}"


def default_tenant_name(whop_company_id: str, prefix: str = "biz_") -> str:
    """Display name given to an auto-provisioned tenant."""
    short_id = whop_company_id[len(prefix):] if whop_company_id.startswith(prefix) else whop_company_id
    return f"Company {short_id}"


class TenantResolver:
    """Map a Whop company id to exactly one Tenant, creating it on first sight.

    Args:
        repository: TenantRepository (or any object with the same methods).
        cache: Optional Redis client for the company -> tenant mapping.
        ttl: Cache TTL in seconds; 0 disables caching.
        company_prefix: Prefix stripped when naming new tenants.
    """

    def __init__(
        self,
        repository: TenantRepository,
        cache: aioredis.Redis | None = None,
        ttl: int = 300,
        company_prefix: str = "biz_",
    ) -> None:
        self._repository = repository
        self._cache = cache if ttl > 0 else None
        self._ttl = ttl
        self._company_prefix = company_prefix

    async def resolve(self, whop_company_id: str) -> TenantRead:
        cached = await self._cache_get(whop_company_id)
        if cached is not None:
            return cached

        tenant = await self._repository.get_by_company_id(whop_company_id)
        if tenant is None:
            tenant = await self._provision(whop_company_id)

        await self._cache_set(tenant)
        return tenant

    async def _provision(self, whop_company_id: str) -> TenantRead:
        name = default_tenant_name(whop_company_id, self._company_prefix)
        try:
            tenant = await self._repository.create_tenant(name=name, whop_company_id=whop_company_id)
        except TenantConflictError:
            winner = await self._repository.get_by_company_id(whop_company_id)
            if winner is None:
                raise
            logger.info(
                "tenant.provision_race_lost",
                whop_company_id=whop_company_id,
                tenant_id=winner.id,
            )
            return winner

        tenants_provisioned_total.inc()
        logger.info(
            "tenant.auto_provisioned",
            whop_company_id=whop_company_id,
            tenant_id=tenant.id,
            name=name,
        )
        return tenant

    # ── Cache ───────────────────────────────────────────────────────────────

    async def _cache_get(self, whop_company_id: str) -> TenantRead | None:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(_CACHE_KEY.format(company_id=whop_company_id))
        except RedisError as exc:
            logger.warning("tenant.cache_read_failed", whop_company_id=whop_company_id, error=str(exc))
            return None
        if not raw:
            return None
        try:
            return TenantRead.model_validate_json(raw)
        except ValidationError:
            logger.warning("tenant.cache_entry_invalid", whop_company_id=whop_company_id)
            return None

    async def _cache_set(self, tenant: TenantRead) -> None:
        if self._cache is None or not tenant.whop_company_id:
            return
        try:
            await self._cache.set(
                _CACHE_KEY.format(company_id=tenant.whop_company_id),
                tenant.model_dump_json(),
                ex=self._ttl,
            )
        except RedisError as exc:
            logger.warning(
                "tenant.cache_write_failed",
                whop_company_id=tenant.whop_company_id,
                error=str(exc),
            )
