"""Tests for tenant resolution, user provisioning and request context building."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeWhop, InMemoryTenantRepository, build_harness

from src.challengehub.config import Settings
from src.challengehub.core.identity import RequestIdentity
from src.challengehub.core.roles import AccessLevel, Role
from src.challengehub.tenancy.context import ContextError
from src.challengehub.tenancy.resolver import TenantResolver, default_tenant_name
from src.challengehub.tenancy.schemas import TenantRead
from src.challengehub.tenancy.users import UserProvisioner

EMBEDDED_REFERER = "https://whop.com/dashboard/biz_ABC/apps"


# ── TenantResolver ───────────────────────────────────────────────────────────


def test_default_tenant_name():
    assert default_tenant_name("biz_ABC") == "Company ABC"
    assert default_tenant_name("ABC") == "Company ABC"


@pytest.mark.asyncio
async def test_resolve_provisions_once():
    repo = InMemoryTenantRepository()
    resolver = TenantResolver(repo, ttl=0)

    first = await resolver.resolve("biz_ABC")
    second = await resolver.resolve("biz_ABC")

    assert first.id == second.id
    assert first.name == "Company ABC"
    assert len(repo.tenants) == 1


@pytest.mark.asyncio
async def test_concurrent_first_requests_create_one_tenant():
    repo = InMemoryTenantRepository()
    resolver = TenantResolver(repo, ttl=0)

    results = await asyncio.gather(*(resolver.resolve("biz_RACE") for _ in range(5)))

    assert len(repo.tenants) == 1
    assert len({t.id for t in results}) == 1
    assert repo.create_tenant_calls > 1


@pytest.mark.asyncio
async def test_distinct_companies_get_distinct_tenants():
    repo = InMemoryTenantRepository()
    resolver = TenantResolver(repo, ttl=0)
    a = await resolver.resolve("biz_A")
    b = await resolver.resolve("biz_B")
    assert a.id != b.id


@pytest.mark.asyncio
async def test_cached_tenant_skips_repository():
    repo = InMemoryTenantRepository()
    tenant = TenantRead(id="6b1a2c5e-0000-4000-8000-000000000001", name="Cached", whop_company_id="biz_C")
    cache = AsyncMock()
    cache.get.return_value = tenant.model_dump_json()
    resolver = TenantResolver(repo, cache=cache, ttl=60)

    resolved = await resolver.resolve("biz_C")

    assert resolved == tenant
    assert repo.tenants == {}
    cache.get.assert_awaited_once_with("tenant:company:biz_C")


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_repository():
    repo = InMemoryTenantRepository()
    cache = AsyncMock()
    cache.get.side_effect = RedisConnectionError("down")
    cache.set.side_effect = RedisConnectionError("down")
    resolver = TenantResolver(repo, cache=cache, ttl=60)

    tenant = await resolver.resolve("biz_D")

    assert tenant.whop_company_id == "biz_D"
    assert len(repo.tenants) == 1


@pytest.mark.asyncio
async def test_cache_write_uses_ttl():
    repo = InMemoryTenantRepository()
    cache = AsyncMock()
    cache.get.return_value = None
    resolver = TenantResolver(repo, cache=cache, ttl=120)

    tenant = await resolver.resolve("biz_E")

    cache.set.assert_awaited_once_with("tenant:company:biz_E", tenant.model_dump_json(), ex=120)


# ── UserProvisioner ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_concurrent_user_provisioning_creates_one_row():
    repo = InMemoryTenantRepository()
    tenant = await TenantResolver(repo, ttl=0).resolve("biz_ABC")
    users = UserProvisioner(repo)

    created = await asyncio.gather(*(users.ensure_user(tenant, "user_1", role="MEMBER") for _ in range(4)))

    assert len(repo.users) == 1
    assert len({u.id for u in created}) == 1


@pytest.mark.asyncio
async def test_role_change_updates_existing_user():
    repo = InMemoryTenantRepository()
    tenant = await TenantResolver(repo, ttl=0).resolve("biz_ABC")
    users = UserProvisioner(repo)

    member = await users.ensure_user(tenant, "user_1", role="MEMBER")
    admin = await users.ensure_user(tenant, "user_1", role="ADMIN", whop_experience_id="exp_1")

    assert admin.id == member.id
    assert admin.role == "ADMIN"
    assert admin.whop_experience_id == "exp_1"


@pytest.mark.asyncio
async def test_user_company_comes_from_tenant():
    repo = InMemoryTenantRepository()
    tenant = await TenantResolver(repo, ttl=0).resolve("biz_ABC")
    user = await UserProvisioner(repo).ensure_user(tenant, "user_1", role="GUEST")
    assert user.whop_company_id == "biz_ABC"
    assert user.tenant_id == tenant.id


# ── RequestContextBuilder ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_build_context_for_oracle_admin():
    h = build_harness()
    h.whop.grant("user_123", "biz_ABC", AccessLevel.admin)

    ctx = await h.builder.build(RequestIdentity(whop_user_id="user_123", whop_company_id="biz_ABC"))

    assert ctx.role == Role.ADMIN
    assert ctx.role_source == "oracle"
    assert ctx.whop_company_id == "biz_ABC"
    assert h.tenants.users[ctx.user_id].role == "ADMIN"


@pytest.mark.asyncio
async def test_local_admin_skips_access_check():
    h = build_harness()
    h.whop.grant("user_123", "biz_ABC", AccessLevel.admin)
    identity = RequestIdentity(whop_user_id="user_123", whop_company_id="biz_ABC")
    await h.builder.build(identity)

    h.whop.unavailable = True
    ctx = await h.builder.build(identity)

    assert ctx.role == Role.ADMIN
    assert ctx.role_source == "local_admin"


@pytest.mark.asyncio
async def test_fallback_admin_is_not_persisted():
    h = build_harness(whop=FakeWhop(unavailable=True))
    identity = RequestIdentity(whop_user_id="user_123", whop_company_id="biz_ABC", referer=EMBEDDED_REFERER)

    ctx = await h.builder.build(identity)

    assert ctx.role == Role.ADMIN
    assert ctx.role_source == "oracle_fallback"
    assert h.tenants.users[ctx.user_id].role == "GUEST"


@pytest.mark.asyncio
async def test_company_filled_from_experience():
    h = build_harness(whop=FakeWhop(experiences={"exp_9": "biz_EXP"}))

    ctx = await h.builder.build(RequestIdentity(whop_user_id="user_1", whop_experience_id="exp_9"))

    assert ctx.whop_company_id == "biz_EXP"
    assert ctx.whop_experience_id == "exp_9"


@pytest.mark.asyncio
async def test_missing_company_is_400_with_hint():
    h = build_harness()
    with pytest.raises(ContextError) as exc_info:
        await h.builder.build(RequestIdentity(whop_user_id="user_1"))
    assert exc_info.value.status_code == 400
    assert "x-whop-company-id header" in exc_info.value.hint["tried"]
    assert h.tenants.tenants == {}


@pytest.mark.asyncio
async def test_missing_user_is_401():
    h = build_harness()
    with pytest.raises(ContextError) as exc_info:
        await h.builder.build(RequestIdentity(whop_company_id="biz_ABC"))
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_verified_token_supplies_user():
    h = build_harness(whop=FakeWhop(tokens={"good-token": "user_tok"}))

    ctx = await h.builder.build(RequestIdentity(whop_company_id="biz_ABC", user_token="good-token"))

    assert ctx.whop_user_id == "user_tok"


@pytest.mark.asyncio
async def test_invalid_token_is_401():
    h = build_harness()
    with pytest.raises(ContextError) as exc_info:
        await h.builder.build(
            RequestIdentity(whop_company_id="biz_ABC", whop_user_id="user_1", user_token="forged")
        )
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_token_user_mismatch_is_401():
    h = build_harness(whop=FakeWhop(tokens={"good-token": "user_tok"}))
    with pytest.raises(ContextError, match="does not match"):
        await h.builder.build(
            RequestIdentity(whop_company_id="biz_ABC", whop_user_id="user_other", user_token="good-token")
        )


@pytest.mark.asyncio
async def test_same_user_in_two_companies_gets_two_rows():
    h = build_harness(settings=Settings(TENANT_CACHE_TTL_SECONDS=0))
    a = await h.builder.build(RequestIdentity(whop_user_id="user_1", whop_company_id="biz_A"))
    b = await h.builder.build(RequestIdentity(whop_user_id="user_1", whop_company_id="biz_B"))

    assert a.tenant_id != b.tenant_id
    assert a.user_id != b.user_id
