"""Tests for role derivation and capabilities."""

from __future__ import annotations

import asyncio
import gc
from types import SimpleNamespace

import pytest

from conftest import FakeWhop, build_harness

from src.challengehub.clients.exceptions import WhopAPIError
from src.challengehub.config import Settings
from src.challengehub.core.identity import RequestIdentity
from src.challengehub.core.roles import (
    ROLE_CAPABILITIES,
    AccessCheck,
    AccessLevel,
    Role,
    decide_role,
    derive_role,
    discard_oracle,
    query_access,
    start_oracle,
)

EMBEDDED_REFERER = "https://whop.com/dashboard/biz_ABC/apps"


@pytest.fixture
def settings() -> Settings:
    return Settings(TENANT_CACHE_TTL_SECONDS=0)


def _identity(**overrides) -> RequestIdentity:
    values = {"whop_user_id": "user_123", "whop_company_id": "biz_ABC"}
    values.update(overrides)
    return RequestIdentity(**values)


# ── Capabilities ─────────────────────────────────────────────────────────────


def test_capabilities_per_role():
    assert ROLE_CAPABILITIES[Role.ADMIN].as_dict() == {
        "can_create": True,
        "can_manage": True,
        "can_participate": True,
        "can_view_analytics": True,
    }
    assert ROLE_CAPABILITIES[Role.MEMBER].can_participate is True
    assert ROLE_CAPABILITIES[Role.MEMBER].can_manage is False
    assert not any(ROLE_CAPABILITIES[Role.GUEST].as_dict().values())


# ── decide_role ──────────────────────────────────────────────────────────────


def test_local_admin_is_trusted(settings):
    decision = decide_role(_identity(), None, SimpleNamespace(role="ADMIN"), False, settings)
    assert decision.role == Role.ADMIN
    assert decision.source == "local_admin"


@pytest.mark.parametrize(
    ("level", "role"),
    [
        (AccessLevel.admin, Role.ADMIN),
        (AccessLevel.customer, Role.MEMBER),
        (AccessLevel.no_access, Role.GUEST),
    ],
)
def test_oracle_level_maps_to_role(settings, level, role):
    access = AccessCheck(has_access=level != AccessLevel.no_access, access_level=level)
    decision = decide_role(_identity(), access, None, False, settings)
    assert decision.role == role
    assert decision.source == "oracle"


def test_oracle_without_access_is_guest_even_with_level(settings):
    access = AccessCheck(has_access=False, access_level=AccessLevel.customer)
    decision = decide_role(_identity(), access, None, False, settings)
    assert decision.role == Role.GUEST
    assert decision.access_level == AccessLevel.no_access


def test_oracle_demotes_local_member(settings):
    access = AccessCheck(has_access=False, access_level=AccessLevel.no_access)
    decision = decide_role(_identity(), access, SimpleNamespace(role="MEMBER"), False, settings)
    assert decision.role == Role.GUEST


def test_oracle_failure_from_platform_iframe_is_admin(settings):
    decision = decide_role(_identity(referer=EMBEDDED_REFERER), None, None, True, settings)
    assert decision.role == Role.ADMIN
    assert decision.source == "oracle_fallback"


def test_oracle_failure_fallback_can_be_disabled():
    settings = Settings(TENANT_CACHE_TTL_SECONDS=0, ORACLE_FAILURE_ADMIN_FALLBACK=False)
    decision = decide_role(_identity(referer=EMBEDDED_REFERER), None, None, True, settings)
    assert decision.role == Role.GUEST


def test_oracle_failure_outside_iframe_keeps_local_member(settings):
    decision = decide_role(_identity(), None, SimpleNamespace(role="MEMBER"), True, settings)
    assert decision.role == Role.MEMBER
    assert decision.source == "local_member"


def test_oracle_failure_outside_iframe_unknown_user_is_guest(settings):
    decision = decide_role(_identity(referer="https://example.com"), None, None, True, settings)
    assert decision.role == Role.GUEST
    assert decision.source == "default"


# ── query_access / derive_role ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_experience_checked_before_company():
    whop = FakeWhop()
    whop.grant("user_123", "exp_1", AccessLevel.customer)
    check = await query_access(whop, _identity(whop_experience_id="exp_1"))
    assert check.access_level == AccessLevel.customer
    assert whop.access_calls == [("user_123", "exp_1")]


@pytest.mark.asyncio
async def test_company_checked_when_experience_denies():
    whop = FakeWhop()
    whop.grant("user_123", "biz_ABC", AccessLevel.admin)
    check = await query_access(whop, _identity(whop_experience_id="exp_1"))
    assert check.access_level == AccessLevel.admin
    assert whop.access_calls == [("user_123", "exp_1"), ("user_123", "biz_ABC")]


@pytest.mark.asyncio
async def test_nothing_to_ask_without_user():
    whop = FakeWhop()
    assert await query_access(whop, _identity(whop_user_id=None)) is None
    assert whop.access_calls == []


@pytest.mark.asyncio
async def test_derive_role_skips_oracle_for_local_admin(settings):
    whop = FakeWhop(unavailable=True)
    decision = await derive_role(
        _identity(), SimpleNamespace(role="ADMIN"), start_oracle(whop, _identity()), settings
    )
    assert decision.role == Role.ADMIN
    assert whop.access_calls == []


@pytest.mark.asyncio
async def test_derive_role_unavailable_oracle_with_platform_referer(settings):
    whop = FakeWhop(unavailable=True)
    identity = _identity(referer=EMBEDDED_REFERER)
    decision = await derive_role(identity, None, start_oracle(whop, identity), settings)
    assert decision.role == Role.ADMIN
    assert decision.source == "oracle_fallback"
    assert decision.capabilities.can_manage is True


class _RejectingOracle:
    """Answers every access check with a definite platform error."""

    async def check_access(self, whop_user_id: str, resource_id: str) -> AccessCheck:
        raise WhopAPIError("Forbidden", status_code=403)


@pytest.mark.asyncio
async def test_derive_role_propagates_definite_oracle_error(settings):
    with pytest.raises(WhopAPIError, match="Forbidden"):
        await derive_role(_identity(), None, start_oracle(_RejectingOracle(), _identity()), settings)


@pytest.mark.asyncio
async def test_failed_check_discarded_for_local_admin_is_retrieved(settings):
    """An access check that failed before the local admin was found leaves no unretrieved error."""
    loop = asyncio.get_running_loop()
    reported: list[dict] = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        task = start_oracle(_RejectingOracle(), _identity())
        while not task.done():
            await asyncio.sleep(0)
        assert not task.cancelled()

        decision = await derive_role(_identity(), SimpleNamespace(role="ADMIN"), task, settings)

        assert decision.source == "local_admin"
        del task
        gc.collect()
        await asyncio.sleep(0)
    finally:
        loop.set_exception_handler(previous)
    assert reported == []


@pytest.mark.asyncio
async def test_discard_oracle_cancels_pending_check():
    whop = FakeWhop()
    task = start_oracle(whop, _identity())
    discard_oracle(task)
    with pytest.raises(asyncio.CancelledError):
        await task
    assert whop.access_calls == []


@pytest.mark.asyncio
async def test_context_builder_uses_shared_role_path(settings, monkeypatch):
    """RequestContextBuilder decides roles through derive_role."""
    from src.challengehub.tenancy import context

    calls = []
    original = context.derive_role

    async def recording(identity, local_user, oracle_task, settings):
        calls.append(identity.whop_user_id)
        return await original(identity, local_user, oracle_task, settings)

    monkeypatch.setattr(context, "derive_role", recording)
    h = build_harness()
    h.whop.grant("user_123", "biz_ABC", AccessLevel.customer)

    ctx = await h.builder.build(_identity())

    assert calls == ["user_123"]
    assert ctx.role == Role.MEMBER
    assert ctx.role_source == "oracle"
