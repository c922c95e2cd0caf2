"""Tests for charge creation and idempotent webhook processing.

Uses the in-memory doubles from conftest; the payment repository double
enforces charge_id uniqueness the way the completed_payments constraint does.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import Harness, build_harness

from src.challengehub.challenges.service import ChallengeNotFoundError, RuleViolationError
from src.challengehub.core.identity import RequestIdentity
from src.challengehub.core.roles import AccessLevel
from src.challengehub.core.scoping import TenantScope
from src.challengehub.payments.schemas import (
    ChargeCreate,
    EntityType,
    SubscriptionStatus,
    WebhookOutcome,
)
from src.challengehub.payments.service import split_revenue
from src.challengehub.payments.webhooks import InvalidWebhookError


@pytest_asyncio.fixture
async def setup():
    """Harness, a member context in biz_ABC and a paid challenge."""
    h = build_harness()
    h.whop.grant("user_123", "biz_ABC", AccessLevel.customer)
    ctx = await h.builder.build(RequestIdentity(whop_user_id="user_123", whop_company_id="biz_ABC"))
    challenge = h.challenges.seed(ctx.scope, entry_price_cents=2500, whop_experience_id="exp_1")
    return h, ctx, challenge


def _payment(challenge_id: str, charge_id: str = "ch_1", entity_type: str = "challenge_entry", **overrides) -> dict:
    data = {
        "id": charge_id,
        "final_amount": 2500,
        "currency": "USD",
        "user_id": "user_123",
        "metadata": {
            "experienceId": "exp_1",
            "challengeId": challenge_id,
            "companyId": "biz_ABC",
            "entityType": entity_type,
            "entityId": challenge_id,
        },
    }
    data.update(overrides)
    return data


def _service(h: Harness):
    return h.app.state.payment_service


# ── Revenue split ────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("total", "percent", "expected"),
    [(2500, 10, (2250, 250)), (999, 10, (899, 100)), (0, 10, (0, 0)), (1000, 0, (1000, 0))],
)
def test_split_revenue(total, percent, expected):
    creator, fee = split_revenue(total, percent)
    assert (creator, fee) == expected
    assert creator + fee == total


# ── Phase 1: charge creation ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_entry_charge_records_pending(setup):
    h, ctx, challenge = setup

    charge = await _service(h).create_charge(ctx, ChargeCreate(challenge_id=challenge.id))

    assert charge.charge_id == "ch_1"
    assert charge.amount_cents == 2500
    assert charge.checkout_url == "https://whop.com/checkout/ch_1"
    assert charge.metadata == {
        "experienceId": "exp_1",
        "challengeId": challenge.id,
        "companyId": "biz_ABC",
        "entityType": "challenge_entry",
        "entityId": challenge.id,
    }
    key, pending = h.payments.pending["ch_1"]
    assert key == (ctx.tenant_id, "biz_ABC")
    assert pending.user_id == ctx.user_id
    assert h.whop.charges[0]["user_id"] == "user_123"


@pytest.mark.asyncio
async def test_charge_for_free_challenge_rejected(setup):
    h, ctx, _ = setup
    free = h.challenges.seed(ctx.scope, entry_price_cents=0)
    with pytest.raises(RuleViolationError, match="free"):
        await _service(h).create_charge(ctx, ChargeCreate(challenge_id=free.id))
    assert h.whop.charges == []


@pytest.mark.asyncio
async def test_charge_when_already_enrolled_rejected(setup):
    h, ctx, challenge = setup
    await h.challenges.create_enrollment(ctx.scope, challenge.id, ctx.user_id)
    with pytest.raises(RuleViolationError, match="Already enrolled"):
        await _service(h).create_charge(ctx, ChargeCreate(challenge_id=challenge.id))


@pytest.mark.asyncio
async def test_charge_for_other_tenants_challenge_not_found(setup):
    h, ctx, _ = setup
    other = h.challenges.seed(TenantScope(tenant_id=ctx.tenant_id, whop_company_id="biz_OTHER"), entry_price_cents=100)
    with pytest.raises(ChallengeNotFoundError):
        await _service(h).create_charge(ctx, ChargeCreate(challenge_id=other.id))


@pytest.mark.asyncio
async def test_reward_charge_uses_requested_amount(setup):
    h, ctx, challenge = setup
    charge = await _service(h).create_charge(
        ctx,
        ChargeCreate(challenge_id=challenge.id, entity_type=EntityType.CHALLENGE_REWARD, amount_cents=900),
    )
    assert charge.amount_cents == 900
    assert charge.metadata["entityType"] == "challenge_reward"


# ── Phase 3: webhook processing ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_payment_enrolls_member_and_records_revenue(setup):
    h, ctx, challenge = setup

    result = await _service(h).dispatch("payment_succeeded", _payment(challenge.id))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.charge_id == "ch_1"
    enrollment = await h.challenges.get_enrollment(ctx.scope, challenge.id, ctx.user_id)
    assert enrollment is not None
    assert enrollment.source == "paid"
    assert h.payments.revenue_shares == [("ch_1", 2500, 2250, 250)]
    assert h.payments.completed["ch_1"].currency == "usd"


@pytest.mark.asyncio
async def test_redelivered_webhook_is_processed_once(setup):
    h, ctx, challenge = setup
    service = _service(h)

    first = await service.dispatch("payment_succeeded", _payment(challenge.id))
    second = await service.dispatch("payment_succeeded", _payment(challenge.id))

    assert first.outcome == WebhookOutcome.PROCESSED
    assert second.outcome == WebhookOutcome.DUPLICATE
    assert len(h.payments.completed) == 1
    assert len(h.payments.revenue_shares) == 1
    assert len(await h.challenges.list_enrollments(ctx.scope, challenge.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_grant_one_reward(setup):
    h, ctx, challenge = setup
    payload = _payment(challenge.id, charge_id="ch_reward", entity_type="challenge_reward")

    results = await asyncio.gather(*(_service(h).dispatch("payment_succeeded", payload) for _ in range(3)))

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["duplicate", "duplicate", "processed"]
    assert h.payments.rewards == [(challenge.id, ctx.user_id, "ch_reward")]
    assert len(h.payments.revenue_shares) == 1
    assert await h.challenges.get_enrollment(ctx.scope, challenge.id, ctx.user_id) is None


@pytest.mark.asyncio
async def test_payment_without_metadata_is_ignored(setup):
    h, _, _ = setup
    result = await _service(h).dispatch("payment_succeeded", {"id": "ch_x", "user_id": "user_123"})
    assert result.outcome == WebhookOutcome.IGNORED
    assert h.payments.completed == {}


@pytest.mark.asyncio
async def test_payment_without_challenge_is_ignored(setup):
    h, _, _ = setup
    payload = _payment("x")
    del payload["metadata"]["challengeId"]
    result = await _service(h).dispatch("payment_succeeded", payload)
    assert result.outcome == WebhookOutcome.IGNORED


@pytest.mark.asyncio
async def test_payment_without_company_is_invalid(setup):
    h, _, challenge = setup
    payload = _payment(challenge.id)
    del payload["metadata"]["companyId"]
    with pytest.raises(InvalidWebhookError, match="company"):
        await _service(h).dispatch("payment_succeeded", payload)


@pytest.mark.asyncio
async def test_payment_without_payer_is_invalid(setup):
    h, _, challenge = setup
    payload = _payment(challenge.id)
    del payload["user_id"]
    with pytest.raises(InvalidWebhookError):
        await _service(h).dispatch("payment_succeeded", payload)


@pytest.mark.asyncio
async def test_unknown_payer_is_recorded_without_grant(setup):
    h, ctx, challenge = setup

    result = await _service(h).dispatch("payment_succeeded", _payment(challenge.id, user_id="user_stranger"))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert h.payments.completed["ch_1"].user_id is None
    assert await h.challenges.list_enrollments(ctx.scope, challenge.id) == []
    assert len(h.payments.revenue_shares) == 1


@pytest.mark.asyncio
async def test_payment_for_unseen_company_provisions_tenant(setup):
    h, _, _ = setup
    payload = _payment("00000000-0000-4000-8000-000000000000")
    payload["metadata"]["companyId"] = "biz_NEW"

    result = await _service(h).dispatch("payment_succeeded", payload)

    assert result.outcome == WebhookOutcome.PROCESSED
    assert any(t.whop_company_id == "biz_NEW" for t in h.tenants.tenants.values())


@pytest.mark.asyncio
async def test_unknown_event_is_ignored(setup):
    h, _, _ = setup
    result = await _service(h).dispatch("refund_created", {"id": "r_1"})
    assert result.outcome == WebhookOutcome.IGNORED


# ── Memberships ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_membership_valid_then_invalid(setup):
    h, ctx, _ = setup
    service = _service(h)
    data = {"id": "mem_1", "user_id": "user_123", "company_id": "biz_ABC", "plan_id": "plan_1"}

    valid = await service.dispatch("membership_went_valid", data)
    subscription = h.payments.subscriptions["mem_1"]
    assert valid.outcome == WebhookOutcome.PROCESSED
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.tenant_id == ctx.tenant_id
    assert subscription.valid_until > datetime.now(timezone.utc) + timedelta(days=29)

    await service.dispatch("membership_went_invalid", data)
    assert h.payments.subscriptions["mem_1"].status == SubscriptionStatus.CANCELLED
    assert len(h.payments.subscriptions) == 1


@pytest.mark.asyncio
async def test_membership_expiry_from_payload(setup):
    h, _, _ = setup
    expires = "2027-01-01T00:00:00+00:00"
    await _service(h).dispatch(
        "membership_went_valid", {"id": "mem_2", "company_id": "biz_ABC", "expires_at": expires}
    )
    assert h.payments.subscriptions["mem_2"].valid_until == datetime(2027, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_membership_without_company_is_ignored(setup):
    h, _, _ = setup
    result = await _service(h).dispatch("membership_went_valid", {"id": "mem_3"})
    assert result.outcome == WebhookOutcome.IGNORED
    assert h.payments.subscriptions == {}


@pytest.mark.asyncio
async def test_membership_claimed_by_other_company_is_rejected(setup):
    h, ctx, _ = setup
    service = _service(h)
    await service.dispatch("membership_went_valid", {"id": "mem_4", "company_id": "biz_ABC"})

    with pytest.raises(InvalidWebhookError, match="another tenant"):
        await service.dispatch("membership_went_valid", {"id": "mem_4", "company_id": "biz_OTHER"})
    assert h.payments.subscriptions["mem_4"].tenant_id == ctx.tenant_id
