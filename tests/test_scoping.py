"""Tests proving every tenant-scoped query filters on both tenant keys."""

from __future__ import annotations

import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError

from src.challengehub.challenges.models import ChallengeModel, EnrollmentModel
from src.challengehub.core.database import is_unique_violation
from src.challengehub.core.scoping import TenantScope, row_in_scope, scope_clauses, stamp
from src.challengehub.notifications.models import InternalNotificationModel
from src.challengehub.offers.models import ChallengeOfferModel
from src.challengehub.payments.models import CompletedPaymentModel
from src.challengehub.tenancy.models import Tenant, User

TENANT_ID = str(uuid.uuid4())
SCOPE = TenantScope(tenant_id=TENANT_ID, whop_company_id="biz_ABC")


@pytest.mark.parametrize(
    "model",
    [ChallengeModel, EnrollmentModel, User, InternalNotificationModel, ChallengeOfferModel, CompletedPaymentModel],
)
def test_scope_clauses_filter_tenant_and_company(model):
    stmt = select(model).where(*scope_clauses(model, SCOPE))
    compiled = stmt.compile(dialect=postgresql.dialect())
    sql = str(compiled)
    table = model.__tablename__

    assert f"{table}.tenant_id = " in sql
    assert f"{table}.whop_company_id = " in sql
    assert uuid.UUID(TENANT_ID) in compiled.params.values()
    assert "biz_ABC" in compiled.params.values()


def test_unscoped_model_is_rejected():
    with pytest.raises(TypeError, match="cannot be tenant-scoped"):
        scope_clauses(Tenant, SCOPE)


def test_stamp_sets_both_keys():
    assert stamp(SCOPE) == {"tenant_id": uuid.UUID(TENANT_ID), "whop_company_id": "biz_ABC"}


def test_row_in_scope_requires_both_keys():
    assert row_in_scope(SimpleNamespace(tenant_id=TENANT_ID, whop_company_id="biz_ABC"), SCOPE)
    assert not row_in_scope(SimpleNamespace(tenant_id=TENANT_ID, whop_company_id="biz_OTHER"), SCOPE)
    assert not row_in_scope(SimpleNamespace(tenant_id=str(uuid.uuid4()), whop_company_id="biz_ABC"), SCOPE)


# ── Unique violation detection ───────────────────────────────────────────────


def _integrity_error(orig: Exception) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, orig)


def test_unique_violation_by_sqlstate():
    orig = Exception("boom")
    orig.sqlstate = "23505"
    assert is_unique_violation(_integrity_error(orig))


def test_foreign_key_violation_is_not_unique():
    orig = Exception("insert or update violates foreign key constraint")
    orig.sqlstate = "23503"
    assert not is_unique_violation(_integrity_error(orig))


def test_unique_violation_by_message():
    orig = Exception('duplicate key value violates unique constraint "uq_tenants_whop_company_id"')
    assert is_unique_violation(_integrity_error(orig))
