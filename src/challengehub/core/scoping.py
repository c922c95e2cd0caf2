"""Tenant-scoped data access helpers.

A domain row belongs to the caller only if BOTH hold:

- row.tenant_id equals the tenant resolved from the caller's company id, and
- row.whop_company_id (when the model has that column) equals the caller's
  external company id.

The two can diverge in data written by older code paths, so both are checked
on every read. Writes stamp both values from the scope.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import ColumnElement


@dataclass(frozen=True)
class TenantScope:
    """Tenant identity used to filter and stamp domain rows."""

    tenant_id: str
    whop_company_id: str

    @property
    def tenant_uuid(self) -> uuid.UUID:
        return uuid.UUID(self.tenant_id)


def scope_clauses(model: Any, scope: TenantScope) -> list[ColumnElement[bool]]:
    """WHERE clauses restricting ``model`` to the scope's tenant.

    Raises TypeError for models without a tenant_id column so an unscoped
    table can never be passed through by mistake.
    """
    tenant_column = getattr(model, "tenant_id", None)
    if tenant_column is None:
        raise TypeError(f"{model.__name__} has no tenant_id column and cannot be tenant-scoped")

    clauses: list[ColumnElement[bool]] = [tenant_column == scope.tenant_uuid]
    company_column = getattr(model, "whop_company_id", None)
    if company_column is not None:
        clauses.append(company_column == scope.whop_company_id)
    return clauses


def row_in_scope(row: Any, scope: TenantScope) -> bool:
    """Same predicate as scope_clauses, applied to an already-loaded row."""
    if str(getattr(row, "tenant_id", None)) != scope.tenant_id:
        return False
    if hasattr(row, "whop_company_id") and row.whop_company_id != scope.whop_company_id:
        return False
    return True


def stamp(scope: TenantScope) -> dict[str, Any]:
    """Column values every tenant-owned row must be created with."""
    return {"tenant_id": scope.tenant_uuid, "whop_company_id": scope.whop_company_id}
