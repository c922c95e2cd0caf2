"""Pydantic read schemas for tenants and users."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TenantRead(BaseModel):
    """Schema for reading tenant information."""

    id: str
    name: str
    whop_company_id: str | None = None
    whop_handle: str | None = None
    whop_product_id: str | None = None
    created_at: datetime | None = None


class UserRead(BaseModel):
    """Schema for reading a tenant-local user."""

    id: str
    tenant_id: str
    whop_company_id: str
    whop_user_id: str
    whop_experience_id: str | None = None
    role: str
    name: str | None = None
    email: str | None = None
    created_at: datetime | None = None
