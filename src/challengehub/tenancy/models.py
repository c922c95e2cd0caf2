"""Tenant and user persistence models.

A Tenant is one Whop company. Users are per tenant: the same Whop user who
belongs to two companies has two rows. Each user row carries the tenant's
external company id, and the composite foreign key
(tenant_id, whop_company_id) -> tenants(id, whop_company_id) makes the
database reject a user whose company id disagrees with its tenant.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKeyConstraint, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.challengehub.core.database import Base


class Tenant(Base):
    """One customer organization (a Whop company)."""

    __tablename__ = "tenants"
    __table_args__ = (
        UniqueConstraint("whop_company_id", name="uq_tenants_whop_company_id"),
        UniqueConstraint("id", "whop_company_id", name="uq_tenants_id_whop_company_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    whop_company_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    whop_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    whop_product_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class User(Base):
    """Platform end-user known to one tenant."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "whop_user_id", name="uq_users_tenant_whop_user"),
        ForeignKeyConstraint(
            ["tenant_id", "whop_company_id"],
            ["tenants.id", "tenants.whop_company_id"],
            name="fk_users_tenant_company",
            ondelete="RESTRICT",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    whop_company_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whop_experience_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="MEMBER", server_default=text("'MEMBER'"))
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
