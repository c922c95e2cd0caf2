"""Async SQLAlchemy engine and declarative base.

Provides:
- Base: Declarative base for every table (tenants, users, challenges, ...)
- get_session(): AsyncSession generator used as a repository session factory
- is_unique_violation(): Helper that recognises unique-constraint IntegrityErrors

Tenant isolation is enforced per row (tenant_id + whop_company_id filters, see
core/scoping.py), not per schema, so there is exactly one metadata object.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.challengehub.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
            echo=settings.DB_ECHO,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_N_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all persisted models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


def is_unique_violation(exc: IntegrityError) -> bool:
    """Return True when an IntegrityError was raised by a unique constraint.

    asyncpg reports SQLSTATE 23505; the message check covers drivers that do
    not expose ``sqlstate`` on the wrapped exception.
    """
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate == "23505"
    message = str(orig or exc).lower()
    return "unique" in message or "duplicate key" in message


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all tables if they don't exist (development convenience).

    Production deployments run ``alembic upgrade head`` instead.
    """
    # Import models so they register on Base.metadata
    from src.challengehub.billing import models as _billing  # noqa: F401
    from src.challengehub.challenges import models as _challenges  # noqa: F401
    from src.challengehub.notifications import models as _notifications  # noqa: F401
    from src.challengehub.offers import models as _offers  # noqa: F401
    from src.challengehub.payments import models as _payments  # noqa: F401
    from src.challengehub.tenancy import models as _tenancy  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
