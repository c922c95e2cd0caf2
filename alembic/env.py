"""Alembic environment.

All tables live in one schema; tenant isolation is row-level (tenant_id and
whop_company_id on every domain row), so there is a single migration chain:

  alembic upgrade head

Migrations run over a synchronous psycopg connection derived from the
application's asyncpg DATABASE_URL.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from src.challengehub.config import get_settings
from src.challengehub.core.database import Base

# Register every table on Base.metadata
from src.challengehub.billing import models as _billing  # noqa: F401
from src.challengehub.challenges import models as _challenges  # noqa: F401
from src.challengehub.notifications import models as _notifications  # noqa: F401
from src.challengehub.offers import models as _offers  # noqa: F401
from src.challengehub.payments import models as _payments  # noqa: F401
from src.challengehub.tenancy import models as _tenancy  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _sync_url() -> str:
    return get_settings().DATABASE_URL.replace("+asyncpg", "+psycopg")


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""
    _configure(url=_sync_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})


def run_migrations_online() -> None:
    engine = create_engine(_sync_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
