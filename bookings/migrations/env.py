import os
import re
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from bookings.app.domain.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _sync_url(database_url: str) -> str:
    # postgresql+asyncpg://... -> postgresql://... ; sqlite+aiosqlite:// -> sqlite://
    return re.sub(r"^(postgresql|sqlite)\+[^:]+", r"\1", database_url)


def run_migrations_offline() -> None:
    """Run migrations without DB connection (generate SQL only)."""
    url = config.get_main_option("sqlalchemy.url") or _sync_url(os.getenv("DATABASE_URL", ""))
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations with a sync DB engine."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. Example: "
            "DATABASE_URL=postgresql+asyncpg://app_user:change_me@db:5432/bookings"
        )

    config.set_main_option("sqlalchemy.url", _sync_url(database_url))

    connectable = engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
