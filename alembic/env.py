# alembic/env.py
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# the project root must be importable before illustrated_book.* is
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from illustrated_book import models  # noqa: E402,F401  tables register on Base
from illustrated_book.database import Base  # noqa: E402
from illustrated_book.settings import settings  # noqa: E402

# Migrations run on sync drivers; the app itself uses the async ones.
SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg2",
    "sqlite+aiosqlite": "sqlite",
}


def sync_database_url(url: str) -> str:
    for async_prefix, sync_prefix in SYNC_DRIVERS.items():
        if url.startswith(async_prefix):
            return sync_prefix + url[len(async_prefix):]
    return url


config = context.config
DB_URL = sync_database_url(settings.DATABASE_URL)
config.set_main_option("sqlalchemy.url", DB_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _common_options(dialect_name: str) -> dict:
    # sqlite cannot ALTER most things in place; batch mode copies the table
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "render_as_batch": dialect_name == "sqlite",
    }


def run_offline() -> None:
    context.configure(
        url=DB_URL,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_common_options(DB_URL.split(":", 1)[0].split("+", 1)[0]),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(
            connection=connection,
            transaction_per_migration=True,
            **_common_options(connection.dialect.name),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
