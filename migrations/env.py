import asyncio
from logging.config import fileConfig
from typing import Any, Dict

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from alembic import context

# Importing the models registers every chat table on Base.metadata
import market_chat.models.db  # noqa: F401
from market_chat.database import DATABASE_URL, Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    """The service's DATABASE_URL wins over ``sqlalchemy.url`` in alembic.ini."""
    url = DATABASE_URL or config.get_main_option("sqlalchemy.url")
    if not url:
        raise ValueError("DATABASE_URL is required to run chat schema migrations")
    return url


def context_options(url: str) -> Dict[str, Any]:
    # SQLite alters tables through batch copies
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.startswith("sqlite"),
    }


def run_migrations_offline() -> None:
    """Emit the chat schema as SQL without connecting."""
    url = database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **context_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_migrations(connection: Connection, url: str) -> None:
    context.configure(connection=connection, **context_options(url))

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url = database_url()
    connectable = create_async_engine(url, poolclass=pool.NullPool, future=True)

    async with connectable.connect() as connection:
        await connection.run_sync(do_migrations, url)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
