"""
Alembic environment for the laundry workflow schema.

Runs migrations through the asyncpg driver in online mode and emits SQL
in offline mode. The database URL always comes from application settings
so that migrations and the service target the same database.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.base import Base
from laundry_workflow.database.connection import _convert_database_url_to_async

# Import models so they are registered with Base.metadata
from laundry_workflow.database.models import (  # noqa: F401
    Order,
    OrderHistory,
    OrderItem,
    OrderItemPiece,
    StatusHistory,
    WorkflowSettings,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
logger = get_logger(__name__)

target_metadata = Base.metadata

database_url = _convert_database_url_to_async(settings.database_url)
config.set_main_option("sqlalchemy.url", database_url)


def run_migrations_offline() -> None:
    """Emit migration SQL to the script output without a connection."""
    logger.info("Running migrations in offline mode")

    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        transaction_per_migration=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """
    Run migrations in 'online' mode over an async engine.

    Raises:
        Exception: Any migration failure, after it has been logged
    """
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
        logger.info("Migrations applied", environment=settings.environment)
    except Exception as e:
        logger.error(
            "Migration failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
