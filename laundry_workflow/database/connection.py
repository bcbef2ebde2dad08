"""
Database connection management with SQLAlchemy async engine.

This module provides the async engine and session factory, the FastAPI
session dependency, and ``tenant_transaction``: the tenant-scoped unit of
work every workflow operation runs inside. Sessions opened through it
filter every ORM query on tenant-owned tables by the session's tenant.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria
from sqlalchemy.pool import NullPool

from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import get_logger
from laundry_workflow.database.base import TenantMixin

logger = get_logger(__name__)
settings = get_settings()

TENANT_INFO_KEY = "tenant_id"

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


class TenantSession(Session):
    """Sync session class backing every AsyncSession we hand out."""


@event.listens_for(TenantSession, "do_orm_execute")
def _apply_tenant_criteria(execute_state: ORMExecuteState) -> None:
    """Restrict ORM statements to the tenant bound on the session."""
    tenant_id = execute_state.session.info.get(TENANT_INFO_KEY)
    if tenant_id is None:
        return
    if execute_state.is_column_load or execute_state.is_relationship_load:
        # loader criteria already propagate to these from the parent query
        return
    if not (
        execute_state.is_select
        or execute_state.is_update
        or execute_state.is_delete
    ):
        return

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(
            TenantMixin,
            lambda cls: cls.tenant_id == tenant_id,
            include_aliases=True,
        )
    )


def _convert_database_url_to_async(url: str) -> str:
    """
    Convert PostgreSQL URL to async format.

    Args:
        url: Database connection URL

    Returns:
        Async-compatible database URL with asyncpg driver
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine() -> AsyncEngine:
    """
    Create async SQLAlchemy engine with connection pooling.

    Returns:
        Configured async SQLAlchemy engine
    """
    database_url = _convert_database_url_to_async(settings.database_url)

    pool_kwargs = (
        {"poolclass": NullPool}
        if settings.is_test
        else {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
        }
    )

    engine = create_async_engine(
        database_url,
        echo=settings.debug,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "application_name": settings.app_name,
            },
            "command_timeout": 60,
            "timeout": 10,
        },
        **pool_kwargs,
    )

    logger.info(
        "Database engine created",
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        environment=settings.environment,
    )

    return engine


def get_engine() -> AsyncEngine:
    """
    Get or create the global async database engine.

    Raises:
        RuntimeError: If engine initialization fails
    """
    global _engine

    if _engine is None:
        try:
            _engine = create_engine()
        except Exception as e:
            logger.error(
                "Failed to create database engine",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Database engine initialization failed: {e}") from e

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the global session factory.

    Raises:
        RuntimeError: If session factory initialization fails
    """
    global _session_factory

    if _session_factory is None:
        try:
            engine = get_engine()
            _session_factory = async_sessionmaker(
                engine,
                class_=AsyncSession,
                sync_session_class=TenantSession,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info("Database session factory created")
        except Exception as e:
            logger.error(
                "Failed to create session factory",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RuntimeError(f"Session factory initialization failed: {e}") from e

    return _session_factory


@asynccontextmanager
async def tenant_transaction(
    tenant_id: UUID,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Run one unit of work scoped to a single tenant.

    Commits when the block exits normally and rolls back on any exception.
    ORM queries issued through the yielded session are implicitly filtered
    by ``tenant_id``.

    Args:
        tenant_id: Tenant owning every row touched in the block

    Yields:
        Async database session bound to the tenant
    """
    session_factory = get_session_factory()

    async with session_factory() as session:
        session.info[TENANT_INFO_KEY] = tenant_id
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(
                "Tenant transaction rolled back on storage fault",
                tenant_id=str(tenant_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        except BaseException as e:
            logger.debug(
                "Tenant transaction rolled back",
                tenant_id=str(tenant_id),
                error_type=type(e).__name__,
            )
            raise


async def check_database_health(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Check database connectivity with retry logic.

    Args:
        max_retries: Maximum number of connection attempts
        retry_delay: Delay between retries in seconds

    Returns:
        True if database is healthy, False otherwise
    """
    for attempt in range(max_retries):
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                return True
        except (OperationalError, DBAPIError) as e:
            logger.warning(
                "Database health check failed",
                attempt=attempt + 1,
                max_retries=max_retries,
                error=str(e),
            )
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay * (2**attempt))
        except SQLAlchemyError as e:
            logger.error(
                "Database health check failed - SQLAlchemy error",
                attempt=attempt + 1,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    logger.error("Database health check failed after all retries", max_retries=max_retries)
    return False


async def close_database_connections() -> None:
    """
    Close all database connections and dispose of the engine.

    Called during application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        try:
            await _engine.dispose()
            logger.info("Database connections closed and engine disposed")
        finally:
            _engine = None
            _session_factory = None
