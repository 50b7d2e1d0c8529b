"""Database Connection Management for the Thoughts journal.

Provides async PostgreSQL connection utilities using psycopg v3:
- Connection pooling with health checks
- Async context managers for safe connection handling
- Schema initialization from SQL files
- Connection lifecycle management
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

if TYPE_CHECKING:
    from psycopg import AsyncConnection

from thoughts.config import get_settings

logger = logging.getLogger(__name__)

# Module-level pool instance for singleton pattern
_pool: AsyncConnectionPool | None = None
_pool_lock = asyncio.Lock()

DEFAULT_SCHEMA_PATH = Path(__file__).parent.parent.parent / "schemas" / "postgres_schema.sql"


class DatabaseError(Exception):
    """Base exception for database operations."""

    pass


class ConnectionError(DatabaseError):
    """Exception raised when connection fails."""

    pass


class SchemaInitializationError(DatabaseError):
    """Exception raised when schema initialization fails."""

    pass


async def get_async_pool(
    min_size: int | None = None,
    max_size: int | None = None,
    timeout: float | None = None,
) -> AsyncConnectionPool:
    """Get or create the async connection pool singleton.

    Args:
        min_size: Minimum number of connections to maintain. Defaults to config value.
        max_size: Maximum number of connections. Defaults to config value.
        timeout: Connection acquisition timeout. Defaults to config value.

    Returns:
        AsyncConnectionPool: The database connection pool.

    Raises:
        ConnectionError: If pool creation fails.
    """
    global _pool

    if _pool is not None and not _pool.closed:
        return _pool

    async with _pool_lock:
        # Double-check pattern after acquiring lock
        if _pool is not None and not _pool.closed:
            return _pool

        settings = get_settings()

        pool_min = min_size if min_size is not None else settings.DB_POOL_MIN_SIZE
        pool_max = max_size if max_size is not None else settings.DB_POOL_MAX_SIZE
        pool_timeout = timeout if timeout is not None else settings.DB_POOL_TIMEOUT

        try:
            conn_kwargs: dict[str, Any] = {
                "autocommit": True,
                "row_factory": dict_row,
            }

            _pool = AsyncConnectionPool(
                conninfo=settings.database_url_str,
                min_size=pool_min,
                max_size=pool_max,
                timeout=pool_timeout,
                check=AsyncConnectionPool.check_connection,
                kwargs=conn_kwargs,
                open=False,
            )

            await _pool.open(wait=True, timeout=pool_timeout)

            logger.info(
                "Database connection pool created",
                extra={
                    "min_size": pool_min,
                    "max_size": pool_max,
                    "timeout": pool_timeout,
                },
            )

            return _pool

        except psycopg.OperationalError as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise ConnectionError(f"Failed to create database connection pool: {e}") from e


@asynccontextmanager
async def get_async_connection(
    autocommit: bool = True,
) -> AsyncGenerator[AsyncConnection[dict[str, Any]], None]:
    """Get an async database connection from the pool.

    Yields:
        AsyncConnection: A psycopg async connection configured with dict_row factory.

    Raises:
        ConnectionError: If connection acquisition fails.
    """
    pool = await get_async_pool()

    try:
        async with pool.connection() as conn:
            if conn.autocommit != autocommit:
                await conn.set_autocommit(autocommit)

            yield conn

    except psycopg.OperationalError as e:
        logger.error(f"Database connection error: {e}")
        raise ConnectionError(f"Failed to acquire database connection: {e}") from e


@asynccontextmanager
async def transaction() -> AsyncGenerator[AsyncConnection[dict[str, Any]], None]:
    """Execute operations within a database transaction.

    Commits when the block exits normally and rolls back on exception.

    Example:
        async with transaction() as conn:
            await conn.execute("UPDATE edit_operations ...", (...))
            await conn.execute("INSERT INTO journal_redirects ...", (...))
    """
    pool = await get_async_pool()

    async with pool.connection() as conn:
        await conn.set_autocommit(False)

        try:
            yield conn
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
        finally:
            await conn.set_autocommit(True)


async def check_connection_health() -> bool:
    """Check if database connection is healthy."""
    try:
        async with get_async_connection() as conn:
            result = await conn.execute("SELECT 1 AS ok")
            row = await result.fetchone()
            return row is not None and row.get("ok") == 1
    except (DatabaseError, psycopg.Error) as e:
        logger.warning(f"Database health check failed: {e}")
        return False


async def init_db(schema_path: str | Path | None = None) -> bool:
    """Initialize database schema.

    The schema file only uses ``CREATE ... IF NOT EXISTS`` statements, so it
    is safe to apply on every startup.

    Raises:
        SchemaInitializationError: If schema initialization fails.
        FileNotFoundError: If schema file is not found.
    """
    schema_path = Path(schema_path) if schema_path is not None else DEFAULT_SCHEMA_PATH

    if not schema_path.exists():
        logger.warning(f"Schema file not found at {schema_path}")
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    schema_sql = schema_path.read_text(encoding="utf-8")

    try:
        async with get_async_connection(autocommit=True) as conn:
            logger.info(f"Initializing database schema from {schema_path}")
            await conn.execute(schema_sql)
            logger.info("Database schema initialized successfully")
            return True

    except psycopg.Error as e:
        logger.error(f"Schema initialization failed: {e}")
        raise SchemaInitializationError(f"Failed to initialize schema: {e}") from e


async def close_pool() -> None:
    """Close the connection pool.

    Should be called during application shutdown to cleanly
    close all database connections.
    """
    global _pool

    if _pool is not None:
        try:
            await _pool.close()
            logger.info("Database connection pool closed")
        finally:
            _pool = None
