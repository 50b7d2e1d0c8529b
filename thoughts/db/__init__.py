"""Thoughts Database Module.

Provides async PostgreSQL connection management and utilities.

Example:
    ```python
    from thoughts.db import get_async_connection, init_db

    await init_db()

    async with get_async_connection() as conn:
        result = await conn.execute("SELECT * FROM thoughts")
        rows = await result.fetchall()
    ```
"""

from thoughts.db.connection import (
    # Connection management
    get_async_connection,
    get_async_pool,
    close_pool,
    # Schema management
    init_db,
    # Health
    check_connection_health,
    # Transaction helper
    transaction,
    # Exceptions
    DatabaseError,
    ConnectionError,
    SchemaInitializationError,
)


__all__ = [
    "get_async_connection",
    "get_async_pool",
    "close_pool",
    "init_db",
    "check_connection_health",
    "transaction",
    "DatabaseError",
    "ConnectionError",
    "SchemaInitializationError",
]
