"""PostgreSQL storage for the operation log.

Operations live in the ``edit_operations`` table. Reassignments and discards
also write a row to ``journal_redirects`` in the same transaction, so an
append that lands afterwards for the old identity is routed to the new one or
dropped. Every session-scoped mutation takes a transaction-level advisory
lock on the session id, which serializes appends against reassign/discard
for the same session. Provisional ids are reserved in ``journal_sessions``
so no two sessions ever share one.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Callable

import psycopg
from psycopg import errors as pg_errors

if TYPE_CHECKING:
    from psycopg import AsyncConnection

from thoughts.db.connection import DatabaseError, get_async_connection, transaction
from thoughts.journal.operations import (
    DuplicateSequenceError,
    EditOperation,
    OperationLogError,
)
from thoughts.journal.store import (
    MAX_ALLOCATION_ATTEMPTS,
    MAX_REDIRECT_HOPS,
    OperationLog,
    allocate_provisional_id,
)

logger = logging.getLogger(__name__)

# Advisory lock key used for the unset (NULL) session identity.
UNSET_SESSION_LOCK_KEY = 0

OPERATION_COLUMNS = """
    id, session_id, sequence_num, operation_type, position,
    content, content_length, replaced_length, timestamp_ms
"""


def _lock_key(session_id: int | None) -> int:
    return UNSET_SESSION_LOCK_KEY if session_id is None else session_id


def _row_to_operation(row: dict[str, Any]) -> EditOperation:
    return EditOperation.model_validate(dict(row))


class PostgresOperationLog(OperationLog):
    """Operation log backed by PostgreSQL via psycopg v3.

    Example:
        log = PostgresOperationLog()
        stored = await log.append(session_id, operation)
        ops = await log.list_operations(session_id)
    """

    def __init__(
        self,
        conn: AsyncConnection[dict[str, Any]] | None = None,
    ) -> None:
        """Initialize the log.

        Args:
            conn: Optional database connection. If not provided, a pooled
                  connection is acquired per call.
        """
        self._conn = conn

    async def allocate_session_id(self, clock: Callable[[], int] | None = None) -> int:
        try:
            async with self._get_connection() as conn:
                for _ in range(MAX_ALLOCATION_ATTEMPTS):
                    candidate = allocate_provisional_id(clock)
                    result = await conn.execute(
                        """
                        INSERT INTO journal_sessions (session_id)
                        SELECT %(session_id)s
                        WHERE NOT EXISTS (
                            SELECT 1 FROM journal_redirects
                            WHERE old_session_id = %(session_id)s
                        )
                        AND NOT EXISTS (
                            SELECT 1 FROM edit_operations
                            WHERE session_id = %(session_id)s
                        )
                        ON CONFLICT (session_id) DO NOTHING
                        RETURNING session_id
                        """,
                        {"session_id": candidate},
                    )
                    if await result.fetchone() is not None:
                        return candidate
                    logger.debug(f"Provisional id {candidate} already used, trying another")
        except (psycopg.Error, DatabaseError) as e:
            logger.error(f"Failed to allocate provisional session id: {e}")
            raise OperationLogError(f"Failed to allocate session id: {e}") from e

        raise OperationLogError("No free provisional session id")

    async def append(
        self,
        session_id: int | None,
        operation: EditOperation,
    ) -> EditOperation | None:
        try:
            async with self._transaction() as conn:
                await self._lock_sessions(conn, session_id)
                target, discarded = await self._resolve(conn, session_id)

                if discarded:
                    logger.debug(
                        f"Dropping late append for discarded session {session_id}",
                        extra={"session_id": session_id},
                    )
                    return None

                if target != session_id:
                    await self._lock_sessions(conn, target)

                sequence_num = operation.sequence_num
                if sequence_num is None:
                    result = await conn.execute(
                        """
                        SELECT COALESCE(MAX(sequence_num), 0) + 1 AS next_sequence
                        FROM edit_operations
                        WHERE session_id IS NOT DISTINCT FROM %(session_id)s
                        """,
                        {"session_id": target},
                    )
                    row = await result.fetchone()
                    sequence_num = int(row["next_sequence"]) if row else 1

                result = await conn.execute(
                    f"""
                    INSERT INTO edit_operations (
                        session_id, sequence_num, operation_type, position,
                        content, content_length, replaced_length, timestamp_ms
                    ) VALUES (
                        %(session_id)s, %(sequence_num)s, %(operation_type)s,
                        %(position)s, %(content)s, %(content_length)s,
                        %(replaced_length)s, %(timestamp_ms)s
                    )
                    RETURNING {OPERATION_COLUMNS}
                    """,
                    {
                        "session_id": target,
                        "sequence_num": sequence_num,
                        "operation_type": operation.operation_type.value,
                        "position": operation.position,
                        "content": operation.content,
                        "content_length": operation.content_length,
                        "replaced_length": operation.replaced_length,
                        "timestamp_ms": operation.timestamp_ms,
                    },
                )
                row = await result.fetchone()

        except pg_errors.UniqueViolation as e:
            raise DuplicateSequenceError(session_id, operation.sequence_num or -1) from e
        except (psycopg.Error, DatabaseError) as e:
            logger.error(f"Failed to append operation for session {session_id}: {e}")
            raise OperationLogError(f"Failed to append operation: {e}") from e

        if row is None:
            raise OperationLogError("Insert returned no row")

        stored = _row_to_operation(row)
        logger.debug(
            f"Appended operation {stored.sequence_num} to session {stored.session_id}",
            extra={
                "session_id": stored.session_id,
                "sequence_num": stored.sequence_num,
                "operation_type": stored.operation_type.value,
            },
        )
        return stored

    async def list_operations(self, session_id: int | None) -> list[EditOperation]:
        try:
            async with self._get_connection() as conn:
                result = await conn.execute(
                    f"""
                    SELECT {OPERATION_COLUMNS}
                    FROM edit_operations
                    WHERE session_id IS NOT DISTINCT FROM %(session_id)s
                    ORDER BY sequence_num ASC
                    """,
                    {"session_id": session_id},
                )
                rows = await result.fetchall()
        except (psycopg.Error, DatabaseError) as e:
            logger.error(f"Failed to list operations for session {session_id}: {e}")
            raise OperationLogError(f"Failed to list operations: {e}") from e

        return [_row_to_operation(row) for row in rows]

    async def reassign_identity(
        self,
        old_session_id: int | None,
        new_session_id: int,
    ) -> int:
        if old_session_id == new_session_id:
            return await self.count(old_session_id)

        try:
            async with self._transaction() as conn:
                await self._lock_sessions(conn, old_session_id, new_session_id)

                result = await conn.execute(
                    """
                    UPDATE edit_operations
                    SET session_id = %(new_session_id)s
                    WHERE session_id IS NOT DISTINCT FROM %(old_session_id)s
                    """,
                    {"old_session_id": old_session_id, "new_session_id": new_session_id},
                )
                moved = result.rowcount or 0

                if old_session_id is not None:
                    await self._write_redirect(
                        conn, old_session_id, new_session_id, discarded=False
                    )

        except (psycopg.Error, DatabaseError) as e:
            logger.error(
                f"Failed to reassign session {old_session_id} to {new_session_id}: {e}"
            )
            raise OperationLogError(f"Failed to reassign journal identity: {e}") from e

        logger.info(
            f"Reassigned {moved} operations from session {old_session_id} to {new_session_id}",
            extra={
                "old_session_id": old_session_id,
                "new_session_id": new_session_id,
                "count": moved,
            },
        )
        return moved

    async def discard(self, session_id: int | None) -> int:
        try:
            async with self._transaction() as conn:
                await self._lock_sessions(conn, session_id)

                result = await conn.execute(
                    """
                    DELETE FROM edit_operations
                    WHERE session_id IS NOT DISTINCT FROM %(session_id)s
                    """,
                    {"session_id": session_id},
                )
                removed = result.rowcount or 0

                if session_id is not None:
                    await self._write_redirect(conn, session_id, None, discarded=True)

        except (psycopg.Error, DatabaseError) as e:
            logger.error(f"Failed to discard session {session_id}: {e}")
            raise OperationLogError(f"Failed to discard journal: {e}") from e

        logger.info(
            f"Discarded {removed} operations for session {session_id}",
            extra={"session_id": session_id, "count": removed},
        )
        return removed

    async def count(self, session_id: int | None) -> int:
        try:
            async with self._get_connection() as conn:
                result = await conn.execute(
                    """
                    SELECT COUNT(*) AS total
                    FROM edit_operations
                    WHERE session_id IS NOT DISTINCT FROM %(session_id)s
                    """,
                    {"session_id": session_id},
                )
                row = await result.fetchone()
        except (psycopg.Error, DatabaseError) as e:
            raise OperationLogError(f"Failed to count operations: {e}") from e

        return int(row["total"]) if row else 0

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _lock_sessions(
        self,
        conn: AsyncConnection[dict[str, Any]],
        *session_ids: int | None,
    ) -> None:
        # Sorted so two transactions locking the same pair cannot deadlock.
        for key in sorted({_lock_key(sid) for sid in session_ids}):
            await conn.execute("SELECT pg_advisory_xact_lock(%(key)s)", {"key": key})

    async def _resolve(
        self,
        conn: AsyncConnection[dict[str, Any]],
        session_id: int | None,
    ) -> tuple[int | None, bool]:
        current = session_id
        for _ in range(MAX_REDIRECT_HOPS):
            if current is None:
                return None, False

            result = await conn.execute(
                """
                SELECT new_session_id, discarded
                FROM journal_redirects
                WHERE old_session_id = %(session_id)s
                """,
                {"session_id": current},
            )
            row = await result.fetchone()

            if row is None:
                return current, False
            if row["discarded"]:
                return current, True
            current = row["new_session_id"]

        raise OperationLogError(f"Redirect cycle detected for session {session_id}")

    async def _write_redirect(
        self,
        conn: AsyncConnection[dict[str, Any]],
        old_session_id: int,
        new_session_id: int | None,
        discarded: bool,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO journal_redirects (old_session_id, new_session_id, discarded)
            VALUES (%(old_session_id)s, %(new_session_id)s, %(discarded)s)
            ON CONFLICT (old_session_id) DO UPDATE
            SET new_session_id = EXCLUDED.new_session_id,
                discarded = EXCLUDED.discarded,
                created_at = now()
            """,
            {
                "old_session_id": old_session_id,
                "new_session_id": new_session_id,
                "discarded": discarded,
            },
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncConnection[dict[str, Any]]]:
        """Yield a connection inside a transaction.

        Uses the injected connection's own transaction block when one was
        given, otherwise a pooled connection via ``transaction()``.
        """
        if self._conn is not None:
            async with self._conn.transaction():
                yield self._conn
        else:
            async with transaction() as conn:
                yield conn

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[AsyncConnection[dict[str, Any]]]:
        if self._conn is not None:
            yield self._conn
        else:
            async with get_async_connection() as conn:
                yield conn


__all__ = ["PostgresOperationLog"]
