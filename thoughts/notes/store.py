"""Note storage.

Notes ("thoughts") are the committed text a journal is finally attached to.
Creating a note yields the positive id that replaces a session's provisional
identity.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import psycopg

if TYPE_CHECKING:
    from psycopg import AsyncConnection

from thoughts.db.connection import DatabaseError, get_async_connection

logger = logging.getLogger(__name__)


class NoteStoreError(Exception):
    """Raised when the note store fails."""

    pass


@dataclass(frozen=True)
class Note:
    """A committed note."""

    id: int
    content: str
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _matches(note: Note, term: str) -> bool:
    if term in note.content.lower():
        return True
    return note.metadata is not None and term in json.dumps(note.metadata).lower()


class NoteStore(ABC):
    """Async contract for note storage."""

    @abstractmethod
    async def create_note(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Note:
        """Persist a note and return it with its assigned id."""

    @abstractmethod
    async def get_note(self, note_id: int) -> Note | None:
        """Fetch a note by id."""

    @abstractmethod
    async def list_notes(self, search: str | None = None) -> list[Note]:
        """List notes oldest first, optionally filtered by a substring."""


class InMemoryNoteStore(NoteStore):
    """Note store held in process memory."""

    def __init__(self) -> None:
        self._notes: dict[int, Note] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def create_note(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Note:
        if not content.strip():
            raise ValueError("Note content cannot be empty")

        async with self._lock:
            note = Note(id=self._next_id, content=content, metadata=metadata)
            self._notes[note.id] = note
            self._next_id += 1

        logger.info(f"Created note {note.id}", extra={"note_id": note.id})
        return note

    async def get_note(self, note_id: int) -> Note | None:
        return self._notes.get(note_id)

    async def list_notes(self, search: str | None = None) -> list[Note]:
        notes = sorted(self._notes.values(), key=lambda n: (n.created_at, n.id))
        term = (search or "").strip().lower()
        if not term:
            return notes
        return [note for note in notes if _matches(note, term)]


class PostgresNoteStore(NoteStore):
    """Note store backed by the ``thoughts`` table."""

    def __init__(
        self,
        conn: AsyncConnection[dict[str, Any]] | None = None,
    ) -> None:
        self._conn = conn

    async def create_note(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Note:
        if not content.strip():
            raise ValueError("Note content cannot be empty")

        try:
            async with self._get_connection() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO thoughts (content, metadata)
                    VALUES (%(content)s, %(metadata)s)
                    RETURNING id, content, metadata, created_at
                    """,
                    {
                        "content": content,
                        "metadata": json.dumps(metadata) if metadata is not None else None,
                    },
                )
                row = await result.fetchone()
        except (psycopg.Error, DatabaseError) as e:
            logger.error(f"Failed to create note: {e}")
            raise NoteStoreError(f"Failed to create note: {e}") from e

        if row is None:
            raise NoteStoreError("Insert returned no row")

        note = self._row_to_note(row)
        logger.info(f"Created note {note.id}", extra={"note_id": note.id})
        return note

    async def get_note(self, note_id: int) -> Note | None:
        try:
            async with self._get_connection() as conn:
                result = await conn.execute(
                    """
                    SELECT id, content, metadata, created_at
                    FROM thoughts
                    WHERE id = %(note_id)s
                    """,
                    {"note_id": note_id},
                )
                row = await result.fetchone()
        except (psycopg.Error, DatabaseError) as e:
            raise NoteStoreError(f"Failed to fetch note {note_id}: {e}") from e

        return self._row_to_note(row) if row else None

    async def list_notes(self, search: str | None = None) -> list[Note]:
        query = "SELECT id, content, metadata, created_at FROM thoughts"
        params: dict[str, Any] = {}

        term = (search or "").strip()
        if term:
            query += """
                WHERE content ILIKE %(pattern)s
                   OR metadata::text ILIKE %(pattern)s
            """
            params["pattern"] = f"%{term}%"

        query += " ORDER BY created_at ASC, id ASC"

        try:
            async with self._get_connection() as conn:
                result = await conn.execute(query, params)
                rows = await result.fetchall()
        except (psycopg.Error, DatabaseError) as e:
            raise NoteStoreError(f"Failed to list notes: {e}") from e

        return [self._row_to_note(row) for row in rows]

    @staticmethod
    def _row_to_note(row: dict[str, Any]) -> Note:
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Note(
            id=row["id"],
            content=row["content"],
            metadata=metadata,
            created_at=row["created_at"],
        )

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[AsyncConnection[dict[str, Any]]]:
        if self._conn is not None:
            yield self._conn
        else:
            async with get_async_connection() as conn:
                yield conn


__all__ = [
    "Note",
    "NoteStore",
    "NoteStoreError",
    "InMemoryNoteStore",
    "PostgresNoteStore",
]
