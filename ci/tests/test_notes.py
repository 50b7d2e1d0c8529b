"""
Note store tests.
"""

from __future__ import annotations

from datetime import datetime, timezone

import psycopg
import pytest

from thoughts.notes import InMemoryNoteStore, NoteStoreError, PostgresNoteStore


async def test_create_assigns_increasing_ids(note_store: InMemoryNoteStore) -> None:
    first = await note_store.create_note("first")
    second = await note_store.create_note("second", {"mood": "calm"})

    assert (first.id, second.id) == (1, 2)
    assert second.metadata == {"mood": "calm"}
    assert await note_store.get_note(2) == second


async def test_empty_note_is_rejected(note_store: InMemoryNoteStore) -> None:
    with pytest.raises(ValueError):
        await note_store.create_note("   ")


async def test_get_missing_note(note_store: InMemoryNoteStore) -> None:
    assert await note_store.get_note(99) is None


async def test_list_and_search(note_store: InMemoryNoteStore) -> None:
    await note_store.create_note("Buy milk")
    await note_store.create_note("Call mom", {"tags": ["Family"]})
    await note_store.create_note("milk the idea")

    assert [n.content for n in await note_store.list_notes()] == [
        "Buy milk",
        "Call mom",
        "milk the idea",
    ]
    assert [n.content for n in await note_store.list_notes("MILK")] == [
        "Buy milk",
        "milk the idea",
    ]
    assert [n.content for n in await note_store.list_notes("family")] == ["Call mom"]
    assert len(await note_store.list_notes("  ")) == 3


# =============================================================================
# PostgreSQL
# =============================================================================


@pytest.mark.postgres
async def test_postgres_create_note(fake_connection_factory, result_factory) -> None:
    created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def handler(sql, params):
        return result_factory(
            [
                {
                    "id": 7,
                    "content": params["content"],
                    "metadata": params["metadata"],
                    "created_at": created_at,
                }
            ]
        )

    conn = fake_connection_factory(handler)
    store = PostgresNoteStore(conn=conn)

    note = await store.create_note("hello", {"source": "capture"})

    assert note.id == 7
    assert note.metadata == {"source": "capture"}
    (sql, params), = conn.executed
    assert sql.startswith("INSERT INTO thoughts")


@pytest.mark.postgres
async def test_postgres_search_uses_ilike(fake_connection_factory, result_factory) -> None:
    conn = fake_connection_factory(lambda sql, params: result_factory([]))
    store = PostgresNoteStore(conn=conn)

    assert await store.list_notes("milk") == []

    (sql, params), = conn.executed
    assert "ILIKE" in sql
    assert params == {"pattern": "%milk%"}


@pytest.mark.postgres
async def test_postgres_errors_are_wrapped(fake_connection_factory) -> None:
    def handler(sql, params):
        raise psycopg.OperationalError("server closed the connection")

    store = PostgresNoteStore(conn=fake_connection_factory(handler))

    with pytest.raises(NoteStoreError):
        await store.create_note("hello")
    with pytest.raises(NoteStoreError):
        await store.get_note(1)
