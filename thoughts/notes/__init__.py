"""Note storage for committed thoughts."""

from thoughts.notes.store import (
    InMemoryNoteStore,
    Note,
    NoteStore,
    NoteStoreError,
    PostgresNoteStore,
)

__all__ = [
    "Note",
    "NoteStore",
    "NoteStoreError",
    "InMemoryNoteStore",
    "PostgresNoteStore",
]
