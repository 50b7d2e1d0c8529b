"""Keystroke journaling for thoughts.

When record mode is on, every change of the capture text box is diffed into
an edit operation and appended to the operation log, so the typing session
can be replayed later.

Usage:
    from thoughts.journal import InMemoryOperationLog, RecordingSession

    session = RecordingSession(InMemoryOperationLog(), note_store)
    await session.start()
    session.on_text_change("hi", 2)
    note = await session.submit("hi")
"""

from __future__ import annotations

from thoughts.journal.diff import apply_edit_operation, compute_edit_operation
from thoughts.journal.operations import (
    DuplicateSequenceError,
    EditOperation,
    EmptyJournalError,
    InvalidSpeedError,
    InvalidTransitionError,
    JournalCommitError,
    JournalDiscardError,
    JournalError,
    NonContiguousSequenceError,
    OperationLogError,
    OperationType,
    ReconstructionError,
)
from thoughts.journal.session import RecordingSession, RecordingState
from thoughts.journal.store import (
    InMemoryOperationLog,
    OperationLog,
    allocate_provisional_id,
)

__all__ = [
    # Records
    "OperationType",
    "EditOperation",
    # Diff engine
    "compute_edit_operation",
    "apply_edit_operation",
    # Log
    "OperationLog",
    "InMemoryOperationLog",
    # Session
    "RecordingSession",
    "RecordingState",
    "allocate_provisional_id",
    # Exceptions
    "JournalError",
    "OperationLogError",
    "DuplicateSequenceError",
    "ReconstructionError",
    "EmptyJournalError",
    "NonContiguousSequenceError",
    "InvalidSpeedError",
    "InvalidTransitionError",
    "JournalCommitError",
    "JournalDiscardError",
]
