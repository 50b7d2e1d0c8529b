"""Edit operation records and journal exceptions.

An edit operation is one observed change of the capture text box: an
insertion, a deletion, or a replacement of a contiguous span. Operations of
one typing session share a ``session_id`` and are ordered by
``sequence_num`` starting at 1.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Enums
# =============================================================================


class OperationType(str, Enum):
    """Kind of edit captured by the diff engine."""

    INSERT = "insert"
    DELETE = "delete"
    REPLACE = "replace"


# =============================================================================
# Records
# =============================================================================


class EditOperation(BaseModel):
    """A single journaled text edit.

    Attributes:
        id: Identifier assigned by the operation log on insertion.
        session_id: Owning journal. Negative values are provisional
            identities, positive values are note identifiers, ``None`` is the
            unset provisional identity.
        sequence_num: Replay order within the session, starting at 1.
        operation_type: insert, delete or replace.
        position: Offset into the pre-operation text where the edit begins.
        content: Inserted text for insert/replace, removed text for delete.
        content_length: ``len(content)``.
        replaced_length: Characters removed from the pre-operation text.
            Zero for insert, ``content_length`` for delete.
        timestamp_ms: Capture time in milliseconds since the epoch.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: int | None = None
    session_id: int | None = None
    sequence_num: int | None = Field(default=None, ge=1)
    operation_type: OperationType
    position: int = Field(ge=0)
    content: str = Field(min_length=1)
    content_length: int = Field(default=-1)
    replaced_length: int = Field(default=-1)
    timestamp_ms: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _fill_lengths(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        content = data.get("content")
        if isinstance(content, str):
            if data.get("content_length") is None:
                data["content_length"] = len(content)
            if data.get("replaced_length") is None:
                op_type = data.get("operation_type")
                if op_type in (OperationType.DELETE, OperationType.DELETE.value):
                    data["replaced_length"] = len(content)
                elif op_type in (OperationType.INSERT, OperationType.INSERT.value):
                    data["replaced_length"] = 0
        return data

    @model_validator(mode="after")
    def _check_lengths(self) -> EditOperation:
        if self.content_length != len(self.content):
            raise ValueError(
                f"content_length {self.content_length} does not match "
                f"content of length {len(self.content)}"
            )

        match self.operation_type:
            case OperationType.INSERT:
                if self.replaced_length != 0:
                    raise ValueError("insert operations cannot replace text")
            case OperationType.DELETE:
                if self.replaced_length != self.content_length:
                    raise ValueError(
                        "delete operations remove exactly their recorded content"
                    )
            case OperationType.REPLACE:
                if self.replaced_length < 1:
                    raise ValueError("replace operations require replaced_length > 0")
            case _:
                raise ValueError(f"Unknown operation type: {self.operation_type!r}")

        return self

    @property
    def is_provisional(self) -> bool:
        """Whether the operation still belongs to an uncommitted session."""
        return self.session_id is None or self.session_id < 0

    def with_identity(
        self,
        session_id: int | None,
        sequence_num: int | None = None,
        operation_id: int | None = None,
    ) -> EditOperation:
        """Return a copy labelled with the given identity fields.

        Fields passed as ``None`` keep their current value, except
        ``session_id`` which is always set.
        """
        update: dict[str, Any] = {"session_id": session_id}
        if sequence_num is not None:
            update["sequence_num"] = sequence_num
        if operation_id is not None:
            update["id"] = operation_id
        return self.model_copy(update=update)


# =============================================================================
# Exceptions
# =============================================================================


class JournalError(Exception):
    """Base exception for journaling and replay."""

    pass


class OperationLogError(JournalError):
    """Raised when the operation log storage fails."""

    pass


class DuplicateSequenceError(OperationLogError):
    """Raised when a sequence number is already taken within a session."""

    def __init__(self, session_id: int | None, sequence_num: int) -> None:
        self.session_id = session_id
        self.sequence_num = sequence_num
        super().__init__(
            f"Sequence number {sequence_num} already recorded for session {session_id}"
        )


class ReconstructionError(JournalError):
    """Raised when a journal cannot be replayed into frames."""

    pass


class EmptyJournalError(ReconstructionError):
    """Raised when frames are requested for a journal with no operations."""

    def __init__(self, message: str = "No edit history available") -> None:
        super().__init__(message)


class NonContiguousSequenceError(ReconstructionError):
    """Raised when sequence numbers are not exactly 1..N in order."""

    def __init__(self, expected: int, found: int | None) -> None:
        self.expected = expected
        self.found = found
        super().__init__(
            f"Edit history is not contiguous: expected sequence {expected}, found {found}"
        )


class InvalidSpeedError(JournalError, ValueError):
    """Raised when a playback speed is not a positive number."""

    def __init__(self, speed: Any) -> None:
        self.speed = speed
        super().__init__(f"Playback speed must be a positive number, got {speed!r}")


class InvalidTransitionError(JournalError):
    """Raised when a recording session action is not valid in its state."""

    def __init__(self, action: str, state: str) -> None:
        self.action = action
        self.state = state
        super().__init__(f"Cannot {action} while session is {state}")


class JournalCommitError(JournalError):
    """Raised when a journal could not be relabelled with its note id."""

    pass


class JournalDiscardError(JournalError):
    """Raised when a journal could not be deleted."""

    pass


__all__ = [
    "OperationType",
    "EditOperation",
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
