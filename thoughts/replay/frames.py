"""Frame reconstruction from an operation log.

Replays a session's operations against an empty string and materializes the
text and cursor after each one. There is no synthetic "before anything"
frame: frame ``i`` is the state after operation ``i``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from thoughts.journal.diff import apply_edit_operation
from thoughts.journal.operations import (
    EditOperation,
    EmptyJournalError,
    NonContiguousSequenceError,
    OperationType,
    ReconstructionError,
)


@dataclass(frozen=True)
class PlaybackFrame:
    """Document state immediately after one applied operation.

    Attributes:
        sequence_index: Zero-based index of the operation that produced it.
        content: Full text after the operation.
        cursor_position: Caret offset after the operation.
        timestamp_ms: Capture time of the operation.
    """

    sequence_index: int
    content: str
    cursor_position: int
    timestamp_ms: int


def _cursor_after(operation: EditOperation) -> int:
    match operation.operation_type:
        case OperationType.INSERT | OperationType.REPLACE:
            return operation.position + operation.content_length
        case OperationType.DELETE:
            return operation.position
        case _:
            raise ReconstructionError(
                f"Unknown operation type: {operation.operation_type!r}"
            )


def generate_frames(operations: Sequence[EditOperation]) -> list[PlaybackFrame]:
    """Replay operations into frames.

    Args:
        operations: A session's operations ordered by sequence number.

    Returns:
        One frame per operation.

    Raises:
        EmptyJournalError: If there are no operations.
        NonContiguousSequenceError: If sequence numbers are not 1..N in order.
        ReconstructionError: If an operation does not fit the text.
    """
    if not operations:
        raise EmptyJournalError()

    frames: list[PlaybackFrame] = []
    content = ""

    for index, operation in enumerate(operations):
        expected = index + 1
        if operation.sequence_num != expected:
            raise NonContiguousSequenceError(expected, operation.sequence_num)

        content = apply_edit_operation(content, operation)
        frames.append(
            PlaybackFrame(
                sequence_index=index,
                content=content,
                cursor_position=_cursor_after(operation),
                timestamp_ms=operation.timestamp_ms,
            )
        )

    return frames


def final_content(operations: Sequence[EditOperation]) -> str:
    """Text produced by replaying every operation."""
    return generate_frames(operations)[-1].content
