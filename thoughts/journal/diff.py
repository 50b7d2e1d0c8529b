"""Edit operation diffing between consecutive text box states.

The diff assumes a single contiguous edit region per transition. It is
sampled once per input event, so multi-region edits (multi-cursor typing,
some pastes) are recorded as one larger ``replace`` covering the span
between the first and last changed characters.
"""

from __future__ import annotations

import time
from typing import Callable

from thoughts.journal.operations import (
    EditOperation,
    OperationType,
    ReconstructionError,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def common_prefix_length(previous: str, next_text: str) -> int:
    """Length of the longest common prefix of two strings."""
    limit = min(len(previous), len(next_text))
    prefix = 0
    while prefix < limit and previous[prefix] == next_text[prefix]:
        prefix += 1
    return prefix


def common_suffix_length(previous: str, next_text: str, prefix: int) -> int:
    """Length of the longest common suffix that does not overlap ``prefix``."""
    limit = min(len(previous), len(next_text)) - prefix
    suffix = 0
    while (
        suffix < limit
        and previous[len(previous) - 1 - suffix] == next_text[len(next_text) - 1 - suffix]
    ):
        suffix += 1
    return suffix


def compute_edit_operation(
    previous: str,
    next_text: str,
    cursor_pos: int = 0,
    *,
    clock: Callable[[], int] | None = None,
) -> EditOperation | None:
    """Compute the edit that turns ``previous`` into ``next_text``.

    Args:
        previous: Text box contents before the input event.
        next_text: Text box contents after the input event.
        cursor_pos: Caret position after the event. Recorded positions are
            derived from the diff, not from the caret.
        clock: Millisecond clock used for ``timestamp_ms``.

    Returns:
        An unsequenced EditOperation, or None if nothing changed.
    """
    if previous == next_text:
        return None

    prefix = common_prefix_length(previous, next_text)
    suffix = common_suffix_length(previous, next_text, prefix)

    deleted = previous[prefix : len(previous) - suffix]
    inserted = next_text[prefix : len(next_text) - suffix]

    if deleted and inserted:
        op_type = OperationType.REPLACE
        content = inserted
    elif inserted:
        op_type = OperationType.INSERT
        content = inserted
    elif deleted:
        op_type = OperationType.DELETE
        content = deleted
    else:
        return None

    return EditOperation(
        operation_type=op_type,
        position=prefix,
        content=content,
        replaced_length=len(deleted),
        timestamp_ms=(clock or _now_ms)(),
    )


def apply_edit_operation(text: str, operation: EditOperation) -> str:
    """Apply one edit operation to ``text``.

    Raises:
        ReconstructionError: If the operation does not fit the text.
    """
    position = operation.position
    if position > len(text):
        raise ReconstructionError(
            f"Operation {operation.sequence_num} starts at {position} "
            f"beyond text of length {len(text)}"
        )

    match operation.operation_type:
        case OperationType.INSERT:
            return text[:position] + operation.content + text[position:]
        case OperationType.DELETE:
            end = position + operation.content_length
            if text[position:end] != operation.content:
                raise ReconstructionError(
                    f"Operation {operation.sequence_num} deletes {operation.content!r} "
                    f"but text holds {text[position:end]!r}"
                )
            return text[:position] + text[end:]
        case OperationType.REPLACE:
            end = position + operation.replaced_length
            if end > len(text):
                raise ReconstructionError(
                    f"Operation {operation.sequence_num} replaces past the end of the text"
                )
            return text[:position] + operation.content + text[end:]
        case _:
            raise ReconstructionError(
                f"Unknown operation type: {operation.operation_type!r}"
            )
