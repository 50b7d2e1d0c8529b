"""Operation Log: the append-only journal of edit operations.

The log is keyed by session identity. A session starts under a provisional
(negative) identity and is either relabelled with the committed note's id or
discarded. Appends that arrive after either event follow it: a late append
for a reassigned session is stored under the new identity, a late append for
a discarded session is dropped.

Provides:
- OperationLog: the async contract every storage backend implements
- InMemoryOperationLog: dict-backed implementation used by tests and
  single-process tools
"""

from __future__ import annotations

import asyncio
import bisect
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

from thoughts.journal.operations import (
    DuplicateSequenceError,
    EditOperation,
    OperationLogError,
)

logger = logging.getLogger(__name__)

# Redirect chains longer than this indicate a cycle.
MAX_REDIRECT_HOPS = 32

# Candidates tried before giving up on a free provisional identity.
MAX_ALLOCATION_ATTEMPTS = 32


# =============================================================================
# Provisional identities
# =============================================================================


_provisional_lock = threading.Lock()
_last_provisional_id = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


def allocate_provisional_id(clock: Callable[[], int] | None = None) -> int:
    """Propose a negative session id, strictly decreasing within this process.

    Ids are the negated capture time in milliseconds, nudged down when two
    sessions start within the same millisecond. Only the operation log can
    tell whether an id was used before; see
    ``OperationLog.allocate_session_id``.
    """
    global _last_provisional_id

    candidate = -max((clock or _now_ms)(), 1)
    with _provisional_lock:
        if _last_provisional_id and candidate >= _last_provisional_id:
            candidate = _last_provisional_id - 1
        _last_provisional_id = candidate
    return candidate


class OperationLog(ABC):
    """Async contract for journal storage."""

    @abstractmethod
    async def allocate_session_id(self, clock: Callable[[], int] | None = None) -> int:
        """Reserve a provisional session id never seen by this log.

        Ids that still hold operations, were reassigned or were discarded
        are skipped, so a new session never inherits an old redirect or
        tombstone.

        Raises:
            OperationLogError: If no free id was found.
        """

    @abstractmethod
    async def append(
        self,
        session_id: int | None,
        operation: EditOperation,
    ) -> EditOperation | None:
        """Persist one operation for a session.

        Keeps ``operation.sequence_num`` when it is set, otherwise assigns
        ``max existing + 1`` (starting at 1).

        Returns:
            The stored operation with ``id``, ``session_id`` and
            ``sequence_num`` filled in, or None if the session was discarded.

        Raises:
            DuplicateSequenceError: If the sequence number is already taken.
            OperationLogError: If storage fails.
        """

    @abstractmethod
    async def list_operations(self, session_id: int | None) -> list[EditOperation]:
        """Return every operation of a session ordered by sequence number."""

    @abstractmethod
    async def reassign_identity(
        self,
        old_session_id: int | None,
        new_session_id: int,
    ) -> int:
        """Relabel every operation of ``old_session_id`` atomically.

        Returns:
            Number of operations moved.
        """

    @abstractmethod
    async def discard(self, session_id: int | None) -> int:
        """Delete every operation of a session.

        Returns:
            Number of operations removed.
        """

    async def count(self, session_id: int | None) -> int:
        """Number of operations recorded for a session."""
        return len(await self.list_operations(session_id))


class InMemoryOperationLog(OperationLog):
    """Operation log held in process memory.

    A single asyncio lock serializes every mutation and read, so a reader
    never observes a partially reassigned or partially discarded journal.

    Example:
        log = InMemoryOperationLog()
        stored = await log.append(-1, operation)
        await log.reassign_identity(-1, 42)
        ops = await log.list_operations(42)
    """

    def __init__(self) -> None:
        self._operations: dict[int | None, list[EditOperation]] = {}
        self._redirects: dict[int, int] = {}
        self._discarded: set[int] = set()
        self._reserved: set[int] = set()
        self._next_id = 1
        self._lock = asyncio.Lock()

    def _is_known(self, session_id: int) -> bool:
        return (
            session_id in self._reserved
            or session_id in self._operations
            or session_id in self._redirects
            or session_id in self._discarded
        )

    async def allocate_session_id(self, clock: Callable[[], int] | None = None) -> int:
        async with self._lock:
            for _ in range(MAX_ALLOCATION_ATTEMPTS):
                candidate = allocate_provisional_id(clock)
                if not self._is_known(candidate):
                    self._reserved.add(candidate)
                    return candidate
                logger.debug(f"Provisional id {candidate} already used, trying another")
        raise OperationLogError("No free provisional session id")

    def _resolve(self, session_id: int | None) -> tuple[int | None, bool]:
        """Follow reassignments and report whether the session was discarded.

        The unset identity (None) is never redirected or tombstoned, since
        every new unset session reuses it.
        """
        current = session_id
        for _ in range(MAX_REDIRECT_HOPS):
            if current is None:
                return None, False
            if current in self._discarded:
                return current, True
            if current not in self._redirects:
                return current, False
            current = self._redirects[current]
        raise OperationLogError(f"Redirect cycle detected for session {session_id}")

    async def append(
        self,
        session_id: int | None,
        operation: EditOperation,
    ) -> EditOperation | None:
        async with self._lock:
            target, discarded = self._resolve(session_id)
            if discarded:
                logger.debug(
                    f"Dropping late append for discarded session {session_id}",
                    extra={"session_id": session_id, "sequence_num": operation.sequence_num},
                )
                return None

            operations = self._operations.setdefault(target, [])
            sequence_num = operation.sequence_num
            if sequence_num is None:
                sequence_num = operations[-1].sequence_num + 1 if operations else 1

            index = bisect.bisect_left(
                operations, sequence_num, key=lambda op: op.sequence_num
            )
            if index < len(operations) and operations[index].sequence_num == sequence_num:
                raise DuplicateSequenceError(target, sequence_num)

            stored = operation.with_identity(target, sequence_num, self._next_id)
            self._next_id += 1
            operations.insert(index, stored)

            if target != session_id:
                logger.debug(
                    f"Late append for session {session_id} stored under {target}",
                    extra={"session_id": session_id, "target_session_id": target},
                )

            return stored

    async def list_operations(self, session_id: int | None) -> list[EditOperation]:
        async with self._lock:
            return list(self._operations.get(session_id, ()))

    async def reassign_identity(
        self,
        old_session_id: int | None,
        new_session_id: int,
    ) -> int:
        async with self._lock:
            if old_session_id == new_session_id:
                return len(self._operations.get(old_session_id, ()))

            moving = self._operations.get(old_session_id, [])
            existing = self._operations.get(new_session_id, [])

            taken = {op.sequence_num for op in existing}
            clashes = sorted(op.sequence_num for op in moving if op.sequence_num in taken)
            if clashes:
                raise OperationLogError(
                    f"Cannot reassign session {old_session_id} to {new_session_id}: "
                    f"sequence numbers {clashes} already exist"
                )

            merged = sorted(
                existing + [op.with_identity(new_session_id) for op in moving],
                key=lambda op: op.sequence_num,
            )
            if merged:
                self._operations[new_session_id] = merged
            self._operations.pop(old_session_id, None)

            if old_session_id is not None:
                self._redirects[old_session_id] = new_session_id

            logger.info(
                f"Reassigned {len(moving)} operations from session "
                f"{old_session_id} to {new_session_id}",
                extra={
                    "old_session_id": old_session_id,
                    "new_session_id": new_session_id,
                    "count": len(moving),
                },
            )
            return len(moving)

    async def discard(self, session_id: int | None) -> int:
        async with self._lock:
            removed = self._operations.pop(session_id, [])
            if session_id is not None:
                self._discarded.add(session_id)

            logger.info(
                f"Discarded {len(removed)} operations for session {session_id}",
                extra={"session_id": session_id, "count": len(removed)},
            )
            return len(removed)

    async def count(self, session_id: int | None) -> int:
        async with self._lock:
            return len(self._operations.get(session_id, ()))


__all__ = [
    "OperationLog",
    "InMemoryOperationLog",
    "allocate_provisional_id",
]
