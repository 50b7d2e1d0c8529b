"""Recording session state machine.

A RecordingSession is owned by the capture window. It decides when edits are
journaled and carries a session's identity from provisional to final:

    IDLE -> RECORDING -> COMMITTED -> IDLE
                      -> CONFIRMING_DISCARD -> DISCARDED -> IDLE
                                            -> RECORDING

Text changes are diffed synchronously and sequence numbers are assigned from
an in-memory counter before the append is scheduled, so the journal order
never depends on which asynchronous write lands first. Appends are
fire-and-forget: failures are retried, logged and reported through a warning
callback, and never interrupt typing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterator

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from thoughts.config import Settings, get_settings
from thoughts.journal.diff import compute_edit_operation
from thoughts.journal.operations import (
    DuplicateSequenceError,
    EditOperation,
    InvalidTransitionError,
    JournalCommitError,
    JournalDiscardError,
    OperationLogError,
)
from thoughts.journal.store import OperationLog
from thoughts.notes.store import Note, NoteStore

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, OperationLogError) and not isinstance(
        error, DuplicateSequenceError
    )


# =============================================================================
# State machine
# =============================================================================


class RecordingState(str, Enum):
    """Recording session state."""

    IDLE = "idle"
    RECORDING = "recording"
    CONFIRMING_DISCARD = "confirming_discard"
    COMMITTED = "committed"
    DISCARDED = "discarded"


class RecordingSession:
    """Explicit recording session handle.

    Example:
        session = RecordingSession(log, notes)
        await session.start()
        session.on_text_change("h", 1)
        session.on_text_change("hi", 2)
        note = await session.submit("hi")

    Attributes:
        state: Current state. COMMITTED and DISCARDED are never observed
            here; they reset to IDLE at once and are kept in last_outcome.
        session_id: Provisional identity of the active session, or None.
        edit_count: Sequence numbers handed out in the active session.
        failed_appends: Appends given up on since the session object was made.
    """

    def __init__(
        self,
        log: OperationLog,
        note_store: NoteStore,
        *,
        clock: Callable[[], int] | None = None,
        on_warning: Callable[[str], Any] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._log = log
        self._note_store = note_store
        self._clock = clock or _now_ms
        self._on_warning = on_warning
        self._settings = settings or get_settings()

        self.state = RecordingState.IDLE
        self.last_outcome: RecordingState | None = None
        self.session_id: int | None = None
        self.failed_appends = 0

        self._sequence_num = 0
        self._last_text = ""
        self._pending_note: Note | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self._busy: str | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self.state == RecordingState.RECORDING

    @property
    def edit_count(self) -> int:
        return self._sequence_num

    @property
    def pending_appends(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def start(self, current_text: str = "") -> int:
        """Turn record mode on and reserve a provisional identity.

        The id comes from the operation log, which never hands out one that
        was used before, even by another process.

        Args:
            current_text: Text already in the box. It is journaled as the
                first insert so replay from an empty string stays exact.

        Returns:
            The provisional session id.

        Raises:
            OperationLogError: If no identity could be reserved. The session
                stays IDLE.
        """
        self._require("start recording", RecordingState.IDLE)

        with self._exclusive("start recording"):
            observed = self._last_text
            session_id = await self._log.allocate_session_id(self._clock)

        if self._last_text != observed:
            current_text = self._last_text

        self.session_id = session_id
        self._sequence_num = 0
        self._last_text = ""
        self._pending_note = None
        self.state = RecordingState.RECORDING

        logger.info(
            f"Recording started for session {self.session_id}",
            extra={"session_id": self.session_id},
        )

        if current_text:
            self.on_text_change(current_text, len(current_text))

        return self.session_id

    def on_text_change(self, new_text: str, cursor_pos: int = 0) -> EditOperation | None:
        """Record one observed text box change.

        Must be called from within the running event loop when recording,
        since the append is scheduled as a task on it.

        Returns:
            The sequenced operation scheduled for persistence, or None.
        """
        previous = self._last_text
        self._last_text = new_text

        if self.state == RecordingState.CONFIRMING_DISCARD and self._busy is None:
            self.cancel_discard()

        if self.state != RecordingState.RECORDING:
            return None

        operation = compute_edit_operation(previous, new_text, cursor_pos, clock=self._clock)
        if operation is None:
            return None

        self._sequence_num += 1
        operation = operation.with_identity(self.session_id, self._sequence_num)
        self._schedule_append(operation)
        return operation

    def request_close(self) -> bool:
        """Ask to close the capture window.

        Returns:
            True if confirmation is needed before the journal is dropped.
        """
        if self.state == RecordingState.CONFIRMING_DISCARD:
            return True
        if self.state != RecordingState.RECORDING or self._busy is not None:
            return False

        if self._sequence_num > 0:
            self.state = RecordingState.CONFIRMING_DISCARD
            return True

        logger.debug(
            f"Closing empty session {self.session_id}",
            extra={"session_id": self.session_id},
        )
        self._reset()
        return False

    async def toggle_record_mode(self) -> bool:
        """Toggle record mode.

        Turning it off with edits recorded asks for discard confirmation
        instead of silently orphaning the journal.

        Returns:
            Whether the session is recording afterwards.
        """
        if self.state == RecordingState.IDLE:
            await self.start(self._last_text)
        elif self.state == RecordingState.RECORDING:
            self.request_close()
        return self.is_recording

    def cancel_discard(self) -> None:
        """Leave the discard confirmation and keep editing."""
        self._require("cancel discard", RecordingState.CONFIRMING_DISCARD)
        self.state = RecordingState.RECORDING

    async def confirm_discard(self) -> int:
        """Delete the journal and return to IDLE.

        Returns:
            Number of operations removed.

        Raises:
            JournalDiscardError: If the log could not delete the journal. The
                session keeps its identity and stays in CONFIRMING_DISCARD.
        """
        self._require("discard", RecordingState.CONFIRMING_DISCARD)
        session_id = self.session_id

        with self._exclusive("discard"):
            await self.flush()
            try:
                removed = await self._log.discard(session_id)
            except OperationLogError as e:
                logger.error(f"Failed to discard session {session_id}: {e}")
                raise JournalDiscardError(f"Failed to discard edit history: {e}") from e

        logger.info(
            f"Discarded session {session_id}",
            extra={"session_id": session_id, "count": removed},
        )
        self.last_outcome = RecordingState.DISCARDED
        self._reset()
        return removed

    async def keep_history(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Note:
        """Leave the discard confirmation by submitting the note."""
        self._require("keep history", RecordingState.CONFIRMING_DISCARD)
        self.state = RecordingState.RECORDING
        return await self.submit(content, metadata)

    async def submit(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Note:
        """Create the note and attach the journal to it.

        Raises:
            InvalidTransitionError: If another submit or discard of this
                session is still in flight.
            JournalCommitError: If the journal could not be relabelled. The
                session stays RECORDING under its provisional id; calling
                submit again reuses the note already created.
        """
        if self.state == RecordingState.IDLE and self._busy is None:
            return await self._note_store.create_note(content, metadata)

        self._require("submit", RecordingState.RECORDING)
        session_id = self.session_id

        with self._exclusive("submit"):
            note = self._pending_note
            if note is None:
                note = await self._note_store.create_note(content, metadata)
                self._pending_note = note

            if self._sequence_num > 0:
                await self.flush()
                try:
                    moved = await self._log.reassign_identity(session_id, note.id)
                except OperationLogError as e:
                    logger.error(
                        f"Failed to attach session {session_id} to note {note.id}: {e}"
                    )
                    raise JournalCommitError(
                        f"Failed to save edit history for note {note.id}: {e}"
                    ) from e

                logger.info(
                    f"Committed session {session_id} as note {note.id}",
                    extra={"session_id": session_id, "note_id": note.id, "count": moved},
                )

        self.last_outcome = RecordingState.COMMITTED
        self._reset()
        return note

    async def flush(self) -> None:
        """Wait for in-flight appends, bounded by JOURNAL_FLUSH_TIMEOUT."""
        if not self._pending:
            return

        _, still_pending = await asyncio.wait(
            set(self._pending),
            timeout=self._settings.JOURNAL_FLUSH_TIMEOUT,
        )
        if still_pending:
            logger.warning(
                f"{len(still_pending)} appends still in flight for session {self.session_id}",
                extra={"session_id": self.session_id, "pending": len(still_pending)},
            )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require(self, action: str, *states: RecordingState) -> None:
        if self._busy is not None:
            raise InvalidTransitionError(action, f"busy with {self._busy}")
        if self.state not in states:
            raise InvalidTransitionError(action, self.state.value)

    @contextmanager
    def _exclusive(self, action: str) -> Iterator[None]:
        self._busy = action
        try:
            yield
        finally:
            self._busy = None

    def _reset(self) -> None:
        self.state = RecordingState.IDLE
        self.session_id = None
        self._sequence_num = 0
        self._last_text = ""
        self._pending_note = None

    def _schedule_append(self, operation: EditOperation) -> None:
        task = asyncio.get_running_loop().create_task(self._persist(operation))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, operation: EditOperation) -> None:
        stored: EditOperation | None = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.JOURNAL_APPEND_MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=0.05, max=1),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    stored = await self._log.append(operation.session_id, operation)
        except Exception as e:
            self._report_failed_append(operation, str(e))
            return

        # The log drops appends for discarded journals; that is only expected
        # once this session has moved on.
        if stored is None and operation.session_id == self.session_id:
            self._report_failed_append(operation, "the journal was already closed")

    def _report_failed_append(self, operation: EditOperation, reason: str) -> None:
        self.failed_appends += 1
        logger.warning(
            f"Failed to record operation {operation.sequence_num} "
            f"for session {operation.session_id}: {reason}",
            extra={
                "session_id": operation.session_id,
                "sequence_num": operation.sequence_num,
                "operation_type": operation.operation_type.value,
            },
        )
        if self._on_warning is not None:
            self._on_warning(f"Edit history may be incomplete: {reason}")


__all__ = [
    "RecordingSession",
    "RecordingState",
]
