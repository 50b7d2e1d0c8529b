"""
Recording session state machine tests.

Tests cover:
- State transitions (IDLE -> RECORDING -> COMMITTED/DISCARDED -> IDLE)
- Discard confirmation (cancel, confirm, keep history)
- Synchronous sequence assignment with fire-and-forget appends
- Failure handling for append, reassign and discard
- End-to-end round trip from keystrokes to replayed frames
- Provisional identities never reused across processes
- Overlapping submits
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from thoughts.config import Settings
from thoughts.journal import store as store_module
from thoughts.journal import (
    InMemoryOperationLog,
    InvalidTransitionError,
    JournalCommitError,
    JournalDiscardError,
    OperationLogError,
    OperationType,
    RecordingSession,
    RecordingState,
    allocate_provisional_id,
)
from thoughts.journal.operations import EditOperation
from thoughts.notes import InMemoryNoteStore, Note
from thoughts.replay import generate_frames


def type_texts(session: RecordingSession, texts: list[str]) -> None:
    for text in texts:
        session.on_text_change(text, len(text))


class FlakyLog(InMemoryOperationLog):
    """Operation log whose operations can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.append_failures = 0
        self.append_calls = 0
        self.fail_reassign = False
        self.fail_discard = False
        self.fail_allocate = False
        self.append_delays: dict[int, float] = {}

    async def allocate_session_id(self, clock: Any = None) -> int:
        if self.fail_allocate:
            raise OperationLogError("storage unavailable")
        return await super().allocate_session_id(clock)

    async def append(self, session_id: int | None, operation: EditOperation) -> Any:
        self.append_calls += 1
        delay = self.append_delays.get(operation.sequence_num or 0, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if self.append_failures > 0:
            self.append_failures -= 1
            raise OperationLogError("storage unavailable")
        return await super().append(session_id, operation)

    async def reassign_identity(self, old_session_id: int | None, new_session_id: int) -> int:
        if self.fail_reassign:
            raise OperationLogError("storage unavailable")
        return await super().reassign_identity(old_session_id, new_session_id)

    async def discard(self, session_id: int | None) -> int:
        if self.fail_discard:
            raise OperationLogError("storage unavailable")
        return await super().discard(session_id)


@pytest.fixture
def flaky_log() -> FlakyLog:
    return FlakyLog()


@pytest.fixture
def flaky_session(
    flaky_log: FlakyLog,
    note_store: InMemoryNoteStore,
    clock: Any,
    settings: Settings,
    warnings_seen: list[str],
) -> RecordingSession:
    return RecordingSession(
        flaky_log, note_store, clock=clock, on_warning=warnings_seen.append, settings=settings
    )


# =============================================================================
# Provisional identities
# =============================================================================


def test_provisional_ids_are_negative_and_unique() -> None:
    ids = [allocate_provisional_id(lambda: 1_000) for _ in range(5)]

    assert all(i < 0 for i in ids)
    assert len(set(ids)) == 5


# =============================================================================
# Basic transitions
# =============================================================================


async def test_start_allocates_provisional_identity(recording_session: RecordingSession) -> None:
    session_id = await recording_session.start()

    assert recording_session.state is RecordingState.RECORDING
    assert session_id < 0
    assert recording_session.session_id == session_id
    assert recording_session.edit_count == 0


async def test_start_twice_is_invalid(recording_session: RecordingSession) -> None:
    await recording_session.start()

    with pytest.raises(InvalidTransitionError):
        await recording_session.start()


async def test_text_changes_outside_recording_are_not_journaled(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    assert recording_session.on_text_change("hello", 5) is None
    assert recording_session.edit_count == 0


async def test_sequence_numbers_assigned_synchronously(
    recording_session: RecordingSession,
) -> None:
    await recording_session.start()

    first = recording_session.on_text_change("h", 1)
    second = recording_session.on_text_change("hi", 2)
    unchanged = recording_session.on_text_change("hi", 2)

    assert first is not None and second is not None
    assert (first.sequence_num, second.sequence_num) == (1, 2)
    assert unchanged is None
    assert recording_session.edit_count == 2
    assert first.session_id == recording_session.session_id


async def test_start_with_existing_text_journals_it(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    session_id = await recording_session.start("draft")
    recording_session.on_text_change("draft!", 6)
    await recording_session.flush()

    ops = await operation_log.list_operations(session_id)
    assert [op.content for op in ops] == ["draft", "!"]
    assert generate_frames(ops)[-1].content == "draft!"


# =============================================================================
# Commit
# =============================================================================


async def test_submit_reassigns_journal_to_note(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
    note_store: InMemoryNoteStore,
) -> None:
    provisional = await recording_session.start()
    type_texts(recording_session, ["h", "hi", "hi!"])

    note = await recording_session.submit("hi!")

    assert recording_session.state is RecordingState.IDLE
    assert recording_session.last_outcome is RecordingState.COMMITTED
    assert recording_session.session_id is None
    assert await operation_log.list_operations(provisional) == []
    ops = await operation_log.list_operations(note.id)
    assert [op.sequence_num for op in ops] == [1, 2, 3]
    assert await note_store.get_note(note.id) == note


async def test_submit_without_edits_skips_journal(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    await recording_session.start()

    note = await recording_session.submit("typed elsewhere")

    assert recording_session.state is RecordingState.IDLE
    assert await operation_log.list_operations(note.id) == []


async def test_submit_while_idle_only_creates_note(
    recording_session: RecordingSession,
    note_store: InMemoryNoteStore,
) -> None:
    note = await recording_session.submit("plain note")

    assert note.id == 1
    assert recording_session.last_outcome is None


async def test_failed_reassign_keeps_provisional_identity_for_retry(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
    note_store: InMemoryNoteStore,
) -> None:
    provisional = await flaky_session.start()
    type_texts(flaky_session, ["o", "ok"])
    flaky_log.fail_reassign = True

    with pytest.raises(JournalCommitError):
        await flaky_session.submit("ok")

    assert flaky_session.state is RecordingState.RECORDING
    assert flaky_session.session_id == provisional
    assert await flaky_log.count(provisional) == 2

    flaky_log.fail_reassign = False
    note = await flaky_session.submit("ok")

    assert len(await note_store.list_notes()) == 1
    assert await flaky_log.count(note.id) == 2


# =============================================================================
# Discard confirmation
# =============================================================================


async def test_close_without_edits_returns_to_idle(recording_session: RecordingSession) -> None:
    await recording_session.start()

    assert recording_session.request_close() is False
    assert recording_session.state is RecordingState.IDLE


async def test_close_with_edits_asks_for_confirmation(recording_session: RecordingSession) -> None:
    await recording_session.start()
    type_texts(recording_session, ["a"])

    assert recording_session.request_close() is True
    assert recording_session.state is RecordingState.CONFIRMING_DISCARD


async def test_cancel_discard_returns_to_recording(recording_session: RecordingSession) -> None:
    await recording_session.start()
    type_texts(recording_session, ["a"])
    recording_session.request_close()

    recording_session.cancel_discard()

    assert recording_session.state is RecordingState.RECORDING
    second = recording_session.on_text_change("ab", 2)
    assert second is not None and second.sequence_num == 2


async def test_typing_during_confirmation_resumes_recording(
    recording_session: RecordingSession,
) -> None:
    await recording_session.start()
    type_texts(recording_session, ["a"])
    recording_session.request_close()

    op = recording_session.on_text_change("ab", 2)

    assert recording_session.state is RecordingState.RECORDING
    assert op is not None and op.sequence_num == 2


async def test_confirm_discard_deletes_journal(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    provisional = await recording_session.start()
    type_texts(recording_session, ["a", "ab", "abc"])
    recording_session.request_close()

    removed = await recording_session.confirm_discard()

    assert removed == 3
    assert recording_session.state is RecordingState.IDLE
    assert recording_session.last_outcome is RecordingState.DISCARDED
    assert await operation_log.list_operations(provisional) == []


async def test_keep_history_submits_note(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    await recording_session.start()
    type_texts(recording_session, ["k", "ke", "kee", "keep"])
    recording_session.request_close()

    note = await recording_session.keep_history("keep")

    assert recording_session.last_outcome is RecordingState.COMMITTED
    assert await operation_log.count(note.id) == 4


async def test_failed_discard_stays_confirming(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
) -> None:
    provisional = await flaky_session.start()
    type_texts(flaky_session, ["x"])
    flaky_session.request_close()
    flaky_log.fail_discard = True

    with pytest.raises(JournalDiscardError):
        await flaky_session.confirm_discard()

    assert flaky_session.state is RecordingState.CONFIRMING_DISCARD
    assert flaky_session.session_id == provisional
    assert await flaky_log.count(provisional) == 1


async def test_confirm_discard_requires_confirmation_state(
    recording_session: RecordingSession,
) -> None:
    await recording_session.start()

    with pytest.raises(InvalidTransitionError):
        await recording_session.confirm_discard()


async def test_toggle_record_mode(recording_session: RecordingSession) -> None:
    assert await recording_session.toggle_record_mode() is True
    assert await recording_session.toggle_record_mode() is False
    assert recording_session.state is RecordingState.IDLE

    await recording_session.toggle_record_mode()
    type_texts(recording_session, ["z"])

    assert await recording_session.toggle_record_mode() is False
    assert recording_session.state is RecordingState.CONFIRMING_DISCARD


async def test_sessions_do_not_share_state(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    first_id = await recording_session.start()
    type_texts(recording_session, ["one"])
    first_note = await recording_session.submit("one")

    second_id = await recording_session.start()
    op = recording_session.on_text_change("t", 1)

    assert second_id != first_id
    assert op is not None and op.sequence_num == 1
    second_note = await recording_session.submit("t")
    assert await operation_log.count(first_note.id) == 1
    assert await operation_log.count(second_note.id) == 1


# =============================================================================
# Append failures
# =============================================================================


async def test_append_failure_is_retried_once(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
    warnings_seen: list[str],
) -> None:
    provisional = await flaky_session.start()
    flaky_log.append_failures = 1

    type_texts(flaky_session, ["a"])
    await flaky_session.flush()

    assert flaky_log.append_calls == 2
    assert await flaky_log.count(provisional) == 1
    assert warnings_seen == []


async def test_append_failure_warns_and_keeps_counter(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
    warnings_seen: list[str],
) -> None:
    provisional = await flaky_session.start()
    flaky_log.append_failures = 2

    type_texts(flaky_session, ["a"])
    await flaky_session.flush()
    op = flaky_session.on_text_change("ab", 2)
    await flaky_session.flush()

    assert op is not None and op.sequence_num == 2
    assert flaky_session.failed_appends == 1
    assert len(warnings_seen) == 1
    ops = await flaky_log.list_operations(provisional)
    assert [o.sequence_num for o in ops] == [2]


async def test_out_of_order_completion_keeps_sequence_order(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
) -> None:
    flaky_log.append_delays = {1: 0.05, 2: 0.0, 3: 0.02}
    await flaky_session.start()
    type_texts(flaky_session, ["h", "he", "hey"])

    note = await flaky_session.submit("hey")

    ops = await flaky_log.list_operations(note.id)
    assert [op.sequence_num for op in ops] == [1, 2, 3]
    assert generate_frames(ops)[-1].content == "hey"


# =============================================================================
# Round trip
# =============================================================================


async def test_keystrokes_round_trip_through_frames(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
) -> None:
    texts = [
        "h", "hi", "hi!", "hi there!", "hi there", "hello there",
        "hello", "hello world", "hello world\n", "hello world\nbye",
    ]
    await recording_session.start()
    type_texts(recording_session, texts)

    note = await recording_session.submit(texts[-1])

    ops = await operation_log.list_operations(note.id)
    frames = generate_frames(ops)
    assert [frame.content for frame in frames] == texts
    assert frames[-1].content == texts[-1]
    assert {op.operation_type for op in ops} == {
        OperationType.INSERT,
        OperationType.DELETE,
        OperationType.REPLACE,
    }


# =============================================================================
# Identity reuse
# =============================================================================


async def test_restarted_process_never_reuses_discarded_identity(
    operation_log: InMemoryOperationLog,
    note_store: InMemoryNoteStore,
    settings: Settings,
    warnings_seen: list[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(store_module, "_last_provisional_id", 0)
    first = RecordingSession(operation_log, note_store, clock=lambda: 5_000, settings=settings)
    discarded_id = await first.start()
    type_texts(first, ["old"])
    first.request_close()
    await first.confirm_discard()

    # A fresh process starts with an empty in-memory counter and the same clock.
    monkeypatch.setattr(store_module, "_last_provisional_id", 0)
    second = RecordingSession(
        operation_log,
        note_store,
        clock=lambda: 5_000,
        on_warning=warnings_seen.append,
        settings=settings,
    )
    session_id = await second.start()
    type_texts(second, ["new thought"])
    note = await second.submit("new thought")

    assert session_id != discarded_id
    assert [op.content for op in await operation_log.list_operations(note.id)] == ["new thought"]
    assert warnings_seen == []
    assert second.failed_appends == 0


async def test_identity_of_reassigned_journal_is_not_reused(
    operation_log: InMemoryOperationLog,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(store_module, "_last_provisional_id", 0)
    taken = await operation_log.allocate_session_id(lambda: 7_000)
    await operation_log.reassign_identity(taken, 1)

    monkeypatch.setattr(store_module, "_last_provisional_id", 0)
    again = await operation_log.allocate_session_id(lambda: 7_000)

    assert again != taken
    assert again < 0


async def test_failed_start_stays_idle(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
) -> None:
    flaky_log.fail_allocate = True

    with pytest.raises(OperationLogError):
        await flaky_session.start()

    assert flaky_session.state is RecordingState.IDLE
    flaky_log.fail_allocate = False
    assert await flaky_session.start() < 0


async def test_dropped_append_for_active_session_is_reported(
    recording_session: RecordingSession,
    operation_log: InMemoryOperationLog,
    warnings_seen: list[str],
) -> None:
    session_id = await recording_session.start()
    # Another writer tombstones the journal while this session still owns it.
    await operation_log.discard(session_id)

    type_texts(recording_session, ["lost"])
    await recording_session.flush()

    assert recording_session.failed_appends == 1
    assert len(warnings_seen) == 1
    assert "incomplete" in warnings_seen[0]


async def test_discarding_own_journal_raises_no_warning(
    recording_session: RecordingSession,
    warnings_seen: list[str],
) -> None:
    await recording_session.start()
    type_texts(recording_session, ["a", "ab"])
    recording_session.request_close()

    await recording_session.confirm_discard()

    assert warnings_seen == []
    assert recording_session.failed_appends == 0


# =============================================================================
# In-flight work
# =============================================================================


class SlowNoteStore(InMemoryNoteStore):
    async def create_note(self, content: str, metadata: dict[str, Any] | None = None) -> Note:
        await asyncio.sleep(0.01)
        return await super().create_note(content, metadata)


async def test_pending_appends_tracks_in_flight_writes(
    flaky_session: RecordingSession,
    flaky_log: FlakyLog,
) -> None:
    flaky_log.append_delays = {1: 0.02}
    await flaky_session.start()

    type_texts(flaky_session, ["a"])
    assert flaky_session.pending_appends == 1

    await flaky_session.flush()
    assert flaky_session.pending_appends == 0


async def test_overlapping_submits_create_one_note(
    operation_log: InMemoryOperationLog,
    clock: Any,
    settings: Settings,
) -> None:
    notes = SlowNoteStore()
    session = RecordingSession(operation_log, notes, clock=clock, settings=settings)
    await session.start()
    type_texts(session, ["once"])

    results = await asyncio.gather(
        session.submit("once"), session.submit("once"), return_exceptions=True
    )

    assert sum(isinstance(r, Note) for r in results) == 1
    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert len(await notes.list_notes()) == 1
    assert session.last_outcome is RecordingState.COMMITTED


async def test_close_during_submit_leaves_submit_to_finish(
    operation_log: InMemoryOperationLog,
    clock: Any,
    settings: Settings,
) -> None:
    notes = SlowNoteStore()
    session = RecordingSession(operation_log, notes, clock=clock, settings=settings)
    await session.start()
    type_texts(session, ["bye"])

    submitting = asyncio.ensure_future(session.submit("bye"))
    await asyncio.sleep(0)

    assert session.request_close() is False
    assert session.state == RecordingState.RECORDING

    note = await submitting
    assert session.state == RecordingState.IDLE
    assert [op.content for op in await operation_log.list_operations(note.id)] == ["bye"]
