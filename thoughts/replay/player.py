"""Playback of reconstructed frames.

User intents (play, pause, seek, speed change, restart, stepping) are pure
transitions on ``PlaybackState`` computed by ``playback_reducer``. The
``PlaybackController`` wraps the reducer with a cooperative asyncio timer:
while playing, it schedules the next frame after the computed delay and
cancels the pending timer on pause, seek or close. Playback never touches the
operation log.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from thoughts.config import Settings, get_settings
from thoughts.journal.operations import EmptyJournalError
from thoughts.journal.store import OperationLog
from thoughts.replay.frames import PlaybackFrame, generate_frames
from thoughts.replay.timing import (
    SPEED_OPTIONS,
    calculate_frame_delays,
    elapsed_ms,
    format_clock,
    total_ms,
    validate_speed,
)

logger = logging.getLogger(__name__)


# =============================================================================
# State and reducer
# =============================================================================


class PlaybackAction(str, Enum):
    """User intents understood by the playback reducer."""

    PLAY = "play"
    PAUSE = "pause"
    TOGGLE = "toggle"
    SEEK = "seek"
    NEXT_FRAME = "next_frame"
    PREVIOUS_FRAME = "previous_frame"
    CHANGE_SPEED = "change_speed"
    RESTART = "restart"


@dataclass(frozen=True)
class PlaybackState:
    is_playing: bool = False
    current_frame_index: int = 0
    speed: float = 1.0


def playback_reducer(
    state: PlaybackState,
    action: PlaybackAction,
    *,
    frame_count: int,
    frame_index: int | None = None,
    speed: float | None = None,
) -> PlaybackState:
    """Compute the next playback state.

    Args:
        state: Current state.
        action: User intent.
        frame_count: Number of frames being played.
        frame_index: Target for SEEK.
        speed: Multiplier for CHANGE_SPEED.

    Raises:
        ValueError: If a required argument is missing or there are no frames.
        InvalidSpeedError: If CHANGE_SPEED gets a non-positive speed.
    """
    if frame_count < 1:
        raise ValueError("Playback needs at least one frame")

    last = frame_count - 1
    current = min(max(state.current_frame_index, 0), last)

    match action:
        case PlaybackAction.PLAY:
            return replace(state, current_frame_index=current, is_playing=current < last)
        case PlaybackAction.PAUSE:
            return replace(state, is_playing=False)
        case PlaybackAction.TOGGLE:
            return playback_reducer(
                state,
                PlaybackAction.PAUSE if state.is_playing else PlaybackAction.PLAY,
                frame_count=frame_count,
            )
        case PlaybackAction.SEEK:
            if frame_index is None:
                raise ValueError("SEEK requires frame_index")
            target = min(max(frame_index, 0), last)
            return replace(state, current_frame_index=target, is_playing=False)
        case PlaybackAction.NEXT_FRAME:
            target = min(current + 1, last)
            return replace(
                state,
                current_frame_index=target,
                is_playing=state.is_playing and target < last,
            )
        case PlaybackAction.PREVIOUS_FRAME:
            return replace(state, current_frame_index=max(current - 1, 0), is_playing=False)
        case PlaybackAction.CHANGE_SPEED:
            if speed is None:
                raise ValueError("CHANGE_SPEED requires speed")
            return replace(state, speed=validate_speed(speed))
        case PlaybackAction.RESTART:
            return replace(state, current_frame_index=0, is_playing=False)
        case _:
            raise ValueError(f"Unknown playback action: {action!r}")


# Keyboard shortcuts of the replay window.
KEY_BINDINGS: dict[str, tuple[PlaybackAction, dict[str, Any]]] = {
    " ": (PlaybackAction.TOGGLE, {}),
    "ArrowLeft": (PlaybackAction.PREVIOUS_FRAME, {}),
    "ArrowRight": (PlaybackAction.NEXT_FRAME, {}),
    "0": (PlaybackAction.RESTART, {}),
    **{
        str(number): (PlaybackAction.CHANGE_SPEED, {"speed": option})
        for number, option in enumerate(SPEED_OPTIONS, start=1)
    },
}


# =============================================================================
# Controller
# =============================================================================


class PlaybackController:
    """Drives frame playback on the running event loop.

    Example:
        controller = PlaybackController(frames, on_frame=render)
        controller.play()
        await controller.wait_until_paused()
    """

    def __init__(
        self,
        frames: Sequence[PlaybackFrame],
        *,
        speed: float | None = None,
        max_delay_ms: float | None = None,
        on_frame: Callable[[PlaybackFrame], Any] | None = None,
        settings: Settings | None = None,
    ) -> None:
        if not frames:
            raise EmptyJournalError()

        settings = settings or get_settings()
        self.frames = list(frames)
        self._max_delay_ms = (
            max_delay_ms if max_delay_ms is not None else settings.PLAYBACK_MAX_FRAME_DELAY_MS
        )
        self._on_frame = on_frame
        self._timer: asyncio.Task[None] | None = None
        self._paused = asyncio.Event()
        self._paused.set()

        initial_speed = validate_speed(
            speed if speed is not None else settings.PLAYBACK_DEFAULT_SPEED
        )
        self.state = PlaybackState(speed=initial_speed)
        self.delays = calculate_frame_delays(
            self.frames, initial_speed, max_delay_ms=self._max_delay_ms
        )

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    @property
    def current_frame(self) -> PlaybackFrame:
        return self.frames[self.state.current_frame_index]

    @property
    def is_playing(self) -> bool:
        return self.state.is_playing

    def timeline(self) -> tuple[str, str]:
        """Elapsed and total playback time as ``MM:SS`` strings."""
        return (
            format_clock(elapsed_ms(self.delays, self.state.current_frame_index)),
            format_clock(total_ms(self.delays)),
        )

    # -------------------------------------------------------------------------
    # Intents
    # -------------------------------------------------------------------------

    def play(self) -> PlaybackState:
        return self.dispatch(PlaybackAction.PLAY)

    def pause(self) -> PlaybackState:
        return self.dispatch(PlaybackAction.PAUSE)

    def toggle(self) -> PlaybackState:
        return self.dispatch(PlaybackAction.TOGGLE)

    def seek(self, frame_index: int) -> PlaybackState:
        return self.dispatch(PlaybackAction.SEEK, frame_index=frame_index)

    def set_speed(self, speed: float) -> PlaybackState:
        return self.dispatch(PlaybackAction.CHANGE_SPEED, speed=speed)

    def restart(self) -> PlaybackState:
        return self.dispatch(PlaybackAction.RESTART)

    def step_forward(self) -> PlaybackState:
        self.pause()
        return self.dispatch(PlaybackAction.NEXT_FRAME)

    def step_back(self) -> PlaybackState:
        return self.dispatch(PlaybackAction.PREVIOUS_FRAME)

    def handle_key(self, key: str) -> bool:
        """Apply a keyboard shortcut. Returns False for unbound keys."""
        binding = KEY_BINDINGS.get(key)
        if binding is None:
            return False
        action, kwargs = binding
        if action == PlaybackAction.NEXT_FRAME:
            self.step_forward()
        else:
            self.dispatch(action, **kwargs)
        return True

    def dispatch(self, action: PlaybackAction, **kwargs: Any) -> PlaybackState:
        """Apply an intent and reschedule the frame timer."""
        previous = self.state
        self.state = playback_reducer(
            previous, action, frame_count=len(self.frames), **kwargs
        )

        if self.state.speed != previous.speed:
            self.delays = calculate_frame_delays(
                self.frames, self.state.speed, max_delay_ms=self._max_delay_ms
            )
            logger.debug(f"Playback speed set to {self.state.speed}x")

        if self.state.current_frame_index != previous.current_frame_index:
            if self._on_frame is not None:
                self._on_frame(self.current_frame)

        if action != PlaybackAction.NEXT_FRAME or not self.state.is_playing:
            self._cancel_timer()
        if self.state.is_playing and self._timer is None:
            self._schedule_next()

        if self.state.is_playing:
            self._paused.clear()
        else:
            self._paused.set()

        return self.state

    async def wait_until_paused(self) -> None:
        """Wait until playback stops, either paused or at the last frame."""
        await self._paused.wait()

    def close(self) -> None:
        """Stop playback and cancel the pending timer."""
        self._cancel_timer()
        self.state = replace(self.state, is_playing=False)
        self._paused.set()

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------

    def _schedule_next(self) -> None:
        delay_ms = self.delays[self.state.current_frame_index]
        self._timer = asyncio.get_running_loop().create_task(self._advance_after(delay_ms))

    async def _advance_after(self, delay_ms: float) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._timer = None
        self.dispatch(PlaybackAction.NEXT_FRAME)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


async def load_playback(
    log: OperationLog,
    session_id: int | None,
    **kwargs: Any,
) -> PlaybackController:
    """Build a controller for a stored journal.

    Raises:
        EmptyJournalError: If the session has no edit history.
        NonContiguousSequenceError: If the stored journal has gaps.
    """
    operations = await log.list_operations(session_id)
    frames = generate_frames(operations)
    logger.info(
        f"Loaded {len(frames)} frames for session {session_id}",
        extra={"session_id": session_id, "frames": len(frames)},
    )
    return PlaybackController(frames, **kwargs)


__all__ = [
    "PlaybackAction",
    "PlaybackState",
    "PlaybackController",
    "KEY_BINDINGS",
    "playback_reducer",
    "load_playback",
]
