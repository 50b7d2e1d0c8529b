"""Replay of journaled typing sessions.

Key Components:
- generate_frames: Rebuilds the text after every journaled operation
- calculate_frame_delays: Speed-scaled waits between frames
- PlaybackController: Timer-driven playback with pure state transitions

Usage:
    from thoughts.replay import load_playback

    controller = await load_playback(log, note_id, on_frame=render)
    controller.play()
"""

from __future__ import annotations

from thoughts.replay.frames import PlaybackFrame, final_content, generate_frames
from thoughts.replay.player import (
    KEY_BINDINGS,
    PlaybackAction,
    PlaybackController,
    PlaybackState,
    load_playback,
    playback_reducer,
)
from thoughts.replay.timing import (
    SPEED_OPTIONS,
    calculate_frame_delays,
    elapsed_ms,
    format_clock,
    total_ms,
    validate_speed,
)

__all__ = [
    # Frames
    "PlaybackFrame",
    "generate_frames",
    "final_content",
    # Timing
    "SPEED_OPTIONS",
    "calculate_frame_delays",
    "validate_speed",
    "elapsed_ms",
    "total_ms",
    "format_clock",
    # Player
    "PlaybackAction",
    "PlaybackState",
    "PlaybackController",
    "KEY_BINDINGS",
    "playback_reducer",
    "load_playback",
]
