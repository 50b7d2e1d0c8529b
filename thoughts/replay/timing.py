"""Inter-frame delays for replay.

Delays come from the capture timestamps of consecutive frames, scaled by a
playback speed multiplier. Each raw gap is clamped to ``[0, max_delay_ms]``
before scaling, so out-of-order timestamps never produce a negative wait and
a long pause while typing does not stall playback.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from numbers import Real

from thoughts.config import get_settings
from thoughts.journal.operations import InvalidSpeedError
from thoughts.replay.frames import PlaybackFrame

SPEED_OPTIONS: tuple[float, ...] = (0.5, 1.0, 2.0, 4.0)


def validate_speed(speed: float) -> float:
    """Return ``speed`` as a float, or raise InvalidSpeedError."""
    if isinstance(speed, bool) or not isinstance(speed, Real):
        raise InvalidSpeedError(speed)
    value = float(speed)
    if not math.isfinite(value) or value <= 0:
        raise InvalidSpeedError(speed)
    return value


def calculate_frame_delays(
    frames: Sequence[PlaybackFrame],
    speed: float,
    *,
    max_delay_ms: float | None = None,
) -> list[float]:
    """Compute the wait before each frame after the first.

    Args:
        frames: Frames in playback order.
        speed: Playback multiplier; 2 plays twice as fast as captured.
        max_delay_ms: Cap for a single raw gap. Defaults to
            PLAYBACK_MAX_FRAME_DELAY_MS.

    Returns:
        ``len(frames) - 1`` delays in milliseconds; ``delays[i]`` is the wait
        between frame ``i`` and frame ``i + 1``.

    Raises:
        InvalidSpeedError: If speed is not a positive finite number.
    """
    speed = validate_speed(speed)
    if max_delay_ms is None:
        max_delay_ms = get_settings().PLAYBACK_MAX_FRAME_DELAY_MS

    delays: list[float] = []
    for previous, current in zip(frames, frames[1:]):
        gap = current.timestamp_ms - previous.timestamp_ms
        gap = min(max(gap, 0), max_delay_ms)
        delays.append(gap / speed)
    return delays


def elapsed_ms(delays: Sequence[float], frame_index: int) -> float:
    """Playback time spent reaching ``frame_index`` from the first frame."""
    return float(sum(delays[: max(frame_index, 0)]))


def total_ms(delays: Sequence[float]) -> float:
    """Playback time of the whole session."""
    return float(sum(delays))


def format_clock(ms: float) -> str:
    """Format milliseconds as ``MM:SS``, truncating to whole seconds."""
    seconds = int(max(ms, 0) // 1000)
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:02d}:{seconds:02d}"
