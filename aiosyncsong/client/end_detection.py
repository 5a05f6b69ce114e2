"""
End-of-track detection for providers without a reliable "ended" event.

Some providers snap the position back to zero and report paused when a track finishes,
others stop within a fraction of a second of the end. Neither is distinguishable from a
user pausing by looking at a single sample, so the detector remembers the furthest
position reached for the current track and only reports an end when that position was
close to the duration.
"""

from __future__ import annotations

import logging

from .providers import PlaybackState

logger = logging.getLogger(__name__)

SNAP_THRESHOLD_MS = 1500
"""A paused position below this counts as snapped back to the start."""
END_BUFFER_MS = 3000
"""The furthest position must be within this distance of the duration."""
END_HOLD_MS = 500
"""A paused position this close to the duration counts as stopped at the end."""


class EndOfTrackDetector:
    """
    Infers the end of a track from sampled playback states.

    Feed every sample of the current track to ``update``. It returns True once, on the
    sample where the track is considered finished. The thresholds are heuristics and
    can be tuned per provider.
    """

    def __init__(
        self,
        *,
        snap_threshold_ms: int = SNAP_THRESHOLD_MS,
        end_buffer_ms: int = END_BUFFER_MS,
        end_hold_ms: int = END_HOLD_MS,
    ) -> None:
        """Create a detector with the given thresholds."""
        self._snap_threshold_ms = snap_threshold_ms
        self._end_buffer_ms = end_buffer_ms
        self._end_hold_ms = end_hold_ms
        self._queue_id: str | None = None
        self._fallback_duration_ms = 0
        self._max_position_ms = 0
        self._fired = False

    @property
    def max_position_ms(self) -> int:
        """Furthest position observed for the current track."""
        return self._max_position_ms

    def reset(self, queue_id: str | None, duration_ms: int = 0) -> None:
        """
        Start tracking a new track.

        Args:
            queue_id: Queue entry of the track now loaded.
            duration_ms: Duration from the track metadata, used when the provider
                does not report one.
        """
        self._queue_id = queue_id
        self._fallback_duration_ms = max(0, duration_ms)
        self._max_position_ms = 0
        self._fired = False

    def seeked(self, position_ms: int) -> None:
        """Forget positions beyond a seek target, so a seek back is not read as an end."""
        self._max_position_ms = max(0, position_ms)

    def update(self, queue_id: str | None, state: PlaybackState | None) -> bool:
        """Record a sample and return True if the track just ended."""
        # A missing sample is a polling hiccup, never an end
        if state is None or self._fired or queue_id is None or queue_id != self._queue_id:
            return False

        if state.is_playing:
            self._max_position_ms = max(self._max_position_ms, state.position_ms)
            return False

        duration_ms = state.duration_ms or self._fallback_duration_ms
        if duration_ms <= 0:
            return False

        self._max_position_ms = max(self._max_position_ms, state.position_ms)
        reached_end = self._max_position_ms >= duration_ms - self._end_buffer_ms
        snapped = state.position_ms <= self._snap_threshold_ms
        # A user pause a few seconds before the end is neither snapped nor held
        held_at_end = state.position_ms >= duration_ms - self._end_hold_ms
        if reached_end and (snapped or held_at_end):
            logger.debug(
                "Track %s ended (max position %d of %d ms)",
                queue_id,
                self._max_position_ms,
                duration_ms,
            )
            self._fired = True
            return True
        return False
