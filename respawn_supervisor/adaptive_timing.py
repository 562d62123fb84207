"""Adaptive completion-confirm timing from recent idle detection durations."""

from collections import deque
from datetime import datetime
from typing import Deque

# Samples kept for the rolling window
MAX_SAMPLES = 20

# Samples required before the adaptive value replaces the configured one
MIN_SAMPLES = 5


class AdaptiveTiming:
    """
    Tracks recent idle-detection and cycle durations and derives a
    completion-confirm timeout from them.

    The timeout is the 75th percentile of recent idle detection times plus
    a 20% buffer, clamped to [min_confirm_ms, max_confirm_ms].
    """

    def __init__(self, min_confirm_ms: int, max_confirm_ms: int):
        self.min_confirm_ms = min_confirm_ms
        self.max_confirm_ms = max_confirm_ms
        self._idle_detection_ms: Deque[int] = deque(maxlen=MAX_SAMPLES)
        self._cycle_duration_ms: Deque[int] = deque(maxlen=MAX_SAMPLES)
        self._adaptive_confirm_ms: int = 0
        self.last_updated_at = datetime.now()

    @property
    def sample_count(self) -> int:
        return len(self._idle_detection_ms)

    def set_bounds(self, min_confirm_ms: int, max_confirm_ms: int):
        """Update clamp bounds (on config change) and recompute."""
        self.min_confirm_ms = min_confirm_ms
        self.max_confirm_ms = max_confirm_ms
        self._recalculate()

    def record(self, idle_detection_ms: int, cycle_duration_ms: int):
        """Record timing data from a completed cycle."""
        self._idle_detection_ms.append(max(0, int(idle_detection_ms)))
        self._cycle_duration_ms.append(max(0, int(cycle_duration_ms)))
        self.last_updated_at = datetime.now()
        self._recalculate()

    def get_confirm_ms(self, configured_ms: int) -> int:
        """Adaptive confirm duration, or `configured_ms` until enough samples exist."""
        if self.sample_count < MIN_SAMPLES:
            return configured_ms
        return self._adaptive_confirm_ms

    def to_dict(self) -> dict:
        return {
            "recent_idle_detection_ms": list(self._idle_detection_ms),
            "recent_cycle_duration_ms": list(self._cycle_duration_ms),
            "adaptive_completion_confirm_ms": self._adaptive_confirm_ms if self.sample_count >= MIN_SAMPLES else None,
            "sample_count": self.sample_count,
            "last_updated_at": self.last_updated_at.isoformat(),
        }

    def reset(self):
        self._idle_detection_ms.clear()
        self._cycle_duration_ms.clear()
        self._adaptive_confirm_ms = 0
        self.last_updated_at = datetime.now()

    def _recalculate(self):
        if self.sample_count < MIN_SAMPLES:
            return
        ordered = sorted(self._idle_detection_ms)
        p75 = ordered[int(len(ordered) * 0.75)]
        with_buffer = round(p75 * 1.2)
        self._adaptive_confirm_ms = max(self.min_confirm_ms, min(self.max_confirm_ms, with_buffer))
