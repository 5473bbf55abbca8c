"""Motion-stillness gate.

Reduces a continuous motion-magnitude stream (already fused from the
accelerometer and gyroscope axes) to an "is-still" condition with a minimum
duration, and tracks whether the wearer had intense activity recently.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Sequence

import numpy as np

ROTATION_WEIGHT = 0.5


def combined_motion_level(
    acceleration: Sequence[float],
    rotation_rate: Sequence[float] | None = None,
) -> float:
    """Fuse user acceleration (g) and rotation rate (rad/s) into one magnitude.

    ``|a| + 0.5 * |r|``; rotation is optional for accelerometer-only devices.
    """
    level = float(np.linalg.norm(np.asarray(acceleration, dtype=np.float64)))
    if rotation_rate is not None:
        level += ROTATION_WEIGHT * float(np.linalg.norm(np.asarray(rotation_rate, dtype=np.float64)))
    return level


class MotionGate:
    """Stillness state machine fed with motion magnitudes at a fixed cadence."""

    def __init__(
        self,
        motion_threshold: float = 0.1,
        still_duration_threshold: float = 60.0,
        intense_activity_threshold: float = 2.0,
        activity_reset: timedelta = timedelta(hours=4),
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.motion_threshold = motion_threshold
        self.still_duration_threshold = still_duration_threshold
        self.intense_activity_threshold = intense_activity_threshold
        self.activity_reset = activity_reset
        self._clock = clock

        self.is_still = False
        self.still_duration = 0.0  # seconds, advanced by tick()
        self.current_level = 0.0
        self.last_motion = clock()

        self.peak_level = 0.0
        self.has_intense_activity = False
        self.last_intense_activity: datetime | None = None

    def reset(self) -> None:
        """Start a fresh monitoring period (daily activity is reset too)."""
        self.is_still = False
        self.still_duration = 0.0
        self.current_level = 0.0
        self.last_motion = self._clock()
        self.reset_daily_activity()

    def reset_daily_activity(self) -> None:
        self.peak_level = 0.0
        self.has_intense_activity = False
        self.last_intense_activity = None

    def update(self, magnitude: float, now: datetime | None = None) -> bool:
        """Feed one motion sample; returns the resulting is-still flag."""
        now = now or self._clock()
        self.current_level = magnitude

        if magnitude >= self.motion_threshold:
            self.last_motion = now
            self.is_still = False
            self.still_duration = 0.0
        elif not self.is_still:
            if (now - self.last_motion).total_seconds() >= self.still_duration_threshold:
                self.is_still = True

        if magnitude > self.peak_level:
            self.peak_level = magnitude

        if magnitude > self.intense_activity_threshold:
            self.last_intense_activity = now
            self.has_intense_activity = True
        else:
            self._expire_intense_activity(now)

        return self.is_still

    def tick(self, seconds: float = 1.0, now: datetime | None = None) -> None:
        """Advance the stillness counter by one fixed tick."""
        if self.is_still:
            self.still_duration += seconds
        self._expire_intense_activity(now or self._clock())

    def _expire_intense_activity(self, now: datetime) -> None:
        if self.last_intense_activity is None:
            return
        if now - self.last_intense_activity > self.activity_reset:
            self.has_intense_activity = False

    def has_been_still_for(self, seconds: float) -> bool:
        return self.is_still and self.still_duration >= seconds

    def __repr__(self) -> str:
        state = f"still {self.still_duration:.0f}s" if self.is_still else "moving"
        return f"MotionGate({state}, level={self.current_level:.3f})"
