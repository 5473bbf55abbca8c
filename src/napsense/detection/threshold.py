"""Personalized heart-rate threshold model.

The wearer's sleep threshold is ``resting_hr * ratio``.  The ratio starts at
the age bracket's default and is re-fitted at most once every 7 days from the
recorded sleep sessions, separately for day naps and night sleep:

  1. target  = mean(avg_hr / resting_hr) + 0.02 safety margin
  2. step    = move toward target by at most 0.025
  3. floor   = raise to min(min_hr / resting_hr) + 0.05
  4. variance bucket on mean per-session std dev:
       > 10 bpm -> +0.03,  < 5 bpm -> -0.01,  otherwise +0.01
  5. limit the total change to 0.025, then clamp to [0.75, 0.95]

The variance adjustment is deliberately a three-bucket step function.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from typing import Callable, Sequence

import numpy as np

from napsense.detection.age import AgeBracket, save_age_bracket
from napsense.detection.models import RatioKind, SleepSession, ThresholdState
from napsense.detection.outliers import filter_outliers
from napsense.detection.store import CURRENT_SCHEMA_VERSION, KeyValueStore, ModelStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model parameters
# ---------------------------------------------------------------------------

UPDATE_INTERVAL_DAYS = 7
MIN_SESSIONS_FOR_UPDATE = 3
MAX_SESSIONS = 20

MIN_RATIO = 0.75
MAX_RATIO = 0.95
MAX_ADJUSTMENT = 0.025

SAFETY_MARGIN = 0.02  # added to the observed sleep/resting ratio
FLOOR_MARGIN = 0.05  # added to the lowest observed min/resting ratio
NIGHT_OFFSET = 0.02  # night ratio sits this far below day until learned

HIGH_VARIANCE_BPM = 10.0
LOW_VARIANCE_BPM = 5.0
HIGH_VARIANCE_ADJUSTMENT = 0.03
LOW_VARIANCE_ADJUSTMENT = -0.01
MID_VARIANCE_ADJUSTMENT = 0.01

INTENSE_ACTIVITY_LEVEL = 2.0
ACTIVITY_ADJUSTMENT = 0.02

NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6


def is_night(moment: datetime) -> bool:
    """Local wall-clock hour in [22, 24) or [0, 6)."""
    return moment.hour >= NIGHT_START_HOUR or moment.hour < NIGHT_END_HOUR


def _clamp(value: float, low: float = MIN_RATIO, high: float = MAX_RATIO) -> float:
    return min(max(value, low), high)


def variance_adjustment(mean_std_bpm: float) -> float:
    if mean_std_bpm > HIGH_VARIANCE_BPM:
        return HIGH_VARIANCE_ADJUSTMENT
    if mean_std_bpm < LOW_VARIANCE_BPM:
        return LOW_VARIANCE_ADJUSTMENT
    return MID_VARIANCE_ADJUSTMENT


def fit_ratio(sessions: Sequence[SleepSession], current: float) -> float | None:
    """Compute the next ratio for one session group, without side effects.

    Returns None if no session carries a usable average and resting HR.
    """
    ratios = [
        s.average_heart_rate / s.resting_heart_rate
        for s in sessions
        if s.average_heart_rate > 0 and s.resting_heart_rate > 0
    ]
    if not ratios:
        return None

    target = float(np.mean(ratios)) + SAFETY_MARGIN
    if target < current:
        stepped = max(target, current - MAX_ADJUSTMENT)
    else:
        stepped = min(target, current + MAX_ADJUSTMENT)

    floor_ratios = [
        s.minimum_heart_rate / s.resting_heart_rate
        for s in sessions
        if s.minimum_heart_rate > 0 and s.resting_heart_rate > 0
    ]
    if floor_ratios:
        stepped = max(stepped, min(floor_ratios) + FLOOR_MARGIN)

    mean_std = float(np.mean([s.heart_rate_variance for s in sessions]))
    adjusted = stepped + variance_adjustment(mean_std)

    limited = min(max(adjusted, current - MAX_ADJUSTMENT), current + MAX_ADJUSTMENT)
    return round(_clamp(limited), 6)


class ThresholdModel:
    """Maintains and persists a wearer's day and night threshold ratios."""

    def __init__(
        self,
        bracket: AgeBracket,
        store: KeyValueStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.bracket = bracket
        self._clock = clock
        self._kv = store
        self._store = ModelStore(store, night_classifier=is_night, clock=clock)
        self._state: ThresholdState | None = None
        self._sessions: list[SleepSession] = []
        # In-memory day-ratio bump after intense activity: (ratio, calendar day)
        self._activity_override: tuple[float, date] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> ThresholdModel:
        """Migrate, then load persisted state and sessions (seeding defaults)."""
        self._state = None
        self._current()
        return self

    def _load_state(self) -> ThresholdState:
        try:
            self._store.migrate()
        except Exception:
            logger.exception("Heart-rate model migration failed; continuing with stored data")

        state = self._store.load_state()
        if state is None:
            state = ThresholdState(
                day_ratio=self.bracket.default_ratio,
                first_use=self._clock(),
                schema_version=CURRENT_SCHEMA_VERSION,
            )
            logger.info("No personalized model stored; seeded %s default ratio %.3f",
                        self.bracket.value, state.day_ratio)
            self._store.save_state(state)
        return state

    def _current(self) -> ThresholdState:
        """The live state, loading it on first use."""
        state = self._state
        if state is None:
            state = self._load_state()
            self._state = state
            self._sessions = self._store.load_sessions()
        return state

    @property
    def state(self) -> ThresholdState:
        """A copy of the persisted personalization state."""
        return replace(self._current())

    def _persist_state(self) -> None:
        self._store.save_state(self._current())

    # ------------------------------------------------------------------
    # Ratios
    # ------------------------------------------------------------------

    @property
    def day_ratio(self) -> float:
        return self._current().day_ratio

    @property
    def night_ratio(self) -> float | None:
        return self._current().night_ratio

    @property
    def effective_night_ratio(self) -> float:
        state = self._current()
        if state.night_ratio is not None:
            return state.night_ratio
        return _clamp(state.day_ratio - NIGHT_OFFSET)

    @property
    def active_day_ratio(self) -> float:
        """Day ratio including any same-day activity adjustment."""
        if self._activity_override is not None:
            ratio, day = self._activity_override
            if day == self._clock().date():
                return ratio
            self._activity_override = None
        return self._current().day_ratio

    def ratio_for(self, is_night_mode: bool) -> float:
        return self.effective_night_ratio if is_night_mode else self.active_day_ratio

    def current_threshold(self, resting_hr: float, is_night_mode: bool | None = None) -> float:
        """Absolute HR threshold (bpm); 0.0 when resting HR is unknown.

        If *is_night_mode* is None it is classified from the clock.
        """
        if resting_hr <= 0:
            return 0.0
        if is_night_mode is None:
            is_night_mode = is_night(self._clock())
        return resting_hr * self.ratio_for(is_night_mode)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @property
    def sessions(self) -> list[SleepSession]:
        """Session history, most recent first."""
        self._current()
        return list(self._sessions)

    def record_session(
        self,
        heart_rates: Sequence[float],
        resting_hr: float,
        is_night_mode: bool | None = None,
    ) -> SleepSession | None:
        """Store a filtered sleep session and update the model if due."""
        if len(heart_rates) == 0 or resting_hr <= 0:
            logger.debug("Ignoring session: %d samples, resting HR %.1f",
                         len(heart_rates), resting_hr)
            return None

        self._current()
        now = self._clock()
        if is_night_mode is None:
            is_night_mode = is_night(now)

        session = SleepSession(
            date=now,
            heart_rates=filter_outliers(heart_rates),
            resting_heart_rate=float(resting_hr),
            is_night_sleep=is_night_mode,
        )
        self._sessions.append(session)
        self._sessions.sort(key=lambda s: s.date, reverse=True)
        del self._sessions[MAX_SESSIONS:]
        self._store.save_sessions(self._sessions)
        logger.info("Recorded %s (%d/%d samples kept)",
                    session, len(session.heart_rates), len(heart_rates))

        self.maybe_update()
        return session

    # ------------------------------------------------------------------
    # Model update
    # ------------------------------------------------------------------

    def _days_since_reference(self, now: datetime) -> int:
        state = self._current()
        reference = state.last_update or state.first_use
        return abs((now - reference).days)

    def maybe_update(self) -> bool:
        """Re-fit the ratios if the interval has elapsed and enough data exists."""
        now = self._clock()
        elapsed = self._days_since_reference(now)
        if elapsed < UPDATE_INTERVAL_DAYS:
            logger.debug("Model update not due (%d/%d days)", elapsed, UPDATE_INTERVAL_DAYS)
            return False
        if len(self._sessions) < MIN_SESSIONS_FOR_UPDATE:
            logger.info("Not enough sleep sessions to update model (%d/%d)",
                        len(self._sessions), MIN_SESSIONS_FOR_UPDATE)
            return False

        day_sessions = [s for s in self._sessions if not s.is_night_sleep]
        night_sessions = [s for s in self._sessions if s.is_night_sleep]
        if day_sessions:
            self.update_ratio(day_sessions, RatioKind.DAY)
        if night_sessions:
            self.update_ratio(night_sessions, RatioKind.NIGHT)

        self._current().last_update = now
        self._persist_state()
        return True

    def update_ratio(self, sessions: Sequence[SleepSession], which: RatioKind) -> float | None:
        """Re-fit one ratio from *sessions*; returns the new ratio or None."""
        if not sessions:
            logger.debug("No %s sessions; skipping update", which.value)
            return None

        state = self._current()
        current = self.effective_night_ratio if which is RatioKind.NIGHT else state.day_ratio
        new = fit_ratio(sessions, current)
        if new is None:
            logger.info("No usable %s heart-rate ratios; model unchanged", which.value)
            return None

        if which is RatioKind.NIGHT:
            state.night_ratio = new
        else:
            state.day_ratio = new
            self._activity_override = None
        state.last_update = self._clock()
        self._persist_state()
        logger.info("Updated %s ratio: %.3f -> %.3f (%d sessions)",
                    which.value, current, new, len(sessions))
        return new

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    def adjust_for_activity(self, activity_level: float, resting_hr: float) -> bool:
        """Temporarily raise today's day ratio after intense activity.

        The bump is never persisted and lasts until the calendar day changes.
        """
        if activity_level <= INTENSE_ACTIVITY_LEVEL:
            return False
        bumped = min(self._current().day_ratio + ACTIVITY_ADJUSTMENT, MAX_RATIO)
        if self._activity_override is None or self._activity_override[0] != bumped:
            logger.info("Intense activity (%.2f); day ratio %.3f -> %.3f for today",
                        activity_level, self._current().day_ratio, bumped)
        self._activity_override = (bumped, self._clock().date())
        return True

    def set_bracket(self, bracket: AgeBracket) -> None:
        """Use *bracket* for future defaults; learned ratios are kept."""
        self.bracket = bracket
        save_age_bracket(self._kv, bracket)

    def reset(self) -> None:
        """Discard all personalization and return to bracket defaults."""
        self._store.clear()
        self._sessions = []
        self._activity_override = None
        self._state = ThresholdState(
            day_ratio=self.bracket.default_ratio,
            first_use=self._clock(),
            schema_version=CURRENT_SCHEMA_VERSION,
        )
        self._persist_state()
        logger.info("Personalized heart-rate model reset to %s defaults", self.bracket.value)
