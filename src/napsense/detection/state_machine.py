"""Sleep state machine combining the heart-rate threshold and motion stillness.

Sensor callbacks (:meth:`SleepStateMachine.on_heart_rate`,
:meth:`SleepStateMachine.on_motion`) only update observed values.  Transitions
happen exclusively in :meth:`SleepStateMachine.evaluate`, which the running
engine calls every 15 s, so the state machine advances at a fixed cadence no
matter how jittery the sensor callbacks are.

Transition table, evaluated per tick (``sleep_detected`` is sticky):

    sleep_detected  HR met  still   next state
    --------------  ------  -----   ----------------------------------
    False           yes     yes     ASLEEP (sleep_detected := True)
    False           one of the two  POTENTIAL_SLEEP
    False           no      no      AWAKE
    True            yes     yes     ASLEEP (closes any disturbance)
    True            one of the two  unchanged
    True            no      no      DISTURBED, then after 60 s AWAKE

Once a disturbance outlasts the tolerance window the wearer is awake.  If a
nap countdown is running, sleep tracking continues ("awake, timer
continuing"); otherwise sleep tracking is fully reset.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from napsense.detection.age import AgeBracket
from napsense.detection.models import HeartRateSample
from napsense.detection.motion import MotionGate
from napsense.detection.threshold import ThresholdModel, is_night

logger = logging.getLogger(__name__)

EVALUATION_INTERVAL = 15.0  # seconds between transition evaluations
STILL_TICK = 1.0  # seconds per stillness-counter tick
MOTION_STILL_THRESHOLD = 120  # seconds of stillness required
MAX_DISTURBANCE = 60.0  # seconds a disturbance is tolerated while asleep


class SleepState(str, Enum):
    """Externally observable detection state."""

    AWAKE = "awake"
    POTENTIAL_SLEEP = "potential_sleep"
    ASLEEP = "asleep"
    DISTURBED = "disturbed"


class SourceUnavailableError(RuntimeError):
    """A heart-rate or motion source could not be engaged."""


@dataclass
class DisturbanceEpisode:
    """An open span of failed sleep conditions after sleep was detected."""

    started_at: datetime

    def elapsed(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


@dataclass(frozen=True)
class SleepSnapshot:
    """Point-in-time view of the engine for display layers."""

    state: SleepState
    sleep_detected: bool
    sleep_start_time: datetime | None
    disturbance_count: int
    countdown_active: bool
    heart_rate: float
    resting_heart_rate: float
    motion_level: float
    is_still: bool
    still_duration: float
    heart_rate_condition_met: bool
    motion_condition_met: bool
    threshold_ratio: float
    threshold_bpm: float
    status: str
    time_in_state: float

    def __repr__(self) -> str:
        return (
            f"SleepSnapshot({self.state.value}, hr={self.heart_rate:.0f}/"
            f"{self.threshold_bpm:.0f}, still={self.still_duration:.0f}s, "
            f"disturbances={self.disturbance_count}, '{self.status}')"
        )


@dataclass(frozen=True)
class SleepEvent:
    """Emitted whenever the observable state changes."""

    previous: SleepState
    snapshot: SleepSnapshot

    @property
    def state(self) -> SleepState:
        return self.snapshot.state


# ---------------------------------------------------------------------------
# Source contracts
# ---------------------------------------------------------------------------


class HeartRateSource(Protocol):
    async def start(self, callback: Callable[[HeartRateSample], None]) -> None: ...

    async def stop(self) -> None: ...

    async def fetch_resting_heart_rate(self) -> float:
        """Best-effort resting HR in bpm; 0 means unavailable."""
        ...


class MotionSource(Protocol):
    async def start(self, callback: Callable[[float], None]) -> None: ...

    async def stop(self) -> None: ...


class SteadyMotionSource:
    """Reports a constant motion magnitude at 2 Hz.

    For heart-rate straps without a motion sensor: the wearer is assumed to
    be lying still for the whole session.
    """

    def __init__(self, level: float = 0.0, interval: float = 0.5) -> None:
        self.level = level
        self.interval = interval
        self._task: asyncio.Task | None = None

    async def start(self, callback: Callable[[float], None]) -> None:
        async def _run() -> None:
            while True:
                callback(self.level)
                await asyncio.sleep(self.interval)

        self._task = asyncio.create_task(_run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class SleepStateMachine:
    """Owns all live detection state; every mutation goes through one lock."""

    def __init__(
        self,
        model: ThresholdModel,
        motion_gate: MotionGate | None = None,
        heart_rate_source: HeartRateSource | None = None,
        motion_source: MotionSource | None = None,
        *,
        evaluation_interval: float = EVALUATION_INTERVAL,
        still_tick: float = STILL_TICK,
        motion_still_threshold: float = MOTION_STILL_THRESHOLD,
        max_disturbance: float = MAX_DISTURBANCE,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.model = model
        self.motion = motion_gate or MotionGate(clock=clock)
        self.heart_rate_source = heart_rate_source
        self.motion_source = motion_source
        self.evaluation_interval = evaluation_interval
        self.still_tick = still_tick
        self.motion_still_threshold = motion_still_threshold
        self.max_disturbance = max_disturbance
        self._clock = clock

        self._lock = threading.RLock()
        self._listeners: list[Callable[[SleepEvent], None]] = []
        self._tasks: list[asyncio.Task] = []

        # Observed values (written by sensor callbacks)
        self.heart_rate = 0.0
        self.resting_heart_rate = 0.0

        # Detection state (written by evaluate)
        self.state = SleepState.AWAKE
        self.status = "waiting to start"
        self.sleep_detected = False
        self.sleep_start_time: datetime | None = None
        self.disturbance: DisturbanceEpisode | None = None
        self.disturbance_count = 0
        self.countdown_active = False
        self.heart_rate_condition_met = False
        self.motion_condition_met = False
        self.last_state_change = clock()
        self.time_in_state = 0.0

        self._collected: list[float] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[SleepEvent], None]) -> Callable[[], None]:
        """Register *callback* for state changes; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _emit(self, events: list[SleepEvent]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                listener(event)

    def snapshot(self, now: datetime | None = None) -> SleepSnapshot:
        with self._lock:
            return self._snapshot(now or self._clock())

    def _snapshot(self, now: datetime) -> SleepSnapshot:
        night = is_night(now)
        return SleepSnapshot(
            state=self.state,
            sleep_detected=self.sleep_detected,
            sleep_start_time=self.sleep_start_time,
            disturbance_count=self.disturbance_count,
            countdown_active=self.countdown_active,
            heart_rate=self.heart_rate,
            resting_heart_rate=self.resting_heart_rate,
            motion_level=self.motion.current_level,
            is_still=self.motion.is_still,
            still_duration=self.motion.still_duration,
            heart_rate_condition_met=self.heart_rate_condition_met,
            motion_condition_met=self.motion_condition_met,
            threshold_ratio=self.model.ratio_for(night),
            threshold_bpm=self.model.current_threshold(self.resting_heart_rate, night),
            status=self.status,
            time_in_state=self.time_in_state,
        )

    @property
    def heart_rate_condition_description(self) -> str:
        with self._lock:
            if self.resting_heart_rate <= 0:
                return "waiting for resting heart rate"
            threshold = self.model.current_threshold(self.resting_heart_rate, is_night(self._clock()))
            if self.heart_rate_condition_met:
                return f"heart rate low: {self.heart_rate:.0f} < {threshold:.0f}"
            return f"heart rate high: {self.heart_rate:.0f} >= {threshold:.0f}"

    @property
    def motion_condition_description(self) -> str:
        with self._lock:
            if self.motion_condition_met:
                return f"still: {int(self.motion.still_duration)}s"
            return f"moving: {self.motion.current_level:.3f}"

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    # ------------------------------------------------------------------
    # Sensor callbacks (no transitions)
    # ------------------------------------------------------------------

    def on_heart_rate(self, sample: HeartRateSample) -> None:
        if sample.bpm <= 0:
            return
        with self._lock:
            self.heart_rate = float(sample.bpm)
            if self.sleep_detected:
                self._collected.append(float(sample.bpm))

    def on_resting_heart_rate(self, bpm: float) -> None:
        if bpm <= 0:
            return
        with self._lock:
            self.resting_heart_rate = float(bpm)

    def on_motion(self, magnitude: float, now: datetime | None = None) -> None:
        with self._lock:
            self.motion.update(magnitude, now)

    def tick_motion(self, now: datetime | None = None) -> None:
        with self._lock:
            self.motion.tick(self.still_tick, now)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _set_state(self, state: SleepState, status: str, now: datetime,
                   events: list[SleepEvent]) -> None:
        previous = self.state
        self.status = status
        if state != previous:
            self.state = state
            self.last_state_change = now
            self.time_in_state = 0.0
            logger.info("Sleep state %s -> %s (%s)", previous.value, state.value, status)
            events.append(SleepEvent(previous=previous, snapshot=self._snapshot(now)))
        else:
            self.time_in_state = (now - self.last_state_change).total_seconds()

    def evaluate(self, now: datetime | None = None) -> SleepState:
        """Run one transition tick and return the resulting state."""
        events: list[SleepEvent] = []
        with self._lock:
            now = now or self._clock()
            self._evaluate(now, events)
            state = self.state
        self._emit(events)
        return state

    def _evaluate(self, now: datetime, events: list[SleepEvent]) -> None:
        if self.resting_heart_rate <= 0:
            self.heart_rate_condition_met = False
            self._set_state(SleepState.AWAKE, "waiting for heart-rate data", now, events)
            return

        if self.motion.has_intense_activity:
            self.model.adjust_for_activity(self.motion.peak_level, self.resting_heart_rate)

        threshold = self.model.current_threshold(self.resting_heart_rate, is_night(now))
        hr_met = 0 < self.heart_rate < threshold
        motion_met = self.motion.has_been_still_for(self.motion_still_threshold)
        self.heart_rate_condition_met = hr_met
        self.motion_condition_met = motion_met

        if hr_met and motion_met:
            if not self.sleep_detected:
                self.sleep_detected = True
                self.sleep_start_time = now
                logger.info("Sleep detected at %s (HR %.0f < %.1f)",
                            now.isoformat(timespec="seconds"), self.heart_rate, threshold)
            elif self.disturbance is not None:
                logger.info("Recovered from disturbance after %.0fs",
                            self.disturbance.elapsed(now))
                self.disturbance = None
            self._set_state(SleepState.ASLEEP, "sleep detected", now, events)
        elif hr_met or motion_met:
            if not self.sleep_detected:
                status = ("heart rate lowered, possibly falling asleep" if hr_met
                          else "still, possibly falling asleep")
                self._set_state(SleepState.POTENTIAL_SLEEP, status, now, events)
            # Already asleep: a partial loss does not flip the state.
        elif not self.sleep_detected:
            self._set_state(SleepState.AWAKE, "awake", now, events)
        else:
            self._handle_disturbance(now, events)

    def _handle_disturbance(self, now: datetime, events: list[SleepEvent]) -> None:
        if self.disturbance is None:
            self.disturbance = DisturbanceEpisode(started_at=now)
            self.disturbance_count += 1
            logger.info("Sleep disturbance #%d", self.disturbance_count)

        elapsed = self.disturbance.elapsed(now)
        if elapsed <= self.max_disturbance:
            self._set_state(SleepState.DISTURBED, f"sleep disturbed ({int(elapsed)}s)", now, events)
        elif self.countdown_active:
            self._set_state(SleepState.AWAKE, "awake, timer continuing", now, events)
        else:
            logger.info("Disturbance lasted %.0fs; wearer is awake", elapsed)
            self.sleep_detected = False
            self.sleep_start_time = None
            self.disturbance = None
            self._set_state(SleepState.AWAKE, "fully awake", now, events)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _reset_transient(self, now: datetime, events: list[SleepEvent]) -> None:
        self.sleep_detected = False
        self.sleep_start_time = None
        self.disturbance = None
        self.disturbance_count = 0
        self.heart_rate_condition_met = False
        self.motion_condition_met = False
        self._set_state(SleepState.AWAKE, "monitoring", now, events)
        self.time_in_state = 0.0
        self.last_state_change = now

    async def start_sleep_detection(self) -> None:
        """Engage the sources and arm the evaluation ticks.

        Raises:
            SourceUnavailableError: if a heart-rate or motion source fails to start.
        """
        events: list[SleepEvent] = []
        with self._lock:
            self._reset_transient(self._clock(), events)
            self.motion.reset()
        self._emit(events)

        if self.is_running:
            logger.debug("Sleep detection already running; state reset")
            return

        if self.heart_rate_source is not None:
            if self.resting_heart_rate <= 0:
                self.on_resting_heart_rate(await self.heart_rate_source.fetch_resting_heart_rate())
            try:
                await self.heart_rate_source.start(self.on_heart_rate)
            except SourceUnavailableError:
                raise
            except Exception as e:
                raise SourceUnavailableError(f"heart-rate source failed to start: {e}") from e

        if self.motion_source is not None:
            try:
                await self.motion_source.start(self.on_motion)
            except Exception as e:
                await self._stop_source(self.heart_rate_source, "heart-rate")
                if isinstance(e, SourceUnavailableError):
                    raise
                raise SourceUnavailableError(f"motion source failed to start: {e}") from e

        self._tasks = [
            asyncio.create_task(self._evaluation_loop()),
            asyncio.create_task(self._still_loop()),
        ]
        logger.info("Sleep detection started (resting HR %.0f)", self.resting_heart_rate)

    async def _evaluation_loop(self) -> None:
        while True:
            await asyncio.sleep(self.evaluation_interval)
            await self._refresh_resting_heart_rate()
            self.evaluate()

    async def _refresh_resting_heart_rate(self) -> None:
        # Sources that estimate resting HR from live readings only have a
        # value some time after they start.
        if self.heart_rate_source is None or self.resting_heart_rate > 0:
            return
        bpm = await self.heart_rate_source.fetch_resting_heart_rate()
        if bpm > 0:
            logger.info("Resting heart rate available: %.0f bpm", bpm)
            self.on_resting_heart_rate(bpm)

    async def _still_loop(self) -> None:
        while True:
            await asyncio.sleep(self.still_tick)
            self.tick_motion()

    async def _stop_source(self, source: HeartRateSource | MotionSource | None, label: str) -> None:
        if source is None:
            return
        try:
            await source.stop()
        except Exception as e:
            logger.warning("Failed to stop %s source: %s", label, e)

    async def stop_sleep_detection(self) -> None:
        """Disarm the ticks, release the sources, and feed the model."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._stop_source(self.heart_rate_source, "heart-rate")
        await self._stop_source(self.motion_source, "motion")

        events: list[SleepEvent] = []
        with self._lock:
            collected, self._collected = self._collected, []
            if collected:
                self.model.record_session(collected, self.resting_heart_rate)
            self.countdown_active = False
            self._reset_transient(self._clock(), events)
            self.status = "stopped"
        self._emit(events)
        logger.info("Sleep detection stopped (%d samples handed to model)", len(collected))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def set_age_bracket(self, bracket: AgeBracket) -> None:
        with self._lock:
            self.model.set_bracket(bracket)

    def start_countdown(self, duration_minutes: int) -> bool:
        """Mark a nap timer as running; only possible once sleep is detected."""
        with self._lock:
            if not self.sleep_detected or self.sleep_start_time is None:
                logger.info("Cannot start countdown: no sleep detected yet")
                return False
            self.countdown_active = True
            logger.info("Nap countdown started: %d min", duration_minutes)
            return True

    def stop_countdown(self) -> None:
        with self._lock:
            self.countdown_active = False

    def record_activity(self, activity_level: float) -> bool:
        with self._lock:
            return self.model.adjust_for_activity(activity_level, self.resting_heart_rate)

    def reset_model(self) -> None:
        with self._lock:
            self.model.reset()
