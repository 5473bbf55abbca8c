"""Tests for detection/state_machine.py — transitions, disturbances, lifecycle."""

import asyncio

import pytest

from napsense.detection.age import AgeBracket
from napsense.detection.models import HeartRateSample
from napsense.detection.motion import MotionGate
from napsense.detection.state_machine import (
    SleepState,
    SleepStateMachine,
    SourceUnavailableError,
    SteadyMotionSource,
)
from napsense.heart_rate import estimate_resting_heart_rate


@pytest.fixture
def engine(model, clock):
    return SleepStateMachine(model, MotionGate(clock=clock), clock=clock)


@pytest.fixture
def quick_engine(model, clock):
    """Stillness registers immediately, so motion can be toggled per tick."""
    gate = MotionGate(still_duration_threshold=0.0, clock=clock)
    return SleepStateMachine(model, gate, motion_still_threshold=0, clock=clock)


def hr(engine, bpm, clock):
    engine.on_heart_rate(HeartRateSample(timestamp=clock(), bpm=bpm))


def settle_still(engine, clock):
    """Quiet for 60 s, then 120 one-second stillness ticks."""
    engine.on_motion(0.0, clock.advance(60))
    for _ in range(120):
        clock.advance(1)
        engine.tick_motion()


def fall_asleep(engine, clock, rhr=60.0, bpm=50.0):
    engine.on_resting_heart_rate(rhr)
    hr(engine, bpm, clock)
    settle_still(engine, clock)
    assert engine.evaluate() is SleepState.ASLEEP


class TestBeforeSleep:
    def test_waiting_for_resting_hr(self, engine, clock):
        hr(engine, 50, clock)
        assert engine.evaluate() is SleepState.AWAKE
        assert engine.status == "waiting for heart-rate data"

    def test_awake(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 70, clock)
        assert engine.evaluate() is SleepState.AWAKE
        assert engine.status == "awake"

    def test_heart_rate_only_is_potential_sleep(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        assert engine.evaluate() is SleepState.POTENTIAL_SLEEP
        assert engine.status == "heart rate lowered, possibly falling asleep"

    def test_stillness_only_is_potential_sleep(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 70, clock)
        settle_still(engine, clock)
        assert engine.evaluate() is SleepState.POTENTIAL_SLEEP
        assert engine.status == "still, possibly falling asleep"

    def test_threshold_is_strict(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 54, clock)
        settle_still(engine, clock)
        assert engine.evaluate() is SleepState.POTENTIAL_SLEEP

    def test_not_still_long_enough(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        engine.on_motion(0.0, clock.advance(60))
        for _ in range(119):
            engine.tick_motion()
        assert engine.evaluate() is SleepState.POTENTIAL_SLEEP

    def test_invalid_readings_ignored(self, engine, clock):
        engine.on_resting_heart_rate(0)
        hr(engine, 0, clock)
        assert engine.resting_heart_rate == 0.0
        assert engine.heart_rate == 0.0


class TestSleepOnset:
    def test_asleep_on_first_met_tick(self, engine, clock):
        fall_asleep(engine, clock)
        assert engine.sleep_detected is True
        assert engine.sleep_start_time == clock()
        assert engine.status == "sleep detected"

    def test_partial_loss_keeps_state(self, engine, clock):
        fall_asleep(engine, clock)
        start = engine.sleep_start_time
        hr(engine, 70, clock)
        clock.advance(15)
        assert engine.evaluate() is SleepState.ASLEEP
        assert engine.sleep_start_time == start
        assert engine.disturbance_count == 0

    def test_heart_rates_buffered_only_while_asleep(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 65, clock)
        hr(engine, 50, clock)
        settle_still(engine, clock)
        engine.evaluate()
        for bpm in (49, 50, 51):
            hr(engine, bpm, clock)
        assert engine._collected == [49.0, 50.0, 51.0]


class TestDisturbance:
    def _disturb(self, engine, clock):
        hr(engine, 70, clock)
        engine.on_motion(0.5, clock.advance(1))
        return engine.evaluate()

    def test_disturbed_within_tolerance(self, engine, clock):
        fall_asleep(engine, clock)
        assert self._disturb(engine, clock) is SleepState.DISTURBED
        clock.advance(59)
        assert engine.evaluate() is SleepState.DISTURBED
        assert engine.disturbance_count == 1
        assert engine.sleep_detected is True
        assert engine.status == "sleep disturbed (59s)"

    def test_exactly_sixty_seconds_still_disturbed(self, engine, clock):
        fall_asleep(engine, clock)
        self._disturb(engine, clock)
        clock.advance(60)
        assert engine.evaluate() is SleepState.DISTURBED

    def test_fully_awake_after_tolerance(self, engine, clock):
        fall_asleep(engine, clock)
        self._disturb(engine, clock)
        clock.advance(61)
        assert engine.evaluate() is SleepState.AWAKE
        assert engine.status == "fully awake"
        assert engine.sleep_detected is False
        assert engine.sleep_start_time is None
        assert engine.disturbance is None

    def test_countdown_keeps_sleep_detected(self, engine, clock):
        fall_asleep(engine, clock)
        assert engine.start_countdown(20) is True
        self._disturb(engine, clock)
        clock.advance(61)
        assert engine.evaluate() is SleepState.AWAKE
        assert engine.status == "awake, timer continuing"
        assert engine.sleep_detected is True
        assert engine.sleep_start_time is not None

    def test_recovery_closes_episode(self, quick_engine, clock):
        engine = quick_engine
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        engine.on_motion(0.0, clock.advance(1))
        assert engine.evaluate() is SleepState.ASLEEP

        for expected_count in (1, 2):
            hr(engine, 70, clock)
            engine.on_motion(0.5, clock.advance(1))
            assert engine.evaluate() is SleepState.DISTURBED
            clock.advance(30)
            assert engine.evaluate() is SleepState.DISTURBED
            assert engine.disturbance_count == expected_count

            hr(engine, 50, clock)
            engine.on_motion(0.0, clock.advance(1))
            assert engine.evaluate() is SleepState.ASLEEP
            assert engine.disturbance is None


class TestEvents:
    def test_events_on_state_change_only(self, engine, clock):
        events = []
        engine.subscribe(events.append)
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        engine.evaluate()
        engine.evaluate()
        settle_still(engine, clock)
        engine.evaluate()
        assert [(e.previous, e.state) for e in events] == [
            (SleepState.AWAKE, SleepState.POTENTIAL_SLEEP),
            (SleepState.POTENTIAL_SLEEP, SleepState.ASLEEP),
        ]
        assert events[-1].snapshot.sleep_detected is True

    def test_unsubscribe(self, engine, clock):
        events = []
        unsubscribe = engine.subscribe(events.append)
        unsubscribe()
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        engine.evaluate()
        assert events == []


class TestSnapshot:
    def test_threshold_and_conditions(self, engine, clock):
        engine.on_resting_heart_rate(60)
        hr(engine, 50, clock)
        engine.evaluate()
        snap = engine.snapshot()
        assert snap.threshold_bpm == 54.0
        assert snap.threshold_ratio == 0.9
        assert snap.heart_rate_condition_met is True
        assert snap.motion_condition_met is False
        assert engine.heart_rate_condition_description == "heart rate low: 50 < 54"
        assert engine.motion_condition_description == "moving: 0.000"

    def test_description_without_resting_hr(self, engine):
        assert engine.heart_rate_condition_description == "waiting for resting heart rate"


class TestCommands:
    def test_countdown_requires_sleep(self, engine):
        assert engine.start_countdown(20) is False
        assert engine.countdown_active is False

    def test_stop_countdown(self, engine, clock):
        fall_asleep(engine, clock)
        engine.start_countdown(20)
        engine.stop_countdown()
        assert engine.countdown_active is False

    def test_intense_activity_raises_threshold(self, engine, clock):
        engine.on_resting_heart_rate(60)
        engine.on_motion(2.5, clock.advance(1))
        engine.evaluate()
        assert engine.snapshot().threshold_bpm == pytest.approx(55.2)

    def test_record_activity(self, engine):
        engine.on_resting_heart_rate(60)
        assert engine.record_activity(1.0) is False
        assert engine.record_activity(3.0) is True

    def test_set_age_bracket_and_reset_model(self, engine, model):
        engine.set_age_bracket(AgeBracket.TEEN)
        engine.reset_model()
        assert model.day_ratio == 0.875


# ---------------------------------------------------------------------------
# Lifecycle (async)
# ---------------------------------------------------------------------------


class FakeHeartRateSource:
    def __init__(self, resting=62.0, fail=False):
        self.resting = resting
        self.fail = fail
        self.callback = None
        self.starts = 0
        self.stopped = False

    async def start(self, callback):
        if self.fail:
            raise RuntimeError("strap not found")
        self.starts += 1
        self.callback = callback

    async def stop(self):
        self.stopped = True

    async def fetch_resting_heart_rate(self):
        return self.resting


class FailingMotionSource:
    async def start(self, callback):
        raise OSError("no accelerometer")

    async def stop(self):
        pass


class TestLifecycle:
    def test_start_and_stop(self, model, clock):
        source = FakeHeartRateSource()
        engine = SleepStateMachine(model, MotionGate(clock=clock), source, clock=clock)

        async def run():
            await engine.start_sleep_detection()
            assert engine.is_running
            assert engine.status == "monitoring"
            assert engine.resting_heart_rate == 62.0
            source.callback(HeartRateSample(timestamp=clock(), bpm=58.0))
            await engine.stop_sleep_detection()

        asyncio.run(run())
        assert not engine.is_running
        assert source.stopped
        assert engine.heart_rate == 58.0
        assert engine.status == "stopped"

    def test_ticks_run_while_started(self, model, clock):
        engine = SleepStateMachine(
            model, MotionGate(clock=clock), FakeHeartRateSource(), SteadyMotionSource(interval=0.01),
            evaluation_interval=0.01, still_tick=0.01, clock=clock,
        )

        async def run():
            await engine.start_sleep_detection()
            await asyncio.sleep(0.1)
            status = engine.status
            await engine.stop_sleep_detection()
            return status

        assert asyncio.run(run()) == "awake"

    def test_start_twice_resets_without_restarting_sources(self, model, clock):
        source = FakeHeartRateSource()
        engine = SleepStateMachine(model, MotionGate(clock=clock), source, clock=clock)

        async def run():
            await engine.start_sleep_detection()
            await engine.start_sleep_detection()
            await engine.stop_sleep_detection()

        asyncio.run(run())
        assert source.starts == 1

    def test_stop_flushes_session_to_model(self, model, clock):
        engine = SleepStateMachine(model, MotionGate(clock=clock), clock=clock)
        fall_asleep(engine, clock)
        for bpm in [50.0, 51.0, 49.0, 50.0, 52.0, 50.0]:
            hr(engine, bpm, clock)

        asyncio.run(engine.stop_sleep_detection())
        assert len(model.sessions) == 1
        assert model.sessions[0].resting_heart_rate == 60.0
        assert engine.state is SleepState.AWAKE
        assert engine.sleep_detected is False

    def test_stop_without_start_is_safe(self, engine):
        asyncio.run(engine.stop_sleep_detection())
        assert engine.status == "stopped"

    def test_heart_rate_source_failure(self, model, clock):
        engine = SleepStateMachine(model, MotionGate(clock=clock),
                                   FakeHeartRateSource(fail=True), clock=clock)
        with pytest.raises(SourceUnavailableError, match="strap not found"):
            asyncio.run(engine.start_sleep_detection())
        assert not engine.is_running

    def test_motion_failure_stops_heart_rate_source(self, model, clock):
        source = FakeHeartRateSource()
        engine = SleepStateMachine(model, MotionGate(clock=clock), source,
                                   FailingMotionSource(), clock=clock)
        with pytest.raises(SourceUnavailableError, match="no accelerometer"):
            asyncio.run(engine.start_sleep_detection())
        assert source.stopped
        assert not engine.is_running


class EstimatingHeartRateSource(FakeHeartRateSource):
    """Resting HR only becomes known once readings have streamed in."""

    def __init__(self, clock):
        super().__init__(resting=0.0)
        self.clock = clock
        self.readings = []

    async def start(self, callback):
        await super().start(callback)
        for _ in range(40):
            self.readings.append(50.0)
            callback(HeartRateSample(timestamp=self.clock(), bpm=50.0))

    async def fetch_resting_heart_rate(self):
        return estimate_resting_heart_rate(self.readings)


class TestRestingHeartRateRefresh:
    def test_estimate_reaches_engine_after_start(self, model, clock):
        source = EstimatingHeartRateSource(clock)
        engine = SleepStateMachine(model, MotionGate(clock=clock), source,
                                   evaluation_interval=0.01, clock=clock)

        async def run():
            await engine.start_sleep_detection()
            assert engine.resting_heart_rate == 0.0
            await asyncio.sleep(0.1)
            snapshot = engine.snapshot()
            await engine.stop_sleep_detection()
            return snapshot

        snapshot = asyncio.run(run())
        assert snapshot.resting_heart_rate == 50.0
        assert snapshot.status != "waiting for heart-rate data"

    def test_known_resting_hr_not_refetched(self, model, clock):
        source = FakeHeartRateSource(resting=62.0)
        engine = SleepStateMachine(model, MotionGate(clock=clock), source,
                                   evaluation_interval=0.01, clock=clock)
        engine.on_resting_heart_rate(58.0)

        async def run():
            await engine.start_sleep_detection()
            await asyncio.sleep(0.05)
            await engine.stop_sleep_detection()

        asyncio.run(run())
        assert engine.resting_heart_rate == 58.0
