"""Shared fixtures for the napsense test suite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from napsense.detection.age import AgeBracket
from napsense.detection.models import SleepSession, ThresholdState
from napsense.detection.store import MemoryStore, ModelStore
from napsense.detection.threshold import ThresholdModel

# A Wednesday afternoon: day-time for every classification in the engine.
DAY_START = datetime(2026, 3, 4, 13, 0, 0)


class FakeClock:
    """Callable clock advanced by hand."""

    def __init__(self, start: datetime = DAY_START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def model(store, clock) -> ThresholdModel:
    """Adult model with nothing learned yet."""
    return ThresholdModel(AgeBracket.ADULT, store, clock=clock).initialize()


@pytest.fixture
def make_model(store, clock):
    """Adult model whose stored state already carries learned ratios."""

    def _make(day_ratio: float = 0.9, night_ratio: float | None = None) -> ThresholdModel:
        ModelStore(store).save_state(ThresholdState(
            day_ratio=day_ratio, first_use=clock(), night_ratio=night_ratio,
        ))
        return ThresholdModel(AgeBracket.ADULT, store, clock=clock).initialize()

    return _make


@pytest.fixture
def make_session():
    """Factory for sleep sessions with a constant heart rate."""

    def _make(
        avg: float = 54.0,
        resting: float = 60.0,
        n: int = 20,
        when: datetime = DAY_START,
        night: bool = False,
        heart_rates: list[float] | None = None,
    ) -> SleepSession:
        return SleepSession(
            date=when,
            heart_rates=list(heart_rates) if heart_rates is not None else [avg] * n,
            resting_heart_rate=resting,
            is_night_sleep=night,
        )

    return _make


@pytest.fixture
def write_log(tmp_path: Path):
    """Write session-log entries (dicts or raw strings) to a .jsonl file."""

    def _write(entries: list, name: str = "session.jsonl") -> Path:
        path = tmp_path / name
        with open(path, "w") as f:
            for entry in entries:
                f.write((entry if isinstance(entry, str) else json.dumps(entry)) + "\n")
        return path

    return _write


@pytest.fixture
def nap_log(write_log):
    """A synthetic 20-minute day nap: RHR 64, HR drifting from 70 down to 52.

    Motion stops after the first minute, so stillness is established early
    and sleep onset is gated by the heart rate dropping below 57.6 bpm.
    """
    entries: list[dict] = [{"timestamp": DAY_START.isoformat(), "type": "rhr", "value": 64}]
    for second in range(0, 20 * 60, 5):
        ts = (DAY_START + timedelta(seconds=second)).isoformat()
        motion = 0.5 if second < 60 else 0.01
        hr = max(52.0, 70.0 - second / 30.0)
        entries.append({"timestamp": ts, "type": "motion", "value": motion})
        entries.append({"timestamp": ts, "type": "hr", "value": hr})
    return write_log(entries, "nap.jsonl")
