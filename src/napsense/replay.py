"""Replay a recorded session log through the detection engine.

A session log is JSONL, one reading per line::

    {"timestamp": "2026-03-01T13:02:15", "type": "hr", "value": 58}
    {"timestamp": "2026-03-01T13:02:15", "type": "motion", "value": 0.02}
    {"timestamp": "2026-03-01T13:00:00", "type": "rhr", "value": 64}

The engine runs on simulated time: the stillness counter ticks every second
and the state machine is evaluated every 15 s of log time, exactly as a live
session would, so a 30-minute nap replays in milliseconds.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from napsense.detection.age import AgeBracket
from napsense.detection.models import HeartRateSample
from napsense.detection.motion import MotionGate
from napsense.detection.state_machine import (
    EVALUATION_INTERVAL,
    STILL_TICK,
    SleepEvent,
    SleepSnapshot,
    SleepState,
    SleepStateMachine,
)
from napsense.detection.store import KeyValueStore, MemoryStore
from napsense.detection.threshold import ThresholdModel

ENTRY_TYPES = ("hr", "motion", "rhr")


class SimulatedClock:
    """Clock advanced explicitly by the replay loop."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@dataclass
class ReplayResult:
    """Outcome of replaying one session log."""

    entries: int = 0
    skipped: int = 0
    transitions: list[dict[str, Any]] = field(default_factory=list)
    sleep_start_time: str | None = None
    disturbance_count: int = 0
    final_state: str = SleepState.AWAKE.value
    sessions_recorded: int = 0
    day_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __repr__(self) -> str:
        return (
            f"ReplayResult(entries={self.entries}, transitions={len(self.transitions)}, "
            f"sleep_start={self.sleep_start_time}, final={self.final_state})"
        )


def read_session_log(path: Path, verbose: bool = False) -> tuple[list[tuple[datetime, str, float]], int]:
    """Parse a session log, returning time-ordered entries and the skip count."""
    entries: list[tuple[datetime, str, float]] = []
    skipped = 0
    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
                kind = raw["type"]
                if kind not in ENTRY_TYPES:
                    raise ValueError(f"unknown type {kind!r}")
                entries.append((datetime.fromisoformat(raw["timestamp"]), kind, float(raw["value"])))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                skipped += 1
                if verbose:
                    print(f"  [line {line_num}] skipped: {e}")
    entries.sort(key=lambda e: e[0])
    return entries, skipped


class _Replayer:
    def __init__(self, engine: SleepStateMachine, clock: SimulatedClock, assume_still: bool = False) -> None:
        self.engine = engine
        self.clock = clock
        self.assume_still = assume_still
        self.next_tick = clock.now + timedelta(seconds=STILL_TICK)
        self.next_eval = clock.now + timedelta(seconds=engine.evaluation_interval)

    def advance_to(self, target: datetime) -> None:
        """Fire every tick and evaluation scheduled up to *target*."""
        while True:
            due = min(self.next_tick, self.next_eval)
            if due > target:
                break
            self.clock.now = due
            if due == self.next_tick:
                if self.assume_still:
                    self.engine.on_motion(0.0, due)
                self.engine.tick_motion(due)
                self.next_tick += timedelta(seconds=STILL_TICK)
            if due == self.next_eval:
                self.engine.evaluate(due)
                self.next_eval += timedelta(seconds=self.engine.evaluation_interval)
        self.clock.now = target


def replay_file(
    log_path: str,
    output_path: str | None = None,
    verbose: bool = False,
    bracket: AgeBracket = AgeBracket.ADULT,
    store: KeyValueStore | None = None,
    countdown_minutes: int | None = None,
    assume_still: bool = False,
    evaluation_interval: float = EVALUATION_INTERVAL,
) -> ReplayResult:
    """Replay a session log through a fresh detection engine.

    Args:
        log_path: Path to the .jsonl session log.
        output_path: Optional path to write the result as JSON.
        verbose: If True, report each skipped line.
        bracket: Age bracket for default thresholds.
        store: Model store; an in-memory store is used if None, so replays
            do not touch the wearer's learned model unless asked to.
        countdown_minutes: Start a nap countdown as soon as sleep is detected.
        assume_still: Treat the wearer as motionless between motion entries,
            for logs recorded from a strap without a motion sensor.
        evaluation_interval: Seconds of log time between evaluations.

    Returns:
        A ReplayResult; empty if the file is missing or has no valid entries.
    """
    path = Path(log_path)
    result = ReplayResult()
    if not path.exists():
        print(f"File not found: {log_path}")
        return result

    print(f"Replaying {path.name}...\n")
    entries, result.skipped = read_session_log(path, verbose)
    result.entries = len(entries)
    if not entries:
        print(f"\nSummary: 0 entries, {result.skipped} skipped")
        return result

    clock = SimulatedClock(entries[0][0])
    model = ThresholdModel(bracket, store if store is not None else MemoryStore(), clock=clock)
    model.initialize()
    engine = SleepStateMachine(
        model,
        MotionGate(clock=clock),
        evaluation_interval=evaluation_interval,
        clock=clock,
    )
    sessions_before = len(model.sessions)

    def _on_event(event: SleepEvent) -> None:
        snap = event.snapshot
        result.transitions.append({
            "timestamp": clock.now.isoformat(),
            "from": event.previous.value,
            "to": snap.state.value,
            "status": snap.status,
        })
        print(f"  [{clock.now:%H:%M:%S}] {event.previous.value} -> {snap.state.value} ({snap.status})")
        if countdown_minutes and snap.state is SleepState.ASLEEP and not snap.countdown_active:
            engine.start_countdown(countdown_minutes)

    unsubscribe = engine.subscribe(_on_event)
    replayer = _Replayer(engine, clock, assume_still)

    for timestamp, kind, value in entries:
        replayer.advance_to(timestamp)
        if kind == "hr":
            engine.on_heart_rate(HeartRateSample(timestamp=timestamp, bpm=value))
        elif kind == "motion":
            engine.on_motion(value, timestamp)
        else:
            engine.on_resting_heart_rate(value)

    final: SleepSnapshot = engine.snapshot()
    result.sleep_start_time = final.sleep_start_time.isoformat() if final.sleep_start_time else None
    result.disturbance_count = final.disturbance_count
    result.final_state = final.state.value

    unsubscribe()
    asyncio.run(engine.stop_sleep_detection())
    result.sessions_recorded = len(model.sessions) - sessions_before
    result.day_ratio = model.day_ratio

    print(f"\nSummary: {result.entries} entries, {result.skipped} skipped, "
          f"{len(result.transitions)} transitions, final state {result.final_state}")

    if output_path:
        with open(output_path, "w") as out:
            out.write(result.to_json())
        print(f"Output written to {output_path}")

    return result


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python -m napsense.replay <session.jsonl> [output.json]")
        sys.exit(1)

    args = [a for a in sys.argv[1:] if not a.startswith("-")]
    log_path = args[0]
    output_path = args[1] if len(args) > 1 else None
    verbose = "--verbose" in sys.argv or "-v" in sys.argv

    replay_file(log_path, output_path, verbose, assume_still="--still" in sys.argv)


if __name__ == "__main__":
    main()
