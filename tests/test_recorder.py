"""Tests for recorder.py — session-log lines and the recording loop."""

import asyncio
import json
from datetime import datetime

from napsense import recorder
from napsense.detection.models import HeartRateSample
from napsense.detection.state_machine import SourceUnavailableError
from napsense.replay import read_session_log


class FakeSource:
    def __init__(self, address=None, resting_hr=None):
        self.stopped = False

    async def start(self, callback):
        callback(HeartRateSample(timestamp=datetime(2026, 3, 4, 13, 0, 0), bpm=61.0))
        callback(HeartRateSample(timestamp=datetime(2026, 3, 4, 13, 0, 1), bpm=60.0))

    async def stop(self):
        self.stopped = True


class UnavailableSource(FakeSource):
    async def start(self, callback):
        raise SourceUnavailableError("no heart-rate monitor found")


class TestLogEntry:
    def test_readable_by_replay(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text(recorder.log_entry(datetime(2026, 3, 4, 13, 0), "hr", 58.0) + "\n")
        entries, skipped = read_session_log(path)
        assert skipped == 0
        assert entries == [(datetime(2026, 3, 4, 13, 0), "hr", 58.0)]


class TestRecord:
    def test_writes_resting_and_samples(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(recorder, "BleHeartRateSource", FakeSource)
        out = tmp_path / "session.jsonl"
        path = asyncio.run(recorder.record(duration=0.01, output=str(out), resting_hr=63))
        assert path == out
        lines = [json.loads(line) for line in out.read_text().splitlines()]
        assert [(e["type"], e["value"]) for e in lines] == [("rhr", 63.0), ("hr", 61.0), ("hr", 60.0)]
        assert "2 readings" in capsys.readouterr().out

    def test_unavailable_monitor(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(recorder, "BleHeartRateSource", UnavailableSource)
        assert asyncio.run(recorder.record(output=str(tmp_path / "x.jsonl"))) is None
        assert "no heart-rate monitor found" in capsys.readouterr().out
