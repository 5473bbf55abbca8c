"""Record live heart-rate readings to a JSONL session log for later replay."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path

from napsense.detection.models import HeartRateSample
from napsense.detection.state_machine import SourceUnavailableError
from napsense.heart_rate import BleHeartRateSource

LOGS_DIR = Path.cwd() / "logs"


def log_entry(timestamp: datetime, kind: str, value: float) -> str:
    """One session-log line, as read back by :func:`napsense.replay.replay_file`."""
    return json.dumps({"timestamp": timestamp.isoformat(), "type": kind, "value": value})


async def record(
    address: str | None = None,
    duration: float | None = None,
    output: str | None = None,
    resting_hr: float | None = None,
) -> Path | None:
    """Stream heart rate from a BLE monitor into a session log.

    Args:
        address: BLE address. If None, scans for a heart-rate monitor.
        duration: Recording duration in seconds. None = run until Ctrl+C.
        output: Output file path. If None, auto-generates in logs/.
        resting_hr: Known resting HR, written as the log's first entry.

    Returns:
        The log path, or None if the monitor could not be reached.
    """
    if output is None:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        output = str(LOGS_DIR / f"session_{ts}.jsonl")

    outpath = Path(output)
    outpath.parent.mkdir(parents=True, exist_ok=True)
    source = BleHeartRateSource(address, resting_hr=resting_hr)
    count = 0

    with open(outpath, "a") as f:
        if resting_hr:
            f.write(log_entry(datetime.now(), "rhr", float(resting_hr)) + "\n")

        def _on_sample(sample: HeartRateSample) -> None:
            nonlocal count
            f.write(log_entry(sample.timestamp, "hr", sample.bpm) + "\n")
            f.flush()
            count += 1
            print(f"  [{sample.timestamp:%H:%M:%S}] {sample.bpm:.0f} bpm", flush=True)

        try:
            await source.start(_on_sample)
        except SourceUnavailableError as e:
            print(f"Error: {e}")
            return None

        print(f"Recording heart rate → {outpath}")
        print("Press Ctrl+C to stop.\n")
        try:
            if duration:
                await asyncio.sleep(duration)
            else:
                while True:
                    await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await source.stop()
            print(f"\nRecording complete. {count} readings → {outpath}")

    return outpath
