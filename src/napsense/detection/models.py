"""Value types shared by the detection engine and its persistence layer."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np


@dataclass(frozen=True)
class HeartRateSample:
    """A single heart-rate reading pushed by a heart-rate source."""

    timestamp: datetime
    bpm: float

    def __repr__(self) -> str:
        return f"HR({self.bpm:.0f} bpm @ {self.timestamp:%H:%M:%S})"


@dataclass
class SleepSession:
    """Heart rates collected while asleep during one monitoring period."""

    date: datetime
    heart_rates: list[float]
    resting_heart_rate: float
    is_night_sleep: bool

    @property
    def average_heart_rate(self) -> float:
        if not self.heart_rates:
            return 0.0
        return float(np.mean(self.heart_rates))

    @property
    def minimum_heart_rate(self) -> float:
        if not self.heart_rates:
            return 0.0
        return float(np.min(self.heart_rates))

    @property
    def heart_rate_variance(self) -> float:
        """Population standard deviation of the session's heart rates (bpm)."""
        if len(self.heart_rates) < 2:
            return 0.0
        return float(np.std(np.asarray(self.heart_rates, dtype=np.float64), ddof=0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "heartRates": [float(v) for v in self.heart_rates],
            "restingHeartRate": float(self.resting_heart_rate),
            "isNightSleep": self.is_night_sleep,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SleepSession:
        """Decode a stored session record.

        Raises KeyError / TypeError / ValueError on malformed records.
        """
        return cls(
            date=datetime.fromisoformat(raw["date"]),
            heart_rates=[float(v) for v in raw["heartRates"]],
            resting_heart_rate=float(raw["restingHeartRate"]),
            is_night_sleep=bool(raw["isNightSleep"]),
        )

    def __repr__(self) -> str:
        kind = "night" if self.is_night_sleep else "day"
        return (
            f"SleepSession({self.date:%Y-%m-%d %H:%M}, {kind}, "
            f"n={len(self.heart_rates)}, avg={self.average_heart_rate:.1f}, "
            f"rhr={self.resting_heart_rate:.0f})"
        )


class RatioKind(str, Enum):
    """Which of the two personalized ratios an update targets."""

    DAY = "day"
    NIGHT = "night"


@dataclass
class ThresholdState:
    """Persisted personalization state for one wearer.

    ``night_ratio`` is None until a night update has run; the engine then
    derives the night ratio from the day ratio.
    """

    day_ratio: float
    first_use: datetime
    night_ratio: float | None = None
    last_update: datetime | None = None
    schema_version: int = 2

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "dayRatio": self.day_ratio,
            "nightRatio": self.night_ratio,
            "lastUpdateDate": self.last_update.isoformat() if self.last_update else None,
            "firstUseDate": self.first_use.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ThresholdState:
        last_update = raw.get("lastUpdateDate")
        night = raw.get("nightRatio")
        return cls(
            day_ratio=float(raw["dayRatio"]),
            night_ratio=float(night) if night is not None else None,
            last_update=datetime.fromisoformat(last_update) if last_update else None,
            first_use=datetime.fromisoformat(raw["firstUseDate"]),
            schema_version=int(raw.get("schemaVersion", 2)),
        )
