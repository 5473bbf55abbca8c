"""Sleep-detection engine.

Modules:
    age           -- Age brackets and their default threshold ratios
    models        -- Heart-rate samples, sleep sessions, threshold state
    outliers      -- Three-stage heart-rate outlier filter
    store         -- Key-value persistence, backup recovery, schema migration
    threshold     -- Personalized day/night threshold model
    motion        -- Motion-stillness gate
    state_machine -- Four-state sleep detector with disturbance tolerance
"""

from napsense.detection.age import (
    AgeBracket,
    bracket_for_age,
    default_ratio,
    min_qualifying_seconds,
    load_age_bracket,
    save_age_bracket,
)
from napsense.detection.models import HeartRateSample, SleepSession, ThresholdState, RatioKind
from napsense.detection.outliers import filter_outliers
from napsense.detection.store import KeyValueStore, MemoryStore, JsonFileStore, ModelStore
from napsense.detection.threshold import ThresholdModel, is_night
from napsense.detection.motion import MotionGate, combined_motion_level
from napsense.detection.state_machine import (
    SleepStateMachine,
    SleepState,
    SleepSnapshot,
    SleepEvent,
    DisturbanceEpisode,
    SourceUnavailableError,
    SteadyMotionSource,
)

__all__ = [
    # age
    "AgeBracket",
    "bracket_for_age",
    "default_ratio",
    "min_qualifying_seconds",
    "load_age_bracket",
    "save_age_bracket",
    # models
    "HeartRateSample",
    "SleepSession",
    "ThresholdState",
    "RatioKind",
    # outliers
    "filter_outliers",
    # store
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "ModelStore",
    # threshold
    "ThresholdModel",
    "is_night",
    # motion
    "MotionGate",
    "combined_motion_level",
    # state machine
    "SleepStateMachine",
    "SleepState",
    "SleepSnapshot",
    "SleepEvent",
    "DisturbanceEpisode",
    "SourceUnavailableError",
    "SteadyMotionSource",
]
