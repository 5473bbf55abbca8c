"""Outlier filtering for batches of sleep heart-rate samples.

A session's heart-rate batch is cleaned in three stages before it is allowed
to influence the personalized threshold:

  1. Quartile clipping -- drop values outside ``[Q1 - k*IQR, Q3 + k*IQR]``,
     relaxing *k* when the clip is too aggressive and giving up entirely
     when even the relaxed clip removes more than half the batch.
  2. Spike rejection -- drop samples that jump more than 15% relative to the
     last kept sample (optical sensors produce these on wrist movement).
  3. Time-window analysis -- reserved; a pass-through until samples carry
     timestamps through the pipeline.

The pipeline as a whole is not idempotent: a second pass over its own
output can clip differently because the quartiles move and the relaxation
fallback may no longer trigger.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)

MIN_SAMPLES = 5  # below this every stage is skipped

IQR_MULTIPLIER = 1.8
IQR_RELAXED_MULTIPLIER = 2.5
MIN_KEEP_FRACTION = 0.7  # below this the relaxed multiplier is tried
MIN_RELAXED_KEEP_FRACTION = 0.5  # below this the unfiltered batch is used

SPIKE_MIN_SAMPLES = 11  # spike rejection needs more than 10 samples
SPIKE_THRESHOLD = 0.15  # relative jump vs. previous kept sample
SPIKE_MIN_KEEP_FRACTION = 0.8


# ---------------------------------------------------------------------------
# Stage 1: quartile clipping
# ---------------------------------------------------------------------------


def _quartiles(values: np.ndarray) -> tuple[float, float]:
    """Index-based Q1/Q3 (no interpolation)."""
    ordered = np.sort(values)
    n = len(ordered)
    return float(ordered[n // 4]), float(ordered[(n * 3) // 4])


def _clip(values: np.ndarray, q1: float, q3: float, k: float) -> np.ndarray:
    iqr = q3 - q1
    lower = q1 - k * iqr
    upper = q3 + k * iqr
    return values[(values >= lower) & (values <= upper)]


def _quartile_clip(values: np.ndarray) -> np.ndarray:
    n = len(values)
    q1, q3 = _quartiles(values)

    kept = _clip(values, q1, q3, IQR_MULTIPLIER)
    if len(kept) < n * MIN_KEEP_FRACTION:
        kept = _clip(values, q1, q3, IQR_RELAXED_MULTIPLIER)
        if len(kept) < n * MIN_RELAXED_KEEP_FRACTION:
            logger.debug("Quartile clip too aggressive (%d/%d kept); using raw batch",
                         len(kept), n)
            kept = values
    return kept


# ---------------------------------------------------------------------------
# Stage 2: spike rejection
# ---------------------------------------------------------------------------


def _reject_spikes(values: np.ndarray) -> np.ndarray:
    if len(values) < SPIKE_MIN_SAMPLES:
        return values

    stable = [values[0]]
    prev = float(values[0])
    outliers = 0
    for rate in values[1:]:
        change = abs(float(rate) - prev) / prev if prev > 0 else 0.0
        if change > SPIKE_THRESHOLD:
            outliers += 1
            logger.debug("Heart-rate spike: %.0f -> %.0f (%.0f%%)", prev, rate, change * 100)
            continue
        stable.append(rate)
        prev = float(rate)

    if outliers:
        logger.debug("Spike rejection: %d -> %d samples (%d removed)",
                     len(values), len(stable), outliers)

    if len(stable) >= len(values) * SPIKE_MIN_KEEP_FRACTION:
        return np.asarray(stable, dtype=np.float64)
    return values


# ---------------------------------------------------------------------------
# Stage 3: time-window analysis
# ---------------------------------------------------------------------------


def _time_window_pass(values: np.ndarray) -> np.ndarray:
    return values


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def filter_outliers(heart_rates: Sequence[float]) -> list[float]:
    """Clean a batch of heart-rate values (bpm).

    Args:
        heart_rates: Samples in acquisition order.

    Returns:
        A new list containing a positional subsequence of *heart_rates*.
        Batches shorter than 5 samples are returned unchanged; a non-empty
        batch never comes back empty.
    """
    if len(heart_rates) < MIN_SAMPLES:
        return [float(v) for v in heart_rates]

    arr = np.asarray(heart_rates, dtype=np.float64)
    result = _time_window_pass(_reject_spikes(_quartile_clip(arr)))
    return [float(v) for v in result]
