"""Common interface and helpers for tempo estimators."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from beatgrid.analysis.errors import EstimatorFailure
from beatgrid.analysis.models import TempoEstimate


@runtime_checkable
class TempoEstimator(Protocol):
    """Anything with a name that turns an engine session into a TempoEstimate.

    Implementations raise EstimatorFailure (or any other exception) when they
    cannot produce an estimate; the ensemble drops them.
    """

    name: str

    def estimate(self, session) -> TempoEstimate:
        ...


def tempo_from_ticks(
    algorithm: str,
    ticks: np.ndarray,
    min_bpm: float = 30.0,
    max_bpm: float = 300.0,
) -> tuple[float, float]:
    """Estimate (bpm, regularity) from beat ticks.

    Intervals more than 25% away from the median are treated as outliers
    (skipped beats, pauses) and the mean of the rest gives a BPM that is
    not quantized to the analysis hop. Regularity is 1 - 2*CV of the
    retained intervals, clipped to [0, 1].
    """
    if len(ticks) < 3:
        raise EstimatorFailure(algorithm, f"only {len(ticks)} beats")

    ibis = np.diff(np.asarray(ticks, dtype=np.float64))
    ibis = ibis[(ibis > 60.0 / max_bpm) & (ibis < 60.0 / min_bpm)]
    if len(ibis) < 2:
        raise EstimatorFailure(algorithm, "no usable beat intervals")

    median_ibi = float(np.median(ibis))
    inliers = ibis[np.abs(ibis - median_ibi) <= 0.25 * median_ibi]
    mean_ibi = float(np.mean(inliers))
    cv = float(np.std(inliers)) / mean_ibi if mean_ibi > 0 else 1.0
    regularity = max(0.0, min(1.0, 1.0 - cv * 2))
    return 60.0 / mean_ibi, regularity


def salience(envelope: np.ndarray, frames: np.ndarray) -> float:
    """How much stronger the envelope is at *frames* than on average (0-1)."""
    if len(frames) == 0 or envelope.size == 0:
        return 0.0
    frames = np.clip(frames, 0, len(envelope) - 1)
    at_beats = float(np.mean(envelope[frames]))
    overall = float(np.mean(envelope))
    if at_beats <= 0:
        return 0.0
    return max(0.0, min(1.0, 1.0 - overall / at_beats))
