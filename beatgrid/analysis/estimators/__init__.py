"""Tempo estimator subpackage, each algorithm in its own module."""

from beatgrid.analysis.estimators.autocorrelation import AutocorrelationEstimator
from beatgrid.analysis.estimators.base import TempoEstimator
from beatgrid.analysis.estimators.beat_track import BeatTrackEstimator
from beatgrid.analysis.estimators.plp import PlpEstimator
from beatgrid.analysis.estimators.tempogram import TempogramEstimator


def default_estimators(min_bpm: float = 30.0, max_bpm: float = 300.0) -> list[TempoEstimator]:
    """The fixed ensemble, in the order they run, limited to [min_bpm, max_bpm]."""
    return [
        BeatTrackEstimator("beat_track", aggregate="mean", min_bpm=min_bpm, max_bpm=max_bpm),
        BeatTrackEstimator(
            "beat_track_median", aggregate="median", tightness=400.0, min_bpm=min_bpm, max_bpm=max_bpm,
        ),
        PlpEstimator(tempo_min=min_bpm, tempo_max=max_bpm),
        TempogramEstimator(min_bpm=min_bpm, max_bpm=max_bpm),
    ]


def baseline_estimator() -> TempoEstimator:
    return AutocorrelationEstimator()


__all__ = [
    "TempoEstimator",
    "AutocorrelationEstimator",
    "BeatTrackEstimator",
    "PlpEstimator",
    "TempogramEstimator",
    "default_estimators",
    "baseline_estimator",
]
