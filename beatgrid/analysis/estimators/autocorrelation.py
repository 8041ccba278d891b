"""Onset-autocorrelation tempo estimate, the ensemble's fallback."""

import numpy as np
from scipy.signal import find_peaks

from beatgrid.analysis.errors import EstimatorFailure, OnsetDetectionFailure
from beatgrid.analysis.models import TempoEstimate
from beatgrid.analysis.onset import OnsetPreset, detect_onsets

RESOLUTION = 0.01  # seconds per impulse-train bin
MIN_ONSETS = 20


def _fold(bpm: float, low: float = 60.0, high: float = 120.0) -> float:
    while bpm > high:
        bpm /= 2
    while bpm < low:
        bpm *= 2
    return bpm


def _range_bonus(bpm: float) -> float:
    if 60 <= bpm <= 90:
        return 0.1
    if 90 <= bpm <= 130:
        return 0.05
    return 0.0


class AutocorrelationEstimator:
    """Periodicity of an impulse train built from energy onsets.

    Needs nothing beyond numpy and the energy onset detector, so it still
    works when every spectral estimator has failed.
    """

    name = "autocorrelation"

    def __init__(self, min_bpm: float = 50.0, max_bpm: float = 180.0):
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm

    def estimate(self, session) -> TempoEstimate:
        try:
            onsets = np.asarray(detect_onsets(session.signal, OnsetPreset.CORE).times)
        except OnsetDetectionFailure as e:
            raise EstimatorFailure(self.name, str(e)) from e
        if len(onsets) < MIN_ONSETS:
            raise EstimatorFailure(self.name, f"only {len(onsets)} onsets")

        duration = session.duration
        n_bins = int(np.ceil(duration / RESOLUTION))
        train = np.zeros(n_bins, dtype=np.float64)
        idx = np.floor(onsets / RESOLUTION).astype(int)
        train[idx[(idx >= 0) & (idx < n_bins)]] = 1.0

        min_lag = int(np.floor(60.0 / (self.max_bpm * RESOLUTION)))
        max_lag = min(int(np.ceil(60.0 / (self.min_bpm * RESOLUTION))), n_bins - 1)
        lags = np.arange(min_lag, max_lag + 1)
        if len(lags) < 3:
            raise EstimatorFailure(self.name, "signal too short")
        corr = np.array([
            np.dot(train[:n_bins - lag], train[lag:]) / (n_bins - lag) for lag in lags
        ])

        peak_idx, _ = find_peaks(corr, height=0.001)
        if len(peak_idx) == 0:
            raise EstimatorFailure(self.name, "no autocorrelation peaks")
        peak_idx = peak_idx[np.argsort(corr[peak_idx])[::-1]]

        best_bpm = 60.0 / (lags[peak_idx[0]] * RESOLUTION)
        best_score = float(corr[peak_idx[0]])
        for i in peak_idx[:5]:
            bpm = _fold(60.0 / (lags[i] * RESOLUTION))
            score = float(corr[i]) + _range_bonus(bpm)
            if score > best_score:
                best_score = score
                best_bpm = bpm

        bpm = _fold(best_bpm)
        # Onset density sanity check on the octave
        onsets_per_beat = (len(onsets) / duration) / (bpm / 60.0)
        if onsets_per_beat > 6 and bpm < 120:
            bpm *= 2
        elif onsets_per_beat < 1 and bpm > 60:
            bpm /= 2

        return TempoEstimate(
            algorithm=self.name,
            bpm=round(bpm, 2),
            confidence=round(min(best_score * 10, 1.0), 3),
        )
