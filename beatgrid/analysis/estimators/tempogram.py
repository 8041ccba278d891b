"""Global tempo from the autocorrelation tempogram."""

import librosa
import numpy as np

from beatgrid.analysis.errors import EstimatorFailure
from beatgrid.analysis.models import TempoEstimate


class TempogramEstimator:
    """Strongest tempogram lag under a log-normal prior around 120 BPM.

    Produces a tempo only; there are no beat ticks.
    """

    name = "tempogram"

    def __init__(self, min_bpm: float = 30.0, max_bpm: float = 300.0, prior_bpm: float = 120.0):
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm
        self.prior_bpm = prior_bpm

    def estimate(self, session) -> TempoEstimate:
        tempogram = session.tempogram()
        if tempogram.size == 0:
            raise EstimatorFailure(self.name, "empty tempogram")

        # Average tempogram across time
        avg = np.mean(tempogram, axis=1)
        bpm_axis = librosa.tempo_frequencies(
            tempogram.shape[0], sr=session.sample_rate, hop_length=session.hop_length,
        )

        valid = np.flatnonzero((bpm_axis >= self.min_bpm) & (bpm_axis <= self.max_bpm))
        if valid.size < 3:
            raise EstimatorFailure(self.name, "no lags in tempo range")

        prior = np.exp(-0.5 * np.log2(bpm_axis[valid] / self.prior_bpm) ** 2)
        weighted = avg[valid] * prior
        best = int(valid[np.argmax(weighted)])
        strength = float(avg[best])
        if strength <= 0:
            raise EstimatorFailure(self.name, "no periodicity")

        # Refine the lag between frames with a parabola through the neighbours
        lag = float(best)
        if 0 < best < len(avg) - 1:
            a, b, c = float(avg[best - 1]), float(avg[best]), float(avg[best + 1])
            denom = a - 2 * b + c
            if denom < 0:
                lag += 0.5 * (a - c) / denom
        bpm = 60.0 * session.sample_rate / (session.hop_length * lag)

        baseline = float(np.median(avg[valid]))
        confidence = max(0.0, min(1.0, (strength - baseline) / strength)) * 0.8
        return TempoEstimate(algorithm=self.name, bpm=round(bpm, 2), confidence=round(confidence, 3))
