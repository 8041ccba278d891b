"""Predominant local pulse (PLP) tempo estimation."""

import librosa
import numpy as np
from scipy.signal import find_peaks

from beatgrid.analysis.errors import EstimatorFailure
from beatgrid.analysis.estimators.base import tempo_from_ticks
from beatgrid.analysis.models import TempoEstimate


class PlpEstimator:
    """Beats from the peaks of librosa's PLP curve.

    PLP adapts to local tempo, so it copes with drifting performances
    where a single global tempo fits badly.
    """

    name = "plp"

    def __init__(self, tempo_min: float = 30.0, tempo_max: float = 300.0):
        self.tempo_min = tempo_min
        self.tempo_max = tempo_max

    def estimate(self, session) -> TempoEstimate:
        env = session.onset_envelope()
        if env.size == 0 or float(env.max()) <= 0:
            raise EstimatorFailure(self.name, "flat onset envelope")

        pulse = librosa.beat.plp(
            onset_envelope=env,
            sr=session.sample_rate,
            hop_length=session.hop_length,
            tempo_min=self.tempo_min,
            tempo_max=self.tempo_max,
        )
        peak = float(pulse.max()) if pulse.size else 0.0
        if peak <= 0:
            raise EstimatorFailure(self.name, "empty pulse curve")
        pulse = pulse / peak

        min_distance = max(1, int(60.0 / self.tempo_max * session.sample_rate / session.hop_length))
        frames, props = find_peaks(pulse, height=0.3, distance=min_distance)
        ticks = librosa.frames_to_time(frames, sr=session.sample_rate, hop_length=session.hop_length)

        bpm, regularity = tempo_from_ticks(self.name, ticks, self.tempo_min, self.tempo_max)
        strength = float(np.mean(props["peak_heights"])) if len(frames) else 0.0
        return TempoEstimate(
            algorithm=self.name,
            bpm=round(bpm, 2),
            confidence=round(regularity * strength, 3),
            beats=tuple(float(t) for t in ticks),
        )
