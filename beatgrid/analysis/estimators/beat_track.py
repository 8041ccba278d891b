"""Dynamic-programming beat tracking (librosa)."""

import librosa
import numpy as np

from beatgrid.analysis.errors import EstimatorFailure
from beatgrid.analysis.estimators.base import salience, tempo_from_ticks
from beatgrid.analysis.models import TempoEstimate


class BeatTrackEstimator:
    """librosa.beat.beat_track over one flavour of onset envelope.

    The "mean" flavour follows broadband spectral flux; "median" is
    band-limited and less sensitive to isolated transients, so the two
    fail in different ways.
    """

    def __init__(
        self,
        name: str = "beat_track",
        aggregate: str = "mean",
        tightness: float = 100.0,
        min_bpm: float = 30.0,
        max_bpm: float = 300.0,
    ):
        self.name = name
        self.aggregate = aggregate
        self.tightness = tightness
        self.min_bpm = min_bpm
        self.max_bpm = max_bpm

    def estimate(self, session) -> TempoEstimate:
        env = session.onset_envelope(self.aggregate)
        if env.size == 0 or float(env.max()) <= 0:
            raise EstimatorFailure(self.name, "flat onset envelope")

        _tempo, beat_frames = librosa.beat.beat_track(
            onset_envelope=env,
            sr=session.sample_rate,
            hop_length=session.hop_length,
            tightness=self.tightness,
        )
        beat_frames = np.asarray(beat_frames, dtype=int)
        ticks = librosa.frames_to_time(beat_frames, sr=session.sample_rate, hop_length=session.hop_length)

        bpm, regularity = tempo_from_ticks(self.name, ticks, self.min_bpm, self.max_bpm)
        confidence = regularity * (0.5 + 0.5 * salience(env, beat_frames))
        return TempoEstimate(
            algorithm=self.name,
            bpm=round(bpm, 2),
            confidence=round(confidence, 3),
            beats=tuple(float(t) for t in ticks),
        )
