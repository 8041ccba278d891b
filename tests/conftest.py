"""Shared test fixtures for beat grid analysis tests."""

import numpy as np
import pytest
from fastapi.testclient import TestClient

from beatgrid.analysis.errors import EstimatorFailure
from beatgrid.analysis.models import TempoEstimate
from beatgrid.audio.signal import AudioSignal
from beatgrid.main import app

SR = 22050


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


def click_times(
    bpm: float,
    duration_seconds: float,
    start_offset: float = 0.0,
    silences: list[tuple[float, float]] | None = None,
    resume_at: list[float] | None = None,
) -> list[float]:
    """Beat times of a steady pulse with optional silent spans.

    Clicks strictly inside a (start, end) silence are dropped; each entry
    of *resume_at* restarts the pulse at that time.
    """
    interval = 60.0 / bpm
    anchors = sorted([start_offset] + list(resume_at or []))
    times = []
    for i, anchor in enumerate(anchors):
        stop = anchors[i + 1] if i + 1 < len(anchors) else duration_seconds
        k = 0
        while anchor + k * interval < stop - 1e-9:
            times.append(anchor + k * interval)
            k += 1
    return [
        t for t in times
        if not any(s < t < e for s, e in (silences or ()))
    ]


def generate_click_track(
    bpm: float,
    beats_per_bar: int = 4,
    duration_seconds: float = 10.0,
    sr: int = SR,
    accent_ratio: float = 2.0,
    start_offset: float = 0.0,
    silences: list[tuple[float, float]] | None = None,
    resume_at: list[float] | None = None,
) -> np.ndarray:
    """Generate a synthetic click track with accented downbeats.

    Returns mono audio at the given sample rate.
    """
    n_samples = int(duration_seconds * sr)
    audio = np.zeros(n_samples, dtype=np.float32)

    click_duration = 0.02  # 20ms click
    click_samples = int(click_duration * sr)

    # Short sine burst with exponential decay
    t_click = np.arange(click_samples) / sr
    click = np.sin(2 * np.pi * 1000 * t_click) * np.exp(-t_click * 100)

    times = click_times(bpm, duration_seconds, start_offset, silences, resume_at)
    for beat, time in enumerate(times):
        sample_pos = int(round(time * sr))
        amplitude = accent_ratio if beat % beats_per_bar == 0 else 1.0
        end = min(sample_pos + click_samples, n_samples)
        length = end - sample_pos
        if length > 0:
            audio[sample_pos:end] += click[:length] * amplitude

    peak = np.max(np.abs(audio))
    if peak > 0:
        audio = audio / peak

    return audio


def make_signal(audio: np.ndarray, sr: int = SR) -> AudioSignal:
    return AudioSignal.from_mono(audio, sr)


def fermata_track() -> AudioSignal:
    """120 BPM clicks with a held pause: last click at 3.5s, resuming at 7.0s."""
    audio = generate_click_track(
        bpm=120, duration_seconds=15, silences=[(3.5, 7.0)], resume_at=[7.0],
    )
    return make_signal(audio)


class FixedEstimator:
    """Estimator stub returning a preset estimate."""

    def __init__(self, name: str, bpm: float, confidence: float, beats=()):
        self.name = name
        self.bpm = bpm
        self.confidence = confidence
        self.beats = tuple(beats)
        self.calls = 0

    def estimate(self, session) -> TempoEstimate:
        self.calls += 1
        return TempoEstimate(self.name, self.bpm, self.confidence, self.beats)


class FailingEstimator:
    """Estimator stub that always fails, either cleanly or with a raw error."""

    def __init__(self, name: str = "broken", raw: bool = False):
        self.name = name
        self.raw = raw

    def estimate(self, session) -> TempoEstimate:
        if self.raw:
            raise RuntimeError("numeric engine crashed")
        raise EstimatorFailure(self.name, "no usable beats")


@pytest.fixture
def click_120():
    """Click track in 4/4 at 120 BPM."""
    return make_signal(generate_click_track(bpm=120, duration_seconds=10))
