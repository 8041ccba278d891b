"""Shared handle to the numeric estimation engine.

The engine itself holds no per-track state, so one instance is shared by
the whole process. Everything derived from a particular signal (the
preprocessed mono buffer, onset envelopes, the tempogram) lives in an
EngineSession, which is always released when its ``with`` block exits.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

import librosa
import numpy as np

from beatgrid.audio.preprocessing import analysis_channel
from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)

_engine = None
_engine_lock = threading.Lock()


class EngineSession:
    """Per-signal cache of derived buffers."""

    def __init__(self, signal: AudioSignal, hop_length: int):
        self.signal = signal
        self.sample_rate = signal.sample_rate
        self.hop_length = hop_length
        self._buffers: dict[str, np.ndarray] = {}
        self.released = False

    def _cached(self, key: str, compute) -> np.ndarray:
        if self.released:
            raise RuntimeError("Engine session already released")
        if key not in self._buffers:
            self._buffers[key] = compute()
        return self._buffers[key]

    @property
    def duration(self) -> float:
        return self.signal.duration

    def mono(self) -> np.ndarray:
        """Normalized, high-passed first channel."""
        return self._cached(
            "mono", lambda: analysis_channel(self.signal, 0),
        )

    def onset_envelope(self, aggregate: str = "mean") -> np.ndarray:
        """Spectral-flux onset strength; ``aggregate`` is "mean" or "median"."""
        def compute():
            if aggregate == "median":
                return librosa.onset.onset_strength(
                    y=self.mono(), sr=self.sample_rate, hop_length=self.hop_length,
                    aggregate=np.median, fmax=8000, n_mels=64,
                )
            return librosa.onset.onset_strength(
                y=self.mono(), sr=self.sample_rate, hop_length=self.hop_length,
            )
        return self._cached(f"onset_env:{aggregate}", compute)

    def tempogram(self) -> np.ndarray:
        return self._cached(
            "tempogram",
            lambda: librosa.feature.tempogram(
                onset_envelope=self.onset_envelope(), sr=self.sample_rate,
                hop_length=self.hop_length,
            ),
        )

    def release(self):
        self._buffers.clear()
        self.released = True


class RhythmEngine:
    """Process-wide entry point for signal-derived computations."""

    def __init__(self, hop_length: int = 512):
        self.hop_length = hop_length
        self.open_sessions = 0
        self.total_sessions = 0
        self._count_lock = threading.Lock()

    @contextmanager
    def session(self, signal: AudioSignal) -> Iterator[EngineSession]:
        """Open a session over *signal*; buffers are freed on every exit path."""
        session = EngineSession(signal, self.hop_length)
        with self._count_lock:
            self.open_sessions += 1
            self.total_sessions += 1
        try:
            yield session
        finally:
            session.release()
            with self._count_lock:
                self.open_sessions -= 1


def get_engine() -> RhythmEngine:
    """Get or create the singleton engine."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = RhythmEngine()
                logger.info("Rhythm engine initialized")
    return _engine


def shutdown_engine():
    """Drop the singleton; the next get_engine() builds a fresh one."""
    global _engine
    with _engine_lock:
        if _engine is not None and _engine.open_sessions:
            logger.warning(f"Shutting down engine with {_engine.open_sessions} open session(s)")
        _engine = None
