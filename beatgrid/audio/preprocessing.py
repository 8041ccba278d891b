"""Conditioning of a single analysis channel before tempo estimation.

The shared AudioSignal is never modified; each helper hands back a fresh
float32 buffer.
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np
from scipy.signal import butter, sosfilt

from beatgrid.audio.signal import AudioSignal

HIGH_PASS_CUTOFF = 60.0  # Hz; removes rumble below the kick drum
FILTER_ORDER = 4


@lru_cache(maxsize=8)
def _high_pass_sos(sr: int, cutoff: float, order: int) -> np.ndarray:
    return butter(N=order, Wn=cutoff, btype="high", fs=sr, output="sos")


def peak_normalize(samples: np.ndarray) -> np.ndarray:
    """Scale *samples* so the loudest one sits at +-1. Silence stays silent."""
    samples = np.asarray(samples, dtype=np.float32)
    peak = float(np.max(np.abs(samples))) if samples.size else 0.0
    if peak == 0.0:
        return samples.copy()
    return samples / np.float32(peak)


def remove_rumble(samples: np.ndarray, sr: int, cutoff: float = HIGH_PASS_CUTOFF) -> np.ndarray:
    """Butterworth high-pass at *cutoff* Hz.

    Cutoffs at or above Nyquist leave the buffer untouched.
    """
    if samples.size == 0 or cutoff >= sr / 2:
        return np.array(samples, dtype=np.float32, copy=True)
    sos = _high_pass_sos(int(sr), float(cutoff), FILTER_ORDER)
    return sosfilt(sos, samples).astype(np.float32)


def analysis_channel(
    signal: AudioSignal,
    channel: int = 0,
    cutoff: float = HIGH_PASS_CUTOFF,
) -> np.ndarray:
    """Normalized, high-passed copy of one channel of *signal*."""
    samples = peak_normalize(signal.channel_data(channel))
    return remove_rumble(samples, signal.sample_rate, cutoff)
