"""Locate where musical content starts and ends."""

import numpy as np

from beatgrid.audio.signal import AudioSignal

WINDOW_SECONDS = 0.1
HOP_SECONDS = 0.025
RELATIVE_THRESHOLD = 0.05  # fraction of the loudest window


def _sliding_rms(signal: AudioSignal) -> tuple[np.ndarray, int, int]:
    samples = signal.channel_data(0).astype(np.float64)
    window = max(1, int(signal.sample_rate * WINDOW_SECONDS))
    hop = max(1, int(signal.sample_rate * HOP_SECONDS))
    if len(samples) <= window:
        return np.zeros(0), window, hop
    power = np.concatenate(([0.0], np.cumsum(samples ** 2)))
    starts = np.arange(0, len(samples) - window, hop)
    mean_square = (power[starts + window] - power[starts]) / window
    return np.sqrt(np.maximum(mean_square, 0.0)), window, hop


def detect_music_boundaries(signal: AudioSignal) -> tuple[float, float]:
    """Return (music_start, music_end) in seconds.

    Both ends are found by thresholding 100ms RMS windows at 5% of the
    loudest window. A silent signal spans the whole duration.
    """
    energies, window, hop = _sliding_rms(signal)
    if energies.size == 0:
        return 0.0, signal.duration

    threshold = max(float(energies.max()), 0.0001) * RELATIVE_THRESHOLD
    active = np.flatnonzero(energies > threshold)
    if active.size == 0:
        return 0.0, signal.duration

    start = active[0] * hop / signal.sample_rate
    end = min(signal.duration, (active[-1] * hop + window) / signal.sample_rate)
    return round(float(start), 3), round(float(end), 3)


def detect_music_start(signal: AudioSignal) -> float:
    return detect_music_boundaries(signal)[0]


def detect_music_end(signal: AudioSignal) -> float:
    return detect_music_boundaries(signal)[1]
