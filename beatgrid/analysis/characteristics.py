"""Loudness and dynamic-range checks that bound detection confidence."""

import numpy as np

from beatgrid.analysis.models import AudioCharacteristics
from beatgrid.audio.signal import AudioSignal

VERY_QUIET_RMS = 0.03
QUIET_RMS = 0.06
FULL_SCALE_RMS = 0.15
MIN_DYNAMIC_RANGE = 0.2


def _window_rms(samples: np.ndarray, window: int) -> np.ndarray:
    n_windows = len(samples) // window
    if n_windows == 0:
        return np.zeros(0, dtype=np.float64)
    frames = samples[:n_windows * window].astype(np.float64).reshape(n_windows, window)
    return np.sqrt(np.mean(frames ** 2, axis=1))


def analyze_characteristics(signal: AudioSignal) -> AudioCharacteristics:
    """Score overall loudness and dynamics of the first channel.

    Quiet or flat (heavily compressed, ambient) audio is flagged as
    difficult, which later caps the reported confidence.
    """
    samples = signal.channel_data(0)
    warnings = []
    is_difficult = False

    overall_rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2))) if samples.size else 0.0

    energy_score = min(1.0, overall_rms / FULL_SCALE_RMS)
    if overall_rms < VERY_QUIET_RMS:
        warnings.append("Very quiet audio - detection may be less accurate")
        is_difficult = True
        energy_score = 0.3
    elif overall_rms < QUIET_RMS:
        warnings.append("Quiet audio - consider increasing volume")
        is_difficult = True
        energy_score = 0.5

    # 50ms windows
    rms_values = np.sort(_window_rms(samples, max(1, int(signal.sample_rate * 0.05))))
    dynamic_range = 0.0
    if rms_values.size:
        low = float(rms_values[int(len(rms_values) * 0.1)])
        high = float(rms_values[min(len(rms_values) - 1, int(len(rms_values) * 0.9))])
        if high > 0.001:
            dynamic_range = (high - low) / high

    if dynamic_range < MIN_DYNAMIC_RANGE:
        warnings.append("Low dynamic range - may be ambient or heavily compressed")
        is_difficult = True

    return AudioCharacteristics(
        overall_rms=round(overall_rms, 4),
        energy_score=round(energy_score, 3),
        dynamic_range=round(dynamic_range, 3),
        is_difficult=is_difficult,
        warnings=tuple(warnings),
    )
