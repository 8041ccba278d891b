"""Energy-based onset detection with per-consumer presets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

import librosa
import numpy as np

from beatgrid.analysis.errors import OnsetDetectionFailure
from beatgrid.analysis.models import OnsetSet
from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)


class OnsetPreset(str, Enum):
    ANALYSIS = "analysis"
    SNAPPING = "snapping"
    FERMATA = "fermata"
    ACCURACY = "accuracy"
    CORE = "core"
    DOWNBEAT = "downbeat"


@dataclass(frozen=True)
class OnsetParams:
    frame_size: int = 1024
    hop_size: int = 512
    threshold: float = 0.02  # absolute rise of normalized energy
    min_interval: float = 0.05  # seconds between kept onsets
    local_max_window: int = 2  # frames on each side
    use_relative_increase: bool = True
    relative_increase_threshold: float = 0.3


PRESETS: dict[OnsetPreset, OnsetParams] = {
    OnsetPreset.ANALYSIS: OnsetParams(),
    OnsetPreset.SNAPPING: OnsetParams(),
    # Smaller frames resolve the edges of quiet passages better.
    OnsetPreset.FERMATA: OnsetParams(frame_size=512, hop_size=256, min_interval=0.1),
    OnsetPreset.ACCURACY: OnsetParams(frame_size=512, hop_size=256, min_interval=0.1),
    OnsetPreset.CORE: OnsetParams(
        threshold=0.015, local_max_window=3, use_relative_increase=False,
    ),
    OnsetPreset.DOWNBEAT: OnsetParams(min_interval=0.08, use_relative_increase=False),
}


def onset_params(preset: OnsetPreset | str, **overrides) -> OnsetParams:
    """Look up a preset and apply keyword overrides."""
    params = PRESETS[OnsetPreset(preset)]
    return replace(params, **overrides) if overrides else params


def onset_preset_for_tempo(bpm: float) -> OnsetPreset:
    """Faster music needs the coarser preset; slow music the finer one."""
    if bpm >= 110:
        return OnsetPreset.ANALYSIS
    return OnsetPreset.FERMATA


def _frame_energy(samples: np.ndarray, params: OnsetParams) -> np.ndarray:
    if not np.all(np.isfinite(samples)):
        raise OnsetDetectionFailure("signal contains non-finite samples")
    try:
        rms = librosa.feature.rms(
            y=samples,
            frame_length=params.frame_size,
            hop_length=params.hop_size,
            center=True,
            pad_mode="constant",
        )[0]
    except librosa.util.exceptions.ParameterError as e:
        raise OnsetDetectionFailure(str(e)) from e
    return rms


def _rising_local_maxima(env: np.ndarray, params: OnsetParams) -> np.ndarray:
    """Indices of frames that rise sharply and dominate their neighbourhood.

    The rise is measured from the quietest of the preceding
    ``local_max_window`` frames, so an attack whose energy is split over two
    nearly equal frames still counts. A frame must be strictly greater than
    the frames before it and at least as large as the frames after it, so a
    flat top is reported once, at its first frame.
    """
    w = params.local_max_window
    n = len(env)
    padded = np.pad(env, w)
    cur = padded[w:w + n]
    before = np.stack([padded[w - j:w - j + n] for j in range(1, w + 1)])
    base = before.min(axis=0)

    increase = cur - base
    rising = increase >= params.threshold
    if params.use_relative_increase:
        relative = np.where(base > 0.01, increase / np.maximum(base, 1e-12), increase)
        rising |= relative >= params.relative_increase_threshold

    is_max = np.all(before < cur, axis=0)
    for j in range(1, w + 1):
        is_max &= padded[w + j:w + j + n] <= cur

    return np.flatnonzero(rising & is_max)


def _attack_times(env: np.ndarray, peaks: np.ndarray, params: OnsetParams, sr: int) -> np.ndarray:
    """Attack time of each peak frame, placed inside its rising edge.

    Frames are centred, so an attack that first shows up in frame ``b + 1``
    after a quiet frame ``b`` lies within one hop after frame ``b``'s right
    edge. The share of the full rise already reached by frame ``b + 1``
    locates it inside that hop: a frame that caught nearly all of the
    attack means it started early in the hop.
    """
    w = params.local_max_window
    padded = np.pad(env, (w, 0))
    times = np.empty(len(peaks))
    for i, k in enumerate(peaks):
        window = padded[k:k + w]  # frames k - w .. k - 1
        b = k - 1 - int(np.argmin(window[::-1]))  # latest quietest frame
        low = padded[b + w]
        first = env[b + 1] if b + 1 < k else env[k]
        share = (first - low) / (env[k] - low)
        start = b * params.hop_size + params.frame_size / 2 + params.hop_size * (1.0 - share)
        times[i] = max(0.0, start / sr)
    return times


def detect_onsets(
    signal: AudioSignal,
    preset: OnsetPreset | str = OnsetPreset.ANALYSIS,
    **overrides,
) -> OnsetSet:
    """Detect note attacks in the first channel of *signal*.

    Frame-wise RMS energy is normalized to its peak, then frames that both
    rise above the preset threshold and form a local maximum are kept,
    enforcing the preset's minimum spacing between consecutive onsets.
    Each onset is reported at its attack, not at the frame where the
    energy peaks.

    Silent or too-short input returns an empty OnsetSet. Raises
    OnsetDetectionFailure if the energy cannot be computed.
    """
    preset = OnsetPreset(preset)
    params = onset_params(preset, **overrides)
    samples = signal.channel_data(0)

    if len(samples) < params.frame_size:
        return OnsetSet(times=(), strengths=(), preset=preset.value)

    rms = _frame_energy(samples, params)
    peak = float(rms.max()) if rms.size else 0.0
    if peak <= 1e-10:
        return OnsetSet(times=(), strengths=(), preset=preset.value)

    env = rms / peak
    frames = _rising_local_maxima(env, params)
    frame_times = _attack_times(env, frames, params, signal.sample_rate)

    times: list[float] = []
    strengths: list[float] = []
    for frame, t in zip(frames, frame_times):
        if times and t - times[-1] < params.min_interval:
            continue
        times.append(float(t))
        strengths.append(float(env[frame]))

    return OnsetSet(times=tuple(times), strengths=tuple(strengths), preset=preset.value)


def detect_onsets_safe(
    signal: AudioSignal,
    preset: OnsetPreset | str,
    warnings: list[str] | None = None,
) -> OnsetSet:
    """detect_onsets, treating a detection failure as "no onsets"."""
    try:
        return detect_onsets(signal, preset)
    except OnsetDetectionFailure as e:
        logger.warning(f"Onset detection ({OnsetPreset(preset).value}) failed: {e}")
        if warnings is not None:
            warnings.append(f"Onset detection failed: {e}")
        return OnsetSet(times=(), strengths=(), preset=OnsetPreset(preset).value)
