"""Gap-based fermata detection.

Long inter-onset intervals are found in a single pass over the onsets,
then validated with plain RMS energy checks. All tempo-dependent
thresholds live in TEMPO_BANDS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from pydantic import BaseModel

from beatgrid.analysis.errors import OnsetDetectionFailure
from beatgrid.analysis.models import FermataDetection, GapCandidate, OnsetSet, TempoRegion, TempoType
from beatgrid.analysis.onset import detect_onsets, onset_preset_for_tempo
from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)

FAST_BPM = 120
SLOW_BPM = 85

EARLY_INTRO_LIMIT = 25.0  # seconds
CONTEXT_WINDOW = 0.6
CONTEXT_MARGIN = 0.1
MIN_CONTEXT_ENERGY = 0.02


class FermataConfig(BaseModel):
    """Thresholds for accepting a gap as a fermata."""

    min_gap_beats: float = 2.5
    min_gap_seconds: float = 2.0
    min_duration: float = 0.4  # seconds
    max_duration: float = 8.0  # seconds
    max_energy: float = 0.25  # RMS inside the gap
    music_end_time: float | None = None
    recover_early_intro: bool = True  # slow tracks only

    model_config = {"frozen": True}


@dataclass(frozen=True)
class TempoBand:
    """Threshold policy for one tempo range.

    Floors are combined with the caller's config using max() and the
    energy ceiling with min(), so a band only ever tightens the config.
    """
    name: str
    min_gap_beats: float
    min_gap_seconds: float
    min_duration: float = 0.0
    max_energy: float = 1.0
    require_both: bool = False  # AND the beat and second thresholds
    merge_seconds: float = 0.8
    merge_beats: float = 0.0
    context_ratio: float = 0.65
    intro_context_ratio: float | None = None  # looser ratio for long early gaps


TEMPO_BANDS: dict[str, TempoBand] = {
    # Long notes are ordinary at fast tempos, so both thresholds must hold.
    "fast": TempoBand(
        "fast", min_gap_beats=3.5, min_gap_seconds=2.5, min_duration=0.9,
        max_energy=0.18, require_both=True, merge_seconds=0.6,
    ),
    "moderate": TempoBand("moderate", min_gap_beats=2.8, min_gap_seconds=2.2),
    "slow": TempoBand(
        "slow", min_gap_beats=3.0, min_gap_seconds=2.3, min_duration=0.5,
        max_energy=0.22, merge_beats=3.0, intro_context_ratio=0.8,
    ),
}


def tempo_band(bpm: float) -> TempoBand:
    if bpm >= FAST_BPM:
        return TEMPO_BANDS["fast"]
    if bpm <= SLOW_BPM:
        return TEMPO_BANDS["slow"]
    return TEMPO_BANDS["moderate"]


def tighten_config(bpm: float, config: FermataConfig) -> FermataConfig:
    band = tempo_band(bpm)
    return config.model_copy(update={
        "min_gap_beats": max(config.min_gap_beats, band.min_gap_beats),
        "min_gap_seconds": max(config.min_gap_seconds, band.min_gap_seconds),
        "min_duration": max(config.min_duration, band.min_duration),
        "max_energy": min(config.max_energy, band.max_energy),
    })


def merge_threshold(bpm: float) -> float:
    band = tempo_band(bpm)
    return max(band.merge_seconds, band.merge_beats * 60.0 / bpm)


def context_ratio_threshold(bpm: float, gap_start: float, gap_duration: float) -> float:
    band = tempo_band(bpm)
    if band.intro_context_ratio is not None and gap_start <= 20 and gap_duration >= 2.5:
        return band.intro_context_ratio
    return band.context_ratio


@dataclass(frozen=True)
class FermataGap:
    start: float  # onset before the gap
    end: float  # onset after the gap
    duration: float
    gap_beats: float


def find_gap_candidates(
    onset_times,
    bpm: float,
    min_gap_beats: float,
    min_gap_seconds: float,
    require_both: bool = False,
) -> list[FermataGap]:
    """Consecutive onset pairs whose spacing is abnormally long.

    With *require_both* the gap must pass the beat AND the seconds
    threshold; otherwise either one suffices.
    """
    interval = 60.0 / bpm
    gaps = []
    for prev, nxt in zip(onset_times, onset_times[1:]):
        duration = nxt - prev
        gap_beats = duration / interval
        by_seconds = duration >= min_gap_seconds
        by_beats = gap_beats >= min_gap_beats
        if (by_seconds and by_beats) if require_both else (by_seconds or by_beats):
            gaps.append(FermataGap(start=prev, end=nxt, duration=duration, gap_beats=gap_beats))
    return gaps


def detect_gaps_for_resync(onsets: OnsetSet, bpm: float, min_gap_beats: float = 1.5) -> list[GapCandidate]:
    """Looser gap scan: every pause after which the grid may need shifting."""
    fast = bpm >= FAST_BPM
    gaps = find_gap_candidates(
        onsets.times,
        bpm,
        min_gap_beats=max(min_gap_beats, 2.5) if fast else min_gap_beats,
        min_gap_seconds=2.5 if fast else 2.0,
        require_both=fast,
    )
    return [GapCandidate(gap_start=g.start, gap_end=g.end) for g in gaps]


def window_rms(signal: AudioSignal, start: float, end: float) -> float:
    data = signal.channel_data(0)
    sr = signal.sample_rate
    lo = max(0, int(np.floor(start * sr)))
    hi = min(len(data), int(np.floor(end * sr)))
    if hi <= lo:
        return 0.0
    chunk = data[lo:hi].astype(np.float64)
    return float(np.sqrt(np.mean(chunk ** 2)))


def context_energy(signal: AudioSignal, gap_start: float, gap_end: float) -> tuple[float, float, float]:
    """(gap_rms, context_rms, ratio) where context is the louder neighbour window.

    The gap itself is measured without its outer CONTEXT_MARGIN on both
    sides, so the decay of the last note and the attack of the resuming one
    do not count as sound inside the pause.
    """
    duration = signal.duration
    pre_start = max(0.0, gap_start - CONTEXT_WINDOW)
    pre_end = max(pre_start, gap_start - CONTEXT_MARGIN)
    post_start = min(duration, gap_end + CONTEXT_MARGIN)
    post_end = min(duration, gap_end + CONTEXT_WINDOW)

    inner_start, inner_end = gap_start + CONTEXT_MARGIN, gap_end - CONTEXT_MARGIN
    if inner_end <= inner_start:
        inner_start, inner_end = gap_start, gap_end
    gap = window_rms(signal, inner_start, inner_end)
    pre = window_rms(signal, pre_start, pre_end) if pre_end > pre_start else 0.0
    post = window_rms(signal, post_start, post_end) if post_end > post_start else 0.0
    context = max(pre, post)
    if context <= 0.001:
        return gap, context, 0.0
    return gap, context, gap / context


def local_onset_density(onset_times, gap_start: float, gap_end: float, window: float = 8.0) -> float:
    """Onsets per second in the busier of the windows before and after the gap."""
    if not onset_times:
        return 0.0
    pre = sum(1 for t in onset_times if max(0.0, gap_start - window) <= t < gap_start)
    post = sum(1 for t in onset_times if gap_end < t <= gap_end + window)
    return max(pre, post) / window


def _rejection_reason(
    gap: FermataGap,
    signal: AudioSignal,
    bpm: float,
    onset_times,
    cfg: FermataConfig,
    music_end: float,
) -> str | None:
    if gap.start >= music_end - 1:
        return f"starts after music end ({music_end:.1f}s)"
    if gap.end >= music_end - 0.5:
        return f"extends past music end ({music_end:.1f}s)"

    slow = bpm <= SLOW_BPM
    if slow and gap.start > EARLY_INTRO_LIMIT:
        density = local_onset_density(onset_times, gap.start, gap.end)
        if density > 3.2 and gap.duration < 6.5:
            return f"dense onsets around gap ({density:.2f} onsets/sec)"

    if not cfg.min_duration <= gap.duration <= cfg.max_duration:
        return f"duration {gap.duration:.2f}s outside [{cfg.min_duration}, {cfg.max_duration}]"

    gap_energy, ctx_energy, ratio = context_energy(signal, gap.start, gap.end)
    if gap_energy > cfg.max_energy:
        return f"energy {gap_energy:.3f} > max {cfg.max_energy}"

    threshold = context_ratio_threshold(bpm, gap.start, gap.duration)
    if ctx_energy > MIN_CONTEXT_ENERGY and ratio > threshold:
        return f"not quieter than context (ratio {ratio:.2f})"

    if slow and gap.start > 30 and gap.end < signal.duration - 30:
        score = gap.duration * (1 - ratio)
        if score < 3.0:
            return f"weak mid-section fermata score ({score:.2f})"
    return None


def find_early_intro_fermata(
    bpm: float,
    gaps: list[FermataGap],
    validated: list[FermataGap],
    signal: AudioSignal,
    cfg: FermataConfig,
) -> FermataGap | None:
    """Second chance for one long, quiet intro pause in a slow track."""
    if bpm > SLOW_BPM:
        return None
    if any(g.start <= EARLY_INTRO_LIMIT for g in validated):
        return None

    best = None
    for gap in gaps:
        if gap.start > EARLY_INTRO_LIMIT:
            continue
        if gap.duration < max(cfg.min_duration, 2.2):
            continue
        if gap.gap_beats < max(cfg.min_gap_beats - 0.5, 2.5):
            continue
        gap_energy, ctx_energy, ratio = context_energy(signal, gap.start, gap.end)
        if gap_energy > cfg.max_energy * 1.1:
            continue
        threshold = max(context_ratio_threshold(bpm, gap.start, gap.duration), 0.85)
        if ctx_energy > MIN_CONTEXT_ENERGY and ratio > threshold:
            continue
        if best is None or gap.duration > best.duration:
            best = gap
    return best


def format_time(seconds: float) -> str:
    return f"{int(seconds // 60)}:{int(seconds % 60):02d}"


def merge_fermatas(fermatas: list[TempoRegion], threshold: float = 0.5) -> list[TempoRegion]:
    """Join fermatas separated by no more than *threshold* seconds."""
    if len(fermatas) <= 1:
        return list(fermatas)

    ordered = sorted(fermatas, key=lambda r: r.start_time)
    merged = []
    current = ordered[0]
    for nxt in ordered[1:]:
        if nxt.start_time - current.end_time <= threshold:
            end = max(current.end_time, nxt.end_time)
            current = TempoRegion(
                id=current.id,
                start_time=current.start_time,
                end_time=end,
                type=TempoType.FERMATA,
                bpm=None,
                confidence=max(current.confidence, nxt.confidence),
                description=f"Fermata (~{end - current.start_time:.1f}s)",
            )
        else:
            merged.append(current)
            current = nxt
    merged.append(current)
    return merged


def detect_fermatas(
    signal: AudioSignal,
    bpm: float,
    onsets: OnsetSet | None = None,
    config: FermataConfig | None = None,
) -> FermataDetection:
    """Find held notes and pauses from gaps between onsets.

    Each validated gap becomes a fermata region that begins where the
    first missing beat was due and ends at the onset where playing
    resumes. Onset-detection failure yields an empty detection with a
    warning.
    """
    cfg = tighten_config(bpm, config or FermataConfig())
    band = tempo_band(bpm)
    interval = 60.0 / bpm
    warnings: list[str] = []

    if onsets is None:
        try:
            onsets = detect_onsets(signal, onset_preset_for_tempo(bpm))
        except OnsetDetectionFailure as e:
            logger.warning(f"Fermata onset detection failed: {e}")
            return FermataDetection(warnings=(f"Onset detection failed: {e}",))

    onset_times = onsets.times
    if len(onset_times) < 2:
        return FermataDetection(warnings=("Not enough onsets for fermata detection",))

    gaps = find_gap_candidates(
        onset_times, bpm, cfg.min_gap_beats, cfg.min_gap_seconds, band.require_both,
    )
    join = "AND" if band.require_both else "OR"
    logger.info(f"  Found {len(gaps)} gap candidates "
                f"(threshold: {cfg.min_gap_beats} beats {join} {cfg.min_gap_seconds}s)")
    if not gaps:
        return FermataDetection()

    music_end = cfg.music_end_time if cfg.music_end_time is not None else signal.duration
    validated: list[FermataGap] = []
    for gap in gaps:
        reason = _rejection_reason(gap, signal, bpm, onset_times, cfg, music_end)
        if reason:
            logger.debug(f"Gap {gap.start:.2f}s rejected: {reason}")
            continue
        logger.info(f"  Gap {gap.start:.2f}s -> {gap.end:.2f}s validated")
        validated.append(gap)

    intro = find_early_intro_fermata(bpm, gaps, validated, signal, cfg) if cfg.recover_early_intro else None
    if intro is not None:
        logger.info(f"  Early intro fermata added: {intro.start:.2f}s -> {intro.end:.2f}s")
        validated.append(intro)
    validated.sort(key=lambda g: g.start)

    warnings.append(f"Found {len(gaps)} gap(s), validated {len(validated)}")

    fermatas = [
        TempoRegion(
            id=f"fermata-{i}",
            start_time=min(gap.start + interval, gap.end),
            end_time=gap.end,
            type=TempoType.FERMATA,
            bpm=None,
            confidence=round(max(0.0, min(1.0, 0.5 + (gap.gap_beats - cfg.min_gap_beats) * 0.1)), 3),
            description=(f"Fermata at {format_time(gap.start)} "
                         f"(~{gap.gap_beats:.1f} beats, {gap.duration:.1f}s)"),
        )
        for i, gap in enumerate(validated)
    ]
    merged = merge_fermatas(fermatas, merge_threshold(bpm))

    return FermataDetection(
        fermatas=tuple(merged),
        gaps=tuple(GapCandidate(gap_start=g.start, gap_end=g.end) for g in validated),
        gaps_found=len(gaps),
        gaps_validated=len(validated),
        warnings=tuple(warnings),
    )
