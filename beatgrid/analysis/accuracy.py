"""BPM accuracy diagnostics based on onset alignment.

Not part of the analysis pipeline. Given a detected BPM, nearby
candidate tempos are scored by how closely their beat grids land on
detected onsets; if a clearly different BPM fits better, the detected
value is reported as improvable.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from beatgrid.analysis.models import OnsetSet
from beatgrid.analysis.onset import OnsetPreset, detect_onsets_safe
from beatgrid.audio.signal import AudioSignal

MIN_ONSETS = 20
ANALYSIS_START = 2.0  # seconds; skips intro noise
MAX_ANALYSIS_END = 120.0


@dataclass
class AlignmentScore:
    """How well one candidate BPM lines up with the onsets."""
    bpm: float
    mean_error: float  # seconds
    median_error: float  # seconds
    hit_rate: float  # 0.0-1.0
    error_std: float  # seconds
    score: float  # lower is better


@dataclass
class AlignmentAnalysis:
    onsets: list[float]
    duration: float
    detected_bpm: float
    scores: list[AlignmentScore] = field(default_factory=list)
    best_bpm: float = 0.0
    recommendation: str = ""


@dataclass
class BpmAccuracyResult:
    detected_bpm: float
    confidence: float
    alignment: AlignmentAnalysis
    is_optimal: bool
    suggested_bpm: float
    summary: str


def calculate_alignment_score(
    bpm: float,
    onsets,
    start_time: float,
    end_time: float,
    tolerance: float | None = None,
) -> AlignmentScore:
    """Score a regular grid at *bpm* from *start_time* to *end_time*.

    score = 0.4 * mean error + 0.4 * miss rate * interval + 0.2 * error std.
    A beat is a hit within *tolerance* of an onset (default 1/8 beat).
    """
    interval = 60.0 / bpm
    hit_tol = tolerance if tolerance is not None else interval / 8
    onsets = np.sort(np.asarray(onsets, dtype=np.float64))

    n_beats = int(np.floor((end_time - start_time) / interval + 1e-9)) + 1
    if n_beats <= 0 or len(onsets) == 0:
        inf = float("inf")
        return AlignmentScore(bpm, inf, inf, 0.0, inf, inf)
    beats = start_time + interval * np.arange(n_beats)

    idx = np.clip(np.searchsorted(onsets, beats), 1, max(1, len(onsets) - 1))
    if len(onsets) == 1:
        errors = np.abs(beats - onsets[0])
    else:
        errors = np.minimum(np.abs(beats - onsets[idx - 1]), np.abs(beats - onsets[idx]))

    mean_error = float(np.mean(errors))
    median_error = float(np.sort(errors)[len(errors) // 2])
    hit_rate = float(np.mean(errors <= hit_tol))
    error_std = float(np.std(errors))
    score = mean_error * 0.4 + (1 - hit_rate) * interval * 0.4 + error_std * 0.2
    return AlignmentScore(
        bpm=round(bpm, 2),
        mean_error=mean_error,
        median_error=median_error,
        hit_rate=hit_rate,
        error_std=error_std,
        score=score,
    )


def analyze_alignment(
    onsets,
    detected_bpm: float,
    start_time: float,
    end_time: float,
    bpm_range: float = 5.0,
    bpm_step: float = 0.5,
) -> AlignmentAnalysis:
    """Score every BPM within *bpm_range* of the detected one, plus nearby round values."""
    lo = max(30.0, detected_bpm - bpm_range)
    hi = min(300.0, detected_bpm + bpm_range)
    onsets = list(onsets)

    candidates = list(np.arange(lo, hi + 1e-9, bpm_step))
    for b in (np.floor(detected_bpm) - 1, np.floor(detected_bpm),
              np.ceil(detected_bpm), np.ceil(detected_bpm) + 1):
        if lo <= b <= hi and not any(abs(c - b) < 0.1 for c in candidates):
            candidates.append(float(b))

    scores = sorted(
        (calculate_alignment_score(float(b), onsets, start_time, end_time) for b in candidates),
        key=lambda s: s.score,
    )
    best_bpm = scores[0].bpm
    diff = abs(best_bpm - detected_bpm)
    if diff < 0.3:
        recommendation = f"Detected BPM ({detected_bpm}) is optimal or very close to optimal."
    elif diff < 1:
        recommendation = (f"Detected BPM ({detected_bpm}) is close, but {best_bpm:.1f} BPM "
                          f"aligns slightly better with onsets.")
    else:
        recommendation = f"Consider adjusting BPM from {detected_bpm} to {best_bpm:.1f} for better alignment."

    detected = next((s for s in scores if abs(s.bpm - detected_bpm) < 0.1), None)
    if detected is not None:
        recommendation += (f" (Hit rate: detected={detected.hit_rate * 100:.1f}%, "
                           f"best={scores[0].hit_rate * 100:.1f}%)")

    return AlignmentAnalysis(
        onsets=onsets,
        duration=end_time - start_time,
        detected_bpm=detected_bpm,
        scores=scores[:10],
        best_bpm=best_bpm,
        recommendation=recommendation,
    )


def verify_bpm_accuracy(
    signal: AudioSignal,
    detected_bpm: float,
    confidence: float = 0.0,
    skip_ranges: list[tuple[float, float]] | None = None,
    onsets: OnsetSet | None = None,
    bpm_range: float = 5.0,
    bpm_step: float = 0.2,
) -> BpmAccuracyResult:
    """Check whether a nearby BPM explains the onsets better than *detected_bpm*.

    Onsets inside *skip_ranges* (typically fermatas) are ignored.
    """
    if onsets is None:
        onsets = detect_onsets_safe(signal, OnsetPreset.ACCURACY)
    times = [
        t for t in onsets.times
        if not any(start <= t <= end for start, end in (skip_ranges or ()))
    ]

    start = ANALYSIS_START
    end = min(signal.duration - 2, MAX_ANALYSIS_END)
    in_range = [t for t in times if start <= t <= end]

    if len(in_range) < MIN_ONSETS:
        return BpmAccuracyResult(
            detected_bpm=detected_bpm,
            confidence=confidence,
            alignment=AlignmentAnalysis(
                onsets=in_range,
                duration=max(0.0, end - start),
                detected_bpm=detected_bpm,
                best_bpm=detected_bpm,
                recommendation="Not enough onsets for reliable alignment analysis",
            ),
            is_optimal=True,
            suggested_bpm=detected_bpm,
            summary=f"Detected {detected_bpm} BPM (insufficient onsets for verification)",
        )

    alignment = analyze_alignment(in_range, detected_bpm, start, end, bpm_range, bpm_step)
    is_optimal = abs(alignment.best_bpm - detected_bpm) < 0.5
    best = alignment.scores[0]
    if is_optimal:
        summary = (f"Detected BPM ({detected_bpm}) is optimal. "
                   f"Hit rate: {best.hit_rate * 100:.1f}%, mean error: {best.mean_error * 1000:.1f}ms")
    else:
        summary = f"Better BPM found: {alignment.best_bpm:.1f} (vs detected {detected_bpm})"

    return BpmAccuracyResult(
        detected_bpm=detected_bpm,
        confidence=confidence,
        alignment=alignment,
        is_optimal=is_optimal,
        suggested_bpm=alignment.best_bpm,
        summary=summary,
    )


def format_alignment_report(analysis: AlignmentAnalysis) -> str:
    rule = "-" * 60
    lines = [
        "=== Onset Alignment Analysis ===",
        "",
        f"Onsets detected: {len(analysis.onsets)}",
        f"Analysis duration: {analysis.duration:.1f}s",
        f"Detected BPM: {analysis.detected_bpm}",
        f"Best aligned BPM: {analysis.best_bpm:.1f}",
        "",
        "Top BPM candidates (by alignment score):",
        rule,
        "BPM      Mean Err   Median Err   Hit Rate   Std Dev    Score",
        rule,
    ]
    for s in analysis.scores:
        marker = " <- detected" if abs(s.bpm - analysis.detected_bpm) < 0.1 else ""
        lines.append(
            f"{s.bpm:6.1f}   {s.mean_error * 1000:7.1f}ms  {s.median_error * 1000:8.1f}ms  "
            f"{s.hit_rate * 100:7.1f}%  {s.error_std * 1000:7.1f}ms  {s.score:7.4f}{marker}"
        )
    lines += [rule, "", f"Recommendation: {analysis.recommendation}"]
    return "\n".join(lines)
