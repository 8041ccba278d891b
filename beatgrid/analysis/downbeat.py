"""Downbeat alignment for tracks that open with pickup notes."""

from __future__ import annotations

import bisect
import logging

from beatgrid.analysis.models import DownbeatAlignment, OnsetSet
from beatgrid.analysis.onset import OnsetPreset, detect_onsets_safe
from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)

LOOKAHEAD_BEATS = 16
HIT_TOLERANCE = 0.05  # seconds
DOWNBEAT_WEIGHT = 1.5
MIN_CONFIDENCE = 0.4
MIN_SCORE = 0.3


def alignment_score(
    candidate: float,
    interval: float,
    onsets: OnsetSet,
    beats_per_measure: int = 4,
    num_beats: int = LOOKAHEAD_BEATS,
    tolerance: float = HIT_TOLERANCE,
) -> float:
    """Score *candidate* as beat 1: 70% hit ratio, 30% onset energy.

    A grid of *num_beats* beats is projected from the candidate; each
    predicted beat with an onset within *tolerance* counts as a hit and
    contributes that onset's energy, weighted up on predicted downbeats.
    """
    times = onsets.times
    strengths = onsets.strengths or (1.0,) * len(times)
    hits = 0
    energy = 0.0
    for i in range(num_beats):
        expected = candidate + i * interval
        j = bisect.bisect_left(times, expected)
        best = None
        best_dist = float("inf")
        for k in (j - 1, j):
            if 0 <= k < len(times) and abs(times[k] - expected) < best_dist:
                best_dist = abs(times[k] - expected)
                best = k
        if best is not None and best_dist <= tolerance:
            hits += 1
            weight = DOWNBEAT_WEIGHT if i % beats_per_measure == 0 else 1.0
            energy += strengths[best] * weight

    hit_ratio = hits / num_beats
    energy_bonus = energy / (num_beats * DOWNBEAT_WEIGHT)
    return hit_ratio * 0.7 + energy_bonus * 0.3


def align_to_downbeat(
    signal: AudioSignal,
    bpm: float,
    music_start: float,
    beats_per_measure: int = 4,
    onsets: OnsetSet | None = None,
) -> DownbeatAlignment:
    """Find which onset in the first two measures is most likely beat 1.

    The original *music_start* is kept unless the best candidate reaches
    both the confidence and score floors.
    """
    interval = 60.0 / bpm
    window_start = music_start
    window_end = music_start + interval * beats_per_measure * 2

    if onsets is None:
        onsets = detect_onsets_safe(signal, OnsetPreset.DOWNBEAT)
    candidates = [t for t in onsets.times if window_start <= t <= window_end]

    if not candidates:
        return DownbeatAlignment(
            aligned_start_time=music_start,
            confidence=0.5,
            has_pickup=False,
            candidate_count=0,
            best_score=0.0,
            original_music_start=music_start,
        )

    best_time = candidates[0]
    best_score = 0.0
    span = window_end - window_start
    for t in candidates:
        score = alignment_score(t, interval, onsets, beats_per_measure)
        # Slight preference for earlier candidates
        time_bonus = 1 - (t - window_start) / span * 0.1
        adjusted = score * time_bonus
        if adjusted > best_score:
            best_score = adjusted
            best_time = t

    has_pickup = best_time > candidates[0] + interval * 0.5
    confidence = min(1.0, best_score * 1.2)
    accepted = confidence >= MIN_CONFIDENCE and best_score >= MIN_SCORE

    logger.info(f"  Downbeat: {len(candidates)} candidates, best score {best_score:.3f}, "
                f"original {music_start:.3f}s, aligned {best_time:.3f}s, "
                f"pickup={has_pickup}, accepted={accepted}")

    return DownbeatAlignment(
        aligned_start_time=best_time if accepted else music_start,
        confidence=round(confidence, 3),
        has_pickup=accepted and has_pickup,
        accepted=accepted,
        candidate_count=len(candidates),
        best_score=round(best_score, 3),
        original_music_start=music_start,
    )
