"""Beat grid construction: merging estimator ticks, gap filling and snapping."""

from __future__ import annotations

import bisect
import math

import numpy as np

from beatgrid.analysis.models import TempoEstimate

CLUSTER_TOLERANCE = 0.12  # fraction of a beat interval
MIN_SOURCE_FRACTION = 0.4
HIGH_CONFIDENCE_CLUSTER = 0.8


def beat_interval(bpm: float) -> float:
    if bpm <= 0 or not math.isfinite(bpm):
        raise ValueError(f"Invalid BPM: {bpm}")
    return 60.0 / bpm


def regular_grid(bpm: float, duration: float, offset: float = 0.0) -> tuple[float, ...]:
    """Evenly spaced beats offset, offset + 60/bpm, ... strictly before *duration*.

    Each beat is computed from its index rather than by accumulation, so
    identical arguments always give identical grids.
    """
    interval = beat_interval(bpm)
    if duration <= offset:
        return ()
    n = int(math.ceil((duration - offset) / interval))
    times = offset + interval * np.arange(n + 1)
    return tuple(float(t) for t in times if t < duration)


def regenerate_beats(bpm: float, duration: float, offset: float = 0.0) -> tuple[float, ...]:
    """Grid for a manually chosen tempo; same as regular_grid."""
    return regular_grid(bpm, duration, offset)


def earliest_grid_start(anchor: float, interval: float, floor_time: float = 0.0) -> float:
    """Step back from *anchor* by whole beats while staying at or after *floor_time*."""
    floor_time = max(0.0, floor_time)
    if anchor <= floor_time:
        return anchor
    steps = math.floor((anchor - floor_time) / interval + 1e-9)
    return anchor - steps * interval


def fill_beat_gaps(beats: list[float], interval: float, duration: float) -> tuple[float, ...]:
    """Insert evenly spaced beats into gaps and extend the grid to *duration*.

    A gap that rounds to more than one beat interval (about 1.5 intervals
    or wider) receives round(gap / interval) - 1 synthetic beats.
    """
    if len(beats) < 2:
        start = beats[0] if beats else 0.0
        return regular_grid(60.0 / interval, duration, start)

    filled = [beats[0]]
    for prev, nxt in zip(beats, beats[1:]):
        gap = nxt - prev
        expected = int(round(gap / interval))
        if expected > 1:
            step = gap / expected
            filled.extend(prev + j * step for j in range(1, expected))
        filled.append(nxt)

    while filled[-1] + interval < duration:
        filled.append(filled[-1] + interval)
    return tuple(filled)


def merge_beat_grids(
    estimates: list[TempoEstimate] | tuple[TempoEstimate, ...],
    bpm: float,
    duration: float,
) -> tuple[float, ...]:
    """Merge the beat ticks of several estimators into one grid.

    Ticks closer than 12% of a beat interval are clustered at their
    confidence-weighted mean. A cluster survives if enough distinct
    estimators contributed to it or if its combined confidence is high.
    With no ticks at all the grid is derived from *bpm* alone.
    """
    interval = beat_interval(bpm)
    tolerance = interval * CLUSTER_TOLERANCE

    ticks = sorted(
        (t, est.algorithm, est.confidence)
        for est in estimates
        for t in est.beats
    )
    if not ticks:
        return regular_grid(bpm, duration, 0.0)

    clusters: list[dict] = []
    for time, source, confidence in ticks:
        last = clusters[-1] if clusters else None
        if last is not None and abs(last["time"] - time) < tolerance:
            weight = last["confidence"] + confidence
            if weight > 0:
                last["time"] = (last["time"] * last["confidence"] + time * confidence) / weight
            last["confidence"] = weight
            last["sources"].add(source)
        else:
            clusters.append({"time": time, "confidence": confidence, "sources": {source}})

    min_sources = max(1, int(len(estimates) * MIN_SOURCE_FRACTION))
    kept = sorted(
        c["time"] for c in clusters
        if len(c["sources"]) >= min_sources or c["confidence"] > HIGH_CONFIDENCE_CLUSTER
    )
    deduped: list[float] = []
    for t in kept:
        if not deduped or t - deduped[-1] > 1e-6:
            deduped.append(t)
    return fill_beat_gaps(deduped, interval, duration)


def nearest_onset(time: float, onset_times: list[float] | tuple[float, ...], max_shift: float) -> float | None:
    """Closest onset strictly within *max_shift* of *time*, if any."""
    if not onset_times:
        return None
    i = bisect.bisect_left(onset_times, time)
    best = None
    best_dist = max_shift
    for j in (i - 1, i):
        if 0 <= j < len(onset_times):
            dist = abs(onset_times[j] - time)
            if dist < best_dist:
                best_dist = dist
                best = onset_times[j]
    return best


def grid_phase_offset(
    beats: tuple[float, ...] | list[float],
    onset_times: tuple[float, ...] | list[float],
    max_offset: float,
    min_matches: int = 4,
) -> float:
    """Median signed distance from beats to their nearest onsets.

    Estimator ticks trail the attacks by a roughly constant latency; this
    measures it. Only beats with an onset within *max_offset* count, and
    at least half of the beats (and *min_matches*) must have one, else 0.
    """
    onset_times = sorted(onset_times)
    offsets = []
    for beat in beats:
        onset = nearest_onset(beat, onset_times, max_offset)
        if onset is not None:
            offsets.append(onset - beat)
    if len(offsets) < max(min_matches, len(beats) / 2):
        return 0.0
    return float(np.median(offsets))


def shift_grid(beats: tuple[float, ...] | list[float], offset: float) -> tuple[float, ...]:
    """Move every beat by *offset*; beats pushed before zero land on zero."""
    shifted: list[float] = []
    for beat in beats:
        t = max(0.0, beat + offset)
        if not shifted or t > shifted[-1]:
            shifted.append(t)
    return tuple(shifted)


def snap_beats_to_onsets(
    beats: tuple[float, ...] | list[float],
    onset_times: tuple[float, ...] | list[float],
    max_shift: float = 0.05,
) -> tuple[float, ...]:
    """Move each beat onto the nearest onset within *max_shift* seconds.

    A beat whose snapped position would not come after the previous beat
    keeps its own position (or is dropped if that also collides), so the
    grid stays strictly increasing.
    """
    onset_times = sorted(onset_times)
    snapped: list[float] = []
    for beat in beats:
        onset = nearest_onset(beat, onset_times, max_shift)
        candidate = onset if onset is not None else beat
        if snapped and candidate <= snapped[-1]:
            candidate = beat
            if candidate <= snapped[-1]:
                continue
        snapped.append(float(candidate))
    return tuple(snapped)


def is_strictly_increasing(beats) -> bool:
    return all(b > a for a, b in zip(beats, beats[1:]))
