"""Shift the beat grid after pauses so later beats stay on the music."""

from __future__ import annotations

import logging

from beatgrid.analysis.models import GapCandidate

logger = logging.getLogger(__name__)


def resync_beats(
    beats,
    gaps: list[GapCandidate] | tuple[GapCandidate, ...],
    bpm: float,
    min_shift: float = 0.1,
    duration: float | None = None,
) -> tuple[float, ...]:
    """Re-anchor the grid at the end of every gap.

    Gaps are handled in chronological order. For each one the first beat
    more than half an interval after ``gap_start`` is moved onto
    ``gap_end`` and every later beat moves by the same amount, so shifts
    accumulate across gaps. Shifts under *min_shift* seconds are ignored.
    Beats pushed to or past *duration* are dropped. With no gaps the input
    is returned unchanged.
    """
    result = list(beats)
    if not gaps or not result:
        return tuple(result)

    half_interval = 30.0 / bpm
    for gap in sorted(gaps, key=lambda g: g.gap_start):
        idx = next(
            (i for i, b in enumerate(result) if b > gap.gap_start + half_interval),
            None,
        )
        if idx is None:
            continue
        shift = gap.gap_end - result[idx]
        if abs(shift) < min_shift:
            continue
        logger.info(f"  Resync at {gap.gap_end:.2f}s: shifting {len(result) - idx} beats "
                    f"by {shift:+.3f}s")
        result[idx:] = [b + shift for b in result[idx:]]
        # A backward shift can overlap beats before the gap
        if idx > 0 and result[idx] <= result[idx - 1]:
            head = [b for b in result[:idx] if b < result[idx]]
            result = head + result[idx:]

    if duration is not None:
        result = [b for b in result if b < duration]
    return tuple(result)

