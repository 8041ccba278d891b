"""Tempo regions: contiguous steady / fermata / rubato spans of a track."""

from __future__ import annotations

from dataclasses import replace

from beatgrid.analysis.models import TempoRegion, TempoType

MIN_REGION = 1e-3  # seconds; shorter slivers are dropped


def region_id(index: int, tempo_type: TempoType) -> str:
    return f"{TempoType(tempo_type).value}-{index}"


def create_steady_region(
    start_time: float,
    end_time: float,
    bpm: float,
    confidence: float = 1.0,
    description: str = "",
    id: str | None = None,
) -> TempoRegion:
    return TempoRegion(
        id=id or region_id(0, TempoType.STEADY),
        start_time=start_time,
        end_time=end_time,
        type=TempoType.STEADY,
        bpm=bpm,
        confidence=confidence,
        description=description,
    )


def create_default_region(bpm: float, duration: float) -> TempoRegion:
    """One steady region over the whole track."""
    return create_steady_region(0.0, duration, bpm, id="region-0")


def region_at_time(time: float, regions) -> TempoRegion | None:
    for region in regions:
        if region.start_time <= time < region.end_time:
            return region
    return None


def effective_bpm(time: float, regions) -> float | None:
    """BPM in force at *time*; None inside fermatas, rubato, or outside all regions."""
    region = region_at_time(time, regions)
    if region is None or region.type != TempoType.STEADY:
        return None
    return region.bpm


def find_bpm_for_time(time: float, regions) -> float | None:
    """First region containing *time* that carries a BPM."""
    for region in regions:
        if region.start_time <= time < region.end_time and region.bpm is not None:
            return region.bpm
    return None


def build_tempo_regions(
    music_start: float,
    music_end: float,
    bpm: float,
    confidence: float,
    fermatas=(),
) -> tuple[TempoRegion, ...]:
    """Partition [music_start, music_end) into steady spans around the fermatas.

    Fermatas are clipped to the music range and to each other; whatever
    remains between them is steady at *bpm*. Ids are assigned in order,
    so the same inputs always give the same regions.
    """
    if music_end - music_start <= MIN_REGION:
        return ()

    spans: list[tuple[float, float, TempoType, TempoRegion | None]] = []
    cursor = music_start
    for fermata in sorted(fermatas, key=lambda r: r.start_time):
        start = max(fermata.start_time, cursor)
        end = min(fermata.end_time, music_end)
        if end - start <= MIN_REGION:
            continue
        if start - cursor > MIN_REGION:
            spans.append((cursor, start, TempoType.STEADY, None))
        else:
            start = cursor
        spans.append((start, end, TempoType.FERMATA, fermata))
        cursor = end
    if music_end - cursor > MIN_REGION:
        spans.append((cursor, music_end, TempoType.STEADY, None))
    elif spans:
        start, _, kind, source = spans[-1]
        spans[-1] = (start, music_end, kind, source)

    regions = []
    for i, (start, end, kind, source) in enumerate(spans):
        if source is None:
            regions.append(create_steady_region(
                start, end, bpm, confidence=round(confidence, 3), id=region_id(i, kind),
            ))
        else:
            regions.append(replace(source, id=region_id(i, kind), start_time=start, end_time=end))
    return tuple(regions)


def with_steady_bpm(regions, bpm: float) -> tuple[TempoRegion, ...]:
    """Copy of *regions* with every steady region set to *bpm*; others untouched."""
    return tuple(
        replace(r, bpm=bpm) if r.type == TempoType.STEADY else r
        for r in regions
    )


def regions_are_contiguous(regions, tolerance: float = 1e-6) -> bool:
    return all(
        abs(b.start_time - a.end_time) <= tolerance and a.start_time < a.end_time
        for a, b in zip(regions, regions[1:])
    )
