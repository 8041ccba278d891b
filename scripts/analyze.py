#!/usr/bin/env python3
"""Analyze one audio file and print BPM, beats and tempo regions.

Usage:
    uv run python scripts/analyze.py song.mp3
    uv run python scripts/analyze.py song.mp3 --bpm 96      # manual override
    uv run python scripts/analyze.py song.mp3 --json
    uv run python scripts/analyze.py song.mp3 --verify      # onset alignment report
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from beatgrid.analysis.accuracy import format_alignment_report, verify_bpm_accuracy
from beatgrid.analysis.engine import AnalysisEngine
from beatgrid.analysis.models import TempoType
from beatgrid.api.schemas import AnalysisResponse
from beatgrid.audio.loader import load_audio
from beatgrid.config import settings

logging.basicConfig(level=logging.WARNING, format="%(name)s %(levelname)s: %(message)s")


def print_result(result, max_beats: int = 16):
    print(f"  BPM:        {result.bpm} ({result.confidence_level.value}, "
          f"confidence {result.confidence:.2f}, agreement {result.agreement.value})")
    print(f"  Music:      {result.music_start_time:.2f}s - {result.music_end_time:.2f}s "
          f"of {result.duration:.1f}s")
    print(f"  Offset:     {result.offset:.3f}s")
    shown = ", ".join(f"{b:.2f}" for b in result.beats[:max_beats])
    more = f" ... (+{len(result.beats) - max_beats})" if len(result.beats) > max_beats else ""
    print(f"  Beats:      {shown}{more}")
    if result.tempo_regions:
        print("  Regions:")
        for r in result.tempo_regions:
            tempo = f"{r.bpm} BPM" if r.type == TempoType.STEADY else r.description
            print(f"    {r.start_time:7.2f}s - {r.end_time:7.2f}s  {r.type.value:<8s} {tempo}")
    for w in result.warnings:
        print(f"  ! {w}")


def main():
    parser = argparse.ArgumentParser(description="Beat grid analysis for one file")
    parser.add_argument("file", type=Path)
    parser.add_argument("--bpm", type=float, default=None, help="Override the detected BPM")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--verify", action="store_true", help="Print an onset alignment report")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger("beatgrid").setLevel(logging.INFO)
    if not args.file.exists():
        parser.error(f"File not found: {args.file}")

    signal = load_audio(str(args.file), sr=settings.sample_rate, mono=settings.mono)
    engine = AnalysisEngine()
    result = engine.analyze_audio(signal)
    if args.bpm is not None:
        try:
            result = engine.apply_manual_bpm(result, args.bpm)
        except ValueError as e:
            parser.error(str(e))

    if args.json:
        print(json.dumps(AnalysisResponse.from_result(result).model_dump(mode="json"), indent=2))
    else:
        print(f"\n{args.file.name}")
        print_result(result)

    if args.verify:
        skip = [(r.start_time, r.end_time) for r in result.tempo_regions if r.type == TempoType.FERMATA]
        accuracy = verify_bpm_accuracy(signal, result.bpm, result.confidence, skip_ranges=skip)
        print()
        print(format_alignment_report(accuracy.alignment))
        print(f"\n{accuracy.summary}")


if __name__ == "__main__":
    main()
