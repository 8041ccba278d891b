#!/usr/bin/env python3
"""Evaluate tempo and fermata detection against a JSON test config.

The config is a list of cases (or ``{"tests": [...]}``):

    [
      {"file": "fixtures/hymn.mp3", "expected_bpm": 72, "tolerance": 2,
       "expect_fermatas": true},
      ...
    ]

Relative paths are resolved against the config's directory. ``tolerance``
defaults to 2 BPM; ``expect_fermatas`` is only checked when present.

Usage:
    uv run python scripts/eval.py tests/fixtures/eval.json
    uv run python scripts/eval.py config.json --verbose
    uv run python scripts/eval.py config.json --limit 3
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from pathlib import Path

from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from beatgrid.analysis.engine import AnalysisEngine
from beatgrid.analysis.models import TempoType

logging.basicConfig(level=logging.WARNING, format="%(name)s %(levelname)s: %(message)s")

DEFAULT_TOLERANCE = 2.0


@dataclass
class EvalCase:
    path: Path
    expected_bpm: float
    tolerance: float = DEFAULT_TOLERANCE
    expect_fermatas: bool | None = None


@dataclass
class EvalOutcome:
    case: EvalCase
    detected_bpm: float | None = None
    fermata_count: int = 0
    bpm_ok: bool = False
    fermatas_ok: bool = True
    error: str | None = None
    seconds: float = 0.0

    @property
    def passed(self) -> bool:
        return self.error is None and self.bpm_ok and self.fermatas_ok


def load_cases(config_path: Path) -> list[EvalCase]:
    data = json.loads(config_path.read_text())
    if isinstance(data, dict):
        data = data.get("tests", [])
    cases = []
    for entry in data:
        path = Path(entry["file"])
        if not path.is_absolute():
            path = config_path.parent / path
        cases.append(EvalCase(
            path=path,
            expected_bpm=float(entry["expected_bpm"]),
            tolerance=float(entry.get("tolerance", DEFAULT_TOLERANCE)),
            expect_fermatas=entry.get("expect_fermatas"),
        ))
    return cases


def bpm_matches(detected: float, expected: float, tolerance: float) -> bool:
    return abs(detected - expected) <= tolerance


def evaluate_case(engine: AnalysisEngine, case: EvalCase) -> EvalOutcome:
    outcome = EvalOutcome(case=case)
    t0 = time.time()
    try:
        result = engine.analyze_file(str(case.path))
    except Exception as e:
        outcome.error = str(e)
        return outcome
    finally:
        outcome.seconds = time.time() - t0

    outcome.detected_bpm = result.bpm
    outcome.fermata_count = sum(1 for r in result.tempo_regions if r.type == TempoType.FERMATA)
    outcome.bpm_ok = bpm_matches(result.bpm, case.expected_bpm, case.tolerance)
    if case.expect_fermatas is not None:
        outcome.fermatas_ok = (outcome.fermata_count > 0) == case.expect_fermatas
    return outcome


def print_summary(outcomes: list[EvalOutcome], verbose: bool = False):
    w = 60
    passed = sum(1 for o in outcomes if o.passed)
    bpm_ok = sum(1 for o in outcomes if o.bpm_ok)
    checked = [o for o in outcomes if o.case.expect_fermatas is not None]
    fermata_ok = sum(1 for o in checked if o.fermatas_ok and o.error is None)

    print(flush=True)
    print(f"  {'=' * w}")
    if verbose:
        for o in outcomes:
            mark = "ok  " if o.passed else "FAIL"
            if o.error:
                detail = f"error: {o.error}"
            else:
                detail = (f"{o.detected_bpm:6.1f} BPM (expected {o.case.expected_bpm:g} "
                          f"+/- {o.case.tolerance:g}), {o.fermata_count} fermata(s)")
            print(f"  {mark} {o.case.path.name:<30s} {detail}  [{o.seconds:.1f}s]")
        print(f"  {'-' * w}")
    total = len(outcomes)
    print(f"  Passed:   {passed}/{total}")
    print(f"  BPM:      {bpm_ok}/{total}")
    if checked:
        print(f"  Fermata:  {fermata_ok}/{len(checked)}")
    print(f"  {'=' * w}")


def main():
    parser = argparse.ArgumentParser(description="Evaluate beat-grid analysis")
    parser.add_argument("config", type=Path, help="JSON test config")
    parser.add_argument("--limit", type=int, default=0, help="Only the first N cases")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    cases = load_cases(args.config)
    if args.limit:
        cases = cases[:args.limit]
    if not cases:
        print("No test cases found")
        sys.exit(1)

    engine = AnalysisEngine()
    outcomes = [evaluate_case(engine, c) for c in tqdm(cases, desc="Evaluating", unit="file")]
    print_summary(outcomes, verbose=args.verbose)
    sys.exit(0 if all(o.passed for o in outcomes) else 1)


if __name__ == "__main__":
    main()
