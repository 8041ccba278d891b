"""Tests for onset-alignment BPM verification."""

import numpy as np
import pytest

from beatgrid.analysis.accuracy import (
    analyze_alignment,
    calculate_alignment_score,
    format_alignment_report,
    verify_bpm_accuracy,
)
from beatgrid.analysis.models import OnsetSet
from tests.conftest import SR, make_signal


def _pulse(bpm=120.0, duration=30.0):
    interval = 60.0 / bpm
    return [round(k * interval, 4) for k in range(int(duration / interval))]


def _silence(seconds=30.0):
    return make_signal(np.zeros(int(SR * seconds), dtype=np.float32))


def test_perfect_alignment_scores_zero():
    score = calculate_alignment_score(120, _pulse(), 2.0, 28.0)
    assert score.hit_rate == 1.0
    assert score.mean_error == pytest.approx(0.0, abs=1e-6)
    assert score.score == pytest.approx(0.0, abs=1e-6)


def test_wrong_bpm_scores_worse():
    onsets = _pulse()
    assert calculate_alignment_score(118, onsets, 2.0, 28.0).score > \
        calculate_alignment_score(120, onsets, 2.0, 28.0).score


def test_no_onsets_scores_infinite():
    assert calculate_alignment_score(120, [], 2.0, 28.0).score == float("inf")


def test_analyze_alignment_finds_true_tempo():
    analysis = analyze_alignment(_pulse(), 118.0, 2.0, 28.0)
    assert analysis.best_bpm == pytest.approx(120.0, abs=0.15)
    assert len(analysis.scores) == 10
    assert "Consider adjusting BPM" in analysis.recommendation


def test_verify_accepts_correct_bpm():
    onsets = OnsetSet(times=tuple(_pulse()))
    result = verify_bpm_accuracy(_silence(), 120.0, 0.9, onsets=onsets)
    assert result.is_optimal
    assert result.suggested_bpm == pytest.approx(120.0, abs=0.15)
    assert result.summary.startswith("Detected BPM (120.0) is optimal")


def test_verify_suggests_better_bpm():
    onsets = OnsetSet(times=tuple(_pulse()))
    result = verify_bpm_accuracy(_silence(), 117.0, onsets=onsets)
    assert not result.is_optimal
    assert result.suggested_bpm == pytest.approx(120.0, abs=0.15)


def test_verify_skips_fermata_ranges():
    onsets = OnsetSet(times=tuple(_pulse()))
    result = verify_bpm_accuracy(_silence(), 120.0, onsets=onsets, skip_ranges=[(2.0, 28.0)])
    assert result.is_optimal
    assert "insufficient onsets" in result.summary


def test_report_lists_candidates():
    analysis = analyze_alignment(_pulse(), 120.0, 2.0, 28.0)
    report = format_alignment_report(analysis)
    assert "Onset Alignment Analysis" in report
    assert "<- detected" in report
    assert report.splitlines()[-1].startswith("Recommendation:")
