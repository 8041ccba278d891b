"""Integration tests for the analysis engine."""

import asyncio
import math

import numpy as np
import pytest
import soundfile as sf

from beatgrid.analysis.beat_grid import is_strictly_increasing
from beatgrid.analysis.engine import (
    AnalysisEngine,
    CancellationToken,
    apply_manual_bpm,
    check_settings,
    confidence_level,
    is_multi_tempo,
)
from beatgrid.analysis.errors import AnalysisCancelled, ConfigurationInconsistency
from beatgrid.analysis.models import Agreement, BeatAnalysisResult, ConfidenceLevel, TempoType
from beatgrid.analysis.regions import regions_are_contiguous
from beatgrid.analysis.rhythm_engine import RhythmEngine
from beatgrid.config import Settings
from tests.conftest import (
    SR,
    FailingEstimator,
    FixedEstimator,
    fermata_track,
    generate_click_track,
    make_signal,
)

STAGES = ["characteristics", "boundaries", "tempo", "beat_grid", "downbeat",
          "fermata", "resync", "regions", "done"]


def _fixed_engine(bpm=120.0, rhythm_engine=None):
    return AnalysisEngine(
        estimators=[FixedEstimator("a", bpm, 0.8), FixedEstimator("b", bpm, 0.7)],
        baseline=FailingEstimator("baseline"),
        rhythm_engine=rhythm_engine or RhythmEngine(),
    )


def _fermatas(result):
    return [r for r in result.tempo_regions if r.type == TempoType.FERMATA]


@pytest.fixture(scope="module")
def fermata_result():
    return AnalysisEngine(rhythm_engine=RhythmEngine()).analyze_audio(fermata_track())


def test_steady_click_track():
    """120 BPM click track: tempo, ordered grid and one steady region."""
    signal = make_signal(generate_click_track(bpm=120, duration_seconds=30))
    result = AnalysisEngine(rhythm_engine=RhythmEngine()).analyze_audio(signal)

    assert isinstance(result, BeatAnalysisResult)
    assert abs(result.bpm - 120) <= 1
    assert result.confidence_level in (ConfidenceLevel.MEDIUM, ConfidenceLevel.HIGH)
    assert 0.0 <= result.confidence <= 1.0
    assert is_strictly_increasing(result.beats)
    assert all(0.0 <= b < result.duration for b in result.beats)
    assert result.offset == result.beats[0]
    assert not result.has_tempo_variance
    assert result.detected_gaps == ()
    assert regions_are_contiguous(result.tempo_regions)
    assert result.tempo_regions[0].start_time == result.music_start_time
    assert result.tempo_regions[-1].end_time == result.music_end_time
    # Beats should land on the clicks
    for beat in result.beats[1:-1]:
        assert abs(beat - round(beat * 2) / 2) < 0.05, f"beat at {beat} is off the grid"


def test_ten_second_click_track_grid_sits_on_clicks():
    signal = make_signal(generate_click_track(bpm=120, duration_seconds=10))
    result = AnalysisEngine(rhythm_engine=RhythmEngine()).analyze_audio(signal)

    assert abs(result.bpm - 120) <= 1
    assert result.confidence_level in (ConfidenceLevel.MEDIUM, ConfidenceLevel.HIGH)
    assert result.beats[0] == pytest.approx(0.0, abs=0.02)
    assert result.beats[1] == pytest.approx(0.5, abs=0.02)
    for beat in result.beats[:-1]:
        assert abs(beat - round(beat * 2) / 2) < 0.02, f"beat at {beat} is off the grid"


def test_three_second_pause_in_ten_second_track():
    audio = generate_click_track(bpm=120, duration_seconds=10, silences=[(3.5, 7.0)], resume_at=[7.0])
    result = AnalysisEngine(rhythm_engine=RhythmEngine()).analyze_audio(make_signal(audio))

    fermatas = _fermatas(result)
    assert len(fermatas) == 1
    assert fermatas[0].start_time == pytest.approx(4.0, abs=0.2)
    assert fermatas[0].end_time == pytest.approx(7.0, abs=0.2)
    assert fermatas[0].bpm is None
    assert any(abs(b - 7.0) < 0.05 for b in result.beats)
    assert not any(3.6 < b < 6.9 for b in result.beats)
    assert is_strictly_increasing(result.beats)


def test_slow_steady_track_has_no_fermatas():
    signal = make_signal(generate_click_track(bpm=70, duration_seconds=20))
    result = AnalysisEngine(rhythm_engine=RhythmEngine()).analyze_audio(signal)

    assert min(abs(result.bpm - 70), abs(result.bpm - 140)) <= 2
    assert _fermatas(result) == []
    assert result.detected_gaps == ()
    assert not result.has_tempo_variance
    assert not any("fermatas detected" in w for w in result.warnings)


def test_pause_becomes_fermata_and_grid_resumes(fermata_result):
    result = fermata_result
    fermatas = _fermatas(result)
    assert len(fermatas) == 1
    assert fermatas[0].start_time == pytest.approx(4.0, abs=0.1)
    assert fermatas[0].end_time == pytest.approx(7.0, abs=0.06)
    assert result.has_tempo_variance
    assert len(result.detected_gaps) == 1

    assert any(abs(b - 7.0) < 0.05 for b in result.beats)
    assert not any(3.6 < b < 6.9 for b in result.beats)
    after = [b for b in result.beats if b >= 6.9]
    assert np.allclose(np.diff(after), 60.0 / result.bpm, atol=1e-6)
    assert is_strictly_increasing(result.beats)
    assert regions_are_contiguous(result.tempo_regions)


def test_manual_bpm_keeps_fermatas(fermata_result):
    original = fermata_result
    result = apply_manual_bpm(original, 140)

    assert result.bpm == 140
    assert result.confidence == 1.0
    assert result.confidence_level == ConfidenceLevel.HIGH
    assert _fermatas(result) == _fermatas(original)
    assert all(r.bpm == 140 for r in result.tempo_regions if r.type == TempoType.STEADY)
    assert result.detected_gaps == original.detected_gaps

    gap_end = original.detected_gaps[0].gap_end
    assert any(abs(b - gap_end) < 0.05 for b in result.beats)
    after = [b for b in result.beats if b >= gap_end - 0.05]
    assert np.allclose(np.diff(after), 60.0 / 140)
    assert is_strictly_increasing(result.beats)
    # The input result is untouched
    assert original.bpm != 140
    assert original.confidence < 1.0


def test_manual_bpm_without_gaps_is_regular(click_120):
    original = _fixed_engine().analyze_audio(click_120)
    result = _fixed_engine().apply_manual_bpm(original, 90)
    assert result.beats[0] == original.offset
    assert np.allclose(np.diff(result.beats), 60.0 / 90)


@pytest.mark.parametrize("bpm", [0, -10, math.nan, math.inf])
def test_manual_bpm_rejects_invalid_values(fermata_result, bpm):
    with pytest.raises(ValueError):
        apply_manual_bpm(fermata_result, bpm)


def test_all_estimators_fail_uses_default_bpm():
    signal = make_signal(generate_click_track(bpm=100, duration_seconds=10))
    engine = AnalysisEngine(
        estimators=[FailingEstimator("x"), FailingEstimator("y", raw=True)],
        baseline=FailingEstimator("baseline"),
        rhythm_engine=RhythmEngine(),
    )
    result = engine.analyze_audio(signal)

    assert result.bpm == 120.0
    assert result.confidence == 0.0
    assert result.confidence_level == ConfidenceLevel.LOW
    assert result.agreement == Agreement.WEAK
    assert "All tempo estimators failed" in result.warnings
    assert "Detection failed - using default 120 BPM" in result.warnings
    assert np.allclose(np.diff(result.beats), 0.5)


def test_baseline_used_when_ensemble_fails():
    signal = make_signal(generate_click_track(bpm=100, duration_seconds=10))
    engine = AnalysisEngine(
        estimators=[FailingEstimator("x")],
        baseline=FixedEstimator("autocorrelation", 100.0, 0.6),
        rhythm_engine=RhythmEngine(),
    )
    result = engine.analyze_audio(signal)
    assert result.bpm == 100.0
    assert result.agreement == Agreement.WEAK
    assert "Tempo ensemble failed - using baseline estimate" in result.warnings
    assert "Detection failed - using default 120 BPM" not in result.warnings


def test_late_start_moves_grid_to_music():
    signal = make_signal(generate_click_track(bpm=120, duration_seconds=12, start_offset=3.0))
    result = _fixed_engine().analyze_audio(signal)
    assert result.music_start_time == pytest.approx(3.0, abs=0.1)
    assert result.offset == pytest.approx(3.0, abs=0.06)
    assert any(w.startswith("Music starts") for w in result.warnings)


def test_sessions_are_released():
    rhythm_engine = RhythmEngine()
    engine = AnalysisEngine(
        estimators=[FixedEstimator("a", 120, 0.8), FailingEstimator("x", raw=True)],
        baseline=FailingEstimator("baseline"),
        rhythm_engine=rhythm_engine,
    )
    engine.analyze_audio(make_signal(generate_click_track(bpm=120, duration_seconds=5)))
    assert rhythm_engine.open_sessions == 0
    assert rhythm_engine.total_sessions >= 1


def test_progress_reports_every_stage(click_120):
    seen = []
    _fixed_engine().analyze_audio(click_120, progress=lambda stage, pct: seen.append((stage, pct)))
    assert [s for s, _ in seen] == STAGES
    percents = [p for _, p in seen]
    assert percents == sorted(percents)
    assert percents[-1] == 100


def test_failing_progress_callback_is_ignored(click_120):
    def explode(stage, pct):
        raise RuntimeError("display went away")

    result = _fixed_engine().analyze_audio(click_120, progress=explode)
    assert result.bpm == 120.0


def test_cancel_before_start(click_120):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(AnalysisCancelled) as info:
        _fixed_engine().analyze_audio(click_120, cancel_token=token)
    assert info.value.stage == "characteristics"


def test_cancel_mid_pipeline(click_120):
    rhythm_engine = RhythmEngine()
    engine = _fixed_engine(rhythm_engine=rhythm_engine)
    token = CancellationToken()

    def on_progress(stage, pct):
        if stage == "tempo":
            token.cancel()

    with pytest.raises(AnalysisCancelled) as info:
        engine.analyze_audio(click_120, progress=on_progress, cancel_token=token)
    assert info.value.stage == "beat_grid"
    assert engine.estimators[0].calls == 1
    assert rhythm_engine.open_sessions == 0


def test_analysis_is_deterministic(click_120):
    engine = _fixed_engine()
    assert engine.analyze_audio(click_120) == engine.analyze_audio(click_120)


def test_async_matches_sync(click_120):
    engine = _fixed_engine()
    seen = []
    result = asyncio.run(engine.analyze_audio_async(
        click_120, progress=lambda stage, pct: seen.append(stage),
    ))
    assert result == engine.analyze_audio(click_120)
    assert seen == STAGES


def test_raw_array_input():
    audio = generate_click_track(bpm=120, duration_seconds=6)
    result = _fixed_engine().analyze_audio(audio, sr=SR)
    assert result.duration == pytest.approx(6.0)
    assert len(result.beats) > 0


def test_analyze_file(tmp_path):
    """Engine should be able to analyze a WAV file from disk."""
    audio = generate_click_track(bpm=120, duration_seconds=8)
    wav_path = tmp_path / "test.wav"
    sf.write(str(wav_path), np.stack([audio, audio], axis=1), SR)

    result = _fixed_engine().analyze_file(str(wav_path))
    assert result.bpm == 120.0
    assert result.duration == pytest.approx(8.0, abs=0.01)
    assert is_strictly_increasing(result.beats)


def test_confidence_level_rules():
    assert confidence_level(0.8, Agreement.STRONG) == ConfidenceLevel.HIGH
    assert confidence_level(0.8, Agreement.MODERATE) == ConfidenceLevel.MEDIUM
    assert confidence_level(0.2, Agreement.MODERATE) == ConfidenceLevel.MEDIUM
    assert confidence_level(0.5, Agreement.WEAK) == ConfidenceLevel.MEDIUM
    assert confidence_level(0.3, Agreement.WEAK) == ConfidenceLevel.LOW


def test_multi_tempo_rule():
    assert is_multi_tempo(3, 600.0)
    assert is_multi_tempo(2, 40.0)
    assert not is_multi_tempo(2, 120.0)
    assert not is_multi_tempo(1, 10.0)
    assert not is_multi_tempo(0, 10.0)


def test_inconsistent_settings_fall_back_to_defaults():
    bad = Settings(min_bpm=200, max_bpm=100)
    with pytest.raises(ConfigurationInconsistency):
        check_settings(bad)
    engine = AnalysisEngine(config=bad)
    assert engine.settings.min_bpm == 30.0
    assert engine.settings.max_bpm == 300.0
    check_settings(engine.settings)
    assert engine.estimators[-1].min_bpm == 30.0


def test_bpm_range_setting_bounds_the_default_ensemble():
    engine = AnalysisEngine(config=Settings(min_bpm=60, max_bpm=200), rhythm_engine=RhythmEngine())
    names = [e.name for e in engine.estimators]
    assert names == ["beat_track", "beat_track_median", "plp", "tempogram"]
    for estimator in engine.estimators[:2]:
        assert (estimator.min_bpm, estimator.max_bpm) == (60, 200)
    assert (engine.estimators[2].tempo_min, engine.estimators[2].tempo_max) == (60, 200)
    assert (engine.estimators[3].min_bpm, engine.estimators[3].max_bpm) == (60, 200)
