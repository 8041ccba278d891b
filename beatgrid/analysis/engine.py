"""Analysis orchestrator - combines all analysis modules."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import replace
from typing import Callable, Generator

import numpy as np

from beatgrid.analysis.beat_grid import (
    beat_interval,
    earliest_grid_start,
    grid_phase_offset,
    merge_beat_grids,
    regular_grid,
    shift_grid,
    snap_beats_to_onsets,
)
from beatgrid.analysis.boundaries import detect_music_boundaries
from beatgrid.analysis.characteristics import analyze_characteristics
from beatgrid.analysis.downbeat import align_to_downbeat
from beatgrid.analysis.errors import (
    AnalysisCancelled,
    ConfigurationInconsistency,
    EnsembleExhausted,
    EstimatorFailure,
)
from beatgrid.analysis.estimators import TempoEstimator, default_estimators
from beatgrid.analysis.fermata import FermataConfig, detect_fermatas
from beatgrid.analysis.models import (
    Agreement,
    BeatAnalysisResult,
    ConfidenceLevel,
    EnsembleResult,
)
from beatgrid.analysis.onset import OnsetPreset, detect_onsets_safe, onset_preset_for_tempo
from beatgrid.analysis.regions import build_tempo_regions, with_steady_bpm
from beatgrid.analysis.resync import resync_beats
from beatgrid.analysis.rhythm_engine import RhythmEngine, get_engine
from beatgrid.analysis.tempo import detect_tempo_ensemble_strict, estimate_baseline
from beatgrid.audio.loader import load_audio
from beatgrid.audio.signal import AudioSignal
from beatgrid.config import Settings, settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

HIGH_CONFIDENCE = 0.7
MEDIUM_CONFIDENCE = 0.4
FERMATAS_PER_WINDOW = 30.0  # seconds of music per tolerated fermata
LOW_CONFIDENCE_WARNING = "Low detection confidence - manually verify tempo"
DEFAULT_BPM_WARNING = "Detection failed - using default {bpm:g} BPM"


class CancellationToken:
    """Thread-safe flag checked by the pipeline between stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def check_settings(config: Settings) -> None:
    """Raise ConfigurationInconsistency if analysis settings contradict each other."""
    if not 0 < config.min_bpm < config.max_bpm:
        raise ConfigurationInconsistency(f"BPM range {config.min_bpm}-{config.max_bpm} is empty")
    if not config.min_bpm <= config.default_bpm <= config.max_bpm:
        raise ConfigurationInconsistency(f"Default BPM {config.default_bpm} outside the BPM range")
    if config.beats_per_measure < 1:
        raise ConfigurationInconsistency(f"Invalid beats per measure: {config.beats_per_measure}")
    if config.snap_window < 0 or config.resync_min_shift < 0 or config.downbeat_move_threshold < 0:
        raise ConfigurationInconsistency("Time windows must not be negative")


def confidence_level(confidence: float, agreement: Agreement) -> ConfidenceLevel:
    if confidence >= HIGH_CONFIDENCE and agreement == Agreement.STRONG:
        return ConfidenceLevel.HIGH
    if confidence >= MEDIUM_CONFIDENCE or agreement.rank >= Agreement.MODERATE.rank:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def is_multi_tempo(fermata_count: int, music_length: float) -> bool:
    """Too many pauses for one BPM to describe the track."""
    if fermata_count >= 3:
        return True
    return fermata_count >= 2 and fermata_count / max(music_length, 1.0) * FERMATAS_PER_WINDOW > 1


def apply_manual_bpm(
    result: BeatAnalysisResult,
    bpm: float,
    min_shift: float | None = None,
) -> BeatAnalysisResult:
    """Rebuild the beat grid of *result* at a user-supplied BPM.

    The offset and the detected gaps are kept, so beats still resume on
    the onset after each pause. Fermata regions are left as detected and
    every steady region takes the new BPM. Raises ValueError for a
    non-positive or non-finite *bpm*.
    """
    if not isinstance(bpm, (int, float)) or not math.isfinite(bpm) or bpm <= 0:
        raise ValueError(f"Invalid BPM: {bpm!r}")
    bpm = float(bpm)
    duration = result.duration or result.music_end_time

    beats = regular_grid(bpm, duration, result.offset)
    if min_shift is None:
        min_shift = settings.resync_min_shift
    beats = resync_beats(beats, result.detected_gaps, bpm, min_shift, duration)

    logger.info(f"Manual BPM {result.bpm} -> {bpm}: {len(beats)} beats, "
                f"{len(result.detected_gaps)} gap(s) re-applied")
    return replace(
        result,
        bpm=bpm,
        confidence=1.0,
        confidence_level=ConfidenceLevel.HIGH,
        beats=beats,
        offset=beats[0] if beats else result.offset,
        tempo_regions=with_steady_bpm(result.tempo_regions, bpm),
    )


class AnalysisEngine:
    """Orchestrates the full analysis pipeline."""

    def __init__(
        self,
        estimators: list[TempoEstimator] | None = None,
        baseline: TempoEstimator | None = None,
        rhythm_engine: RhythmEngine | None = None,
        config: Settings | None = None,
    ):
        self.baseline = baseline
        self.rhythm_engine = rhythm_engine
        self.settings = config or settings
        try:
            check_settings(self.settings)
        except ConfigurationInconsistency as e:
            logger.warning(f"Inconsistent settings, falling back to defaults: {e}")
            self.settings = Settings.model_construct()
        if estimators is None:
            estimators = default_estimators(self.settings.min_bpm, self.settings.max_bpm)
        self.estimators = estimators

    @property
    def engine(self) -> RhythmEngine:
        return self.rhythm_engine or get_engine()

    def analyze_file(
        self,
        file_path: str,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BeatAnalysisResult:
        """Analyze an audio file."""
        signal = load_audio(file_path, sr=self.settings.sample_rate, mono=self.settings.mono)
        return self.analyze_audio(signal, progress=progress, cancel_token=cancel_token)

    def analyze_audio(
        self,
        audio: AudioSignal | np.ndarray,
        sr: int | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BeatAnalysisResult:
        """Analyze pre-loaded audio.

        *audio* is an AudioSignal or a raw array plus *sr*. Every stage
        degrades to a fallback instead of failing; the only exception that
        escapes is AnalysisCancelled, raised at the first checkpoint after
        *cancel_token* is cancelled.
        """
        signal = self._as_signal(audio, sr)
        stages = self._stages(signal)
        try:
            while True:
                stage, percent = next(stages)
                self._checkpoint(stage, percent, progress, cancel_token)
        except StopIteration as done:
            return done.value
        except AnalysisCancelled:
            raise
        except Exception as e:
            logger.exception(f"Analysis failed: {e}")
            return self._fallback_result(signal)
        finally:
            stages.close()

    def apply_manual_bpm(self, result: BeatAnalysisResult, bpm: float) -> BeatAnalysisResult:
        return apply_manual_bpm(result, bpm, self.settings.resync_min_shift)

    async def analyze_audio_async(
        self,
        audio: AudioSignal | np.ndarray,
        sr: int | None = None,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BeatAnalysisResult:
        """Like analyze_audio, yielding to the event loop between stages."""
        signal = self._as_signal(audio, sr)
        stages = self._stages(signal)
        try:
            while True:
                stage, percent = next(stages)
                self._checkpoint(stage, percent, progress, cancel_token)
                await asyncio.sleep(0)
        except StopIteration as done:
            return done.value
        except AnalysisCancelled:
            raise
        except Exception as e:
            logger.exception(f"Analysis failed: {e}")
            return self._fallback_result(signal)
        finally:
            stages.close()

    def _as_signal(self, audio, sr: int | None) -> AudioSignal:
        if isinstance(audio, AudioSignal):
            return audio
        return AudioSignal(np.asarray(audio), sr or self.settings.sample_rate)

    @staticmethod
    def _checkpoint(
        stage: str,
        percent: int,
        progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ):
        if cancel_token is not None and cancel_token.cancelled:
            logger.info(f"Analysis cancelled before {stage}")
            raise AnalysisCancelled(stage)
        if progress is None:
            return
        try:
            progress(stage, percent)
        except Exception as e:
            logger.warning(f"Progress callback failed at {stage}: {e}")

    def _stages(self, signal: AudioSignal) -> Generator[tuple[str, int], None, BeatAnalysisResult]:
        """The pipeline itself; yields (stage, percent) before each stage."""
        duration = signal.duration
        logger.info(f"Analyzing {duration:.1f}s of audio at {signal.sample_rate}Hz "
                    f"({signal.channel_count} channel(s))")
        warnings: list[str] = []

        # Step 1: Audio characteristics
        yield "characteristics", 0
        logger.info("Step 1: Audio characteristics")
        characteristics = analyze_characteristics(signal)
        warnings.extend(characteristics.warnings)

        # Step 2: Music boundaries
        yield "boundaries", 10
        logger.info("Step 2: Music boundaries")
        music_start, music_end = detect_music_boundaries(signal)
        logger.info(f"  Music from {music_start:.2f}s to {music_end:.2f}s")

        # Step 3: Tempo
        yield "tempo", 20
        logger.info("Step 3: Tempo estimation")
        ensemble, source = self._estimate_tempo(signal, warnings)
        bpm = ensemble.consensus_bpm
        interval = beat_interval(bpm)

        # Step 4: Beat grid
        yield "beat_grid", 45
        logger.info("Step 4: Beat grid")
        beats = merge_beat_grids(ensemble.estimates, bpm, duration)
        if ensemble.agreement.rank >= Agreement.MODERATE.rank:
            beats = self._snap(signal, beats, interval)
        logger.info(f"  {len(beats)} beats at {bpm} BPM")

        # Step 5: Downbeat
        yield "downbeat", 60
        logger.info("Step 5: Downbeat alignment")
        alignment = align_to_downbeat(signal, bpm, music_start, self.settings.beats_per_measure)
        if alignment.accepted and (
            not beats or abs(alignment.aligned_start_time - beats[0]) > self.settings.downbeat_move_threshold
        ):
            offset = earliest_grid_start(
                alignment.aligned_start_time, interval, music_start - self.settings.snap_window,
            )
            beats = regular_grid(bpm, duration, offset)
            logger.info(f"  Grid regenerated from downbeat at {alignment.aligned_start_time:.3f}s "
                        f"(offset {offset:.3f}s)")
        if alignment.has_pickup:
            warnings.append(f"Pickup detected - first downbeat at {alignment.aligned_start_time:.2f}s")

        # Step 6: Fermatas
        yield "fermata", 70
        logger.info("Step 6: Fermata detection")
        onsets = detect_onsets_safe(signal, onset_preset_for_tempo(bpm), warnings)
        detection = detect_fermatas(
            signal, bpm, onsets=onsets, config=FermataConfig(music_end_time=music_end),
        )

        # Step 7: Resync
        yield "resync", 80
        if detection.gaps:
            logger.info(f"Step 7: Resync after {len(detection.gaps)} gap(s)")
            offset = beats[0] if beats else music_start
            beats = regular_grid(bpm, duration, offset)
            beats = resync_beats(beats, detection.gaps, bpm, self.settings.resync_min_shift, duration)
        else:
            logger.info("Step 7: Resync (no gaps)")

        # Step 8: Regions and confidence
        yield "regions", 90
        logger.info("Step 8: Tempo regions")
        if source == "default":
            confidence = 0.0
        else:
            confidence = 0.7 * ensemble.confidence + 0.3 * characteristics.energy_score
            if characteristics.is_difficult:
                confidence = min(confidence, self.settings.difficult_confidence_cap)
        confidence = round(max(0.0, min(1.0, confidence)), 3)

        regions = build_tempo_regions(music_start, music_end, bpm, confidence, detection.fermatas)
        level = confidence_level(confidence, ensemble.agreement)
        if source == "default":
            level = ConfidenceLevel.LOW

        fermata_count = len(detection.fermatas)
        if is_multi_tempo(fermata_count, music_end - music_start):
            level = ConfidenceLevel.LOW
            warnings.append(f"{fermata_count} fermatas detected - tempo may change between sections")
        if level == ConfidenceLevel.LOW:
            warnings.append(LOW_CONFIDENCE_WARNING)
        if music_start > 1:
            warnings.append(f"Music starts {music_start:.1f}s into the track")

        yield "done", 100
        logger.info(f"Analysis complete: {bpm} BPM, confidence {confidence} ({level.value}), "
                    f"{len(beats)} beats, {fermata_count} fermata(s)")
        return BeatAnalysisResult(
            bpm=bpm,
            confidence=confidence,
            confidence_level=level,
            beats=tuple(beats),
            music_start_time=music_start,
            music_end_time=music_end,
            offset=beats[0] if beats else music_start,
            warnings=tuple(warnings),
            tempo_regions=regions,
            has_tempo_variance=fermata_count > 0,
            detected_gaps=detection.gaps,
            duration=duration,
            agreement=ensemble.agreement,
            estimates=ensemble.estimates,
        )

    def _estimate_tempo(self, signal: AudioSignal, warnings: list[str]) -> tuple[EnsembleResult, str]:
        """Ensemble, then the baseline estimator, then the default BPM.

        Returns the result and which of the three produced it.
        """
        try:
            ensemble = detect_tempo_ensemble_strict(signal, self.estimators, self.engine)
            warnings.extend(ensemble.warnings)
            return ensemble, "ensemble"
        except EnsembleExhausted as e:
            logger.warning(f"Tempo ensemble failed: {e}")
            warnings.append(str(e))

        try:
            est = estimate_baseline(signal, self.baseline, self.engine)
        except EstimatorFailure as e:
            logger.warning(f"Baseline estimator failed: {e.reason}")
        else:
            logger.info(f"  Baseline: {est.bpm} BPM (confidence: {est.confidence})")
            warnings.append("Tempo ensemble failed - using baseline estimate")
            return EnsembleResult(
                consensus_bpm=round(est.bpm, 1),
                confidence=est.confidence,
                estimates=(est,),
                agreement=Agreement.WEAK,
            ), "baseline"

        warnings.append(DEFAULT_BPM_WARNING.format(bpm=self.settings.default_bpm))
        return EnsembleResult(
            consensus_bpm=self.settings.default_bpm,
            confidence=0.0,
            estimates=(),
            agreement=Agreement.WEAK,
        ), "default"

    def _snap(self, signal: AudioSignal, beats: tuple[float, ...], interval: float) -> tuple[float, ...]:
        """Line the grid up with the attacks, then snap beats onto nearby onsets."""
        onsets = detect_onsets_safe(signal, OnsetPreset.SNAPPING)
        if not onsets.times:
            logger.info("  No onsets to snap to, keeping grid")
            return beats
        offset = grid_phase_offset(beats, onsets.times, interval / 4)
        if offset:
            beats = shift_grid(beats, offset)
            logger.info(f"  Grid phase corrected by {offset * 1000:+.0f}ms")
        snapped = snap_beats_to_onsets(beats, onsets.times, self.settings.snap_window)
        moved = sum(1 for a, b in zip(beats, snapped) if a != b)
        logger.info(f"  Snapped {moved}/{len(beats)} beats to {len(onsets)} onsets")
        return snapped

    def _fallback_result(self, signal: AudioSignal) -> BeatAnalysisResult:
        """Default-BPM result used when the pipeline itself breaks."""
        duration = signal.duration
        bpm = self.settings.default_bpm
        beats = regular_grid(bpm, duration, 0.0)
        return BeatAnalysisResult(
            bpm=bpm,
            confidence=0.0,
            confidence_level=ConfidenceLevel.LOW,
            beats=beats,
            music_start_time=0.0,
            music_end_time=duration,
            offset=0.0,
            warnings=(DEFAULT_BPM_WARNING.format(bpm=bpm), LOW_CONFIDENCE_WARNING),
            tempo_regions=build_tempo_regions(0.0, duration, bpm, 0.0),
            duration=duration,
        )
