"""Multi-method tempo estimation with consensus."""

from __future__ import annotations

import logging

from beatgrid.analysis.errors import EnsembleExhausted, EstimatorFailure
from beatgrid.analysis.estimators import TempoEstimator, baseline_estimator, default_estimators
from beatgrid.analysis.models import Agreement, EnsembleResult, TempoEstimate
from beatgrid.analysis.rhythm_engine import RhythmEngine, get_engine
from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)

FALLBACK_BPM = 120.0
CANONICAL_RANGE = (70.0, 140.0)
GROUP_TOLERANCE = 0.05  # relative BPM difference within one group
DISAGREEMENT_RATIO = 1.1


def normalize_to_range(bpm: float, low: float = CANONICAL_RANGE[0], high: float = CANONICAL_RANGE[1]) -> float:
    """Fold *bpm* into [low, high] by doubling or halving."""
    while 0 < bpm < low:
        bpm *= 2
    while bpm > high:
        bpm /= 2
    return bpm


def is_valid_estimate(e: TempoEstimate) -> bool:
    return 30 < e.bpm < 300 and e.confidence > 0.01


def run_estimators(
    signal: AudioSignal,
    estimators: list[TempoEstimator],
    engine: RhythmEngine | None = None,
) -> tuple[list[TempoEstimate], list[EstimatorFailure]]:
    """Run every estimator inside one engine session.

    A failing estimator is logged and skipped; it never stops the others.
    """
    engine = engine or get_engine()
    estimates: list[TempoEstimate] = []
    failures: list[EstimatorFailure] = []
    with engine.session(signal) as session:
        for estimator in estimators:
            try:
                est = estimator.estimate(session)
            except EstimatorFailure as e:
                logger.warning(f"{estimator.name} failed: {e.reason}")
                failures.append(e)
                continue
            except Exception as e:
                logger.warning(f"{estimator.name} failed: {e}")
                failures.append(EstimatorFailure(estimator.name, str(e)))
                continue
            logger.info(f"  {est.algorithm}: {est.bpm} BPM (confidence: {est.confidence}, "
                        f"{len(est.beats)} beats)")
            estimates.append(est)
    return estimates, failures


def consensus_tempo(estimates: list[TempoEstimate]) -> tuple[float, float, Agreement]:
    """Build (bpm, confidence, agreement) from valid estimates.

    BPMs are folded into the canonical octave, grouped when within 5% of
    a group's running weighted centre, and the group with the largest
    summed confidence wins.
    """
    if not estimates:
        return FALLBACK_BPM, 0.0, Agreement.WEAK

    if len(estimates) == 1:
        only = estimates[0]
        return round(only.bpm, 1), max(0.0, min(1.0, only.confidence)), Agreement.WEAK

    groups: list[dict] = []
    for est in estimates:
        norm = normalize_to_range(est.bpm)
        match = next((g for g in groups if abs(g["bpm"] - norm) / g["bpm"] < GROUP_TOLERANCE), None)
        if match is None:
            groups.append({"bpm": norm, "members": [(est, norm)]})
            continue
        match["members"].append((est, norm))
        weight = sum(m.confidence for m, _ in match["members"])
        if weight > 0:
            match["bpm"] = sum(n * m.confidence for m, n in match["members"]) / weight

    best = groups[0]
    best_score = 0.0
    for group in groups:
        score = sum(m.confidence for m, _ in group["members"])
        if score > best_score:
            best_score = score
            best = group

    members = best["members"]
    ratio = len(members) / len(estimates)
    if ratio >= 0.75 and len(members) >= 3:
        agreement = Agreement.STRONG
    elif ratio >= 0.5 or len(members) >= 2:
        agreement = Agreement.MODERATE
    else:
        agreement = Agreement.WEAK

    total_weight = sum(m.confidence for m, _ in members)
    weighted = sum(n * m.confidence for m, n in members) / total_weight
    bpm = round(weighted, 1)

    # Half-tempo readings are common; report the full tempo
    if bpm < 80:
        bpm *= 2
    if bpm > 200:
        bpm /= 2

    avg_confidence = total_weight / len(members)
    confidence = max(0.0, min(1.0, avg_confidence * (0.5 + 0.5 * ratio)))
    return bpm, round(confidence, 3), agreement


def _best_beats(estimates: list[TempoEstimate]) -> tuple[float, ...]:
    with_beats = [e for e in estimates if e.beats]
    if not with_beats:
        return ()
    best = with_beats[0]
    for e in with_beats[1:]:
        if e.confidence > best.confidence:
            best = e
    return best.beats


def detect_tempo_ensemble_strict(
    signal: AudioSignal,
    estimators: list[TempoEstimator] | None = None,
    engine: RhythmEngine | None = None,
) -> EnsembleResult:
    """Ensemble consensus; raises EnsembleExhausted when nothing usable came back."""
    if estimators is None:
        estimators = default_estimators()
    estimates, failures = run_estimators(signal, estimators, engine)

    if not estimates:
        raise EnsembleExhausted("All tempo estimators failed")

    valid = [e for e in estimates if is_valid_estimate(e)]
    if not valid:
        raise EnsembleExhausted("No valid tempo estimates")

    warnings = []
    normalized = [normalize_to_range(e.bpm) for e in valid]
    if max(normalized) / min(normalized) > DISAGREEMENT_RATIO:
        warnings.append("Tempo estimates disagree - verify manually")

    bpm, confidence, agreement = consensus_tempo(valid)
    logger.info(f"  Consensus: {bpm} BPM (confidence: {confidence}, agreement: {agreement.value}, "
                f"{len(valid)}/{len(estimators)} estimators)")
    return EnsembleResult(
        consensus_bpm=bpm,
        confidence=confidence,
        estimates=tuple(estimates),
        agreement=agreement,
        best_beats=_best_beats(estimates),
        warnings=tuple(warnings),
    )


def detect_tempo_ensemble(
    signal: AudioSignal,
    estimators: list[TempoEstimator] | None = None,
    engine: RhythmEngine | None = None,
) -> EnsembleResult:
    """Ensemble consensus that never raises.

    When every estimator fails the result is 120 BPM with zero confidence
    and a warning.
    """
    try:
        return detect_tempo_ensemble_strict(signal, estimators, engine)
    except EnsembleExhausted as e:
        logger.warning(f"Tempo ensemble exhausted: {e}")
        return EnsembleResult(
            consensus_bpm=FALLBACK_BPM,
            confidence=0.0,
            estimates=(),
            agreement=Agreement.WEAK,
            best_beats=(),
            warnings=(str(e),),
        )


def estimate_baseline(
    signal: AudioSignal,
    estimator: TempoEstimator | None = None,
    engine: RhythmEngine | None = None,
) -> TempoEstimate:
    """Single fallback estimate; raises EstimatorFailure if it cannot produce one."""
    estimator = estimator or baseline_estimator()
    engine = engine or get_engine()
    with engine.session(signal) as session:
        try:
            est = estimator.estimate(session)
        except EstimatorFailure:
            raise
        except Exception as e:
            raise EstimatorFailure(estimator.name, str(e)) from e
    if not is_valid_estimate(est):
        raise EstimatorFailure(estimator.name, f"implausible estimate {est.bpm} BPM")
    return est
