"""Failure types raised inside the analysis pipeline.

Everything except AnalysisCancelled is recovered before it reaches the
caller of AnalysisEngine.analyze_audio; the pipeline degrades to a
fallback value and records a warning instead.
"""


class AnalysisError(Exception):
    """Base class for analysis failures."""


class EstimatorFailure(AnalysisError):
    """A single tempo estimator could not produce an estimate."""

    def __init__(self, algorithm: str, reason: str):
        super().__init__(f"{algorithm}: {reason}")
        self.algorithm = algorithm
        self.reason = reason


class EnsembleExhausted(AnalysisError):
    """No ensemble member produced a usable estimate."""


class OnsetDetectionFailure(AnalysisError):
    """Onsets could not be computed for a signal."""


class ConfigurationInconsistency(AnalysisError):
    """Thresholds or settings contradict each other."""


class AnalysisCancelled(AnalysisError):
    """The caller cancelled the analysis between two stages."""

    def __init__(self, stage: str):
        super().__init__(f"Analysis cancelled before stage '{stage}'")
        self.stage = stage
