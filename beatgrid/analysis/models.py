"""Core data models for beat-grid analysis.

All results are immutable: sequences are stored as tuples and the
dataclasses are frozen. A manual BPM edit builds a new result with
dataclasses.replace rather than touching the old one.
"""

from dataclasses import dataclass, field
from enum import Enum


class Agreement(str, Enum):
    """How strongly the tempo estimators agree."""
    STRONG = "strong"
    MODERATE = "moderate"
    WEAK = "weak"

    @property
    def rank(self) -> int:
        return {"weak": 0, "moderate": 1, "strong": 2}[self.value]


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TempoType(str, Enum):
    STEADY = "steady"
    FERMATA = "fermata"
    RUBATO = "rubato"


@dataclass(frozen=True)
class OnsetSet:
    """Sorted onset timestamps produced by one detector preset."""
    times: tuple[float, ...]  # seconds, strictly increasing
    strengths: tuple[float, ...] = ()  # 0.0-1.0, normalized frame energy
    preset: str = "analysis"

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self):
        return iter(self.times)

    def between(self, start: float, end: float) -> tuple[float, ...]:
        """Onsets with start <= t < end."""
        return tuple(t for t in self.times if start <= t < end)


@dataclass(frozen=True)
class TempoEstimate:
    """A BPM estimate from a single algorithm."""
    algorithm: str  # e.g. "beat_track", "plp", "tempogram"
    bpm: float
    confidence: float  # 0.0-1.0
    beats: tuple[float, ...] = ()  # raw beat ticks, may be empty


@dataclass(frozen=True)
class EnsembleResult:
    """Consensus of all tempo estimators."""
    consensus_bpm: float
    confidence: float
    estimates: tuple[TempoEstimate, ...]
    agreement: Agreement
    best_beats: tuple[float, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class GapCandidate:
    """Two consecutive onsets bounding an unusually long silence."""
    gap_start: float
    gap_end: float

    @property
    def duration(self) -> float:
        return self.gap_end - self.gap_start


@dataclass(frozen=True)
class TempoRegion:
    """A contiguous span of the track with one tempo behaviour."""
    id: str
    start_time: float
    end_time: float
    type: TempoType
    bpm: float | None  # None for fermatas
    confidence: float
    description: str = ""

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class AudioCharacteristics:
    """Loudness and dynamics summary used to bound confidence."""
    overall_rms: float
    energy_score: float  # 0.0-1.0
    dynamic_range: float  # 0.0-1.0
    is_difficult: bool
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class DownbeatAlignment:
    aligned_start_time: float
    confidence: float
    has_pickup: bool
    accepted: bool = False  # aligned start differs from the original
    candidate_count: int = 0
    best_score: float = 0.0
    original_music_start: float = 0.0


@dataclass(frozen=True)
class FermataDetection:
    """Validated fermatas plus the gaps they came from."""
    fermatas: tuple[TempoRegion, ...] = ()
    gaps: tuple[GapCandidate, ...] = ()
    gaps_found: int = 0
    gaps_validated: int = 0
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class BeatAnalysisResult:
    """Complete analysis result."""
    bpm: float
    confidence: float
    confidence_level: ConfidenceLevel
    beats: tuple[float, ...]
    music_start_time: float
    music_end_time: float
    offset: float  # time of the first beat
    warnings: tuple[str, ...] = ()
    tempo_regions: tuple[TempoRegion, ...] = ()
    has_tempo_variance: bool = False
    detected_gaps: tuple[GapCandidate, ...] = ()
    duration: float = 0.0
    agreement: Agreement = Agreement.WEAK
    estimates: tuple[TempoEstimate, ...] = field(default=(), compare=False)
