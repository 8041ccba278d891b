"""Pydantic response models for API."""

from pydantic import BaseModel, Field

from beatgrid.analysis.models import (
    Agreement,
    BeatAnalysisResult,
    ConfidenceLevel,
    GapCandidate,
    TempoRegion,
    TempoType,
)


class TempoRegionResponse(BaseModel):
    id: str
    start_time: float
    end_time: float
    type: TempoType
    bpm: float | None = None
    confidence: float
    description: str = ""


class GapResponse(BaseModel):
    gap_start: float
    gap_end: float


class EstimateResponse(BaseModel):
    algorithm: str
    bpm: float
    confidence: float


class AnalysisResponse(BaseModel):
    bpm: float
    confidence: float
    confidence_level: ConfidenceLevel
    beats: list[float]
    music_start_time: float
    music_end_time: float
    offset: float
    warnings: list[str] = []
    tempo_regions: list[TempoRegionResponse] = []
    has_tempo_variance: bool = False
    detected_gaps: list[GapResponse] = []
    duration: float = 0.0
    agreement: Agreement = Agreement.WEAK
    estimates: list[EstimateResponse] = []

    @classmethod
    def from_result(cls, result: BeatAnalysisResult) -> "AnalysisResponse":
        return cls(
            bpm=result.bpm,
            confidence=result.confidence,
            confidence_level=result.confidence_level,
            beats=list(result.beats),
            music_start_time=result.music_start_time,
            music_end_time=result.music_end_time,
            offset=result.offset,
            warnings=list(result.warnings),
            tempo_regions=[
                TempoRegionResponse(
                    id=r.id,
                    start_time=r.start_time,
                    end_time=r.end_time,
                    type=r.type,
                    bpm=r.bpm,
                    confidence=r.confidence,
                    description=r.description,
                )
                for r in result.tempo_regions
            ],
            has_tempo_variance=result.has_tempo_variance,
            detected_gaps=[
                GapResponse(gap_start=g.gap_start, gap_end=g.gap_end)
                for g in result.detected_gaps
            ],
            duration=result.duration,
            agreement=result.agreement,
            estimates=[
                EstimateResponse(algorithm=e.algorithm, bpm=e.bpm, confidence=e.confidence)
                for e in result.estimates
            ],
        )

    def to_result(self) -> BeatAnalysisResult:
        """Rebuild the analysis result; per-estimator beat ticks are not round-tripped."""
        return BeatAnalysisResult(
            bpm=self.bpm,
            confidence=self.confidence,
            confidence_level=self.confidence_level,
            beats=tuple(self.beats),
            music_start_time=self.music_start_time,
            music_end_time=self.music_end_time,
            offset=self.offset,
            warnings=tuple(self.warnings),
            tempo_regions=tuple(
                TempoRegion(**r.model_dump()) for r in self.tempo_regions
            ),
            has_tempo_variance=self.has_tempo_variance,
            detected_gaps=tuple(
                GapCandidate(gap_start=g.gap_start, gap_end=g.gap_end) for g in self.detected_gaps
            ),
            duration=self.duration,
            agreement=self.agreement,
        )


class ManualBpmRequest(BaseModel):
    """A previously returned analysis plus the BPM the user wants instead."""
    result: AnalysisResponse
    bpm: float = Field(gt=0, allow_inf_nan=False)
