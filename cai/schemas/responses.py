from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .enums import FusionStrategy, ResponseFormat, SubsystemKind


class QualityFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    passed: bool
    score: float = Field(..., ge=0.0, le=1.0)
    detail: str = ""


class QualityAssessment(BaseModel):
    """Scored view of a response alongside the pass/fail flags."""

    model_config = ConfigDict(frozen=True)

    coherence: float = Field(..., ge=0.0, le=1.0)
    completeness: float = Field(..., ge=0.0, le=1.0)
    accuracy: float = Field(..., ge=0.0, le=1.0)
    relevance: float = Field(..., ge=0.0, le=1.0)
    overall: float = Field(..., ge=0.0, le=1.0)


class FinalResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    content: str
    format: ResponseFormat
    strategy: FusionStrategy = Field(..., description="Fusion strategy actually applied")
    requested_strategy: FusionStrategy
    contributions: dict[SubsystemKind, float] = Field(default_factory=dict)
    quality: list[QualityFlag] = Field(default_factory=list)
    assessment: QualityAssessment | None = None
    degraded: bool = False
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    sources: list[str] = Field(default_factory=list)

    @property
    def fell_back(self) -> bool:
        return self.strategy != self.requested_strategy

    def failed_checks(self) -> list[QualityFlag]:
        return [flag for flag in self.quality if not flag.passed]

    def summary(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "strategy": self.strategy.value,
            "requested_strategy": self.requested_strategy.value,
            "format": self.format.value,
            "degraded": self.degraded,
            "confidence": round(self.confidence, 3),
            "failed_checks": [flag.check for flag in self.failed_checks()],
            "quality_score": round(self.assessment.overall, 3) if self.assessment else None,
        }


__all__ = ["FinalResponse", "QualityAssessment", "QualityFlag"]
