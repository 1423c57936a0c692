from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..schemas.enums import ExecutionStatus, PipelineStage, SubsystemKind, SubsystemStatus
from .exceptions import SubsystemError, SubsystemTimeout

if TYPE_CHECKING:
    from .checkpoint import Checkpoint
    from .plan import ExecutionPlan
    from .routing import RoutingDecision


@dataclass(slots=True, frozen=True)
class SubsystemErrorInfo:
    type: str
    message: str
    retryable: bool

    @classmethod
    def from_exception(cls, exc: BaseException) -> "SubsystemErrorInfo":
        if isinstance(exc, SubsystemTimeout):
            retryable = False
        elif isinstance(exc, SubsystemError):
            retryable = exc.retryable
        else:
            retryable = True
        return cls(type=type(exc).__name__, message=str(exc) or type(exc).__name__, retryable=retryable)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "retryable": self.retryable}


@dataclass(slots=True, frozen=True)
class SubsystemResult:
    subsystem: SubsystemKind
    status: SubsystemStatus
    payload: Any = None
    latency: float = 0.0
    attempts: int = 0
    error: SubsystemErrorInfo | None = None
    stage: PipelineStage | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is SubsystemStatus.SUCCESS

    @classmethod
    def skipped(cls, subsystem: SubsystemKind, *, stage: PipelineStage | None = None, reason: str | None = None) -> "SubsystemResult":
        error = SubsystemErrorInfo(type="Skipped", message=reason, retryable=False) if reason else None
        return cls(subsystem=subsystem, status=SubsystemStatus.SKIPPED, error=error, stage=stage)

    def as_dict(self) -> dict[str, Any]:
        return {
            "subsystem": self.subsystem.value,
            "status": self.status.value,
            "latency": round(self.latency, 4),
            "attempts": self.attempts,
            "error": self.error.as_dict() if self.error else None,
            "stage": self.stage.value if self.stage else None,
        }


@dataclass(slots=True)
class ProcessingResult:
    request_id: str
    decision: "RoutingDecision"
    plan: "ExecutionPlan"
    results: tuple[SubsystemResult, ...]
    status: ExecutionStatus
    checkpoints: tuple["Checkpoint", ...] = ()
    elapsed: float = 0.0
    cancelled: bool = False
    budget_exhausted: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def successes(self) -> list[SubsystemResult]:
        return [result for result in self.results if result.succeeded]

    @property
    def failures(self) -> list[SubsystemResult]:
        return [result for result in self.results if not result.succeeded]

    def result_for(self, subsystem: SubsystemKind) -> SubsystemResult | None:
        for result in self.results:
            if result.subsystem is subsystem:
                return result
        return None

    def statuses(self) -> dict[SubsystemKind, SubsystemStatus]:
        return {result.subsystem: result.status for result in self.results}

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "strategy": self.plan.strategy.value,
            "elapsed": round(self.elapsed, 4),
            "cancelled": self.cancelled,
            "budget_exhausted": self.budget_exhausted,
            "results": [result.as_dict() for result in self.results],
            "checkpoints": len(self.checkpoints),
        }


__all__ = ["ProcessingResult", "SubsystemErrorInfo", "SubsystemResult"]
