from __future__ import annotations

from enum import Enum


class ProcessingMode(str, Enum):
    COGNITIVE_ONLY = "cognitive_only"
    AGENT_COLLABORATIVE = "agent_collaborative"
    RAG_FOCUSED = "rag_focused"
    HYBRID_PROCESSING = "hybrid_processing"
    ADAPTIVE_ROUTING = "adaptive_routing"

    @property
    def is_concrete(self) -> bool:
        return self is not ProcessingMode.ADAPTIVE_ROUTING


# Ascending processing intensity; also the order the score thresholds map onto.
MODE_INTENSITY: tuple[ProcessingMode, ...] = (
    ProcessingMode.COGNITIVE_ONLY,
    ProcessingMode.RAG_FOCUSED,
    ProcessingMode.AGENT_COLLABORATIVE,
    ProcessingMode.HYBRID_PROCESSING,
)


class SubsystemKind(str, Enum):
    COGNITIVE_BRAIN = "cognitive_brain"
    AGENT_COUNCIL = "agent_council"
    RAG = "rag"


class SubsystemCapability(str, Enum):
    REASONING = "reasoning"
    COLLABORATION = "collaboration"
    RETRIEVAL = "retrieval"
    CANCELLATION = "cancellation"
    STREAMING = "streaming"


class FeatureFactor(str, Enum):
    COMPLEXITY = "complexity"
    CONTEXT = "context"
    URGENCY = "urgency"
    RESOURCE_AVAILABILITY = "resource_availability"
    HISTORICAL_PERFORMANCE = "historical_performance"


class PlanStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    PIPELINE = "pipeline"


class PipelineStage(str, Enum):
    PREPROCESSING = "preprocessing"
    ANALYSIS = "analysis"
    PROCESSING = "processing"
    SYNTHESIS = "synthesis"
    POSTPROCESSING = "postprocessing"


PIPELINE_STAGE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)


class SubsystemStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class FusionStrategy(str, Enum):
    WEIGHTED_COMBINATION = "weighted_combination"
    HIERARCHICAL_FUSION = "hierarchical_fusion"
    CONSENSUS_BUILDING = "consensus_building"


class ResponseFormat(str, Enum):
    MARKDOWN = "markdown"
    TEXT = "text"
    JSON = "json"


__all__ = [
    "ProcessingMode",
    "MODE_INTENSITY",
    "SubsystemKind",
    "SubsystemCapability",
    "FeatureFactor",
    "PlanStrategy",
    "PipelineStage",
    "PIPELINE_STAGE_ORDER",
    "SubsystemStatus",
    "ExecutionStatus",
    "FusionStrategy",
    "ResponseFormat",
]
