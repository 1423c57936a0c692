"""
Orchestration Package

Routing, execution and the processing pipeline facade:
- Router: feature scoring and processing-mode selection
- Orchestrator: sequential, parallel and pipeline execution under time budgets
- ProcessingPipeline: route -> execute -> synthesize over one settings snapshot
"""

from .exceptions import (
    CAIError,
    CapabilityError,
    ConfigurationError,
    OrchestrationError,
    RoutingError,
    SubsystemError,
    SubsystemTimeout,
    SynthesisError,
)
from .cancellation import CancellationToken
from .state import ProcessingResult, SubsystemErrorInfo, SubsystemResult
from .checkpoint import Checkpoint, CheckpointLog
from .routing import (
    FeatureVector,
    ModeSubstitution,
    RegistrySignals,
    Router,
    RoutingDecision,
    RoutingRecord,
    StaticSignals,
)
from .plan import ExecutionPlan, StageSpec, build_execution_plan
from .orchestrator import Orchestrator
from .pipeline import PipelineComponents, ProcessingPipeline

__all__ = [
    "CAIError",
    "CancellationToken",
    "CapabilityError",
    "Checkpoint",
    "CheckpointLog",
    "ConfigurationError",
    "ExecutionPlan",
    "FeatureVector",
    "ModeSubstitution",
    "OrchestrationError",
    "Orchestrator",
    "PipelineComponents",
    "ProcessingPipeline",
    "ProcessingResult",
    "RegistrySignals",
    "Router",
    "RoutingDecision",
    "RoutingRecord",
    "RoutingError",
    "StageSpec",
    "StaticSignals",
    "SubsystemError",
    "SubsystemErrorInfo",
    "SubsystemResult",
    "SubsystemTimeout",
    "SynthesisError",
    "build_execution_plan",
]
