"""Orchestration core that routes a request across reasoning, council and retrieval subsystems."""

from .orchestration import (
    CancellationToken,
    Orchestrator,
    ProcessingPipeline,
    Router,
)
from .subsystems import CallableSubsystemAdapter, SubsystemRegistry
from .synthesis import Synthesizer

__version__ = "0.1.0"

__all__ = [
    "CallableSubsystemAdapter",
    "CancellationToken",
    "Orchestrator",
    "ProcessingPipeline",
    "Router",
    "SubsystemRegistry",
    "Synthesizer",
    "__version__",
]
