from .base import CallableSubsystemAdapter, Deadline, SubsystemAdapter
from .registry import SubsystemRegistry

__all__ = ["CallableSubsystemAdapter", "Deadline", "SubsystemAdapter", "SubsystemRegistry"]
