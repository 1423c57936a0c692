from __future__ import annotations


class CAIError(RuntimeError):
    """Base class for orchestration-core failures."""


class ConfigurationError(CAIError, ValueError):
    """Raised at construction time when the configuration snapshot is unusable."""


class CapabilityError(ConfigurationError):
    """Raised when a subsystem adapter does not declare the capabilities its kind requires."""


class RoutingError(CAIError):
    """Raised when a request is structurally invalid and cannot be routed."""


class OrchestrationError(CAIError):
    """Raised when an execution plan cannot be built or nothing completed before the hard deadline."""


class SynthesisError(CAIError):
    """Raised when no subsystem produced a successful result to fuse."""


class SubsystemError(CAIError):
    """Raised by adapters for failures they want recorded as subsystem errors.

    Adapters pass ``retryable=False`` when repeating the call cannot help.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class SubsystemTimeout(SubsystemError):
    """Raised when a subsystem call exceeds its deadline. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


__all__ = [
    "CAIError",
    "ConfigurationError",
    "CapabilityError",
    "RoutingError",
    "OrchestrationError",
    "SynthesisError",
    "SubsystemError",
    "SubsystemTimeout",
]
