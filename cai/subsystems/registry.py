from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

from ..core.logging import get_logger
from ..orchestration.exceptions import CapabilityError, ConfigurationError
from ..schemas.enums import SubsystemKind
from .base import SubsystemAdapter, missing_capabilities

__all__ = ["SubsystemRegistry"]

logger = get_logger(name=__name__)


class SubsystemRegistry:
    """Read-only mapping of subsystem kinds to adapters.

    Capabilities are validated once here so the orchestrator never rechecks
    adapters at call time. Use :meth:`with_adapter` to derive a new registry.
    """

    def __init__(self, adapters: Iterable[SubsystemAdapter] = ()) -> None:
        registry: dict[SubsystemKind, SubsystemAdapter] = {}
        for adapter in adapters:
            kind = SubsystemKind(adapter.kind)
            if kind in registry:
                raise ConfigurationError(f"Subsystem {kind.value} registered more than once")
            missing = missing_capabilities(adapter)
            if missing:
                names = sorted(capability.value for capability in missing)
                raise CapabilityError(f"Subsystem {kind.value} is missing required capabilities: {names}")
            registry[kind] = adapter
        self._adapters: Mapping[SubsystemKind, SubsystemAdapter] = MappingProxyType(registry)
        logger.debug("subsystem_registry_built", subsystems=[kind.value for kind in registry])

    def get(self, kind: SubsystemKind) -> SubsystemAdapter | None:
        return self._adapters.get(kind)

    def require(self, kind: SubsystemKind) -> SubsystemAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise KeyError(kind)
        return adapter

    def availability(self) -> dict[SubsystemKind, bool]:
        return {kind: bool(adapter.available) for kind, adapter in self._adapters.items()}

    def with_adapter(self, adapter: SubsystemAdapter) -> "SubsystemRegistry":
        """Return a registry where ``adapter`` replaces any adapter of the same kind."""
        adapters = {kind: existing for kind, existing in self._adapters.items()}
        adapters[SubsystemKind(adapter.kind)] = adapter
        return SubsystemRegistry(adapters.values())

    @property
    def kinds(self) -> tuple[SubsystemKind, ...]:
        return tuple(self._adapters)

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    def __iter__(self) -> Iterator[SubsystemAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)
