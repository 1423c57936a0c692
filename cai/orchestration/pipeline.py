from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from ..core.config import Settings, get_settings
from ..core.logging import get_logger, request_context
from ..schemas.requests import Request
from ..schemas.responses import FinalResponse
from ..services.events import ObservabilitySink, build_event_sink
from ..services.health import SubsystemHealthTracker
from ..services.scoring import FeatureScorer, default_scorers
from ..subsystems.registry import SubsystemRegistry
from ..synthesis.synthesizer import Synthesizer
from .cancellation import CancellationToken
from .orchestrator import Orchestrator
from .routing import RegistrySignals, Router, RoutingDecision
from .state import ProcessingResult

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class PipelineComponents:
    settings: Settings
    router: Router
    orchestrator: Orchestrator
    synthesizer: Synthesizer


class ProcessingPipeline:
    """Route, execute and synthesize a request against one immutable settings snapshot.

    ``reload`` builds a fresh set of components and swaps them in one assignment;
    requests already in flight keep the components they started with.
    """

    def __init__(
        self,
        registry: SubsystemRegistry,
        *,
        settings: Settings | None = None,
        sink: ObservabilitySink | None = None,
        health: SubsystemHealthTracker | None = None,
        scorers: Sequence[FeatureScorer] | None = None,
    ) -> None:
        snapshot = settings or get_settings()
        self._registry = registry
        self._health = health or SubsystemHealthTracker(
            ttl_seconds=snapshot.health.ttl_seconds,
            smoothing=snapshot.health.smoothing,
        )
        self._sink = sink or build_event_sink(snapshot.observability)
        self._scorers = tuple(scorers) if scorers is not None else None
        self._components = self._build(snapshot)

    @property
    def components(self) -> PipelineComponents:
        return self._components

    @property
    def settings(self) -> Settings:
        return self._components.settings

    @property
    def registry(self) -> SubsystemRegistry:
        return self._registry

    @property
    def health(self) -> SubsystemHealthTracker:
        return self._health

    def _build(self, settings: Settings) -> PipelineComponents:
        orchestrator = Orchestrator(
            self._registry,
            settings=settings.orchestration,
            pipeline=settings.pipeline,
            health=self._health,
            sink=self._sink,
        )
        router = Router(
            settings=settings.routing,
            scorers=self._scorers if self._scorers is not None else default_scorers(self._health),
            signals=RegistrySignals(self._registry, load=lambda: orchestrator.load),
            sink=self._sink,
            health=self._health,
        )
        synthesizer = Synthesizer(settings.synthesis, sink=self._sink)
        return PipelineComponents(settings=settings, router=router, orchestrator=orchestrator, synthesizer=synthesizer)

    def reload(self, settings: Settings, *, registry: SubsystemRegistry | None = None) -> None:
        """Swap in components built from ``settings`` (and optionally a new registry)."""
        previous = self._registry
        if registry is not None:
            self._registry = registry
        try:
            components = self._build(settings)
        except Exception:
            self._registry = previous
            logger.exception("pipeline_reload_failed")
            raise
        self._components = components
        logger.info(
            "pipeline_reloaded",
            environment=settings.environment,
            subsystems=[kind.value for kind in self._registry.kinds],
        )

    def route(self, request: Request) -> RoutingDecision:
        return self._components.router.route(request)

    async def execute(
        self,
        decision: RoutingDecision,
        request: Request,
        *,
        cancellation: CancellationToken | None = None,
    ) -> ProcessingResult:
        return await self._components.orchestrator.execute(decision, request, cancellation=cancellation)

    def synthesize(self, result: ProcessingResult, request: Request) -> FinalResponse:
        return self._components.synthesizer.synthesize(result, request)

    async def process(
        self,
        request: Request,
        *,
        cancellation: CancellationToken | None = None,
    ) -> FinalResponse:
        components = self._components
        with request_context(request.request_id):
            decision = components.router.route(request)
            result = await components.orchestrator.execute(decision, request, cancellation=cancellation)
            return components.synthesizer.synthesize(result, request)


__all__ = ["PipelineComponents", "ProcessingPipeline"]
