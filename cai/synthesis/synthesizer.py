from __future__ import annotations

from collections import Counter
from typing import Any

from ..core.config import SynthesisSettings, get_settings
from ..core.logging import get_logger
from ..core.metrics import increment_synthesis_failure, record_quality_check, record_synthesis
from ..orchestration.exceptions import SynthesisError
from ..orchestration.state import ProcessingResult
from ..schemas.enums import ResponseFormat
from ..schemas.requests import Request
from ..schemas.responses import FinalResponse
from ..services.events import NullEventSink, ObservabilitySink
from .formatting import citation_lines, render_body, render_citations, render_json, select_format, truncate
from .fusion import fuse
from .normalize import normalize_results
from .quality import assess_quality, run_quality_checks

logger = get_logger(name=__name__)


class Synthesizer:
    """Fuse the successful parts of a ``ProcessingResult`` into one ``FinalResponse``.

    Output depends only on the result, the request and the settings snapshot.
    """

    def __init__(self, settings: SynthesisSettings | None = None, *, sink: ObservabilitySink | None = None) -> None:
        self._settings = settings or get_settings().synthesis
        self._sink: ObservabilitySink = sink or NullEventSink()
        self._attempts = 0
        self._rejected = 0
        self._fallbacks = 0
        self._quality_total = 0.0
        self._strategy_usage: Counter[str] = Counter()

    @property
    def settings(self) -> SynthesisSettings:
        return self._settings

    def synthesize(self, result: ProcessingResult, request: Request) -> FinalResponse:
        self._attempts += 1
        failed = [item.subsystem.value for item in result.failures]
        if not result.successes:
            self._rejected += 1
            increment_synthesis_failure()
            logger.warning(
                "synthesis_nothing_to_fuse",
                request_id=result.request_id,
                statuses={kind.value: status.value for kind, status in result.statuses().items()},
                failed=failed,
            )
            raise SynthesisError(f"No subsystem succeeded for request {result.request_id}")

        settings = self._settings
        outputs = normalize_results(result, settings)
        requested = settings.strategy
        outcome = fuse(requested, outputs, settings)

        response_format = select_format(request, settings)
        body_format = ResponseFormat.TEXT if response_format is ResponseFormat.JSON else response_format
        body = render_body(outcome, body_format, attribution=settings.source_attribution)
        body = truncate(body, settings.max_response_length)

        quality = run_quality_checks(
            outcome,
            body,
            request,
            settings,
            succeeded=len(result.successes),
            planned=len(result.results),
        )

        sources = list(dict.fromkeys(source for output in outputs for source in output.sources))
        confidences = {output.subsystem: output.confidence for output in outputs}
        assessment = assess_quality(body, quality, outcome, confidences)
        citations = citation_lines(outcome.contributions, confidences, sources) if settings.source_attribution else []
        if response_format is ResponseFormat.JSON:
            content = render_json(body=body, outcome=outcome, citations=citations)
        else:
            content = body + render_citations(citations, response_format)

        degraded = len(result.successes) < len(result.results)
        response = FinalResponse(
            request_id=result.request_id,
            content=content,
            format=response_format,
            strategy=outcome.strategy,
            requested_strategy=requested,
            contributions=dict(outcome.contributions),
            quality=quality,
            assessment=assessment,
            degraded=degraded,
            confidence=max(0.0, min(1.0, outcome.confidence)),
            sources=sources,
        )

        self._strategy_usage[outcome.strategy.value] += 1
        self._fallbacks += int(outcome.strategy is not requested)
        self._quality_total += assessment.overall
        record_synthesis(
            requested_strategy=requested.value,
            strategy=outcome.strategy.value,
            quality=assessment.overall,
        )
        for flag in quality:
            record_quality_check(check=flag.check, passed=flag.passed)
        logger.info(
            "synthesis_completed",
            request_id=result.request_id,
            strategy=outcome.strategy.value,
            requested_strategy=requested.value,
            fallback_reason=outcome.fallback_reason,
            format=response_format.value,
            degraded=degraded,
            failed=failed,
            quality_score=round(assessment.overall, 4),
            failed_checks=[flag.check for flag in quality if not flag.passed],
        )
        self._sink.emit(
            "synthesis.quality",
            request_id=result.request_id,
            strategy=outcome.strategy.value,
            requested_strategy=requested.value,
            degraded=degraded,
            flags=[flag.model_dump(mode="json") for flag in quality],
            assessment=assessment.model_dump(mode="json"),
        )
        return response

    def stats(self) -> dict[str, Any]:
        completed = self._attempts - self._rejected
        return {
            "total_syntheses": self._attempts,
            "successful_syntheses": completed,
            "rejected_syntheses": self._rejected,
            "strategy_usage": dict(self._strategy_usage),
            "fallbacks": self._fallbacks,
            "average_quality": self._quality_total / completed if completed else 0.0,
        }


__all__ = ["Synthesizer"]
