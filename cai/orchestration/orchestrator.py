from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential
from tenacity.stop import stop_base

from ..core.config import OrchestrationSettings, PipelineSettings, get_settings
from ..core.logging import get_logger
from ..core.metrics import (
    mark_execution_completed,
    mark_execution_started,
    observe_subsystem_call,
    record_stage_completion,
    record_subsystem_retry,
    set_in_flight_calls,
)
from ..schemas.enums import ExecutionStatus, PipelineStage, PlanStrategy, SubsystemKind, SubsystemStatus
from ..schemas.requests import Request
from ..services.events import NullEventSink, ObservabilitySink
from ..services.health import SubsystemHealthTracker
from ..subsystems.base import Deadline, SubsystemAdapter
from ..subsystems.registry import SubsystemRegistry
from .cancellation import CancellationToken
from .checkpoint import CheckpointLog
from .exceptions import OrchestrationError, SubsystemError, SubsystemTimeout
from .plan import ExecutionPlan, StageSpec, build_execution_plan
from .routing import RoutingDecision
from .state import ProcessingResult, SubsystemErrorInfo, SubsystemResult

logger = get_logger(name=__name__)

_CALL = "call"
_BUDGET = "budget"
_STAGE = "stage"


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.CancelledError, asyncio.TimeoutError, SubsystemTimeout)):
        return False
    if isinstance(exc, SubsystemError):
        return exc.retryable
    return isinstance(exc, Exception)


def _consume_outcome(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


class _BudgetStop(stop_base):
    """Stop retrying once the next backoff would not leave ``min_window`` of call budget."""

    def __init__(
        self,
        wait: wait_exponential,
        deadline: Deadline,
        min_window: float,
        on_skip: Callable[[RetryCallState, float], None],
    ) -> None:
        self._wait = wait
        self._deadline = deadline
        self._min_window = min_window
        self._on_skip = on_skip

    def __call__(self, retry_state: RetryCallState) -> bool:
        delay = self._wait(retry_state)
        if self._deadline.remaining() <= delay + self._min_window:
            self._on_skip(retry_state, delay)
            return True
        return False


class Orchestrator:
    """Run a routing decision's subsystems under its plan strategy with bounded time budgets."""

    def __init__(
        self,
        registry: SubsystemRegistry,
        *,
        settings: OrchestrationSettings | None = None,
        pipeline: PipelineSettings | None = None,
        health: SubsystemHealthTracker | None = None,
        sink: ObservabilitySink | None = None,
    ) -> None:
        snapshot = get_settings() if settings is None or pipeline is None else None
        self._registry = registry
        self._settings = settings or snapshot.orchestration  # type: ignore[union-attr]
        self._pipeline = pipeline or snapshot.pipeline  # type: ignore[union-attr]
        self._health = health or SubsystemHealthTracker()
        self._sink: ObservabilitySink = sink or NullEventSink()
        self._in_flight = 0

    @property
    def settings(self) -> OrchestrationSettings:
        return self._settings

    @property
    def health(self) -> SubsystemHealthTracker:
        return self._health

    @property
    def sink(self) -> ObservabilitySink:
        return self._sink

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def load(self) -> float:
        return min(1.0, self._in_flight / self._settings.load_capacity)

    def plan(self, decision: RoutingDecision) -> ExecutionPlan:
        return build_execution_plan(decision, self._settings, self._pipeline, self._registry)

    async def execute(
        self,
        decision: RoutingDecision,
        request: Request,
        *,
        cancellation: CancellationToken | None = None,
    ) -> ProcessingResult:
        plan = self.plan(decision)
        logger.info(
            "orchestrator_execution_started",
            request_id=request.request_id,
            strategy=plan.strategy.value,
            subsystems=[kind.value for kind in plan.subsystems],
            budget=plan.total_budget,
        )
        execution = _Execution(self, plan, decision, request, cancellation)
        return await execution.run()

    def adapter(self, kind: SubsystemKind) -> SubsystemAdapter:
        return self._registry.require(kind)

    @contextmanager
    def tracking_call(self) -> Iterator[None]:
        """Count one running subsystem call towards ``in_flight`` and ``load``."""
        self._in_flight += 1
        set_in_flight_calls(self._in_flight)
        try:
            yield
        finally:
            self._in_flight = max(0, self._in_flight - 1)
            set_in_flight_calls(self._in_flight)


class _Execution:
    """State of one ``Orchestrator.execute`` call. Each result slot is written once."""

    def __init__(
        self,
        owner: Orchestrator,
        plan: ExecutionPlan,
        decision: RoutingDecision,
        request: Request,
        cancellation: CancellationToken | None,
    ) -> None:
        self._owner = owner
        self._settings = owner.settings
        self._plan = plan
        self._decision = decision
        self._request = request
        self._cancellation = cancellation
        self._loop = asyncio.get_running_loop()
        self._started_at = self._loop.time()
        self._hard_deadline = self._started_at + plan.total_budget
        self._semaphore = asyncio.Semaphore(plan.max_concurrent)
        self._checkpoints = CheckpointLog(clock=self._loop.time)
        self._slots: dict[SubsystemKind, SubsystemResult] = {}
        self._timeout_bounds: dict[SubsystemKind, str] = {}
        self._started: set[SubsystemKind] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self._cancelled = False
        self._budget_exhausted = False
        self._rolled_back = False
        self._stage_timed_out = False
        self._transitions: list[ExecutionStatus] = [ExecutionStatus.PLANNING]

    def _remaining(self) -> float:
        return max(0.0, self._hard_deadline - self._loop.time())

    def _transition(self, status: ExecutionStatus) -> None:
        logger.debug(
            "orchestrator_state_changed",
            request_id=self._request.request_id,
            previous=self._transitions[-1].value,
            state=status.value,
        )
        self._transitions.append(status)

    async def run(self) -> ProcessingResult:
        mark_execution_started()
        self._transition(ExecutionStatus.RUNNING)
        runner = asyncio.create_task(self._run_strategy())
        waiters: set[asyncio.Task[Any]] = {runner}
        cancel_waiter: asyncio.Task[Any] | None = None
        if self._cancellation is not None:
            cancel_waiter = asyncio.create_task(self._cancellation.wait())
            waiters.add(cancel_waiter)
        try:
            done, _ = await asyncio.wait(waiters, timeout=self._remaining(), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._abort(runner)
            self._closed = True
            mark_execution_completed(strategy=self._plan.strategy.value, status="cancelled", latency=self._elapsed())
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if runner in done:
            runner.result()
        else:
            if cancel_waiter is not None and cancel_waiter in done:
                self._cancelled = True
                logger.warning(
                    "orchestrator_execution_cancelled",
                    request_id=self._request.request_id,
                    reason=self._cancellation.reason if self._cancellation else None,
                )
            else:
                self._budget_exhausted = True
                logger.warning(
                    "orchestrator_budget_exhausted",
                    request_id=self._request.request_id,
                    budget=self._plan.total_budget,
                )
            self._abort(runner)
        return self._finalize()

    def _abort(self, runner: asyncio.Task[Any]) -> None:
        runner.cancel()
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def _run_strategy(self) -> None:
        strategy = self._plan.strategy
        if strategy is PlanStrategy.SEQUENTIAL:
            await self._run_sequential()
        elif strategy is PlanStrategy.PARALLEL:
            await self._run_parallel()
        else:
            await self._run_pipeline()

    async def _run_sequential(self) -> None:
        outputs: dict[str, Any] = {}
        subsystems = self._plan.subsystems
        for index, kind in enumerate(subsystems):
            call_request = self._request.with_context(subsystem_outputs=dict(outputs))
            result = await self._invoke(kind, call_request)
            self._store(result)
            if result.succeeded:
                outputs[kind.value] = result.payload
            self._checkpoint(kind.value, context={"subsystem_outputs": dict(outputs)})
            if result.succeeded:
                continue
            if self._plan.stop_on_error:
                reason = f"{kind.value} finished with {result.status.value}"
                for remaining in subsystems[index + 1 :]:
                    self._store(SubsystemResult.skipped(remaining, reason=reason))
                logger.info(
                    "orchestrator_sequence_stopped",
                    request_id=self._request.request_id,
                    failed=kind.value,
                    skipped=[item.value for item in subsystems[index + 1 :]],
                )
                return

    async def _run_parallel(self) -> None:
        tasks = [self._spawn(kind, self._request) for kind in self._plan.subsystems]
        await asyncio.gather(*tasks)
        self._checkpoint("parallel")

    async def _run_pipeline(self) -> None:
        stage_outputs: dict[str, dict[str, Any]] = {}
        outputs: dict[str, Any] = {}
        stages = self._plan.stages
        for position, spec in enumerate(stages):
            if spec.passthrough:
                self._checkpoint(
                    spec.stage.value,
                    stage=spec.stage,
                    outcome="passthrough",
                    context={"stage_outputs": {name: dict(values) for name, values in stage_outputs.items()}},
                )
                continue

            stage_request = self._request.with_context(
                stage=spec.stage.value,
                stage_outputs={name: dict(values) for name, values in stage_outputs.items()},
                subsystem_outputs=dict(outputs),
            )
            stage_deadline = self._loop.time() + spec.timeout
            tasks = [
                self._spawn(kind, stage_request, stage=spec.stage, stage_deadline=stage_deadline)
                for kind in spec.subsystems
            ]
            await asyncio.gather(*tasks)

            stage_results = [self._slots[kind] for kind in spec.subsystems if kind in self._slots]
            successes = [result for result in stage_results if result.succeeded]
            timed_out = any(self._timeout_bounds.get(kind) == _STAGE for kind in spec.subsystems)

            if timed_out:
                outcome = "timeout"
            elif not successes:
                outcome = "failed"
            elif len(successes) == len(spec.subsystems):
                outcome = "completed"
            else:
                outcome = "partial"

            halt_reason: str | None = None
            if timed_out:
                self._stage_timed_out = True
                halt_reason = f"stage {spec.stage.value} timed out"
            elif not successes and self._plan.rollback_on_stage_failure:
                self._rolled_back = True
                halt_reason = f"stage {spec.stage.value} failed; pipeline rolled back"

            forwarded = {name: dict(values) for name, values in stage_outputs.items()}
            if successes and halt_reason is None:
                forwarded[spec.stage.value] = {result.subsystem.value: result.payload for result in successes}
            self._checkpoint(
                spec.stage.value,
                stage=spec.stage,
                outcome=outcome,
                context={"stage_outputs": forwarded},
            )

            if halt_reason is not None:
                self._skip_stages(stages[position + 1 :], halt_reason)
                logger.warning(
                    "orchestrator_pipeline_halted",
                    request_id=self._request.request_id,
                    stage=spec.stage.value,
                    reason=halt_reason,
                )
                return

            if successes:
                stage_outputs[spec.stage.value] = forwarded[spec.stage.value]
                outputs.update(stage_outputs[spec.stage.value])

    def _skip_stages(self, stages: tuple[StageSpec, ...], reason: str) -> None:
        for spec in stages:
            for kind in spec.subsystems:
                self._store(SubsystemResult.skipped(kind, stage=spec.stage, reason=reason))

    def _spawn(
        self,
        kind: SubsystemKind,
        request: Request,
        *,
        stage: PipelineStage | None = None,
        stage_deadline: float | None = None,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self._invoke_and_store(kind, request, stage, stage_deadline))
        self._tasks.add(task)
        return task

    async def _invoke_and_store(
        self,
        kind: SubsystemKind,
        request: Request,
        stage: PipelineStage | None,
        stage_deadline: float | None,
    ) -> None:
        result = await self._invoke(kind, request, stage=stage, stage_deadline=stage_deadline)
        self._store(result)

    def _store(self, result: SubsystemResult) -> None:
        if self._closed or result.subsystem in self._slots:
            return
        self._slots[result.subsystem] = result

    def _checkpoint(
        self,
        label: str,
        *,
        stage: PipelineStage | None = None,
        outcome: str = "completed",
        context: dict[str, Any] | None = None,
    ) -> None:
        if self._closed:
            return
        completed = [self._slots[kind] for kind in self._plan.subsystems if kind in self._slots]
        checkpoint = self._checkpoints.record(label, completed, context=context)
        if stage is not None:
            record_stage_completion(stage=stage.value, outcome=outcome)
            self._owner.sink.emit(
                "orchestration.stage_completed",
                request_id=self._request.request_id,
                stage=stage.value,
                outcome=outcome,
                sequence=checkpoint.sequence,
                completed=[result.subsystem.value for result in completed],
            )

    async def _invoke(
        self,
        kind: SubsystemKind,
        request: Request,
        *,
        stage: PipelineStage | None = None,
        stage_deadline: float | None = None,
    ) -> SubsystemResult:
        async with self._semaphore:
            self._started.add(kind)
            bounds = {_CALL: self._plan.per_call_timeout, _BUDGET: self._remaining()}
            if stage_deadline is not None:
                bounds[_STAGE] = max(0.0, stage_deadline - self._loop.time())
            bound, limit = min(bounds.items(), key=lambda item: item[1])

            adapter = self._owner.adapter(kind)
            attempts = [0]
            started = self._loop.time()
            if limit <= 0.0:
                return self._timeout_result(kind, stage, bound, limit, started, attempts[0])

            deadline = Deadline(expires_at=started + limit, clock=self._loop.time)
            with self._owner.tracking_call():
                task = asyncio.create_task(self._call_with_retries(adapter, kind, request, deadline, attempts))
                try:
                    done, _ = await asyncio.wait({task}, timeout=limit)
                except asyncio.CancelledError:
                    task.cancel()
                    task.add_done_callback(_consume_outcome)
                    raise

            if task not in done:
                task.cancel()
                task.add_done_callback(_consume_outcome)
                return self._timeout_result(kind, stage, bound, limit, started, attempts[0])

            latency = self._loop.time() - started
            if task.cancelled():
                info = SubsystemErrorInfo(type="CancelledError", message="adapter call was cancelled", retryable=False)
                return self._error_result(kind, stage, info, latency, attempts[0])
            exc = task.exception()
            if exc is None:
                result = SubsystemResult(
                    subsystem=kind,
                    status=SubsystemStatus.SUCCESS,
                    payload=task.result(),
                    latency=latency,
                    attempts=attempts[0],
                    stage=stage,
                )
                self._observe(result)
                return result
            if isinstance(exc, (SubsystemTimeout, asyncio.TimeoutError)):
                return self._timeout_result(kind, stage, _CALL, limit, started, attempts[0], exc=exc)
            return self._error_result(kind, stage, SubsystemErrorInfo.from_exception(exc), latency, attempts[0])

    async def _call_with_retries(
        self,
        adapter: SubsystemAdapter,
        kind: SubsystemKind,
        request: Request,
        deadline: Deadline,
        attempts: list[int],
    ) -> Any:
        settings = self._settings
        wait = wait_exponential(
            multiplier=settings.base_backoff_seconds,
            exp_base=settings.backoff_multiplier,
            max=settings.max_backoff_seconds,
        )

        def on_skip(retry_state: RetryCallState, delay: float) -> None:
            record_subsystem_retry(subsystem=kind.value, outcome="skipped")
            logger.info(
                "orchestrator_retry_skipped",
                request_id=request.request_id,
                subsystem=kind.value,
                attempt=retry_state.attempt_number,
                backoff=round(delay, 4),
                remaining=round(deadline.remaining(), 4),
            )

        def before_sleep(retry_state: RetryCallState) -> None:
            record_subsystem_retry(subsystem=kind.value, outcome="scheduled")
            outcome = retry_state.outcome
            logger.warning(
                "orchestrator_call_retry",
                request_id=request.request_id,
                subsystem=kind.value,
                attempt=retry_state.attempt_number,
                error=str(outcome.exception()) if outcome is not None else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(settings.retry_attempts + 1)
            | _BudgetStop(wait, deadline, settings.min_retry_window_seconds, on_skip),
            wait=wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep,
            reraise=True,
        )
        payload: Any = None
        async for attempt in retrying:
            with attempt:
                attempts[0] = attempt.retry_state.attempt_number
                payload = await adapter.process(request, deadline)
        return payload

    def _timeout_result(
        self,
        kind: SubsystemKind,
        stage: PipelineStage | None,
        bound: str,
        limit: float,
        started: float,
        attempts: int,
        *,
        exc: BaseException | None = None,
    ) -> SubsystemResult:
        latency = self._loop.time() - started
        self._timeout_bounds[kind] = bound
        message = str(exc) if exc is not None and str(exc) else f"exceeded {bound} deadline of {limit:.3f}s"
        result = SubsystemResult(
            subsystem=kind,
            status=SubsystemStatus.TIMEOUT,
            latency=latency,
            attempts=attempts,
            error=SubsystemErrorInfo(type="SubsystemTimeout", message=message, retryable=False),
            stage=stage,
        )
        logger.warning(
            "orchestrator_call_timeout",
            request_id=self._request.request_id,
            subsystem=kind.value,
            bound=bound,
            limit=round(limit, 4),
            latency=round(latency, 4),
        )
        self._observe(result)
        return result

    def _error_result(
        self,
        kind: SubsystemKind,
        stage: PipelineStage | None,
        info: SubsystemErrorInfo,
        latency: float,
        attempts: int,
    ) -> SubsystemResult:
        result = SubsystemResult(
            subsystem=kind,
            status=SubsystemStatus.ERROR,
            latency=latency,
            attempts=attempts,
            error=info,
            stage=stage,
        )
        logger.warning(
            "orchestrator_call_failed",
            request_id=self._request.request_id,
            subsystem=kind.value,
            error_type=info.type,
            error=info.message,
            attempts=attempts,
        )
        self._observe(result)
        return result

    def _observe(self, result: SubsystemResult) -> None:
        observe_subsystem_call(subsystem=result.subsystem.value, status=result.status.value, latency=result.latency)
        self._owner.health.record(result.subsystem, result.status, result.latency)

    def _elapsed(self) -> float:
        return self._loop.time() - self._started_at

    def _finalize(self) -> ProcessingResult:
        self._closed = True
        elapsed = self._elapsed()
        results: list[SubsystemResult] = []
        for kind in self._plan.subsystems:
            slot = self._slots.get(kind)
            if slot is None:
                slot = self._unfinished_result(kind, elapsed)
            results.append(slot)

        if any(bound == _BUDGET for bound in self._timeout_bounds.values()):
            self._budget_exhausted = True
        completed = [
            kind
            for kind, slot in self._slots.items()
            if not (slot.status is SubsystemStatus.TIMEOUT and self._timeout_bounds.get(kind) == _BUDGET)
        ]
        strategy = self._plan.strategy.value
        if self._budget_exhausted and not completed:
            mark_execution_completed(strategy=strategy, status=ExecutionStatus.FAILED.value, latency=elapsed)
            logger.error(
                "orchestrator_nothing_completed",
                request_id=self._request.request_id,
                budget=self._plan.total_budget,
            )
            raise OrchestrationError(
                f"No subsystem completed within the {self._plan.total_budget:.3f}s budget "
                f"for request {self._request.request_id}"
            )

        successes = sum(1 for result in results if result.succeeded)
        if successes == 0:
            status = ExecutionStatus.FAILED
        elif successes == len(results):
            status = ExecutionStatus.COMPLETED
        elif self._rolled_back:
            status = ExecutionStatus.ROLLED_BACK
        else:
            status = ExecutionStatus.PARTIALLY_COMPLETED
        self._transition(status)

        processing = ProcessingResult(
            request_id=self._request.request_id,
            decision=self._decision,
            plan=self._plan,
            results=tuple(results),
            status=status,
            checkpoints=self._checkpoints.all(),
            elapsed=elapsed,
            cancelled=self._cancelled,
            budget_exhausted=self._budget_exhausted,
            metadata={
                "stage_timed_out": self._stage_timed_out,
                "rolled_back": self._rolled_back,
                "transitions": [state.value for state in self._transitions],
            },
        )
        mark_execution_completed(strategy=strategy, status=status.value, latency=elapsed)
        logger.info(
            "orchestrator_execution_completed",
            request_id=self._request.request_id,
            status=status.value,
            strategy=strategy,
            elapsed=round(elapsed, 4),
            successes=successes,
            cancelled=self._cancelled,
            budget_exhausted=self._budget_exhausted,
        )
        self._owner.sink.emit("orchestration.completed", **processing.as_dict())
        return processing

    def _unfinished_result(self, kind: SubsystemKind, elapsed: float) -> SubsystemResult:
        stage = self._plan.stage_of(kind)
        if kind in self._started and not self._cancelled:
            self._timeout_bounds[kind] = _BUDGET
            result = SubsystemResult(
                subsystem=kind,
                status=SubsystemStatus.TIMEOUT,
                latency=elapsed,
                error=SubsystemErrorInfo(
                    type="SubsystemTimeout",
                    message=f"total budget of {self._plan.total_budget:.3f}s exhausted",
                    retryable=False,
                ),
                stage=stage,
            )
            self._observe(result)
            return result
        if self._cancelled:
            return SubsystemResult.skipped(kind, stage=stage, reason="cancelled")
        return SubsystemResult.skipped(kind, stage=stage, reason="total budget exhausted")


__all__ = ["Orchestrator"]
