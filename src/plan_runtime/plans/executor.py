"""Plan executor: runs a plan's steps, resolving arguments just before dispatch."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..core.Exceptions import PlanExecutionError
from ..core.Prompts import STEP_FAILED_MESSAGE
from ..core.sentinels import NO_VAL
from ..data.resolver import PlaceholderResolver, get_value_by_path
from ..data.store import DependencyStore, PlanScope, StepResult
from ..streaming.sink import EventSink, EventType, StreamEvent
from .graph import PlanGraph
from .models import ExecutionMode, FailurePolicy, PlanStep, Run, RunStatus, StepState

logger = logging.getLogger(__name__)

__all__ = ["PlanExecutor", "ToolInvoker"]


class ToolInvoker(Protocol):
    async def invoke(self, tool_name: str, arguments: Mapping[str, Any]) -> Any: ...


class PlanExecutor:
    """Drives a :class:`Run` from ``created`` to a terminal status.

    Steps run in declared order (``ExecutionMode.SEQUENTIAL``) or in
    dependency waves (``ExecutionMode.GRAPH``). In both modes a step's
    arguments are resolved against the results already written for its plan,
    immediately before the step is dispatched.

    Parameters
    ----------
    store:
        Dependency store holding step results and plan tags.
    invoker:
        Tool-invocation collaborator (``await invoker.invoke(name, args)``).
        A raised exception, including a timeout, fails the step.
    sink:
        Optional session output sink for run and step events.
    failure_policy:
        ``FAIL_FAST`` stops at the first failed step and fails the run.
        ``BEST_EFFORT`` runs every step and ends ``completed``,
        ``partially_failed`` or ``failed`` depending on how many succeeded.
    """

    def __init__(
        self,
        store: DependencyStore,
        invoker: ToolInvoker,
        sink: Optional[EventSink] = None,
        *,
        resolver: Optional[PlaceholderResolver] = None,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST,
        execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        preserve_types: bool = False,
    ) -> None:
        self._store = store
        self._invoker = invoker
        self._sink = sink
        self._resolver = resolver or PlaceholderResolver(store, preserve_types=preserve_types)
        self._failure_policy = FailurePolicy(failure_policy)
        self._execution_mode = ExecutionMode(execution_mode)

    @classmethod
    def from_settings(cls, settings: Any, store: DependencyStore, invoker: ToolInvoker,
                      sink: Optional[EventSink] = None) -> "PlanExecutor":
        return cls(
            store,
            invoker,
            sink,
            failure_policy=settings.failure_policy,
            execution_mode=settings.execution_mode,
            preserve_types=settings.preserve_types,
        )

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._failure_policy

    @property
    def execution_mode(self) -> ExecutionMode:
        return self._execution_mode

    # ------------------------------------------------------------------ #
    # Run lifecycle
    # ------------------------------------------------------------------ #
    async def execute(self, run: Run) -> Run:
        if run.status is not RunStatus.CREATED:
            raise PlanExecutionError(f"run {run.run_id} is {run.status.value}; only created runs execute")

        waves: Optional[List[List[int]]] = None
        if self._execution_mode is ExecutionMode.GRAPH:
            waves = PlanGraph.from_plan(run.plan).waves()
        scope = self._store.scope(run.plan_id)
        for tag, value in run.plan.tags.items():
            scope.save_plan_data(tag, value)

        self._set_status(run, RunStatus.RUNNING)
        outcomes: List[bool] = []
        try:
            if waves is not None:
                await self._execute_graph(run, scope, waves, outcomes)
            else:
                await self._execute_sequential(run, scope, outcomes)
        except asyncio.CancelledError:
            self._skip_pending(run)
            run.error = "cancelled"
            self._set_status(run, RunStatus.CANCELLED, final=True)
            raise

        self._set_status(run, self._final_status(outcomes), final=True)
        return run

    async def _execute_sequential(self, run: Run, scope: PlanScope, outcomes: List[bool]) -> None:
        for step in run.plan.steps:
            ok = await self._run_step(run, scope, step)
            outcomes.append(ok)
            if not ok and self._failure_policy is FailurePolicy.FAIL_FAST:
                self._skip_pending(run)
                return

    async def _execute_graph(
        self, run: Run, scope: PlanScope, waves: List[List[int]], outcomes: List[bool]
    ) -> None:
        steps = run.plan.steps
        for wave in waves:
            results = await asyncio.gather(*(self._run_step(run, scope, steps[i]) for i in wave))
            outcomes.extend(results)
            if not all(results) and self._failure_policy is FailurePolicy.FAIL_FAST:
                self._skip_pending(run)
                return

    def _final_status(self, outcomes: List[bool]) -> RunStatus:
        failed = outcomes.count(False)
        if failed == 0:
            return RunStatus.COMPLETED
        if self._failure_policy is FailurePolicy.FAIL_FAST:
            return RunStatus.FAILED
        return RunStatus.PARTIALLY_FAILED if failed < len(outcomes) else RunStatus.FAILED

    # ------------------------------------------------------------------ #
    # Single step
    # ------------------------------------------------------------------ #
    async def _run_step(self, run: Run, scope: PlanScope, step: PlanStep) -> bool:
        if step.status is StepState.COMPLETED:
            logger.debug("PlanExecutor: step %s already completed; skipping", step.id)
            return True

        arguments = self._resolver.resolve(run.plan_id, step.arguments)
        pending = StepResult.begin(run.plan_id, step.id)
        scope.save_step_result(pending)
        run.results[step.id] = pending
        step.status = StepState.RUNNING
        run.touch()
        logger.info("PlanExecutor: run %s step %s -> %s", run.run_id, step.id, step.tool_name)
        self._emit(run, EventType.STEP_STARTED, {
            "stepId": step.id, "toolName": step.tool_name, "intent": step.intent, "arguments": arguments,
        })

        try:
            output = await self._invoker.invoke(step.tool_name, arguments)
        except asyncio.CancelledError:
            self._record(run, scope, step, pending.fail("cancelled"), StepState.FAILED)
            raise
        except Exception as exc:
            message = STEP_FAILED_MESSAGE.format(TOOL_NAME=step.tool_name, ERROR=exc)
            logger.error("PlanExecutor: run %s: %s", run.run_id, message)
            self._record(run, scope, step, pending.fail(str(exc)), StepState.FAILED)
            self._emit(run, EventType.STEP_FAILED, {"stepId": step.id, "toolName": step.tool_name, "error": str(exc)})
            self._emit(run, EventType.ERROR, message)
            return False

        extracted = self._extract(step, output)
        result = pending.complete(output, extracted=extracted)
        self._record(run, scope, step, result, StepState.COMPLETED)
        if step.output_tag:
            scope.save_plan_data(step.output_tag, extracted if step.extract else output)
        self._emit(run, EventType.STEP_COMPLETED, {
            "stepId": step.id, "toolName": step.tool_name, "result": output,
        })
        return True

    @staticmethod
    def _extract(step: PlanStep, output: Any) -> Dict[str, Any]:
        extracted: Dict[str, Any] = {}
        for name, path in (step.extract or {}).items():
            value = get_value_by_path(output, path)
            if value is not NO_VAL:
                extracted[name] = value
        return extracted

    def _record(self, run: Run, scope: PlanScope, step: PlanStep, result: StepResult, state: StepState) -> None:
        scope.save_step_result(result)
        run.results[step.id] = result
        step.status = state
        run.touch()

    @staticmethod
    def _skip_pending(run: Run) -> None:
        for step in run.plan.steps:
            if step.status in (StepState.PENDING, StepState.RUNNING):
                step.status = StepState.SKIPPED

    # ------------------------------------------------------------------ #
    # Events
    # ------------------------------------------------------------------ #
    def _set_status(self, run: Run, status: RunStatus, *, final: bool = False) -> None:
        logger.info("PlanExecutor: run %s %s -> %s", run.run_id, run.status.value, status.value)
        run.status = status
        if status.is_terminal:
            run.finished_at = time.time()
        self._emit(run, EventType.RUN_UPDATED, run.summary(), is_final=final)

    def _emit(self, run: Run, event_type: str, content: Any, *, is_final: bool = False) -> None:
        if self._sink is None or not run.session_id:
            return
        self._sink.emit(StreamEvent(
            type=event_type,
            session_id=run.session_id,
            content=content,
            message_id=run.run_id,
            is_final=is_final,
        ))
