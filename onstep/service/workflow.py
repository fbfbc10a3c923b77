from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from onstep.logging import get_logger, log_workflow_trace
from onstep.service.definition import (
    CodeStep,
    ConditionStep,
    SkipStep,
    StateStep,
    ToolStep,
    WorkflowDefinition,
    parse_definition,
    resolve_template,
)
from onstep.service.errors import InvalidResultType, InvalidWorkflowGraph, ToolValidationError
from onstep.service.sandbox import SandboxRunner
from onstep.service.state import NamespacedState, StateStore
from onstep.service.tools import ToolInvoker
from onstep.storage.errors import StateStoreError

MAX_TRACE_ENTRIES = 500


@dataclass(frozen=True)
class ExecutionPlan:
    """Validated dependency graph of a workflow.

    ``sinks`` are the steps nothing depends on, in declaration order; the last
    of them is the ``terminal_step`` whose value a run returns by default.
    """

    order: List[str]
    dependencies: Mapping[str, FrozenSet[str]]
    dependents: Mapping[str, FrozenSet[str]]
    sinks: Tuple[str, ...]
    terminal_step: str


@dataclass
class WorkflowRun:
    output: Any
    outputs: Dict[str, Any]
    trace: List[Dict[str, Any]] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    stopped_by: Optional[str] = None


class ExecutionContext:
    """Values produced so far in one run, plus the run's initial inputs.

    Append-only: a step id is written once, by the step that owns it, before
    any dependent step reads it.
    """

    def __init__(self, inputs: Optional[Mapping[str, Any]] = None) -> None:
        self.inputs: Dict[str, Any] = dict(inputs or {})
        self._outputs: Dict[str, Any] = {}

    @property
    def outputs(self) -> Mapping[str, Any]:
        return MappingProxyType(self._outputs)

    def record(self, step_id: str, value: Any) -> None:
        if step_id in self._outputs:
            raise InvalidWorkflowGraph(f"step '{step_id}' produced a value twice")
        self._outputs[step_id] = value

    def resolve(self, template: Any) -> Any:
        # Copy so consumers never mutate a producer's stored value
        return copy.deepcopy(
            resolve_template(template, outputs=self._outputs, inputs=self.inputs)
        )

    def snapshot(self, step_ids: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        if step_ids is None:
            return copy.deepcopy(self._outputs)
        return {
            step_id: copy.deepcopy(self._outputs[step_id])
            for step_id in sorted(step_ids)
            if step_id in self._outputs
        }


class WorkflowEngine:
    """Executes workflow step graphs in dependency order.

    Steps whose inputs are all available run concurrently (bounded by
    ``max_concurrency``). The first failing step cancels the rest of the run
    and its exception propagates unchanged. A condition step skips the steps
    of the branch it did not take, and a skip step ends the run with its value.
    """

    DEFAULT_MAX_CONCURRENCY = 8
    MAX_CONCURRENCY = 64

    def __init__(
        self,
        runner: SandboxRunner,
        tools: ToolInvoker,
        state_store: Optional[StateStore] = None,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.runner = runner
        self.tools = tools
        self.state_store = state_store
        self.max_concurrency = min(max(1, max_concurrency), self.MAX_CONCURRENCY)
        self.logger = get_logger(__name__)

    def plan(self, definition: Union[WorkflowDefinition, Mapping[str, Any]]) -> ExecutionPlan:
        """Validate the step graph; raise InvalidWorkflowGraph before any side effect."""
        definition = parse_definition(definition)
        ids: List[str] = []
        for step in definition.steps:
            if step.id in ids:
                raise InvalidWorkflowGraph(
                    f"duplicate step id '{step.id}'", detail={"step_id": step.id}
                )
            ids.append(step.id)
        known = set(ids)

        dependencies: Dict[str, FrozenSet[str]] = {}
        for step in definition.steps:
            deps = step.dependencies()
            unknown = sorted(deps - known)
            if unknown:
                raise InvalidWorkflowGraph(
                    f"step '{step.id}' references unknown steps: {', '.join(unknown)}",
                    detail={"step_id": step.id, "unknown": unknown},
                )
            dependencies[step.id] = frozenset(deps)

        # A branch step waits for the condition that gates it
        for step in definition.steps:
            if not isinstance(step, ConditionStep):
                continue
            targets = set(step.then) | set(step.else_)
            unknown = sorted(targets - known)
            if unknown:
                raise InvalidWorkflowGraph(
                    f"condition '{step.id}' branches to unknown steps: {', '.join(unknown)}",
                    detail={"step_id": step.id, "unknown": unknown},
                )
            for target in targets:
                dependencies[target] = dependencies[target] | {step.id}

        unknown_output = sorted(
            {ref.name for ref in definition.output_references() if ref.source == "step"} - known
        )
        if unknown_output:
            raise InvalidWorkflowGraph(
                f"workflow output references unknown steps: {', '.join(unknown_output)}",
                detail={"unknown": unknown_output},
            )

        dependents: Dict[str, set] = {step_id: set() for step_id in ids}
        for step_id, deps in dependencies.items():
            for dep in deps:
                dependents[dep].add(step_id)

        # Kahn's algorithm, ties broken by declaration order
        in_degree = {step_id: len(dependencies[step_id]) for step_id in ids}
        ready = [step_id for step_id in ids if in_degree[step_id] == 0]
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for nxt in sorted(dependents[current], key=ids.index):
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    ready.append(nxt)
        if len(order) != len(ids):
            cyclic = [step_id for step_id in ids if in_degree[step_id] > 0]
            self.logger.warning("workflow_cycle_detected", steps=cyclic)
            raise InvalidWorkflowGraph(
                f"workflow contains a dependency cycle through: {', '.join(cyclic)}",
                detail={"steps": cyclic},
            )

        sinks = tuple(step_id for step_id in ids if not dependents[step_id])
        return ExecutionPlan(
            order=order,
            dependencies=MappingProxyType(dependencies),
            dependents=MappingProxyType({k: frozenset(v) for k, v in dependents.items()}),
            sinks=sinks,
            terminal_step=sinks[-1],
        )

    async def execute(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        namespace: Optional[str] = None,
    ) -> Any:
        """Run the workflow and return its output value."""
        run = await self.run(definition, initial_context, namespace=namespace)
        return run.output

    async def run(
        self,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
        initial_context: Optional[Mapping[str, Any]] = None,
        *,
        namespace: Optional[str] = None,
    ) -> WorkflowRun:
        definition = parse_definition(definition)
        plan = self.plan(definition)
        steps = {step.id: step for step in definition.steps}
        context = ExecutionContext(initial_context)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        trace: List[Dict[str, Any]] = []
        waiting = {step_id: set(plan.dependencies[step_id]) for step_id in plan.order}
        running: Dict[asyncio.Task, str] = {}
        skipped: Dict[str, str] = {}
        stopped_by: Optional[str] = None
        stop_value: Any = None
        started = time.monotonic()

        def _launch_ready() -> None:
            for step_id in plan.order:
                if step_id in waiting and not waiting[step_id]:
                    del waiting[step_id]
                    task = asyncio.create_task(
                        self._run_step(steps[step_id], context, semaphore, namespace, trace),
                        name=f"workflow-step-{step_id}",
                    )
                    running[task] = step_id

        def _skip(step_id: str, reason: str) -> None:
            pending = [(step_id, reason)]
            while pending:
                current, why = pending.pop()
                if current not in waiting:
                    continue
                del waiting[current]
                skipped[current] = why
                self._append_trace(
                    trace,
                    {
                        "step_id": current,
                        "type": steps[current].type,
                        "status": "skipped",
                        "reason": why,
                        "duration_ms": 0,
                    },
                )
                pending.extend(
                    (dependent, f"depends on skipped step '{current}'")
                    for dependent in sorted(plan.dependents[current])
                )

        _launch_ready()
        failure: Optional[BaseException] = None
        try:
            while running and failure is None:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: plan.order.index(running[t])):
                    step_id = running.pop(task)
                    exc = task.exception()
                    if exc is not None:
                        failure = failure or exc
                        continue
                    value = task.result()
                    context.record(step_id, value)
                    for dependent in plan.dependents[step_id]:
                        if dependent in waiting:
                            waiting[dependent].discard(step_id)
                    step = steps[step_id]
                    if isinstance(step, ConditionStep):
                        for target in step.branch(not value):
                            _skip(target, f"condition '{step_id}' was {str(value).lower()}")
                    elif isinstance(step, SkipStep) and stopped_by is None:
                        stopped_by, stop_value = step_id, value
                        for remaining in [s for s in plan.order if s in waiting]:
                            _skip(remaining, f"run stopped by '{step_id}'")
                if failure is None:
                    _launch_ready()
        finally:
            if running:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)
                running.clear()

        duration_ms = int((time.monotonic() - started) * 1000)
        if failure is not None:
            not_started = [step_id for step_id in plan.order if step_id in waiting]
            self.logger.warning(
                "workflow_run_failed",
                error_type=type(failure).__name__,
                error=str(failure),
                skipped_steps=not_started,
                duration_ms=duration_ms,
            )
            log_workflow_trace(trace, self.logger)
            raise failure

        if stopped_by is not None:
            output = stop_value
        elif definition.output is not None:
            # Skipped steps read as null in the output template
            visible = {**dict.fromkeys(skipped), **context.outputs}
            output = copy.deepcopy(
                resolve_template(definition.output, outputs=visible, inputs=context.inputs)
            )
        else:
            output = context.outputs[self._terminal_step(plan, context)]
        self.logger.info(
            "workflow_run_completed",
            steps=len(plan.order),
            skipped=len(skipped),
            stopped_by=stopped_by,
            duration_ms=duration_ms,
        )
        log_workflow_trace(trace, self.logger)
        return WorkflowRun(
            output=output,
            outputs=context.snapshot(),
            trace=trace,
            skipped=skipped,
            stopped_by=stopped_by,
        )

    @staticmethod
    def _terminal_step(plan: ExecutionPlan, context: ExecutionContext) -> str:
        """The last declared sink that ran, else the latest step that ran."""
        for step_id in reversed(plan.sinks):
            if step_id in context.outputs:
                return step_id
        for step_id in reversed(plan.order):
            if step_id in context.outputs:
                return step_id
        raise InvalidWorkflowGraph("no step produced a value")

    async def _run_step(
        self,
        step,
        context: ExecutionContext,
        semaphore: asyncio.Semaphore,
        namespace: Optional[str],
        trace: List[Dict[str, Any]],
    ) -> Any:
        entry: Dict[str, Any] = {"step_id": step.id, "type": step.type}
        started = time.monotonic()
        try:
            async with semaphore:
                value = await self._execute_step(step, context, namespace)
        except asyncio.CancelledError:
            entry["status"] = "cancelled"
            raise
        except Exception as exc:
            entry.update(status="error", error=f"{type(exc).__name__}: {exc}")
            self.logger.warning(
                "workflow_step_failed", step_id=step.id, error_type=type(exc).__name__, error=str(exc)
            )
            raise
        else:
            entry["status"] = "ok"
            return value
        finally:
            entry["duration_ms"] = int((time.monotonic() - started) * 1000)
            self._append_trace(trace, entry)

    async def _run_code(
        self, step, inputs: Any, context: ExecutionContext, namespace: Optional[str]
    ) -> Any:
        return await self.runner.run(
            step.code,
            step.entry_point,
            inputs=inputs,
            context={
                "step_id": step.id,
                "inputs": copy.deepcopy(context.inputs),
                # Only the steps this one declares a dependency on
                "steps": context.snapshot(step.dependencies()),
            },
            state=self._state_handle(namespace),
            timeout_seconds=step.timeout_seconds,
            log_fields={"step_id": step.id},
        )

    async def _execute_step(
        self, step, context: ExecutionContext, namespace: Optional[str]
    ) -> Any:
        if isinstance(step, CodeStep):
            return await self._run_code(step, context.resolve(step.inputs), context, namespace)
        if isinstance(step, ToolStep):
            args = context.resolve(step.args)
            if not isinstance(args, dict):
                raise ToolValidationError(
                    f"arguments for tool '{step.tool}' must resolve to an object",
                    detail={"step_id": step.id, "tool": step.tool},
                )
            result = await self.tools.invoke(
                step.tool,
                args,
                input_schema=step.input_schema,
                output_schema=step.output_schema,
            )
            return result.output
        if isinstance(step, StateStep):
            handle = self._state_handle(namespace)
            if handle is None:
                raise StateStoreError(
                    f"step '{step.id}' writes state but no state store or namespace is configured"
                )
            return await handle.set(step.key, context.resolve(step.value))
        if isinstance(step, ConditionStep):
            if step.code is not None:
                outcome = await self._run_code(step, context.resolve(step.inputs), context, namespace)
            else:
                outcome = context.resolve(step.predicate)
            if not isinstance(outcome, bool):
                raise InvalidResultType(
                    f"condition '{step.id}' must produce true or false, "
                    f"got {type(outcome).__name__}",
                    detail={"step_id": step.id, "type": type(outcome).__name__},
                )
            return outcome
        if isinstance(step, SkipStep):
            return context.resolve(step.value)
        raise InvalidWorkflowGraph(f"unsupported step type '{getattr(step, 'type', None)}'")

    def _state_handle(self, namespace: Optional[str]) -> Optional[NamespacedState]:
        if self.state_store is None or not namespace:
            return None
        return NamespacedState(self.state_store, namespace)

    @staticmethod
    def _append_trace(
        trace: List[Dict[str, Any]], entry: Dict[str, Any], max_entries: int = MAX_TRACE_ENTRIES
    ) -> None:
        trace.append(entry)
        if len(trace) > max_entries:
            del trace[0 : len(trace) - max_entries]


__all__ = ["ExecutionContext", "ExecutionPlan", "WorkflowEngine", "WorkflowRun"]
