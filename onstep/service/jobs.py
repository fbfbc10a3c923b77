"""Durable job execution.

A job wraps one workflow run and always ends in an inspectable terminal
status. ``run_job`` initialises the job, executes the workflow, and commits
the result; any failure is routed to ``handle_failure``, which records it
through a chain of progressively simpler layers and never raises:

1. primary: mark the attempt's pending result and the job ``failed``;
2. fallback: create a fresh ``failed`` result and mark the job ``failed``;
3. last resort: log the failure that could not be recorded.

Each layer either resolves the failure or escalates to the next one; an
exception inside a layer counts as an escalation.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from onstep.logging import get_logger, job_log_context, sanitize_error_message
from onstep.service.definition import TriggerSpec, WorkflowDefinition, parse_definition
from onstep.service.errors import (
    DefinitionError,
    InvalidTrigger,
    JobNotFoundError,
    JobStateError,
    failure_reason,
)
from onstep.service.sandbox import ensure_json_result
from onstep.service.state import state_namespace
from onstep.service.workflow import WorkflowEngine
from onstep.storage.models import Job, JobResult, JobStatus

logger = get_logger(__name__)

_trigger_adapter: TypeAdapter = TypeAdapter(TriggerSpec)


class JobStore(Protocol):
    def transaction(self): ...

    def create_job(self, job: Job) -> Job: ...

    def get_job_by_id(self, job_id: str) -> Optional[Job]: ...

    def update_job_status(self, job_id: str, status: JobStatus) -> Job: ...

    def create_job_result(self, result: JobResult) -> JobResult: ...

    def update_job_result(
        self, result_id: str, *, status: JobStatus, result: Any = None, reason: Optional[str] = None
    ) -> JobResult: ...

    def get_all_job_results_by_job_id(
        self, job_id: str, status: Optional[JobStatus] = None
    ) -> List[JobResult]: ...


class WorkflowSource(Protocol):
    """Loads the workflow definition a job should run (the document layer)."""

    def load_workflow(
        self, job: Job
    ) -> Union[WorkflowDefinition, Mapping[str, Any], Awaitable[Any]]: ...


class UserContextProvider(Protocol):
    def get_user_context(self, user_id: str) -> Union[Dict[str, Any], Awaitable[Dict[str, Any]]]: ...


class FailureNotifier(Protocol):
    def notify(self, outcome: "FailureOutcome") -> Union[None, Awaitable[None]]: ...


class InMemoryWorkflowSource:
    """Workflow definitions keyed by workflow id."""

    def __init__(self, workflows: Optional[Mapping[str, Any]] = None) -> None:
        self.workflows: Dict[str, WorkflowDefinition] = {}
        for workflow_id, definition in (workflows or {}).items():
            self.register(workflow_id, definition)

    def register(self, workflow_id: str, definition: Union[WorkflowDefinition, Mapping[str, Any]]) -> None:
        self.workflows[workflow_id] = parse_definition(definition)

    def load_workflow(self, job: Job) -> WorkflowDefinition:
        try:
            return self.workflows[job.workflow_id]
        except KeyError:
            raise DefinitionError(
                f"workflow '{job.workflow_id}' not found",
                detail={"workflow_id": job.workflow_id},
            ) from None


class StaticUserContextProvider:
    def __init__(self, contexts: Optional[Mapping[str, Dict[str, Any]]] = None) -> None:
        self.contexts = dict(contexts or {})

    def get_user_context(self, user_id: str) -> Dict[str, Any]:
        return {"user_id": user_id, **self.contexts.get(user_id, {})}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class Resolved:
    layer: str
    result_id: Optional[str] = None


@dataclass(frozen=True)
class Escalate:
    layer: str
    error: str


@dataclass
class FailureOutcome:
    job_id: str
    reason: str
    resolved_by: str
    result_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def recorded(self) -> bool:
        return self.resolved_by in {"primary", "fallback"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "reason": self.reason,
            "resolved_by": self.resolved_by,
            "recorded": self.recorded,
            "result_id": self.result_id,
            "errors": list(self.errors),
        }


@dataclass
class JobOutcome:
    job_id: str
    status: JobStatus
    result: Any = None
    reason: Optional[str] = None
    result_id: Optional[str] = None
    failure: Optional[FailureOutcome] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": JobStatus(self.status).value,
            "result": self.result,
            "reason": self.reason,
            "result_id": self.result_id,
            "skipped": self.skipped,
            "failure": self.failure.to_dict() if self.failure else None,
        }


FailureLayer = Callable[[str, str, List[str]], Awaitable[Union[Resolved, Escalate]]]


class JobController:
    """Creates jobs and drives each to ``completed`` or ``failed``."""

    def __init__(
        self,
        store: JobStore,
        engine: WorkflowEngine,
        workflows: WorkflowSource,
        users: Optional[UserContextProvider] = None,
        *,
        notifier: Optional[FailureNotifier] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.workflows = workflows
        self.users = users or StaticUserContextProvider()
        self.notifier = notifier
        self.logger = logger

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_job(
        self,
        workflow_id: str,
        user_id: str,
        trigger: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Job, JobResult]:
        """Create a pending job and its first pending result in one unit of work."""
        try:
            spec = _trigger_adapter.validate_python(dict(trigger or {"type": "immediate"}))
        except ValidationError as exc:
            messages = [err["msg"] for err in exc.errors(include_url=False)]
            raise InvalidTrigger(
                "invalid job trigger", detail={"errors": messages}
            ) from exc
        job = Job.new(workflow_id, user_id, trigger=spec.model_dump())

        def _create() -> Tuple[Job, JobResult]:
            with self.store.transaction() as tx:
                created = tx.create_job(job)
                pending = tx.create_job_result(JobResult.new(created.id))
            return created, pending

        created, pending = await asyncio.to_thread(_create)
        self.logger.info(
            "job_created",
            job_id=created.id,
            workflow_id=workflow_id,
            trigger=spec.type,
        )
        return created, pending

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_job(self, job_id: str) -> JobOutcome:
        """Run a pending job to a terminal status.

        Raises JobNotFoundError when no such job exists. A job that is no
        longer pending is left untouched and reported as skipped. Every other
        failure is recorded via :meth:`handle_failure`.
        """
        with job_log_context(job_id):
            try:
                job, definition, user_context, pending = await self._initialise(job_id)
            except JobNotFoundError:
                self.logger.warning("job_not_found")
                raise
            except JobStateError as exc:
                current = exc.detail.get("status", JobStatus.PENDING.value)
                self.logger.info("job_not_pending", status=current)
                return JobOutcome(job_id=job_id, status=JobStatus(current), skipped=True)
            except Exception as exc:
                return await self._fail(job_id, exc, phase="initialise")

            self.logger.info("job_started", workflow_id=job.workflow_id)
            try:
                output = await self.engine.execute(
                    definition,
                    user_context,
                    namespace=state_namespace(job.user_id),
                )
                result = ensure_json_result(output)
                await asyncio.to_thread(self._complete, job.id, pending.id, result)
            except Exception as exc:
                return await self._fail(job_id, exc, phase="execute")

            self.logger.info("job_completed", result_id=pending.id)
            return JobOutcome(
                job_id=job_id,
                status=JobStatus.COMPLETED,
                result=result,
                result_id=pending.id,
            )

    async def _initialise(
        self, job_id: str
    ) -> Tuple[Job, WorkflowDefinition, Dict[str, Any], JobResult]:
        job = await asyncio.to_thread(self.store.get_job_by_id, job_id)
        if job is None:
            raise JobNotFoundError("job not found", detail={"job_id": job_id})
        if JobStatus(job.status) is not JobStatus.PENDING:
            raise JobStateError(
                f"job is {JobStatus(job.status).value}",
                detail={"job_id": job_id, "status": JobStatus(job.status).value},
            )
        definition = parse_definition(await _maybe_await(self.workflows.load_workflow(job)))
        user_context = await _maybe_await(self.users.get_user_context(job.user_id))
        pending = await asyncio.to_thread(self._ensure_pending_result, job.id)
        return job, definition, dict(user_context or {}), pending

    def _ensure_pending_result(self, job_id: str) -> JobResult:
        with self.store.transaction() as tx:
            tx.update_job_status(job_id, JobStatus.PENDING)
            existing = tx.get_all_job_results_by_job_id(job_id, JobStatus.PENDING)
            if existing:
                return existing[-1]
            return tx.create_job_result(JobResult.new(job_id))

    def _complete(self, job_id: str, result_id: str, result: Any) -> None:
        with self.store.transaction() as tx:
            tx.update_job_result(result_id, status=JobStatus.COMPLETED, result=result)
            tx.update_job_status(job_id, JobStatus.COMPLETED)

    async def _fail(self, job_id: str, exc: Exception, *, phase: str) -> JobOutcome:
        reason = failure_reason(exc)
        self.logger.warning(
            "job_failed", phase=phase, error_type=type(exc).__name__, error=str(exc)
        )
        outcome = await self.handle_failure(job_id, reason)
        return JobOutcome(
            job_id=job_id,
            status=JobStatus.FAILED,
            reason=outcome.reason,
            result_id=outcome.result_id,
            failure=outcome,
        )

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def handle_failure(self, job_id: str, reason: str) -> FailureOutcome:
        """Record a job failure. Safe to call on its own; never raises."""
        reason = sanitize_error_message(reason or "workflow failed")
        errors: List[str] = []
        layers: List[Tuple[str, FailureLayer]] = [
            ("primary", self._fail_pending_results),
            ("fallback", self._create_failed_result),
        ]
        resolution: Optional[Resolved] = None
        for name, layer in layers:
            try:
                step = await layer(job_id, reason, errors)
            except Exception as exc:
                step = Escalate(name, failure_reason(exc))
            if isinstance(step, Resolved):
                resolution = step
                break
            errors.append(f"{step.layer}: {step.error}")
            self.logger.warning(
                "job_failure_layer_escalated", job_id=job_id, layer=step.layer, error=step.error
            )

        if resolution is None:
            # Last resort: nothing could be persisted
            resolution = Resolved("last_resort")
            self.logger.error(
                "job_failure_unrecorded", job_id=job_id, reason=reason, errors=errors
            )
        else:
            self.logger.info(
                "job_failure_recorded",
                job_id=job_id,
                layer=resolution.layer,
                result_id=resolution.result_id,
            )

        outcome = FailureOutcome(
            job_id=job_id,
            reason=reason,
            resolved_by=resolution.layer,
            result_id=resolution.result_id,
            errors=errors,
        )
        await self._notify(outcome)
        return outcome

    async def _fail_pending_results(
        self, job_id: str, reason: str, errors: List[str]
    ) -> Union[Resolved, Escalate]:
        def _update() -> Union[Resolved, Escalate]:
            with self.store.transaction() as tx:
                job = tx.get_job_by_id(job_id)
                if job is None:
                    return Escalate("primary", "job not found")
                pending = tx.get_all_job_results_by_job_id(job_id, JobStatus.PENDING)
                if JobStatus(job.status) is JobStatus.FAILED and not pending:
                    return Resolved("primary")
                if not pending:
                    return Escalate("primary", "no pending job result")
                for result in pending:
                    tx.update_job_result(result.id, status=JobStatus.FAILED, reason=reason)
                tx.update_job_status(job_id, JobStatus.FAILED)
                return Resolved("primary", result_id=pending[-1].id)

        return await asyncio.to_thread(_update)

    async def _create_failed_result(
        self, job_id: str, reason: str, errors: List[str]
    ) -> Union[Resolved, Escalate]:
        detail = f"{reason}. Error in failure handler: {errors[-1]}" if errors else reason

        def _create() -> JobResult:
            with self.store.transaction() as tx:
                return tx.create_job_result(
                    JobResult.new(job_id, JobStatus.FAILED, reason=sanitize_error_message(detail))
                )

        created = await asyncio.to_thread(_create)

        # The failed result stands even when the job row cannot be updated
        try:
            await asyncio.to_thread(self.store.update_job_status, job_id, JobStatus.FAILED)
        except Exception as exc:
            errors.append(f"fallback: {failure_reason(exc)}")
            self.logger.warning(
                "job_status_update_failed", job_id=job_id, result_id=created.id, error=str(exc)
            )
        return Resolved("fallback", result_id=created.id)

    async def _notify(self, outcome: FailureOutcome) -> None:
        if self.notifier is None:
            return
        try:
            await _maybe_await(self.notifier.notify(outcome))
        except Exception as exc:
            self.logger.warning(
                "job_failure_notify_failed", job_id=outcome.job_id, error=str(exc)
            )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Tuple[Job, List[JobResult]]:
        def _load() -> Tuple[Optional[Job], List[JobResult]]:
            job = self.store.get_job_by_id(job_id)
            if job is None:
                return None, []
            return job, self.store.get_all_job_results_by_job_id(job_id)

        job, results = await asyncio.to_thread(_load)
        if job is None:
            raise JobNotFoundError("job not found", detail={"job_id": job_id})
        return job, results


__all__ = [
    "Escalate",
    "FailureNotifier",
    "FailureOutcome",
    "InMemoryWorkflowSource",
    "JobController",
    "JobOutcome",
    "JobStore",
    "Resolved",
    "StaticUserContextProvider",
    "UserContextProvider",
    "WorkflowSource",
]
