from contextlib import contextmanager

import pytest

from onstep.service.errors import InvalidTrigger, JobNotFoundError, JobStateError
from onstep.service.jobs import InMemoryWorkflowSource, JobController, StaticUserContextProvider
from onstep.service.sandbox import SandboxConfig, SandboxRunner
from onstep.service.tools import RecordingToolInvoker
from onstep.service.workflow import WorkflowEngine
from onstep.storage.errors import PersistenceError
from onstep.storage.memory import MemoryJobStore, MemoryStateStore
from onstep.storage.models import Job, JobResult, JobStatus


def _code_workflow(body):
    return {"steps": [{"id": "main", "type": "code", "code": f"def handle(input, context):\n    {body}\n"}]}


WORKFLOWS = {
    "hello": _code_workflow('return "Hello world"'),
    "bad-result": _code_workflow("return {1, 2}"),
    "greet": {
        "steps": [
            {
                "id": "greet",
                "type": "code",
                "code": "def handle(input, context):\n    return 'hi ' + input\n",
                "inputs": {"$ref": {"input": "name"}},
            },
            {"id": "remember", "type": "state", "key": "last_greeting", "value": {"$ref": {"step": "greet"}}},
        ]
    },
}


class RecordingNotifier:
    def __init__(self, fail=False):
        self.outcomes = []
        self.fail = fail

    def notify(self, outcome):
        self.outcomes.append(outcome)
        if self.fail:
            raise RuntimeError("pager offline")


class BrokenStore(MemoryJobStore):
    """Job store whose writes always fail."""

    @contextmanager
    def transaction(self):
        raise PersistenceError("database unavailable")
        yield self  # pragma: no cover


@pytest.fixture
def runner():
    runner = SandboxRunner(SandboxConfig(workers=2))
    yield runner
    runner.shutdown()


def _controller(runner, store=None, notifier=None):
    store = store or MemoryJobStore()
    state = MemoryStateStore()
    engine = WorkflowEngine(runner, RecordingToolInvoker(), state)
    users = StaticUserContextProvider({"u1": {"name": "ada"}})
    controller = JobController(
        store, engine, InMemoryWorkflowSource(WORKFLOWS), users, notifier=notifier
    )
    return controller, store, state


def _results(store, job_id, status=None):
    return [
        r for r in store.job_results.values()
        if r.job_id == job_id and (status is None or r.status == status)
    ]


class TestCreateJob:
    @pytest.mark.asyncio
    async def test_creates_pending_job_and_result(self, runner):
        controller, store, _ = _controller(runner)
        job, pending = await controller.create_job("hello", "u1")

        assert job.status == JobStatus.PENDING
        assert job.trigger == {"type": "immediate"}
        assert pending.job_id == job.id
        assert pending.status == JobStatus.PENDING
        assert len(_results(store, job.id)) == 1

    @pytest.mark.asyncio
    async def test_scheduled_trigger_is_normalized(self, runner):
        controller, _, _ = _controller(runner)
        job, _ = await controller.create_job(
            "hello", "u1", {"type": "scheduled", "cron": "*/10 *  * * *"}
        )
        assert job.trigger == {"type": "scheduled", "cron": "*/10 * * * *"}

    @pytest.mark.asyncio
    async def test_invalid_cron_creates_nothing(self, runner):
        controller, store, _ = _controller(runner)
        with pytest.raises(InvalidTrigger):
            await controller.create_job("hello", "u1", {"type": "scheduled", "cron": "whenever"})
        assert store.jobs == {}
        assert store.job_results == {}


class TestRunJob:
    @pytest.mark.asyncio
    async def test_hello_world_job_completes(self, runner):
        controller, store, _ = _controller(runner)
        job, pending = await controller.create_job("hello", "u1")

        outcome = await controller.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result == "Hello world"
        assert outcome.result_id == pending.id
        assert store.get_job_by_id(job.id).status == JobStatus.COMPLETED
        results = _results(store, job.id)
        assert len(results) == 1
        assert results[0].status == JobStatus.COMPLETED
        assert results[0].result == "Hello world"

    @pytest.mark.asyncio
    async def test_user_context_and_state_namespace(self, runner):
        controller, _, state = _controller(runner)
        job, _ = await controller.create_job("greet", "u1")

        outcome = await controller.run_job(job.id)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result == "hi ada"
        assert await state.get_all("user:u1") == {"last_greeting": "hi ada"}

    @pytest.mark.asyncio
    async def test_non_conforming_result_fails_job(self, runner):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("bad-result", "u1")

        outcome = await controller.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert store.get_job_by_id(job.id).status == JobStatus.FAILED
        failed = _results(store, job.id, JobStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].reason.startswith("InvalidResultType:")
        assert "set" in failed[0].reason
        assert outcome.failure.resolved_by == "primary"

    @pytest.mark.asyncio
    async def test_unknown_workflow_fails_job(self, runner):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("missing-workflow", "u1")

        outcome = await controller.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.reason.startswith("DefinitionError:")
        assert store.get_job_by_id(job.id).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_job_raises(self, runner):
        controller, _, _ = _controller(runner)
        with pytest.raises(JobNotFoundError):
            await controller.run_job("no-such-job")

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_rerun(self, runner):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")
        await controller.run_job(job.id)

        again = await controller.run_job(job.id)

        assert again.skipped
        assert again.status == JobStatus.COMPLETED
        assert len(_results(store, job.id)) == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_during_run_uses_fallback(self, runner, monkeypatch):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")

        def failing_lookup(job_id, status=None):
            raise PersistenceError("result lookup failed")

        monkeypatch.setattr(store, "get_all_job_results_by_job_id", failing_lookup)

        outcome = await controller.run_job(job.id)

        assert outcome.status == JobStatus.FAILED
        assert outcome.failure.resolved_by == "fallback"
        assert len(_results(store, job.id, JobStatus.FAILED)) == 1
        assert store.jobs[job.id].status == JobStatus.FAILED


class TestHandleFailure:
    @pytest.mark.asyncio
    async def test_primary_marks_pending_result_failed(self, runner):
        notifier = RecordingNotifier()
        controller, store, _ = _controller(runner, notifier=notifier)
        job, pending = await controller.create_job("hello", "u1")

        outcome = await controller.handle_failure(job.id, "aborted by user")

        assert outcome.resolved_by == "primary"
        assert outcome.result_id == pending.id
        assert outcome.recorded
        assert store.job_results[pending.id].status == JobStatus.FAILED
        assert store.job_results[pending.id].reason == "aborted by user"
        assert notifier.outcomes == [outcome]

    @pytest.mark.asyncio
    async def test_primary_lookup_failure_falls_back(self, runner, monkeypatch):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")

        def failing_lookup(job_id, status=None):
            raise PersistenceError("result lookup failed")

        monkeypatch.setattr(store, "get_all_job_results_by_job_id", failing_lookup)

        outcome = await controller.handle_failure(job.id, "step failed")

        assert outcome.resolved_by == "fallback"
        assert len(outcome.errors) == 1
        failed = _results(store, job.id, JobStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].reason.startswith("step failed. Error in failure handler:")
        assert store.jobs[job.id].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_fallback_result_survives_status_update_failure(self, runner, monkeypatch):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")

        def failing_status_update(job_id, status):
            raise PersistenceError("job row locked")

        monkeypatch.setattr(store, "update_job_status", failing_status_update)

        outcome = await controller.handle_failure(job.id, "step failed")

        assert outcome.resolved_by == "fallback"
        assert outcome.recorded
        failed = _results(store, job.id, JobStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].id == outcome.result_id
        assert failed[0].reason.startswith("step failed. Error in failure handler:")
        assert len(outcome.errors) == 2
        assert outcome.errors[-1].startswith("fallback: PersistenceError")

    @pytest.mark.asyncio
    async def test_never_raises_when_nothing_can_be_recorded(self, runner):
        notifier = RecordingNotifier(fail=True)
        controller, _, _ = _controller(runner, store=BrokenStore(), notifier=notifier)

        outcome = await controller.handle_failure("job-1", "step failed")

        assert outcome.resolved_by == "last_resort"
        assert not outcome.recorded
        assert len(outcome.errors) == 2
        assert len(notifier.outcomes) == 1

    @pytest.mark.asyncio
    async def test_repeated_failure_is_idempotent(self, runner):
        controller, store, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")
        await controller.handle_failure(job.id, "first")

        outcome = await controller.handle_failure(job.id, "second")

        assert outcome.resolved_by == "primary"
        assert len(_results(store, job.id, JobStatus.FAILED)) == 1

    @pytest.mark.asyncio
    async def test_outcome_serializes(self, runner):
        controller, _, _ = _controller(runner)
        job, _ = await controller.create_job("hello", "u1")
        outcome = await controller.handle_failure(job.id, "")
        data = outcome.to_dict()
        assert data["job_id"] == job.id
        assert data["reason"] == "workflow failed"
        assert data["recorded"] is True


class TestMemoryTransaction:
    def test_rollback_restores_only_touched_rows(self):
        store = MemoryJobStore()
        job = store.create_job(Job.new("hello", "u1"))
        other = store.create_job(Job.new("hello", "u2"))
        untouched = store.jobs[other.id]

        with pytest.raises(PersistenceError):
            with store.transaction() as tx:
                tx.update_job_status(job.id, JobStatus.COMPLETED)
                tx.create_job_result(JobResult.new(job.id, JobStatus.FAILED, reason="boom"))
                raise PersistenceError("commit failed")

        assert store.jobs[job.id].status == JobStatus.PENDING
        assert store.job_results == {}
        assert store.jobs[other.id] is untouched

    def test_failed_inner_unit_keeps_outer_writes(self):
        store = MemoryJobStore()
        job = store.create_job(Job.new("hello", "u1"))

        with store.transaction() as tx:
            pending = tx.create_job_result(JobResult.new(job.id))
            with pytest.raises(JobStateError):
                with tx.transaction():
                    tx.update_job_status(job.id, JobStatus.COMPLETED)
                    tx.update_job_status(job.id, JobStatus.FAILED)

        assert store.jobs[job.id].status == JobStatus.PENDING
        assert list(store.job_results) == [pending.id]
