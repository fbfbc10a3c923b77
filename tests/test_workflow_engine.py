import asyncio

import httpx
import pytest

from onstep.service.errors import (
    InvalidResultType,
    InvalidWorkflowGraph,
    ToolError,
    UnresolvedReference,
)
from onstep.service.sandbox import SandboxConfig, SandboxNetworkPolicy, SandboxRunner
from onstep.service.tools import LiveToolInvoker, RecordingToolInvoker, ToolCallLog, ToolOverride
from onstep.service.workflow import ExecutionContext, WorkflowEngine
from onstep.storage.errors import StateStoreError
from onstep.storage.memory import MemoryStateStore

PRICE_CODE = '''
async def handle(input, context):
    response = await fetch("https://api.example.com/v1/price", params={"symbol": input["symbol"]})
    return {"price": response["data"]["price"]}
'''


class MockRunner:
    """Stands in for the sandbox; returns canned values per step id."""

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    async def run(self, code, entry_point, *, inputs=None, context=None, state=None,
                  timeout_seconds=None, log_fields=None):
        self.calls.append({"step_id": context["step_id"], "inputs": inputs, "context": context})
        return self.results.get(context["step_id"])


def _price_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "api.example.com"
        return httpx.Response(200, json={"symbol": request.url.params["symbol"], "price": 64123.45})

    return httpx.MockTransport(handler)


@pytest.fixture
def sandbox():
    runner = SandboxRunner(SandboxConfig(network=SandboxNetworkPolicy(transport=_price_transport())))
    yield runner
    runner.shutdown()


def _code(step_id, body="return 1", **extra):
    return {
        "id": step_id,
        "type": "code",
        "code": f"def handle(input, context):\n    {body}\n",
        **extra,
    }


class TestScenarios:
    @pytest.mark.asyncio
    async def test_hello_world(self, sandbox):
        engine = WorkflowEngine(sandbox, RecordingToolInvoker())
        definition = {"steps": [_code("hello", 'return "Hello world"')]}
        assert await engine.execute(definition) == "Hello world"

    @pytest.mark.asyncio
    async def test_scheduled_price_fetch(self, sandbox):
        engine = WorkflowEngine(sandbox, RecordingToolInvoker())
        definition = {
            "title": "BTC price every ten minutes",
            "trigger": {"type": "scheduled", "cron": "*/10 * * * *"},
            "steps": [
                {
                    "id": "price",
                    "type": "code",
                    "code": PRICE_CODE,
                    "inputs": {"symbol": {"$ref": {"input": "symbol"}}},
                }
            ],
        }

        result = await engine.execute(definition, {"symbol": "BTC"})

        assert isinstance(result["price"], (int, float))
        assert result["price"] > 0

    @pytest.mark.asyncio
    async def test_price_alert_to_telegram(self, sandbox):
        log = ToolCallLog()
        tools = RecordingToolInvoker(
            override=lambda tool, args: ToolOverride.test({"sent": True}), observer=log
        )
        engine = WorkflowEngine(sandbox, tools)
        definition = {
            "steps": [
                {"id": "price", "type": "code", "code": PRICE_CODE, "inputs": {"symbol": "BTC"}},
                {
                    "id": "notify",
                    "type": "tool",
                    "tool": "telegram-bot",
                    "args": {
                        "message": {
                            "$format": "BTC is now ${price}",
                            "values": {"price": {"$ref": {"step": "price", "path": ["price"]}}},
                        }
                    },
                },
            ],
        }

        result = await engine.execute(definition)

        assert result == {"sent": True}
        assert log.count("telegram-bot") >= 1
        message = log.last_args("telegram-bot")["message"]
        assert "undefined" not in message
        assert message == "BTC is now $64123.45"

    @pytest.mark.asyncio
    async def test_non_json_result_fails_the_run(self, sandbox):
        engine = WorkflowEngine(sandbox, RecordingToolInvoker())
        definition = {"steps": [_code("bad", "return {1, 2, 3}")]}
        with pytest.raises(InvalidResultType) as exc_info:
            await engine.execute(definition)
        assert "set" in exc_info.value.message


class TestPlanning:
    def test_topological_order(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        plan = engine.plan(
            {
                "steps": [
                    _code("c", inputs={"$ref": {"step": "b"}}),
                    _code("a"),
                    _code("b", inputs={"$ref": {"step": "a"}}),
                ]
            }
        )
        assert plan.order == ["a", "b", "c"]
        assert plan.sinks == ("c",)
        assert plan.terminal_step == "c"
        assert plan.dependencies["c"] == frozenset({"b"})

    @pytest.mark.asyncio
    async def test_cycle_rejected_without_side_effects(self):
        runner = MockRunner()
        log = ToolCallLog()
        store = MemoryStateStore()
        engine = WorkflowEngine(runner, RecordingToolInvoker(observer=log), store)
        definition = {
            "steps": [
                _code("start"),
                _code("a", inputs={"$ref": {"step": "b"}}),
                {"id": "b", "type": "tool", "tool": "echo", "args": {"x": {"$ref": {"step": "a"}}}},
                {"id": "save", "type": "state", "key": "k", "value": 1},
            ]
        }

        with pytest.raises(InvalidWorkflowGraph) as exc_info:
            await engine.execute(definition, namespace="user:u1")

        assert set(exc_info.value.detail["steps"]) == {"a", "b"}
        assert runner.calls == []
        assert log.count() == 0
        assert await store.get_all("user:u1") == {}

    def test_self_reference_is_a_cycle(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan({"steps": [_code("a", inputs={"$ref": {"step": "a"}})]})

    def test_unknown_reference_rejected(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan({"steps": [_code("a", inputs={"$ref": {"step": "ghost"}})]})

    def test_unknown_depends_on_rejected(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan({"steps": [_code("a", depends_on=["ghost"])]})

    def test_duplicate_step_ids_rejected(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan({"steps": [_code("a"), _code("a")]})

    def test_unknown_output_reference_rejected(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan({"steps": [_code("a")], "output": {"$ref": {"step": "ghost"}}})


class TestExecution:
    @pytest.mark.asyncio
    async def test_values_flow_between_steps(self):
        runner = MockRunner({"a": {"n": 2}, "b": 5})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [
                _code("a", inputs={"$ref": {"input": "seed"}}),
                _code("b", inputs={"from_a": {"$ref": {"step": "a", "path": ["n"]}}}),
            ]
        }

        run = await engine.run(definition, {"seed": 1})

        assert run.output == 5
        assert run.outputs == {"a": {"n": 2}, "b": 5}
        assert runner.calls[0]["inputs"] == 1
        assert runner.calls[1]["inputs"] == {"from_a": 2}
        assert runner.calls[1]["context"]["steps"] == {"a": {"n": 2}}
        assert [entry["status"] for entry in run.trace] == ["ok", "ok"]

    @pytest.mark.asyncio
    async def test_explicit_output_template(self):
        runner = MockRunner({"a": 1, "b": 2})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [_code("a"), _code("b")],
            "output": {"first": {"$ref": {"step": "a"}}, "second": {"$ref": {"step": "b"}}},
        }
        assert await engine.execute(definition) == {"first": 1, "second": 2}

    @pytest.mark.asyncio
    async def test_independent_steps_run_concurrently(self):
        started = []
        both_started = asyncio.Event()

        async def wait_for_peer(args):
            started.append(args["name"])
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=2)
            return args["name"]

        tools = LiveToolInvoker({"wait": wait_for_peer})
        engine = WorkflowEngine(MockRunner(), tools, max_concurrency=4)
        definition = {
            "steps": [
                {"id": "left", "type": "tool", "tool": "wait", "args": {"name": "left"}},
                {"id": "right", "type": "tool", "tool": "wait", "args": {"name": "right"}},
            ],
            "output": [{"$ref": {"step": "left"}}, {"$ref": {"step": "right"}}],
        }

        assert await engine.execute(definition) == ["left", "right"]
        assert sorted(started) == ["left", "right"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def track(args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return args["i"]

        tools = LiveToolInvoker({"track": track})
        engine = WorkflowEngine(MockRunner(), tools, max_concurrency=2)
        definition = {
            "steps": [
                {"id": f"s{i}", "type": "tool", "tool": "track", "args": {"i": i}} for i in range(6)
            ]
        }

        assert await engine.execute(definition) == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_first_failure_cancels_the_run(self):
        calls = []

        async def slow(args):
            calls.append("slow")
            await asyncio.sleep(10)
            return "late"

        def fail(args):
            calls.append("fail")
            raise RuntimeError("tool exploded")

        def after(args):
            calls.append("after")
            return "never"

        tools = LiveToolInvoker({"slow": slow, "fail": fail, "after": after})
        engine = WorkflowEngine(MockRunner(), tools)
        definition = {
            "steps": [
                {"id": "slow", "type": "tool", "tool": "slow"},
                {"id": "fail", "type": "tool", "tool": "fail"},
                {"id": "after", "type": "tool", "tool": "after", "args": {"x": {"$ref": {"step": "fail"}}}},
            ]
        }

        with pytest.raises(ToolError) as exc_info:
            await asyncio.wait_for(engine.execute(definition), timeout=5)

        assert "tool exploded" in exc_info.value.message
        assert "after" not in calls

    @pytest.mark.asyncio
    async def test_missing_path_is_unresolved_reference(self):
        runner = MockRunner({"a": {"price": 1}})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [
                _code("a"),
                _code("b", inputs={"$ref": {"step": "a", "path": ["volume"]}}),
            ]
        }
        with pytest.raises(UnresolvedReference):
            await engine.execute(definition)
        assert [call["step_id"] for call in runner.calls] == ["a"]

    @pytest.mark.asyncio
    async def test_state_step_writes_namespace(self):
        store = MemoryStateStore()
        engine = WorkflowEngine(MockRunner({"price": {"price": 10}}), RecordingToolInvoker(), store)
        definition = {
            "steps": [
                _code("price"),
                {
                    "id": "remember",
                    "type": "state",
                    "key": "last_price",
                    "value": {"$ref": {"step": "price", "path": ["price"]}},
                },
            ]
        }

        assert await engine.execute(definition, namespace="user:u1") == 10
        assert await store.get_all("user:u1") == {"last_price": 10}

    @pytest.mark.asyncio
    async def test_state_step_requires_namespace(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker(), MemoryStateStore())
        definition = {"steps": [{"id": "s", "type": "state", "key": "k", "value": 1}]}
        with pytest.raises(StateStoreError):
            await engine.execute(definition)

    @pytest.mark.asyncio
    async def test_engine_keeps_no_state_between_runs(self):
        runner = MockRunner({"a": 1})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {"steps": [_code("a")]}
        first = await engine.run(definition)
        second = await engine.run(definition)
        assert first.outputs == second.outputs == {"a": 1}


class TestTerminalStep:
    @pytest.mark.asyncio
    async def test_output_comes_from_step_nothing_depends_on(self):
        runner = MockRunner({"a": "a", "b": "b saw a"})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {"steps": [_code("b", inputs={"$ref": {"step": "a"}}), _code("a")]}

        run = await engine.run(definition)

        assert engine.plan(definition).terminal_step == "b"
        assert run.output == "b saw a"
        assert run.outputs == {"a": "a", "b": "b saw a"}

    def test_last_declared_sink_wins_among_several(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        plan = engine.plan({"steps": [_code("left"), _code("right"), _code("root")]})
        assert plan.sinks == ("left", "right", "root")
        assert plan.terminal_step == "root"

    @pytest.mark.asyncio
    async def test_code_steps_only_see_their_dependencies(self):
        runner = MockRunner({"a": 1, "b": 2, "c": 3})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [
                _code("a"),
                _code("b", depends_on=["a"]),
                _code("c", inputs={"$ref": {"step": "b"}}),
            ]
        }

        await engine.run(definition)

        contexts = {call["step_id"]: call["context"]["steps"] for call in runner.calls}
        assert contexts == {"a": {}, "b": {"a": 1}, "c": {"b": 2}}


def _price_alert(threshold_step):
    return {
        "steps": [
            {"id": "price", "type": "code", "code": PRICE_CODE, "inputs": {"symbol": "BTC"}},
            threshold_step,
            {
                "id": "notify",
                "type": "tool",
                "tool": "telegram-bot",
                "args": {
                    "message": {
                        "$format": "BTC crossed {threshold}",
                        "values": {"threshold": {"$ref": {"input": "threshold"}}},
                    }
                },
            },
            {"id": "remember", "type": "state", "key": "last_alert", "value": {"$ref": {"step": "notify"}}},
        ]
    }


CROSSED = {
    "id": "crossed",
    "type": "condition",
    "code": "def handle(input, context):\n    return input['price'] > input['threshold']\n",
    "inputs": {
        "price": {"$ref": {"step": "price", "path": ["price"]}},
        "threshold": {"$ref": {"input": "threshold"}},
    },
    "then": ["notify"],
}


class TestBranching:
    @pytest.mark.asyncio
    async def test_alert_sent_when_threshold_crossed(self, sandbox):
        log = ToolCallLog()
        store = MemoryStateStore()
        tools = RecordingToolInvoker(
            override=lambda tool, args: ToolOverride.test({"sent": True}), observer=log
        )
        engine = WorkflowEngine(sandbox, tools, store)

        run = await engine.run(_price_alert(CROSSED), {"threshold": 60000}, namespace="user:u1")

        assert run.outputs["crossed"] is True
        assert run.skipped == {}
        assert run.output == {"sent": True}
        assert log.last_args("telegram-bot") == {"message": "BTC crossed 60000"}
        assert await store.get("user:u1", "last_alert") == {"sent": True}

    @pytest.mark.asyncio
    async def test_branch_not_taken_is_skipped_downstream(self, sandbox):
        log = ToolCallLog()
        store = MemoryStateStore()
        engine = WorkflowEngine(sandbox, RecordingToolInvoker(observer=log), store)

        run = await engine.run(_price_alert(CROSSED), {"threshold": 70000}, namespace="user:u1")

        assert run.output is False
        assert set(run.skipped) == {"notify", "remember"}
        assert run.skipped["notify"] == "condition 'crossed' was false"
        assert run.skipped["remember"] == "depends on skipped step 'notify'"
        assert log.count() == 0
        assert await store.get_all("user:u1") == {}
        statuses = {entry["step_id"]: entry["status"] for entry in run.trace}
        assert statuses == {
            "price": "ok",
            "crossed": "ok",
            "notify": "skipped",
            "remember": "skipped",
        }

    @pytest.mark.asyncio
    async def test_predicate_selects_else_branch(self):
        runner = MockRunner({"loud": "LOUD", "quiet": "quiet"})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [
                {
                    "id": "check",
                    "type": "condition",
                    "predicate": {"$ref": {"input": "shout"}},
                    "then": ["loud"],
                    "else": ["quiet"],
                },
                _code("loud"),
                _code("quiet"),
            ],
            "output": {"loud": {"$ref": {"step": "loud"}}, "quiet": {"$ref": {"step": "quiet"}}},
        }

        run = await engine.run(definition, {"shout": False})

        assert [call["step_id"] for call in runner.calls] == ["quiet"]
        assert run.output == {"loud": None, "quiet": "quiet"}
        assert list(run.skipped) == ["loud"]

    @pytest.mark.asyncio
    async def test_condition_must_produce_boolean(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        definition = {
            "steps": [
                {"id": "check", "type": "condition", "predicate": "yes", "then": ["a"]},
                _code("a"),
            ]
        }
        with pytest.raises(InvalidResultType):
            await engine.execute(definition)

    def test_unknown_branch_target_rejected(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph) as exc_info:
            engine.plan(
                {"steps": [{"id": "check", "type": "condition", "predicate": True, "then": ["ghost"]}]}
            )
        assert exc_info.value.detail["unknown"] == ["ghost"]

    def test_branch_steps_wait_for_their_condition(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        plan = engine.plan(
            {
                "steps": [
                    _code("a"),
                    {"id": "check", "type": "condition", "predicate": True, "then": ["a"]},
                ]
            }
        )
        assert plan.order == ["check", "a"]
        assert plan.dependencies["a"] == frozenset({"check"})

    def test_branch_back_to_condition_is_a_cycle(self):
        engine = WorkflowEngine(MockRunner(), RecordingToolInvoker())
        with pytest.raises(InvalidWorkflowGraph):
            engine.plan(
                {
                    "steps": [
                        {
                            "id": "check",
                            "type": "condition",
                            "predicate": {"$ref": {"step": "a"}},
                            "then": ["a"],
                        },
                        _code("a"),
                    ]
                }
            )

    @pytest.mark.asyncio
    async def test_skip_step_ends_the_run(self):
        runner = MockRunner({"fetch": {"price": 1}, "later": "never"})
        engine = WorkflowEngine(runner, RecordingToolInvoker())
        definition = {
            "steps": [
                _code("fetch"),
                {"id": "stop", "type": "skip", "value": {"$ref": {"step": "fetch", "path": ["price"]}}},
                _code("later", depends_on=["stop"]),
            ]
        }

        run = await engine.run(definition)

        assert run.output == 1
        assert run.stopped_by == "stop"
        assert run.skipped == {"later": "run stopped by 'stop'"}
        assert [call["step_id"] for call in runner.calls] == ["fetch"]


class TestExecutionContext:
    def test_values_are_write_once(self):
        context = ExecutionContext({"x": 1})
        context.record("a", 1)
        with pytest.raises(InvalidWorkflowGraph):
            context.record("a", 2)

    def test_resolve_returns_copies(self):
        context = ExecutionContext()
        context.record("a", {"items": [1]})
        resolved = context.resolve({"$ref": {"step": "a"}})
        resolved["items"].append(2)
        assert context.outputs["a"] == {"items": [1]}
