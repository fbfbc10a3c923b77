"""Tool invocation: a live dispatcher and a recording test double.

Both implement :class:`ToolInvoker`, so the workflow engine never knows which
one it is talking to.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import threading
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

import httpx
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from onstep.logging import get_logger
from onstep.service.errors import ToolError, ToolValidationError, UnknownToolError

logger = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class ToolResult:
    tool: str
    output: Any
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ToolInvoker(Protocol):
    async def invoke(
        self,
        tool_name: str,
        args: Dict[str, Any],
        *,
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
    ) -> ToolResult: ...


def validate_payload(
    payload: Any, schema: Optional[dict], *, phase: str, tool_name: str
) -> None:
    """Validate ``payload`` against a JSON schema; raise ToolValidationError."""
    if not schema or not isinstance(schema, dict):
        return
    try:
        validator = Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    except SchemaError as exc:
        logger.warning("tool_schema_invalid", phase=phase, tool=tool_name, error=str(exc))
        raise ToolValidationError(
            f"invalid {phase} schema for tool '{tool_name}': {exc.message}",
            detail={"tool": tool_name, "phase": phase},
        ) from exc
    if errors:
        raise ToolValidationError(
            f"tool '{tool_name}' {phase} failed validation",
            detail={
                "tool": tool_name,
                "phase": phase,
                "errors": [
                    {"path": "/".join(str(p) for p in e.path), "message": e.message}
                    for e in errors
                ],
            },
        )


class HttpToolRouter:
    """Client for the external tool router.

    ``POST {base_url}/tool/{name}/use`` with ``{"input": args}`` and an
    ``x-api-key`` header; the response must carry an ``output`` field.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("tool router base_url is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def call(self, tool_name: str, args: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/tool/{tool_name}/use"
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self.transport
            ) as client:
                response = await client.post(url, json={"input": args}, headers=headers)
        except httpx.TimeoutException as exc:
            raise ToolError(f"tool '{tool_name}' timed out", detail={"tool": tool_name}) from exc
        except httpx.HTTPError as exc:
            raise ToolError(
                f"tool '{tool_name}' request failed: {exc}", detail={"tool": tool_name}
            ) from exc

        if response.status_code == 404:
            raise UnknownToolError(f"tool '{tool_name}' is not registered", detail={"tool": tool_name})
        if not response.is_success:
            raise ToolError(
                f"tool '{tool_name}' failed with status {response.status_code}",
                detail={"tool": tool_name, "status": response.status_code, "body": response.text[:500]},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ToolError(f"tool '{tool_name}' returned invalid JSON") from exc
        if not isinstance(payload, dict) or payload.get("output") is None:
            raise ToolError(f"No output from tool '{tool_name}'", detail={"tool": tool_name})
        return payload["output"]


class LiveToolInvoker:
    """Dispatches tool calls to registered handlers, then to the tool router."""

    def __init__(
        self,
        handlers: Optional[Mapping[str, ToolHandler]] = None,
        *,
        router: Optional[HttpToolRouter] = None,
        timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self.handlers: Dict[str, ToolHandler] = dict(handlers or {})
        self.router = router
        self.timeout = timeout

    def register(self, name: str, handler: ToolHandler) -> None:
        self.handlers[name] = handler

    async def _dispatch(self, tool_name: str, args: Dict[str, Any]) -> tuple[Any, str]:
        handler = self.handlers.get(tool_name)
        if handler is not None:
            try:
                produced = handler(args)
                if inspect.isawaitable(produced):
                    produced = await asyncio.wait_for(produced, timeout=self.timeout)
            except ToolError:
                raise
            except asyncio.TimeoutError as exc:
                raise ToolError(f"tool '{tool_name}' timed out", detail={"tool": tool_name}) from exc
            except Exception as exc:
                raise ToolError(
                    f"tool '{tool_name}' failed: {type(exc).__name__}: {exc}",
                    detail={"tool": tool_name},
                ) from exc
            return produced, "handler"
        if self.router is not None:
            return await self.router.call(tool_name, args), "router"
        raise UnknownToolError(f"unknown tool '{tool_name}'", detail={"tool": tool_name})

    async def invoke(
        self,
        tool_name: str,
        args: Dict[str, Any],
        *,
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
    ) -> ToolResult:
        validate_payload(args, input_schema, phase="input", tool_name=tool_name)
        output, source = await self._dispatch(tool_name, args)
        validate_payload(output, output_schema, phase="output", tool_name=tool_name)
        logger.info("tool_invoked", tool=tool_name, source=source)
        return ToolResult(tool=tool_name, output=output, metadata={"mode": "real", "source": source})


# =========================================================================
# Recording test double
# =========================================================================


@dataclass(frozen=True)
class ToolOverride:
    """Per-call decision of the recording invoker.

    ``mode="test"`` fabricates ``result`` (or a placeholder built from the
    output schema when ``result`` is None); ``mode="real"`` calls the live
    invoker.
    """

    mode: Literal["test", "real"] = "test"
    result: Any = None

    @classmethod
    def test(cls, result: Any = None) -> "ToolOverride":
        return cls(mode="test", result=result)

    @classmethod
    def real(cls) -> "ToolOverride":
        return cls(mode="real")


@dataclass(frozen=True)
class ToolCallRecord:
    tool_name: str
    args: Dict[str, Any]
    sequence: int
    mode: str


class ToolCallObserver(Protocol):
    def record(self, call: ToolCallRecord) -> None: ...


class ToolCallLog:
    """Observer that keeps every recorded call for later assertions."""

    def __init__(self) -> None:
        self.calls: List[ToolCallRecord] = []
        self._lock = threading.Lock()

    def record(self, call: ToolCallRecord) -> None:
        with self._lock:
            self.calls.append(call)

    def count(self, tool_name: Optional[str] = None) -> int:
        return len(self.calls_for(tool_name))

    def calls_for(self, tool_name: Optional[str] = None) -> List[ToolCallRecord]:
        with self._lock:
            return [c for c in self.calls if tool_name is None or c.tool_name == tool_name]

    def last_args(self, tool_name: str) -> Optional[Dict[str, Any]]:
        calls = self.calls_for(tool_name)
        return calls[-1].args if calls else None


OverrideFn = Callable[[str, Dict[str, Any]], ToolOverride]


def placeholder_from_schema(schema: Optional[dict], *, _depth: int = 0) -> Any:
    """Deterministic sample value conforming to a (simple) JSON schema."""
    if not isinstance(schema, dict) or _depth > 8:
        return {"ok": True}
    for key in ("const", "default"):
        if key in schema:
            return copy.deepcopy(schema[key])
    if schema.get("enum"):
        return copy.deepcopy(schema["enum"][0])
    for key in ("oneOf", "anyOf", "allOf"):
        if schema.get(key):
            return placeholder_from_schema(schema[key][0], _depth=_depth + 1)
    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        schema_type = next((t for t in schema_type if t != "null"), "null")
    if schema_type == "object" or "properties" in schema:
        properties = schema.get("properties") or {}
        required = schema.get("required") or list(properties)
        return {
            name: placeholder_from_schema(properties.get(name), _depth=_depth + 1)
            for name in required
        }
    if schema_type == "array":
        count = max(int(schema.get("minItems", 0)), 1)
        return [placeholder_from_schema(schema.get("items"), _depth=_depth + 1) for _ in range(count)]
    if schema_type == "string":
        min_length = int(schema.get("minLength", 0))
        return "test" if min_length <= 4 else "x" * min_length
    if schema_type == "integer":
        return int(schema.get("minimum", 1))
    if schema_type == "number":
        return float(schema.get("minimum", 1.0))
    if schema_type == "boolean":
        return True
    if schema_type == "null":
        return None
    return {"ok": True}


class RecordingToolInvoker:
    """Test double that records every call and optionally fabricates results."""

    def __init__(
        self,
        live: Optional[ToolInvoker] = None,
        *,
        override: Optional[OverrideFn] = None,
        observer: Optional[ToolCallObserver] = None,
    ) -> None:
        self.live = live
        self.override = override or (lambda tool, args: ToolOverride.test())
        self.observer = observer if observer is not None else ToolCallLog()
        self._sequence = itertools.count(1)

    async def invoke(
        self,
        tool_name: str,
        args: Dict[str, Any],
        *,
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
    ) -> ToolResult:
        validate_payload(args, input_schema, phase="input", tool_name=tool_name)
        decision = self.override(tool_name, args)
        self.observer.record(
            ToolCallRecord(
                tool_name=tool_name,
                args=copy.deepcopy(args),
                sequence=next(self._sequence),
                mode=decision.mode,
            )
        )
        if decision.mode == "real":
            if self.live is None:
                raise UnknownToolError(
                    f"no live invoker configured for tool '{tool_name}'",
                    detail={"tool": tool_name},
                )
            return await self.live.invoke(
                tool_name, args, input_schema=input_schema, output_schema=output_schema
            )

        output = (
            copy.deepcopy(decision.result)
            if decision.result is not None
            else placeholder_from_schema(output_schema)
        )
        validate_payload(output, output_schema, phase="output", tool_name=tool_name)
        logger.debug("tool_call_fabricated", tool=tool_name)
        return ToolResult(tool=tool_name, output=output, metadata={"mode": "test"})


__all__ = [
    "HttpToolRouter",
    "LiveToolInvoker",
    "RecordingToolInvoker",
    "ToolCallLog",
    "ToolCallObserver",
    "ToolCallRecord",
    "ToolInvoker",
    "ToolOverride",
    "ToolResult",
    "placeholder_from_schema",
    "validate_payload",
]
