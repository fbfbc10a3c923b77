"""Sandboxed execution of user-authored workflow code.

User code is a Python module that defines an entry point, by default
``handle(input, context)``. The runner:

- classifies the source as plain or annotated ("typed") Python and erases
  type-only constructs from the typed dialect before compiling;
- rejects imports, ``global``/``nonlocal`` and any underscore-prefixed
  name or attribute, and exposes only an allowlist of builtins;
- runs the module and its entry point on a worker thread with its own event
  loop and a line-level deadline, so a runaway step cannot stall the host loop;
- gives the code a policy-checked async ``fetch`` capability and, when a
  state store is attached, a ``state`` handle bridged back to the host loop;
- requires the produced value to be plain JSON.
"""
from __future__ import annotations

import ast
import asyncio
import concurrent.futures
import inspect
import ipaddress
import json
import math
import re
import socket
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import urlparse

import httpx

from onstep.logging import get_logger
from onstep.service.errors import (
    CompileError,
    InvalidResultType,
    NetworkPolicyViolation,
    SandboxError,
    SandboxRuntimeError,
    SandboxTimeout,
)
from onstep.service.state import NamespacedState

logger = get_logger(__name__)

SANDBOX_FILENAME = "<onstep-sandbox>"
DEFAULT_ENTRY_POINT = "handle(input, context)"
ENTRY_ARGUMENTS = ("input", "context", "state")
MAX_RESULT_DEPTH = 64
MAX_TIMEOUT_SECONDS = 60.0
# Grace period for the host to wait past the worker's own deadline
_HOST_GRACE_SECONDS = 0.5

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float",
    "int", "isinstance", "len", "list", "map", "max", "min", "next", "range",
    "reversed", "round", "set", "sorted", "str", "sum", "tuple", "zip", "iter",
    "frozenset", "hash", "ord", "chr", "pow", "callable", "repr", "slice",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "RuntimeError", "ZeroDivisionError", "ArithmeticError", "LookupError",
    "StopIteration", "StopAsyncIteration", "NotImplementedError",
)

# Attributes that reach frames, code objects or format-string attribute lookups
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "format", "format_map", "mro",
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
        "tb_frame", "tb_next",
    }
)

# Names whose presence marks type-only declarations in the typed dialect
_TYPE_ONLY_BASES = frozenset({"Protocol", "TypedDict"})
_TYPE_FACTORIES = frozenset({"TypeVar", "ParamSpec", "TypeVarTuple", "NewType"})


class Dialect(str, Enum):
    PLAIN = "plain"
    TYPED = "typed"


_TYPED_PATTERNS = [
    # parameter annotation: def f(x: int
    re.compile(r"def\s+\w+\s*(\[[^\]]*\])?\s*\([^)]*\b\w+\s*:\s*[A-Za-z_\"']"),
    # return annotation
    re.compile(r"\)\s*->\s*[\w\"'\[]"),
    # variable annotation at statement start: x: int = 1
    re.compile(r"^[ \t]*[A-Za-z_]\w*[ \t]*:[ \t]*[A-Za-z_][\w.]*(\[[^\]\n]*\])?[ \t]*(=|$)", re.MULTILINE),
    # PEP 695 type alias and generic definitions
    re.compile(r"^\s*type\s+\w+(\[[^\]]*\])?\s*=", re.MULTILINE),
    re.compile(r"^\s*(def|class)\s+\w+\[", re.MULTILINE),
    # typing constructs
    re.compile(r"\b(Optional|Union|List|Dict|Tuple|Callable|Literal|Generic)\["),
    re.compile(r"\b(Protocol|TypedDict|TypeVar|ParamSpec|NewType|TypeAlias)\b"),
    # X | None style unions inside annotations
    re.compile(r":\s*\w+(\[[^\]]*\])?\s*\|\s*\w+"),
]


def classify_dialect(source: str) -> Dialect:
    """Best-effort guess whether ``source`` carries type annotations."""
    for pattern in _TYPED_PATTERNS:
        if pattern.search(source):
            return Dialect.TYPED
    return Dialect.PLAIN


class _EraseTypes(ast.NodeTransformer):
    """Remove annotations and type-only declarations so they never evaluate."""

    def visit_AnnAssign(self, node: ast.AnnAssign):
        if node.value is None:
            return ast.Pass()
        return ast.copy_location(ast.Assign(targets=[node.target], value=node.value), node)

    def visit_arg(self, node: ast.arg):
        node.annotation = None
        return node

    def _visit_function(self, node):
        node.returns = None
        if hasattr(node, "type_params"):
            node.type_params = []
        self.generic_visit(node)
        return node

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_ClassDef(self, node: ast.ClassDef):
        base_names = {_base_name(base) for base in node.bases}
        if base_names & _TYPE_ONLY_BASES:
            return ast.copy_location(ast.Pass(), node)
        node.bases = [base for base in node.bases if _base_name(base) != "Generic"]
        if hasattr(node, "type_params"):
            node.type_params = []
        self.generic_visit(node)
        return node

    def visit_Assign(self, node: ast.Assign):
        value = node.value
        if (
            isinstance(value, ast.Call)
            and isinstance(value.func, ast.Name)
            and value.func.id in _TYPE_FACTORIES
        ):
            return ast.copy_location(ast.Pass(), node)
        return node

    def visit_TypeAlias(self, node):
        return ast.copy_location(ast.Pass(), node)


def _base_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Subscript):
        return _base_name(node.value)
    return None


def _check_containment(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise CompileError(
                "imports are not allowed in workflow code",
                detail={"line": getattr(node, "lineno", None)},
            )
        if isinstance(node, (ast.Global, ast.Nonlocal)):
            raise CompileError(
                "global and nonlocal declarations are not allowed",
                detail={"line": node.lineno},
            )
        if isinstance(node, ast.Attribute) and (
            node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES
        ):
            raise CompileError(
                f"access to attribute '{node.attr}' is not allowed",
                detail={"line": node.lineno},
            )
        if isinstance(node, ast.Name) and node.id.startswith("_") and node.id != "_":
            raise CompileError(
                f"name '{node.id}' is not allowed",
                detail={"line": node.lineno},
            )


def _parse_entry_point(entry_point: str) -> Tuple[str, Tuple[str, ...]]:
    """Parse ``"handle(input, context)"`` into ``("handle", ("input", "context"))``.

    A bare name means the default ``(input, context)`` arguments.
    """
    try:
        expr = ast.parse((entry_point or DEFAULT_ENTRY_POINT).strip(), mode="eval").body
    except SyntaxError as exc:
        raise CompileError(f"invalid entry point '{entry_point}'") from exc
    if isinstance(expr, ast.Name):
        return expr.id, ("input", "context")
    if isinstance(expr, ast.Call) and isinstance(expr.func, ast.Name) and not expr.keywords:
        args = []
        for arg in expr.args:
            if not isinstance(arg, ast.Name) or arg.id not in ENTRY_ARGUMENTS:
                raise CompileError(
                    f"entry point arguments must be among {', '.join(ENTRY_ARGUMENTS)}"
                )
            args.append(arg.id)
        return expr.func.id, tuple(args)
    raise CompileError(f"invalid entry point '{entry_point}'")


@dataclass(frozen=True)
class CompiledProgram:
    code: Any
    dialect: Dialect
    entry_name: str
    entry_args: Tuple[str, ...]


def compile_program(source: str, entry_point: str = DEFAULT_ENTRY_POINT) -> CompiledProgram:
    """Parse, contain and compile user code, raising :class:`CompileError`."""
    if not isinstance(source, str) or not source.strip():
        raise CompileError("workflow code is empty")
    entry_name, entry_args = _parse_entry_point(entry_point)
    if entry_name.startswith("_"):
        raise CompileError(f"entry point '{entry_name}' is not allowed")

    try:
        tree = ast.parse(source, filename=SANDBOX_FILENAME, mode="exec")
    except SyntaxError as exc:
        raise CompileError(
            f"syntax error: {exc.msg}",
            detail={"line": exc.lineno, "offset": exc.offset},
        ) from exc
    _check_containment(tree)

    dialect = classify_dialect(source)
    if dialect is Dialect.TYPED:
        try:
            tree = ast.fix_missing_locations(_EraseTypes().visit(tree))
        except (ValueError, TypeError) as exc:
            logger.warning("sandbox_type_erasure_failed", error=str(exc))
            dialect = Dialect.PLAIN
            tree = ast.parse(source, filename=SANDBOX_FILENAME, mode="exec")

    try:
        code = compile(tree, SANDBOX_FILENAME, "exec")
    except (SyntaxError, ValueError) as exc:
        raise CompileError(f"compile failed: {exc}") from exc
    return CompiledProgram(code=code, dialect=dialect, entry_name=entry_name, entry_args=entry_args)


# =========================================================================
# Network policy
# =========================================================================


@dataclass
class SandboxNetworkPolicy:
    """Egress policy for the ``fetch`` capability.

    Attributes:
        allowed_schemes: URL schemes user code may request
        blocked_hostnames: Hostnames rejected outright (``*.localhost`` always is)
        resolve_dns: Also reject hostnames that resolve to non-public addresses
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
        max_response_bytes: Response bodies larger than this fail the fetch
        proxy_url: Optional HTTP proxy every fetch goes through
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    allowed_schemes: Tuple[str, ...] = ("http", "https")
    blocked_hostnames: Tuple[str, ...] = ("localhost", "localhost.localdomain", "ip6-localhost")
    resolve_dns: bool = False
    connect_timeout: float = 5.0
    total_timeout: float = 10.0
    max_response_bytes: int = 2_000_000
    proxy_url: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = None


def _parse_ip_host(host: str) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    # Legacy IPv4 spellings such as 127.1, 0x7f.1 or 2130706433
    if re.fullmatch(r"(0x[0-9a-f]+|\d+)(\.(0x[0-9a-f]+|\d+)){0,3}", host):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(host))
        except OSError:
            return None
    return None


def is_public_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped or ip.sixtofour
        if mapped is not None:
            return is_public_address(mapped)
    return ip.is_global and not ip.is_multicast


def validate_url(url: str, policy: Optional[SandboxNetworkPolicy] = None) -> str:
    """Check ``url`` against the egress policy and return its hostname.

    Rejects non-http(s) schemes, localhost names and IP literals outside the
    public unicast range (loopback, RFC 1918, link-local, unique-local, CGNAT,
    reserved). Raises :class:`NetworkPolicyViolation`.
    """
    policy = policy or SandboxNetworkPolicy()
    if not isinstance(url, str) or not url:
        raise NetworkPolicyViolation("fetch URL must be a non-empty string")
    try:
        parsed = urlparse(url.strip())
        host = parsed.hostname
    except ValueError as exc:
        raise NetworkPolicyViolation(f"malformed URL: {exc}") from exc

    if parsed.scheme.lower() not in policy.allowed_schemes:
        raise NetworkPolicyViolation(
            f"URL scheme '{parsed.scheme}' is not allowed", detail={"url": url}
        )
    if not host:
        raise NetworkPolicyViolation("URL is missing a host", detail={"url": url})

    host = host.rstrip(".").lower()
    if host in policy.blocked_hostnames or host.endswith(".localhost"):
        raise NetworkPolicyViolation(f"host '{host}' is not allowed", detail={"url": url})

    ip = _parse_ip_host(host)
    if ip is not None and not is_public_address(ip):
        raise NetworkPolicyViolation(
            f"address '{host}' is not publicly routable", detail={"url": url}
        )
    return host


async def _check_resolved_addresses(host: str, port: Optional[int]) -> None:
    if _parse_ip_host(host) is not None:
        return
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port or 443, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise SandboxRuntimeError(f"could not resolve host '{host}': {exc}") from exc
    for info in infos:
        address = info[4][0].split("%", 1)[0]
        if not is_public_address(ipaddress.ip_address(address)):
            raise NetworkPolicyViolation(
                f"host '{host}' resolves to a non-public address",
                detail={"host": host, "address": address},
            )


def _decode_body(response: httpx.Response, body: bytes) -> Any:
    content_type = response.headers.get("content-type", "")
    text = body.decode(response.encoding or "utf-8", errors="replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


# =========================================================================
# Capabilities
# =========================================================================


class SandboxCapabilities:
    """The host-provided functions one execution may call."""

    def __init__(
        self,
        policy: SandboxNetworkPolicy,
        *,
        host_loop: asyncio.AbstractEventLoop,
        state: Optional[NamespacedState] = None,
        log_fields: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.policy = policy
        self.host_loop = host_loop
        self.state = state
        self.log_fields = log_fields or {}
        self.violation: Optional[NetworkPolicyViolation] = None
        self.fetch_count = 0

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        *,
        params: Any = None,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        data: Any = None,
    ) -> Dict[str, Any]:
        try:
            host = validate_url(url, self.policy)
            if self.policy.resolve_dns:
                await _check_resolved_addresses(host, urlparse(url).port)
        except NetworkPolicyViolation as exc:
            # Recorded so the run fails even if user code catches the error
            self.violation = self.violation or exc
            logger.warning("sandbox_fetch_blocked", url=url, error=exc.message, **self.log_fields)
            raise

        self.fetch_count += 1
        timeout = httpx.Timeout(self.policy.total_timeout, connect=self.policy.connect_timeout)
        client_kwargs: Dict[str, Any] = {"timeout": timeout, "follow_redirects": False}
        if self.policy.transport is not None:
            client_kwargs["transport"] = self.policy.transport
        elif self.policy.proxy_url:
            client_kwargs["proxy"] = self.policy.proxy_url
        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                async with client.stream(
                    str(method).upper(), url, params=params, headers=headers, json=json, data=data
                ) as response:
                    chunks = []
                    size = 0
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > self.policy.max_response_bytes:
                            raise SandboxRuntimeError(
                                "fetch response exceeds size limit",
                                detail={"limit": self.policy.max_response_bytes},
                            )
                        chunks.append(chunk)
                    body = b"".join(chunks)
        except httpx.TimeoutException as exc:
            raise SandboxRuntimeError("fetch timed out", detail={"url": url}) from exc
        except httpx.HTTPError as exc:
            raise SandboxRuntimeError(f"fetch failed: {exc}", detail={"url": url}) from exc

        logger.debug(
            "sandbox_fetch", url=url, method=str(method).upper(), status=response.status_code,
            bytes=size, **self.log_fields,
        )
        return {
            "status": response.status_code,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "data": _decode_body(response, body),
        }

    def log(self, *args: Any, **fields: Any) -> None:
        message = " ".join(str(arg) for arg in args)
        logger.info("sandbox_log", message=message, fields=fields or None, **self.log_fields)


class _BridgedState:
    """State handle usable from the worker loop; calls run on the host loop."""

    def __init__(self, state: NamespacedState, host_loop: asyncio.AbstractEventLoop) -> None:
        self._state = state
        self._host_loop = host_loop

    async def _call(self, coro) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self._host_loop)
        return await asyncio.wrap_future(future)

    async def get(self, key: str, default: Any = None) -> Any:
        return await self._call(self._state.get(key, default))

    async def set(self, key: str, value: Any) -> Any:
        return await self._call(self._state.set(key, value))

    async def delete(self, key: str) -> None:
        await self._call(self._state.delete(key))

    async def all(self) -> Dict[str, Any]:
        return await self._call(self._state.all())


# =========================================================================
# Result conformance
# =========================================================================


def ensure_json_result(value: Any, *, path: str = "$", _depth: int = 0) -> Any:
    """Return ``value`` as plain JSON or raise :class:`InvalidResultType`."""
    if _depth > MAX_RESULT_DEPTH:
        raise InvalidResultType("result is nested too deeply", detail={"path": path})
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidResultType(
                f"entry point returned non-finite number at {path}",
                detail={"type": "float", "path": path},
            )
        return value
    if isinstance(value, (list, tuple)):
        return [
            ensure_json_result(item, path=f"{path}[{i}]", _depth=_depth + 1)
            for i, item in enumerate(value)
        ]
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidResultType(
                    f"entry point returned a mapping with non-string key of type "
                    f"'{type(key).__name__}' at {path}",
                    detail={"type": type(key).__name__, "path": path},
                )
            result[key] = ensure_json_result(item, path=f"{path}.{key}", _depth=_depth + 1)
        return result
    type_name = type(value).__name__
    raise InvalidResultType(
        f"entry point returned unsupported type '{type_name}' at {path}",
        detail={"type": type_name, "path": path},
    )


# =========================================================================
# Runner
# =========================================================================


class _DeadlineExceeded(BaseException):
    """Raised inside user frames once the execution deadline passes."""


def _deadline_tracer(deadline: float) -> Callable:
    def _local(frame, event, arg):
        if event == "line" and time.monotonic() > deadline:
            raise _DeadlineExceeded()
        return _local

    def _global(frame, event, arg):
        if frame.f_code.co_filename == SANDBOX_FILENAME:
            return _local
        return None

    return _global


@dataclass
class SandboxConfig:
    """Configuration for one :class:`SandboxRunner`.

    Attributes:
        timeout_seconds: Wall-clock budget for module body plus entry point
        workers: Worker threads executing user code concurrently
        network: Egress policy for ``fetch``
        allowed_builtins: Builtin names visible to user code
    """

    timeout_seconds: float = 5.0
    workers: int = 4
    network: SandboxNetworkPolicy = field(default_factory=SandboxNetworkPolicy)
    allowed_builtins: Sequence[str] = _SAFE_BUILTIN_NAMES


class SandboxRunner:
    """Runs user code in isolation and returns its JSON result."""

    MAX_WORKERS = 32

    def __init__(self, config: Optional[SandboxConfig] = None) -> None:
        self.config = config or SandboxConfig()
        workers = min(max(1, self.config.workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="onstep-sandbox"
        )
        self._executor_shutdown = False
        self._builtins = self._build_builtins()

    def _build_builtins(self) -> Dict[str, Any]:
        import builtins

        safe = {
            name: getattr(builtins, name)
            for name in self.config.allowed_builtins
            if hasattr(builtins, name)
        }
        # Needed for class statements; unreachable by name from user code
        safe["__build_class__"] = builtins.__build_class__
        return safe

    def _globals(
        self,
        capabilities: SandboxCapabilities,
        inputs: Any,
        context: Any,
        state: Optional[_BridgedState],
    ) -> Dict[str, Any]:
        return {
            "__builtins__": dict(self._builtins),
            "__name__": "workflow_step",
            "fetch": capabilities.fetch,
            "log": capabilities.log,
            "print": capabilities.log,
            "json_loads": json.loads,
            "json_dumps": json.dumps,
            "input": inputs,
            "context": context,
            "state": state,
        }

    async def run(
        self,
        code: str,
        entry_point: str = DEFAULT_ENTRY_POINT,
        *,
        inputs: Any = None,
        context: Any = None,
        state: Optional[NamespacedState] = None,
        timeout_seconds: Optional[float] = None,
        log_fields: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute ``code`` and return the JSON value its entry point produced.

        Raises CompileError, SandboxRuntimeError (SandboxTimeout on deadline),
        InvalidResultType or NetworkPolicyViolation.
        """
        if self._executor_shutdown:
            raise SandboxRuntimeError("sandbox runner is shut down")
        program = compile_program(code, entry_point)
        timeout = min(timeout_seconds or self.config.timeout_seconds, MAX_TIMEOUT_SECONDS)
        host_loop = asyncio.get_running_loop()
        capabilities = SandboxCapabilities(
            self.config.network, host_loop=host_loop, state=state, log_fields=log_fields
        )
        bridged = _BridgedState(state, host_loop) if state is not None else None
        deadline = time.monotonic() + timeout
        started = time.monotonic()

        future = host_loop.run_in_executor(
            self._executor,
            self._execute,
            program,
            self._globals(capabilities, inputs, context, bridged),
            {"input": inputs, "context": context, "state": bridged},
            deadline,
        )
        try:
            value = await asyncio.wait_for(future, timeout=timeout + _HOST_GRACE_SECONDS)
        except asyncio.TimeoutError as exc:
            logger.warning("sandbox_timeout", timeout=timeout, **(log_fields or {}))
            raise SandboxTimeout(
                f"execution exceeded {timeout:g}s", detail={"timeout_seconds": timeout}
            ) from exc

        if capabilities.violation is not None:
            raise capabilities.violation
        result = ensure_json_result(value)
        logger.debug(
            "sandbox_run_completed",
            dialect=program.dialect.value,
            duration_ms=int((time.monotonic() - started) * 1000),
            fetches=capabilities.fetch_count,
            **(log_fields or {}),
        )
        return result

    def _execute(
        self,
        program: CompiledProgram,
        namespace: Dict[str, Any],
        arguments: Dict[str, Any],
        deadline: float,
    ) -> Any:
        sys.settrace(_deadline_tracer(deadline))
        try:
            exec(program.code, namespace)
            entry = namespace.get(program.entry_name)
            if not callable(entry):
                raise SandboxRuntimeError(
                    f"entry point '{program.entry_name}' is not defined",
                    detail={"entry_point": program.entry_name},
                )
            produced = entry(*(arguments[name] for name in program.entry_args))
            if inspect.isawaitable(produced):
                produced = asyncio.run(self._await(produced))
            return produced
        except _DeadlineExceeded as exc:
            raise SandboxTimeout("execution exceeded its deadline") from exc
        except SandboxError:
            raise
        except RecursionError as exc:
            raise SandboxRuntimeError("maximum recursion depth exceeded") from exc
        except Exception as exc:
            raise SandboxRuntimeError(
                f"{type(exc).__name__}: {exc}", detail={"error_type": type(exc).__name__}
            ) from exc
        finally:
            sys.settrace(None)

    @staticmethod
    async def _await(awaitable) -> Any:
        return await awaitable

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. Call during application shutdown."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("sandbox_executor_shutdown", wait=wait)


__all__ = [
    "DEFAULT_ENTRY_POINT",
    "CompiledProgram",
    "Dialect",
    "SandboxCapabilities",
    "SandboxConfig",
    "SandboxNetworkPolicy",
    "SandboxRunner",
    "classify_dialect",
    "compile_program",
    "ensure_json_result",
    "is_public_address",
    "validate_url",
]
