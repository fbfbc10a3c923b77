from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for workflow-core exceptions.

    Each class carries a stable ``error_code`` and the HTTP ``status_code`` the
    API layer reports it with. Job failure reasons are rendered from the class
    name and message via :func:`failure_reason`.
    """

    status_code: int = 500
    error_code: str = "workflow_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


# Definition errors abort a run before any step executes.


class DefinitionError(WorkflowError):
    status_code = 400
    error_code = "invalid_definition"


class InvalidWorkflowGraph(DefinitionError):
    """Unknown step references, duplicate ids, or a dependency cycle."""

    error_code = "invalid_workflow_graph"


class InvalidTrigger(DefinitionError):
    """Malformed trigger, e.g. a cron expression croniter rejects."""

    error_code = "invalid_trigger"


class UnresolvedReference(DefinitionError):
    """A template names a value that does not exist in the execution context."""

    error_code = "unresolved_reference"


class SandboxError(WorkflowError):
    """Raised when user code cannot be run to a conforming result."""

    status_code = 422
    error_code = "sandbox_error"


class CompileError(SandboxError):
    error_code = "compile_error"


class SandboxRuntimeError(SandboxError):
    """User code raised, or its entry point could not be called."""

    error_code = "runtime_error"


class SandboxTimeout(SandboxRuntimeError):
    error_code = "sandbox_timeout"


class InvalidResultType(SandboxError):
    error_code = "invalid_result_type"


class NetworkPolicyViolation(SandboxError):
    status_code = 403
    error_code = "network_policy_violation"


class ToolError(WorkflowError):
    status_code = 502
    error_code = "tool_error"


class UnknownToolError(ToolError):
    status_code = 404
    error_code = "unknown_tool"


class ToolValidationError(ToolError):
    status_code = 422
    error_code = "tool_validation_error"


class JobNotFoundError(WorkflowError):
    status_code = 404
    error_code = "not_found"


class JobStateError(WorkflowError):
    """A job is not in the status an operation requires."""

    status_code = 409
    error_code = "conflict"


def failure_reason(exc: BaseException) -> str:
    """Render ``"<ErrorClass>: <message>"`` for persisted failure reasons."""
    message = getattr(exc, "message", None) or str(exc) or "no message"
    return f"{type(exc).__name__}: {message}"


__all__ = [
    "WorkflowError",
    "DefinitionError",
    "InvalidWorkflowGraph",
    "InvalidTrigger",
    "UnresolvedReference",
    "SandboxError",
    "CompileError",
    "SandboxRuntimeError",
    "SandboxTimeout",
    "InvalidResultType",
    "NetworkPolicyViolation",
    "ToolError",
    "UnknownToolError",
    "ToolValidationError",
    "JobNotFoundError",
    "JobStateError",
    "failure_reason",
]
