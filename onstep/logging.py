"""structlog setup for the workflow core.

Every event carries the correlation id of the HTTP request or job run that
produced it. While ``run_job`` is active the job id is the correlation id, so
sandbox, tool and state events of one run can be grouped without passing the
id through every call.
"""
from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_SECRET_FIELDS = ("password", "secret", "token", "api_key", "authorization")
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/\s:@]*:[^/\s@]+@", re.I)
_INLINE_SECRET = re.compile(
    r"(?P<name>api[_-]?key|token|password|secret|authorization)(?P<sep>\s*[=:]\s*)[^\s,;&]+",
    re.I,
)
# Untrusted code controls sandbox log fields
MAX_FIELD_CHARS = 2000


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id, or mint one."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def job_log_context(job_id: str, **fields: Any) -> Iterator[str]:
    """Make ``job_id`` the correlation id for the duration of a job run.

    The request's own id is restored afterwards.
    """
    token = correlation_id_var.set(job_id)
    try:
        with structlog.contextvars.bound_contextvars(job_id=job_id, **fields):
            yield job_id
    finally:
        correlation_id_var.reset(token)


def _mask_secret(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _scrub_text(text: str) -> str:
    text = _URL_CREDENTIALS.sub(r"\g<scheme>***@", text)
    return _INLINE_SECRET.sub(r"\g<name>\g<sep>***", text)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential fields and credentials embedded in URLs or messages."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _SECRET_FIELDS):
            event_dict[key] = _mask_secret(value)
        else:
            event_dict[key] = _scrub_text(value)
    return event_dict


def _truncate_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
            event_dict[key] = value[: MAX_FIELD_CHARS - 3] + "..."
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        _truncate_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_workflow_trace(trace: List[Dict[str, Any]], logger: Optional[Any] = None) -> None:
    """Emit one summary event for a finished or aborted workflow run."""
    log = logger or get_logger("onstep.workflow")
    failed = [entry["step_id"] for entry in trace if entry.get("status") == "error"]
    cancelled = [entry["step_id"] for entry in trace if entry.get("status") == "cancelled"]
    skipped = [entry["step_id"] for entry in trace if entry.get("status") == "skipped"]
    log.info(
        "workflow_trace",
        steps=len(trace),
        failed_steps=failed or None,
        cancelled_steps=cancelled or None,
        skipped_steps=skipped or None,
        total_step_ms=sum(entry.get("duration_ms", 0) for entry in trace),
        trace=[
            {**entry, "error": sanitize_error_message(entry["error"])} if entry.get("error") else entry
            for entry in trace
        ],
    )


def sanitize_error_message(error: str, *, max_length: int = 500) -> str:
    """Prepare an error message for a job result or API response.

    Credentials are masked and the text is capped at ``max_length``.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    error = _scrub_text(error.strip()) or "An error occurred"
    if len(error) > max_length:
        return error[: max_length - 3] + "..."
    return error
