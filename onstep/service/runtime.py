from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from onstep.config import Settings, get_settings, reset_settings_cache
from onstep.logging import get_logger
from onstep.service.jobs import (
    InMemoryWorkflowSource,
    JobController,
    StaticUserContextProvider,
    UserContextProvider,
    WorkflowSource,
)
from onstep.service.sandbox import SandboxConfig, SandboxNetworkPolicy, SandboxRunner
from onstep.service.tools import HttpToolRouter, LiveToolInvoker, RecordingToolInvoker, ToolInvoker
from onstep.service.workflow import WorkflowEngine
from onstep.storage.memory import MemoryJobStore, MemoryStateStore
from onstep.storage.postgres import PostgresJobStore
from onstep.storage.redis_state import RedisStateStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_sandbox_config(settings: Settings) -> SandboxConfig:
    """Translate environment settings into an explicit sandbox configuration."""
    return SandboxConfig(
        timeout_seconds=settings.sandbox_timeout_seconds,
        workers=settings.sandbox_workers,
        network=SandboxNetworkPolicy(
            resolve_dns=settings.sandbox_resolve_dns,
            connect_timeout=settings.sandbox_fetch_connect_timeout,
            total_timeout=settings.sandbox_fetch_timeout,
            max_response_bytes=settings.sandbox_max_response_bytes,
            proxy_url=settings.sandbox_proxy_url,
        ),
    )


class Runtime:
    """Holds the service instances shared by the API and background callers."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        workflows: Optional[WorkflowSource] = None,
        users: Optional[UserContextProvider] = None,
        tools: Optional[ToolInvoker] = None,
    ) -> None:
        self.settings = settings or get_settings()
        memory = self.settings.use_memory_store
        logger.info("runtime_init_started", use_memory_store=memory)

        try:
            self.store = (
                MemoryJobStore()
                if memory
                else PostgresJobStore(
                    self.settings.database_url,
                    min_size=self.settings.database_pool_min_size,
                    max_size=self.settings.database_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if memory else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        if memory:
            self.state_store = MemoryStateStore()
        elif self.settings.redis_url:
            self.state_store = RedisStateStore(
                self.settings.redis_url,
                prefix=self.settings.state_key_prefix,
                socket_timeout=self.settings.redis_socket_timeout,
            )
        else:
            raise RuntimeError(
                "REDIS_URL is required for durable workflow state; "
                "set USE_MEMORY_STORE=true for local development."
            )
        logger.info(
            "runtime_stores_initialized",
            job_store="memory" if memory else "postgres",
            state_store="memory" if memory else "redis",
            redis_url=_mask_url_password(self.settings.redis_url) if not memory else None,
        )

        self.sandbox = SandboxRunner(build_sandbox_config(self.settings))
        router = (
            HttpToolRouter(
                self.settings.tool_router_url,
                api_key=self.settings.tool_router_api_key,
                timeout=self.settings.tool_timeout_seconds,
            )
            if self.settings.tool_router_url
            else None
        )
        live = LiveToolInvoker(router=router, timeout=self.settings.tool_timeout_seconds)
        if tools is not None:
            self.tools = tools
        elif self.settings.test_mode:
            # Tool calls are recorded and fabricated, never sent
            self.tools = RecordingToolInvoker(live)
        else:
            self.tools = live
        self.workflows = workflows or InMemoryWorkflowSource()
        self.users = users or StaticUserContextProvider()
        self.engine = WorkflowEngine(
            self.sandbox,
            self.tools,
            self.state_store,
            max_concurrency=self.settings.engine_max_concurrency,
        )
        self.jobs = JobController(self.store, self.engine, self.workflows, self.users)

    async def close(self) -> None:
        """Release worker threads and backend connections."""
        self.sandbox.shutdown(wait=False)
        self.store.close()
        await self.state_store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.sandbox.shutdown(wait=False)
            runtime.store.close()
        runtime = None
