from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

from onstep.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow execution core."""

    database_url: str = env_field("postgresql://localhost:5432/onstep", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    database_pool_min_size: int = env_field(1, "DATABASE_POOL_MIN_SIZE")
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    state_key_prefix: str = env_field("onstep:state", "STATE_KEY_PREFIX")

    # Tool router (external capability gateway)
    tool_router_url: str | None = env_field(None, "TOOL_ROUTER_URL")
    tool_router_api_key: str | None = env_field(None, "TOOL_ROUTER_API_KEY")
    tool_timeout_seconds: float = env_field(30.0, "TOOL_TIMEOUT_SECONDS")

    # Sandbox runner
    sandbox_timeout_seconds: float = env_field(5.0, "SANDBOX_TIMEOUT_SECONDS")
    sandbox_workers: int = env_field(4, "SANDBOX_WORKERS")
    sandbox_fetch_timeout: float = env_field(10.0, "SANDBOX_FETCH_TIMEOUT")
    sandbox_fetch_connect_timeout: float = env_field(5.0, "SANDBOX_FETCH_CONNECT_TIMEOUT")
    sandbox_max_response_bytes: int = env_field(2_000_000, "SANDBOX_MAX_RESPONSE_BYTES")
    sandbox_resolve_dns: bool = env_field(True, "SANDBOX_RESOLVE_DNS")
    sandbox_proxy_url: str | None = env_field(None, "SANDBOX_PROXY_URL")

    # Workflow engine
    engine_max_concurrency: int = env_field(8, "ENGINE_MAX_CONCURRENCY")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "sandbox_timeout_seconds",
        "sandbox_fetch_timeout",
        "sandbox_fetch_connect_timeout",
        "tool_timeout_seconds",
        "redis_socket_timeout",
    )
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("sandbox_workers", "engine_max_concurrency", "database_pool_max_size")
    @classmethod
    def _positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("tool_router_url", "redis_url", "sandbox_proxy_url")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip().rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
