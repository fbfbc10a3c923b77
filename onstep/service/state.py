"""Per-user key/value state that persists across workflow runs.

Values are JSON documents. Every operation is scoped to a namespace derived
from the owning user (and optionally the workflow); no operation can read or
write outside the namespace it is given.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from onstep.storage.errors import StateStoreError

_FORBIDDEN_NAMESPACE_CHARS = frozenset("{}*?[]")


@runtime_checkable
class StateStore(Protocol):
    async def get(self, namespace: str, key: str) -> Any: ...

    async def set(self, namespace: str, key: str, value: Any) -> None: ...

    async def delete(self, namespace: str, key: str) -> None: ...

    async def clear(self, namespace: str) -> None: ...

    async def get_all(self, namespace: str) -> Dict[str, Any]: ...


def state_namespace(user_id: str, workflow_id: Optional[str] = None) -> str:
    """Derive the state namespace for a user, optionally narrowed to one workflow."""
    if not user_id:
        raise StateStoreError("state namespace requires a user id")
    namespace = f"user:{user_id}"
    if workflow_id:
        namespace = f"{namespace}:workflow:{workflow_id}"
    return validate_namespace(namespace)


def validate_namespace(namespace: str) -> str:
    if not namespace or not isinstance(namespace, str):
        raise StateStoreError("namespace must be a non-empty string")
    bad = _FORBIDDEN_NAMESPACE_CHARS.intersection(namespace)
    if bad:
        raise StateStoreError(
            "namespace contains reserved characters",
            detail={"namespace": namespace, "characters": sorted(bad)},
        )
    return namespace


def validate_key(key: str) -> str:
    if not key or not isinstance(key, str):
        raise StateStoreError("state key must be a non-empty string")
    return key


def encode_value(value: Any) -> str:
    """Serialize a state value, rejecting anything that is not plain JSON."""
    try:
        return json.dumps(value, allow_nan=False, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StateStoreError(
            f"state value is not JSON-serializable: {exc}",
            detail={"type": type(value).__name__},
        ) from exc


def decode_value(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StateStoreError(f"stored state value is corrupt: {exc}") from exc


class NamespacedState:
    """A state store bound to one namespace, handed to steps and user code."""

    def __init__(self, store: StateStore, namespace: str) -> None:
        self.store = store
        self.namespace = validate_namespace(namespace)

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self.store.get(self.namespace, validate_key(key))
        return default if value is None else value

    async def set(self, key: str, value: Any) -> Any:
        await self.store.set(self.namespace, validate_key(key), value)
        return value

    async def delete(self, key: str) -> None:
        await self.store.delete(self.namespace, validate_key(key))

    async def clear(self) -> None:
        await self.store.clear(self.namespace)

    async def all(self) -> Dict[str, Any]:
        return await self.store.get_all(self.namespace)

    def __repr__(self) -> str:
        return f"NamespacedState(namespace={self.namespace!r})"


__all__ = [
    "StateStore",
    "NamespacedState",
    "state_namespace",
    "validate_namespace",
    "validate_key",
    "encode_value",
    "decode_value",
]
