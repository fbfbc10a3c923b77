from __future__ import annotations

from typing import Any, Dict, List

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from onstep.logging import get_logger
from onstep.service.state import decode_value, encode_value, validate_key, validate_namespace
from onstep.storage.errors import StateStoreError

logger = get_logger(__name__)


def _escape_glob(value: str) -> str:
    return "".join(f"\\{ch}" if ch in "*?[]\\" else ch for ch in value)


class RedisStateStore:
    """Durable state store on Redis.

    Keys are ``{prefix}:{<namespace>}:{key}``. The braces double as a Redis
    Cluster hash tag so one namespace's keys live on one slot, and because
    namespaces cannot contain braces the ``SCAN`` pattern of one namespace
    never matches another's keys.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_COUNT = 200

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        prefix: str = "onstep:state",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        if client is None:
            if not redis_url:
                raise StateStoreError("redis_url is required for RedisStateStore")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client

    def _namespace_prefix(self, namespace: str) -> str:
        return f"{self.prefix}:{{{validate_namespace(namespace)}}}:"

    def _key(self, namespace: str, key: str) -> str:
        return self._namespace_prefix(namespace) + validate_key(key)

    async def _scan_keys(self, namespace: str) -> List[str]:
        pattern = _escape_glob(self._namespace_prefix(namespace)) + "*"
        return [key async for key in self.client.scan_iter(match=pattern, count=self.SCAN_COUNT)]

    async def get(self, namespace: str, key: str) -> Any:
        try:
            raw = await self.client.get(self._key(namespace, key))
        except RedisError as exc:
            logger.warning("state_get_failed", namespace=namespace, key=key, error=str(exc))
            raise StateStoreError(f"state read failed: {exc}") from exc
        return decode_value(raw)

    async def set(self, namespace: str, key: str, value: Any) -> None:
        encoded = encode_value(value)
        try:
            await self.client.set(self._key(namespace, key), encoded)
        except RedisError as exc:
            logger.warning("state_set_failed", namespace=namespace, key=key, error=str(exc))
            raise StateStoreError(f"state write failed: {exc}") from exc

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self.client.delete(self._key(namespace, key))
        except RedisError as exc:
            logger.warning("state_delete_failed", namespace=namespace, key=key, error=str(exc))
            raise StateStoreError(f"state delete failed: {exc}") from exc

    async def clear(self, namespace: str) -> None:
        try:
            keys = await self._scan_keys(namespace)
            if keys:
                await self.client.delete(*keys)
        except RedisError as exc:
            logger.warning("state_clear_failed", namespace=namespace, error=str(exc))
            raise StateStoreError(f"state clear failed: {exc}") from exc
        logger.debug("state_cleared", namespace=namespace, removed=len(keys))

    async def get_all(self, namespace: str) -> Dict[str, Any]:
        prefix = self._namespace_prefix(namespace)
        try:
            keys = await self._scan_keys(namespace)
            if not keys:
                return {}
            values = await self.client.mget(keys)
        except RedisError as exc:
            logger.warning("state_get_all_failed", namespace=namespace, error=str(exc))
            raise StateStoreError(f"state read failed: {exc}") from exc
        # A key deleted between SCAN and MGET comes back as None
        return {
            key[len(prefix):]: decode_value(raw)
            for key, raw in zip(keys, values)
            if raw is not None
        }

    async def verify_connection(self) -> None:
        try:
            await self.client.ping()
        except RedisError as exc:
            raise StateStoreError(f"redis unavailable: {exc}") from exc

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
