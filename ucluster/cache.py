"""
Location cache: content hash -> owning node identifier, with a bounded TTL.

Backed by Redis (redis.asyncio). Entries are hints, never guarantees: the
named node may have dropped the task since the entry was written, so callers
must tolerate the owner answering "not found".

Value format (kept compatible with existing deployments):
    key:   <prefix><info hash>
    value: {"host": "<node identifier>"}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ucluster.exceptions import CacheUnavailableError, CorruptCacheEntryError
from ucluster.metrics import ClusterMetrics

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class KeyValueStore(Protocol):
    """The subset of the redis.asyncio client the cache relies on."""

    async def get(self, name: str) -> Any: ...

    async def set(self, name: str, value: Any, ex: Optional[int] = None) -> Any: ...

    async def delete(self, *names: str) -> Any: ...

    async def aclose(self) -> None: ...


class LocationCache:
    """Hash -> node identifier mapping stored with a fixed expiry."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = "utorrent:",
        metrics: Optional[ClusterMetrics] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self._metrics = metrics or ClusterMetrics()
        self._pending: Dict[asyncio.Task, str] = {}

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "LocationCache":
        return cls(aioredis.from_url(url), **kwargs)

    def _key(self, info_hash: str) -> str:
        return f"{self.key_prefix}{info_hash}"

    async def lookup(self, info_hash: str) -> Optional[str]:
        """
        Return the cached owner identifier for a hash, or None on a miss.

        Raises:
            CacheUnavailableError: The store could not be queried.
            CorruptCacheEntryError: An entry exists but cannot be decoded.
        """
        try:
            raw = await self._store.get(self._key(info_hash))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(
                f"Location cache lookup failed: {exc}", details={"hash": info_hash}
            ) from exc
        if raw is None:
            return None
        return _decode(info_hash, raw)

    def record(self, info_hash: str, node_id: str) -> asyncio.Task:
        """
        Write hash -> node with the configured TTL, in the background.

        A lost write only costs one extra scatter search later, so failures
        are logged and counted, never raised to the caller.
        """
        task = asyncio.get_running_loop().create_task(self._write(info_hash, node_id))
        self._pending[task] = info_hash
        task.add_done_callback(self._write_done)
        return task

    async def _write(self, info_hash: str, node_id: str) -> None:
        value = json.dumps({"host": node_id})
        await self._store.set(self._key(info_hash), value, ex=self.ttl_seconds)
        logger.debug("Cached %s -> %s for %ss", info_hash, node_id, self.ttl_seconds)

    def _write_done(self, task: asyncio.Task) -> None:
        self._pending.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._metrics.cache_write_failures.inc()
            logger.warning("Background location cache write failed: %s", exc)

    async def invalidate(self, info_hash: str) -> None:
        """Drop the entry for a hash whose ownership has ended.

        Background writes already scheduled for the hash land first, so
        none of them can re-create the entry after the delete.
        """
        writes = [task for task, key in self._pending.items() if key == info_hash]
        if writes:
            await asyncio.gather(*writes, return_exceptions=True)
        try:
            await self._store.delete(self._key(info_hash))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(
                f"Location cache delete failed: {exc}", details={"hash": info_hash}
            ) from exc

    async def flush(self) -> None:
        """Wait for every background write scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.flush()
        try:
            await self._store.aclose()
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(
                f"Location cache close failed: {exc}"
            ) from exc


def _decode(info_hash: str, raw: Any) -> str:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptCacheEntryError(
                "Cache entry is not valid UTF-8", key=info_hash, raw=raw
            ) from exc
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise CorruptCacheEntryError(
            "Cache entry is not valid JSON", key=info_hash, raw=raw
        ) from exc

    if isinstance(value, dict):
        value = value.get("host")
    if not isinstance(value, str) or not value:
        raise CorruptCacheEntryError(
            "Cache entry does not name a node", key=info_hash, raw=raw
        )
    return value
