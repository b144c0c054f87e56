"""
TTL read-through cache in front of an ObjectClient.

Every WAL archive/restore request needs the object-store credentials.
Reading the secrets from the API server on every request would put a
WAL-rate load on the control plane, so secret reads are cached for a
short time without relying on watches.

Invariants:
    - Only kinds listed in ``cached_kinds`` are cached, every other
      read goes straight to the backing client
    - An entry is fresh while its age is <= TTL; TTL == 0 disables caching
    - The TTL is read from its source on every call
    - Any write to a cached kind evicts the entry before forwarding
    - Callers always receive a private copy of the cached object
    - One lock guards the entry map; backing I/O runs outside it
    - A read racing with an eviction of the same key does not refill
      the cache with what it fetched

How to change safely:
    - Adding a kind to DEFAULT_CACHED_KINDS delays visibility of its
      updates by up to TTL seconds, check every reader first
    - Keep the eviction before the forwarded write, a failed write must
      not leave a stale entry behind
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Tuple

from ..api.schema import ModelT, ObjectKind, ObjectSchema
from ..api.types import ApiModel
from .base import ObjectClient, ObjectKey

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 10.0
DEFAULT_CLEANUP_INTERVAL_SECONDS = 30.0

DEFAULT_CACHED_KINDS: FrozenSet[ObjectKind] = frozenset({ObjectKind.SECRET})

_EntryKey = Tuple[ObjectKind, str, str]


def env_ttl_source(
    variable: str = "SECRET_CACHE_TTL_SECONDS",
    default: float = DEFAULT_TTL_SECONDS,
) -> Callable[[], float]:
    """Build a TTL source that re-reads an environment variable each call.

    Invalid or negative values fall back to ``default``.
    """

    def ttl() -> float:
        raw = os.getenv(variable)
        if raw is None or raw == "":
            return default
        try:
            value = float(raw)
        except ValueError:
            logger.warning("Invalid secret cache TTL, using default", extra={"value": raw})
            return default
        return value if value >= 0 else default

    return ttl


@dataclass
class CachedEntry:
    """A cached object and the clock reading at fetch time."""

    obj: ApiModel
    fetched_at: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return now - self.fetched_at <= ttl_seconds


class CachingObjectClient:
    """ObjectClient wrapper caching reads of selected kinds.

    Attributes:
        client: Backing client
        cached_kinds: Kinds whose reads are cached

    Example:
        >>> cached = CachingObjectClient(kube_client, ttl_seconds=env_ttl_source())
        >>> secret = await cached.get(SECRET_V1, ObjectKey("default", "aws-creds"))
    """

    def __init__(
        self,
        client: ObjectClient,
        ttl_seconds: Callable[[], float] = lambda: DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        cached_kinds: FrozenSet[ObjectKind] = DEFAULT_CACHED_KINDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the cache.

        Args:
            client: Backing client
            ttl_seconds: Callable returning the current TTL in seconds
            clock: Monotonic clock, injectable for tests
            cached_kinds: Kinds whose reads are cached
            cleanup_interval_seconds: Interval of the expired-entry sweep
        """
        self.client = client
        self.cached_kinds = cached_kinds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[_EntryKey, CachedEntry] = {}
        self._generations: Dict[_EntryKey, int] = {}
        self._lock = threading.Lock()

    def is_cached_kind(self, schema: ObjectSchema) -> bool:
        return schema.kind in self.cached_kinds

    async def get(self, schema: ObjectSchema[ModelT], key: ObjectKey) -> ModelT:
        """Read an object, serving cached kinds from the cache when fresh."""
        if not self.is_cached_kind(schema):
            return await self.client.get(schema, key)

        ttl = self._ttl_seconds()
        entry_key = (schema.kind, key.namespace, key.name)

        with self._lock:
            generation = self._generations.get(entry_key, 0)
            if ttl > 0:
                entry = self._entries.get(entry_key)
                if entry is not None and entry.is_fresh(self._clock(), ttl):
                    logger.debug(
                        "Object found, loading it from cache",
                        extra={"kind": schema.kind.value, "key": str(key)},
                    )
                    return entry.obj.model_copy(deep=True)  # type: ignore[return-value]

        obj = await self.client.get(schema, key)

        if ttl > 0:
            with self._lock:
                stale = self._generations.get(entry_key, 0) != generation
                if not stale:
                    self._entries[entry_key] = CachedEntry(
                        obj=obj.model_copy(deep=True),
                        fetched_at=self._clock(),
                    )
            logger.debug(
                "Object evicted while being fetched, not caching it" if stale else "Setting object in the cache",
                extra={"kind": schema.kind.value, "key": str(key)},
            )
        return obj

    async def list(self, schema: ObjectSchema[ModelT], namespace: str) -> List[ModelT]:
        return await self.client.list(schema, namespace)

    async def create(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        return await self.client.create(schema, obj)

    async def update(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        self._evict(schema, ObjectKey.from_object(obj))
        return await self.client.update(schema, obj)

    async def update_status(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        self._evict(schema, ObjectKey.from_object(obj))
        return await self.client.update_status(schema, obj)

    async def patch(
        self, schema: ObjectSchema[ModelT], key: ObjectKey, patch: Dict[str, Any]
    ) -> ModelT:
        self._evict(schema, key)
        return await self.client.patch(schema, key, patch)

    async def delete(self, schema: ObjectSchema[ModelT], obj: ModelT) -> None:
        self._evict(schema, ObjectKey.from_object(obj))
        await self.client.delete(schema, obj)

    def _evict(self, schema: ObjectSchema, key: ObjectKey) -> None:
        if not self.is_cached_kind(schema):
            return
        entry_key = (schema.kind, key.namespace, key.name)
        with self._lock:
            self._entries.pop(entry_key, None)
            self._generations[entry_key] = self._generations.get(entry_key, 0) + 1

    def cleanup_expired(self) -> int:
        """Drop every expired entry.

        Returns:
            Number of entries removed
        """
        ttl = self._ttl_seconds()
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if not e.is_fresh(now, ttl)]
            for k in expired:
                del self._entries[k]
            remaining = len(self._entries)

        if expired:
            logger.debug(
                "Cleaned up expired cache entries",
                extra={"removed_count": len(expired), "remaining_count": remaining},
            )
        return len(expired)

    async def run_cleanup(self, stop_event: asyncio.Event) -> None:
        """Sweep expired entries periodically until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.cleanup_interval_seconds)
            except asyncio.TimeoutError:
                self.cleanup_expired()
        logger.debug("Stopping cache cleanup routine")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
