"""
In-memory object client implementation for testing.

This module provides a simple in-memory control plane for:
- Unit tests
- Integration tests
- Local development without a Kubernetes API server

Invariants:
    - All data is lost on process exit
    - Objects are stored in wire form, every read returns a fresh copy
    - Resource versions increase on every write, stale updates conflict

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with ObjectClient protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Tuple

from ..api.schema import ModelT, ObjectKind, ObjectSchema
from ..errors import ConflictError, MissingPermissionsError, ResourceNotFoundError
from .base import ObjectKey

logger = logging.getLogger(__name__)

_StoreKey = Tuple[ObjectKind, str, str]


def _merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply an RFC 7386 JSON merge patch."""
    result = dict(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_patch(result[key], value)
        else:
            result[key] = value
    return result


class InMemoryObjectClient:
    """In-memory implementation of ObjectClient for testing.

    Attributes:
        calls: Counter of (operation, kind) pairs, for asserting how many
            times the backing store was reached

    Example:
        >>> client = InMemoryObjectClient()
        >>> client.add(SECRET_V1, secret)
        >>> await client.get(SECRET_V1, ObjectKey("default", "aws-creds"))
    """

    def __init__(self) -> None:
        self._objects: Dict[_StoreKey, Dict[str, Any]] = {}
        self._next_version = 1
        self._next_generated = defaultdict(int)
        self._forbidden: set = set()
        self._failures: Dict[Tuple[str, ObjectKind], Exception] = {}
        self._lock = asyncio.Lock()
        self.calls: Counter = Counter()

    async def get(self, schema: ObjectSchema[ModelT], key: ObjectKey) -> ModelT:
        self._record("get", schema)
        if schema.kind in self._forbidden:
            raise MissingPermissionsError()
        data = self._objects.get((schema.kind, key.namespace, key.name))
        if data is None:
            raise ResourceNotFoundError(schema.kind.value, str(key))
        return schema.decode(data)

    async def list(self, schema: ObjectSchema[ModelT], namespace: str) -> List[ModelT]:
        self._record("list", schema)
        return [
            schema.decode(data)
            for (kind, ns, _), data in sorted(self._objects.items(), key=lambda item: item[0][2])
            if kind == schema.kind and ns == namespace
        ]

    async def create(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        self._record("create", schema)
        data = schema.encode(obj)
        metadata = data.setdefault("metadata", {})
        if not metadata.get("name"):
            prefix = metadata.get("generateName") or f"{schema.plural}-"
            self._next_generated[prefix] += 1
            metadata["name"] = f"{prefix}{self._next_generated[prefix]}"
        key = (schema.kind, metadata.get("namespace", ""), metadata["name"])
        async with self._lock:
            if key in self._objects:
                raise ConflictError(f"{schema.kind.value} {key[1]}/{key[2]} already exists")
            self._store(key, data)
        return schema.decode(data)

    async def update(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        self._record("update", schema)
        return await self._replace(schema, obj, status_only=False)

    async def update_status(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        self._record("update_status", schema)
        return await self._replace(schema, obj, status_only=True)

    async def patch(
        self, schema: ObjectSchema[ModelT], key: ObjectKey, patch: Dict[str, Any]
    ) -> ModelT:
        self._record("patch", schema)
        store_key = (schema.kind, key.namespace, key.name)
        async with self._lock:
            current = self._objects.get(store_key)
            if current is None:
                raise ResourceNotFoundError(schema.kind.value, str(key))
            data = _merge_patch(current, patch)
            self._store(store_key, data)
        return schema.decode(data)

    async def delete(self, schema: ObjectSchema[ModelT], obj: ModelT) -> None:
        self._record("delete", schema)
        key = ObjectKey.from_object(obj)
        async with self._lock:
            self._objects.pop((schema.kind, key.namespace, key.name), None)

    async def _replace(self, schema: ObjectSchema, obj: Any, status_only: bool) -> Any:
        data = schema.encode(obj)
        key = ObjectKey.from_object(obj)
        store_key = (schema.kind, key.namespace, key.name)
        async with self._lock:
            current = self._objects.get(store_key)
            if current is None:
                raise ResourceNotFoundError(schema.kind.value, str(key))
            version = data.get("metadata", {}).get("resourceVersion")
            if version and version != current["metadata"].get("resourceVersion"):
                raise ConflictError(
                    f"{schema.kind.value} {key} was modified, resourceVersion {version} is stale"
                )
            if status_only:
                merged = dict(current)
                merged["status"] = data.get("status", {})
                data = merged
            self._store(store_key, data)
        return schema.decode(data)

    def _store(self, key: _StoreKey, data: Dict[str, Any]) -> None:
        data = dict(data)
        data["metadata"] = dict(data.get("metadata", {}))
        data["metadata"]["resourceVersion"] = str(self._next_version)
        self._next_version += 1
        self._objects[key] = data

    def _record(self, operation: str, schema: ObjectSchema) -> None:
        self.calls[(operation, schema.kind)] += 1
        failure = self._failures.get((operation, schema.kind))
        if failure is not None:
            raise failure
        logger.debug(
            "In-memory object client call",
            extra={"operation": operation, "kind": schema.kind.value},
        )

    # Testing helpers

    def add(self, schema: ObjectSchema[ModelT], obj: ModelT) -> None:
        """Store an object without counting a call (testing helper)."""
        key = ObjectKey.from_object(obj)
        self._store((schema.kind, key.namespace, key.name), schema.encode(obj))

    def peek(self, schema: ObjectSchema[ModelT], key: ObjectKey) -> Optional[ModelT]:
        """Read an object without counting a call (testing helper)."""
        data = self._objects.get((schema.kind, key.namespace, key.name))
        return schema.decode(data) if data is not None else None

    def all(self, schema: ObjectSchema[ModelT]) -> List[ModelT]:
        """Every stored object of a kind (testing helper)."""
        return [schema.decode(data) for (kind, _, _), data in self._objects.items() if kind == schema.kind]

    def forbid(self, kind: ObjectKind) -> None:
        """Make reads of a kind fail with MissingPermissionsError (testing helper)."""
        self._forbidden.add(kind)

    def fail_on(self, operation: str, kind: ObjectKind, exception: Exception) -> None:
        """Make every ``operation`` on ``kind`` raise (testing helper)."""
        self._failures[(operation, kind)] = exception

    def clear_failures(self) -> None:
        """Undo fail_on and forbid (testing helper)."""
        self._failures.clear()
        self._forbidden.clear()

    def call_count(self, operation: str, kind: ObjectKind) -> int:
        """Number of ``operation`` calls on ``kind`` (testing helper)."""
        return self.calls[(operation, kind)]
