"""
Protocol and types for the control-plane object client.

This module defines the ObjectClient protocol that the Kubernetes REST
client, the in-memory client and the caching wrapper all implement.

Invariants:
    - ObjectKey uniquely identifies an object within a kind
    - Every method takes the schema of the object it deals with
    - Errors are SidecarError subclasses (ResourceNotFoundError,
      MissingPermissionsError, ConflictError, TransientAPIError)

How to change safely:
    - Protocol changes require updating all implementations
    - Keep writes (update/update_status/patch/delete) distinguishable,
      the cache relies on them to invalidate entries
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, runtime_checkable

from ..api.schema import ModelT, ObjectSchema
from ..api.types import ApiModel


@dataclass(frozen=True)
class ObjectKey:
    """Coordinates of a namespaced object.

    Attributes:
        namespace: Namespace name
        name: Object name
    """

    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: ApiModel) -> ObjectKey:
        metadata = obj.metadata  # type: ignore[attr-defined]
        return cls(namespace=metadata.namespace, name=metadata.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@runtime_checkable
class ObjectClient(Protocol):
    """Protocol for control-plane object access.

    Example:
        >>> secret = await client.get(SECRET_V1, ObjectKey("default", "aws-creds"))
        >>> secret.value("ACCESS_KEY_ID")
    """

    @abstractmethod
    async def get(self, schema: ObjectSchema[ModelT], key: ObjectKey) -> ModelT:
        """Read one object.

        Raises:
            ResourceNotFoundError: If the object does not exist
            MissingPermissionsError: If reading is forbidden
            TransientAPIError: For other failures
        """
        ...

    @abstractmethod
    async def list(self, schema: ObjectSchema[ModelT], namespace: str) -> List[ModelT]:
        """List every object of a kind in a namespace."""
        ...

    @abstractmethod
    async def create(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        """Create an object and return the stored version."""
        ...

    @abstractmethod
    async def update(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        """Replace an object.

        Raises:
            ConflictError: If the object changed since it was read
        """
        ...

    @abstractmethod
    async def update_status(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        """Replace the status subresource of an object."""
        ...

    @abstractmethod
    async def patch(
        self, schema: ObjectSchema[ModelT], key: ObjectKey, patch: Dict[str, Any]
    ) -> ModelT:
        """Apply a JSON merge patch."""
        ...

    @abstractmethod
    async def delete(self, schema: ObjectSchema[ModelT], obj: ModelT) -> None:
        """Delete an object. Deleting a missing object is not an error."""
        ...
