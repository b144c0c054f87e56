"""
Versioned object schemas and the decoding entry point.

Each ObjectSchema pins a (group, version, kind) triple to a model class
and to the REST plural used by the control-plane client. There is no
global registry: callers pass the schema they expect, and decoding a
payload of another kind or version fails loudly.

Invariants:
    - decode_object never returns a model of a different kind
    - Decoding failures are ConfigurationError, never a pydantic error

How to change safely:
    - A new API version gets a new schema constant next to the old one
    - Keep the old constant until no caller passes it anymore
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Mapping, Type, TypeVar, Union

from pydantic import ValidationError

from ..errors import ConfigurationError
from .types import ApiModel, Backup, Cluster, Event, ObjectStore, Secret

ModelT = TypeVar("ModelT", bound=ApiModel)


class ObjectKind(str, Enum):
    """Kinds of control-plane objects the sidecar understands."""

    CLUSTER = "Cluster"
    OBJECT_STORE = "ObjectStore"
    BACKUP = "Backup"
    SECRET = "Secret"
    EVENT = "Event"


@dataclass(frozen=True)
class ObjectSchema(Generic[ModelT]):
    """Binding between a wire type and its model.

    Attributes:
        group: API group ("" for the core group)
        version: API version within the group
        kind: Object kind
        plural: Resource name used in REST paths
        model: Model class payloads decode into
    """

    group: str
    version: str
    kind: ObjectKind
    plural: str
    model: Type[ModelT]

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    def decode(self, payload: Union[bytes, str, Mapping[str, Any]], strict: bool = False) -> ModelT:
        return decode_object(payload, self, strict=strict)

    def encode(self, obj: ModelT) -> dict:
        data = obj.to_wire()
        data["apiVersion"] = self.api_version
        data["kind"] = self.kind.value
        return data


def decode_object(
    payload: Union[bytes, str, Mapping[str, Any]],
    schema: ObjectSchema[ModelT],
    strict: bool = False,
) -> ModelT:
    """Decode a JSON payload into the model of ``schema``.

    Args:
        payload: Raw JSON (bytes/str) or an already parsed mapping
        schema: Expected schema
        strict: Require apiVersion and kind to be present

    Returns:
        The decoded model

    Raises:
        ConfigurationError: If the payload is not valid JSON, declares a
            different apiVersion/kind, or does not match the model
    """
    if isinstance(payload, (bytes, str)):
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"invalid {schema.kind.value} definition: {e}") from e
    else:
        data = dict(payload)

    if not isinstance(data, dict):
        raise ConfigurationError(f"invalid {schema.kind.value} definition: expected a JSON object")

    api_version = data.get("apiVersion")
    kind = data.get("kind")
    if strict and (not api_version or not kind):
        raise ConfigurationError(
            f"{schema.kind.value} definition is missing apiVersion or kind"
        )
    if api_version and api_version != schema.api_version:
        raise ConfigurationError(
            f"unsupported apiVersion {api_version!r} for {schema.kind.value}, "
            f"expected {schema.api_version!r}"
        )
    if kind and kind != schema.kind.value:
        raise ConfigurationError(f"expected kind {schema.kind.value!r}, got {kind!r}")

    try:
        return schema.model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"invalid {schema.kind.value} definition",
            messages=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        ) from e


CLUSTER_V1 = ObjectSchema("postgresql.cnpg.io", "v1", ObjectKind.CLUSTER, "clusters", Cluster)
BACKUP_V1 = ObjectSchema("postgresql.cnpg.io", "v1", ObjectKind.BACKUP, "backups", Backup)
OBJECT_STORE_V1 = ObjectSchema(
    "barmancloud.cnpg.io", "v1", ObjectKind.OBJECT_STORE, "objectstores", ObjectStore
)
SECRET_V1 = ObjectSchema("", "v1", ObjectKind.SECRET, "secrets", Secret)
EVENT_V1 = ObjectSchema("", "v1", ObjectKind.EVENT, "events", Event)
