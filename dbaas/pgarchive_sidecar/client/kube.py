"""
Kubernetes REST implementation of the ObjectClient protocol.

Talks to the API server with the pod's service account, using
httpx for async HTTP. Only the verbs the sidecar needs are implemented.

Invariants:
    - 403 maps to MissingPermissionsError, the operator grants the
      role asynchronously so callers retry
    - 404 maps to ResourceNotFoundError, 409 to ConflictError
    - Any other failure, transport errors included, is TransientAPIError
    - Response bodies of secrets are never logged

How to change safely:
    - Keep status-code mapping in _raise_for_status
    - Test new verbs with httpx.MockTransport
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..api.schema import ModelT, ObjectSchema
from ..config import KubernetesConfig
from ..errors import ConflictError, MissingPermissionsError, ResourceNotFoundError, TransientAPIError
from .base import ObjectKey

logger = logging.getLogger(__name__)


class KubernetesObjectClient:
    """ObjectClient backed by the Kubernetes API server.

    Example:
        >>> client = KubernetesObjectClient.from_config(KubernetesConfig.from_env())
        >>> store = await client.get(OBJECT_STORE_V1, ObjectKey("default", "minio"))
        >>> await client.close()
    """

    def __init__(self, http: httpx.AsyncClient) -> None:
        """Initialize the client.

        Args:
            http: Client already configured with base URL, auth and TLS
        """
        self._http = http

    @classmethod
    def from_config(cls, config: KubernetesConfig) -> KubernetesObjectClient:
        """Build a client from in-cluster service account settings."""
        headers = {"Accept": "application/json"}
        token_path = Path(config.token_path)
        if token_path.exists():
            headers["Authorization"] = f"Bearer {token_path.read_text().strip()}"
        verify: Any = config.ca_path if Path(config.ca_path).exists() else True
        http = httpx.AsyncClient(
            base_url=config.api_server,
            headers=headers,
            verify=verify,
            timeout=config.timeout_seconds,
        )
        return cls(http)

    async def close(self) -> None:
        await self._http.aclose()

    async def get(self, schema: ObjectSchema[ModelT], key: ObjectKey) -> ModelT:
        data = await self._request("GET", schema, self._path(schema, key.namespace, key.name), str(key))
        return schema.decode(data)

    async def list(self, schema: ObjectSchema[ModelT], namespace: str) -> List[ModelT]:
        data = await self._request("GET", schema, self._path(schema, namespace), namespace)
        return [schema.decode(item) for item in data.get("items", [])]

    async def create(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        key = ObjectKey.from_object(obj)
        data = await self._request(
            "POST", schema, self._path(schema, key.namespace), str(key), json=schema.encode(obj)
        )
        return schema.decode(data)

    async def update(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        key = ObjectKey.from_object(obj)
        data = await self._request(
            "PUT", schema, self._path(schema, key.namespace, key.name), str(key), json=schema.encode(obj)
        )
        return schema.decode(data)

    async def update_status(self, schema: ObjectSchema[ModelT], obj: ModelT) -> ModelT:
        key = ObjectKey.from_object(obj)
        path = self._path(schema, key.namespace, key.name) + "/status"
        data = await self._request("PUT", schema, path, str(key), json=schema.encode(obj))
        return schema.decode(data)

    async def patch(
        self, schema: ObjectSchema[ModelT], key: ObjectKey, patch: Dict[str, Any]
    ) -> ModelT:
        data = await self._request(
            "PATCH",
            schema,
            self._path(schema, key.namespace, key.name),
            str(key),
            json=patch,
            headers={"Content-Type": "application/merge-patch+json"},
        )
        return schema.decode(data)

    async def delete(self, schema: ObjectSchema[ModelT], obj: ModelT) -> None:
        key = ObjectKey.from_object(obj)
        try:
            await self._request("DELETE", schema, self._path(schema, key.namespace, key.name), str(key))
        except ResourceNotFoundError:
            logger.debug("Object already deleted", extra={"kind": schema.kind.value, "key": str(key)})

    @staticmethod
    def _path(schema: ObjectSchema, namespace: str, name: Optional[str] = None) -> str:
        prefix = f"/apis/{schema.group}/{schema.version}" if schema.group else f"/api/{schema.version}"
        path = f"{prefix}/namespaces/{namespace}/{schema.plural}"
        if name:
            path += f"/{name}"
        return path

    async def _request(
        self,
        method: str,
        schema: ObjectSchema,
        path: str,
        target: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise TransientAPIError(f"{method} {schema.kind.value} {target}: {e}") from e

        self._raise_for_status(response, method, schema, target)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _raise_for_status(
        response: httpx.Response, method: str, schema: ObjectSchema, target: str
    ) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 403:
            logger.info(
                "Missing permissions on the API server",
                extra={"method": method, "kind": schema.kind.value, "key": target},
            )
            raise MissingPermissionsError()
        if status == 404:
            raise ResourceNotFoundError(schema.kind.value, target)
        if status == 409:
            raise ConflictError(f"{method} {schema.kind.value} {target}: conflict")
        raise TransientAPIError(
            f"{method} {schema.kind.value} {target}: API server returned {status}",
            status=status,
        )
