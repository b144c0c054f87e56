"""
Environment of the archiving tools.

barman-cloud reads its cloud credentials from environment variables.
This module resolves the secret references of an ObjectStore through
the (cached) object client and returns the environment to run the tools
with. Certificates are consumed from the directory the operator mounts,
one sub-directory per ObjectStore.

Invariants:
    - Secret values only ever land in the returned mapping or in files
      under the scratch directory, never in logs or errors
    - Provider identity inheritance (IAM role, Azure AD, GKE) adds no
      variables
    - A missing key inside an existing secret is a ConfigurationError

How to change safely:
    - Add providers as a new _<provider>_env helper
    - Keep reads going through the passed client so they hit the cache
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from ..api.schema import SECRET_V1
from ..api.types import ObjectStore, SecretKeySelector
from ..client.base import ObjectClient, ObjectKey
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

CA_BUNDLE_FILE_NAME = "barman-ca.crt"
GOOGLE_CREDENTIALS_FILE_NAME = ".application_credentials.json"


async def _secret_value(client: ObjectClient, namespace: str, selector: SecretKeySelector) -> str:
    secret = await client.get(SECRET_V1, ObjectKey(namespace, selector.name))
    try:
        value = secret.value(selector.key)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if value is None:
        raise ConfigurationError(f"missing key {selector.key}, inside secret {selector.name}")
    return value


async def _s3_env(client: ObjectClient, namespace: str, store: ObjectStore) -> dict[str, str]:
    credentials = store.spec.configuration.s3_credentials
    if credentials is None or credentials.inherit_from_iam_role:
        return {}
    env: dict[str, str] = {}
    for variable, selector in (
        ("AWS_ACCESS_KEY_ID", credentials.access_key_id),
        ("AWS_SECRET_ACCESS_KEY", credentials.secret_access_key),
        ("AWS_SESSION_TOKEN", credentials.session_token),
        ("AWS_DEFAULT_REGION", credentials.region),
    ):
        if selector is not None:
            env[variable] = await _secret_value(client, namespace, selector)
    if "AWS_ACCESS_KEY_ID" not in env or "AWS_SECRET_ACCESS_KEY" not in env:
        raise ConfigurationError(
            "S3 credentials need both accessKeyId and secretAccessKey, or inheritFromIAMRole"
        )
    return env


async def _azure_env(client: ObjectClient, namespace: str, store: ObjectStore) -> dict[str, str]:
    credentials = store.spec.configuration.azure_credentials
    if credentials is None or credentials.inherit_from_azure_ad:
        return {}
    env: dict[str, str] = {}
    for variable, selector in (
        ("AZURE_STORAGE_CONNECTION_STRING", credentials.connection_string),
        ("AZURE_STORAGE_ACCOUNT", credentials.storage_account),
        ("AZURE_STORAGE_KEY", credentials.storage_key),
        ("AZURE_STORAGE_SAS_TOKEN", credentials.storage_sas_token),
    ):
        if selector is not None:
            env[variable] = await _secret_value(client, namespace, selector)
    return env


async def _google_env(
    client: ObjectClient, namespace: str, store: ObjectStore, scratch_dir: str
) -> dict[str, str]:
    credentials = store.spec.configuration.google_credentials
    if credentials is None or credentials.gke_environment:
        return {}
    if credentials.application_credentials is None:
        return {}
    content = await _secret_value(client, namespace, credentials.application_credentials)
    path = Path(scratch_dir) / GOOGLE_CREDENTIALS_FILE_NAME
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    # O_CREAT's mode only applies to new files
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(content)
    return {"GOOGLE_APPLICATION_CREDENTIALS": str(path)}


def ca_bundle_env(store: ObjectStore, certificates_dir: str) -> dict[str, str]:
    """Point the tool at the endpoint CA bundle of ``store``, if any."""
    configuration = store.spec.configuration
    if configuration.endpoint_ca is None:
        return {}
    bundle = str(Path(certificates_dir) / store.metadata.name / CA_BUNDLE_FILE_NAME)
    if configuration.s3_credentials is not None:
        return {"AWS_CA_BUNDLE": bundle}
    if configuration.azure_credentials is not None:
        return {"REQUESTS_CA_BUNDLE": bundle}
    return {}


async def build_credentials_env(
    client: ObjectClient,
    store: ObjectStore,
    base_env: Mapping[str, str],
    certificates_dir: str,
    scratch_dir: str,
) -> dict[str, str]:
    """Environment for running the tools against ``store``.

    Args:
        client: Object client used to read the referenced secrets
        store: Archive configuration
        base_env: Environment to extend (usually os.environ)
        certificates_dir: Root of the mounted CA bundles
        scratch_dir: Writable directory for credential files

    Returns:
        A new mapping, ``base_env`` is left untouched

    Raises:
        ConfigurationError: If a referenced key is missing or malformed
        ResourceNotFoundError: If a referenced secret does not exist
        MissingPermissionsError: If the secrets cannot be read yet
    """
    namespace = store.metadata.namespace
    env = dict(base_env)
    for variable in store.spec.instance_sidecar_configuration.env:
        env[variable.name] = variable.value
    env.update(ca_bundle_env(store, certificates_dir))
    env.update(await _s3_env(client, namespace, store))
    env.update(await _azure_env(client, namespace, store))
    env.update(await _google_env(client, namespace, store, scratch_dir))

    logger.debug(
        "Archiving tool environment assembled",
        extra={"object_store": store.metadata.name, "namespace": namespace},
    )
    return env
