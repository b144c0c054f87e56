"""
Typed views of the control-plane objects the sidecar reads and writes.

The models cover the subset of the PostgreSQL operator resources
(Cluster, Backup), of the archive configuration resource (ObjectStore)
and of core resources (Secret, Event) the sidecar actually uses.
Unknown fields are ignored so newer operator versions keep decoding.

Invariants:
    - Field names are snake_case, wire names are camelCase aliases
    - Models are decoded only through api.schema.decode_object
    - Secret payloads are never logged

How to change safely:
    - Add fields with defaults, never make an existing field required
    - Keep explicit aliases where the wire name is not plain camelCase
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

BACKUP_PHASE_COMPLETED = "completed"
BACKUP_METHOD_PLUGIN = "plugin"


class ApiModel(BaseModel):
    """Base model with camelCase wire names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict:
        """Serialize using wire names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ObjectMeta(ApiModel):
    name: str = ""
    namespace: str = ""
    generate_name: Optional[str] = None
    uid: str = ""
    resource_version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class ObjectReference(ApiModel):
    api_version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""
    uid: str = ""


# --- Cluster ---------------------------------------------------------------


class PluginSpec(ApiModel):
    name: str
    enabled: Optional[bool] = None
    is_wal_archiver: Optional[bool] = Field(default=None, alias="isWALArchiver")
    parameters: Dict[str, str] = Field(default_factory=dict)

    def is_enabled(self) -> bool:
        return self.enabled is None or self.enabled


class ExternalCluster(ApiModel):
    name: str
    connection_parameters: Optional[Dict[str, str]] = None
    plugin: Optional[PluginSpec] = None


class ReplicaClusterSpec(ApiModel):
    source: str = ""
    enabled: Optional[bool] = None
    primary: str = ""
    self_name: str = Field(default="", alias="self")
    promotion_token: str = ""


class RecoveryBootstrap(ApiModel):
    source: str = ""


class BootstrapConfiguration(ApiModel):
    recovery: Optional[RecoveryBootstrap] = None


class ClusterBackupConfiguration(ApiModel):
    """The cluster backup section; its presence enables backup reconciliation."""

    target: str = ""


class ClusterSpec(ApiModel):
    plugins: List[PluginSpec] = Field(default_factory=list)
    replica: Optional[ReplicaClusterSpec] = None
    external_clusters: List[ExternalCluster] = Field(default_factory=list)
    bootstrap: Optional[BootstrapConfiguration] = None
    backup: Optional[ClusterBackupConfiguration] = None


class ClusterStatus(ApiModel):
    current_primary: str = ""
    last_promotion_token: str = ""


class Cluster(ApiModel):
    """A PostgreSQL cluster as declared to the operator."""

    api_version: str = "postgresql.cnpg.io/v1"
    kind: str = "Cluster"
    metadata: ObjectMeta
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)

    def is_replica(self) -> bool:
        """Whether this cluster is continuously recovering from another one.

        An explicit ``enabled`` flag wins; otherwise a cluster is a replica
        when the declared primary of the distributed topology is not itself
        (``self``, defaulting to the cluster name).
        """
        replica = self.spec.replica
        if replica is None:
            return False
        if replica.enabled is not None:
            return replica.enabled
        cluster_name = replica.self_name or self.metadata.name
        return cluster_name != replica.primary

    def external_cluster(self, name: str) -> Optional[ExternalCluster]:
        for external in self.spec.external_clusters:
            if external.name == name:
                return external
        return None

    def reference(self) -> ObjectReference:
        return ObjectReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.metadata.name,
            namespace=self.metadata.namespace,
            uid=self.metadata.uid,
        )


# --- ObjectStore -------------------------------------------------------------


class SecretKeySelector(ApiModel):
    name: str
    key: str


class S3Credentials(ApiModel):
    access_key_id: Optional[SecretKeySelector] = None
    secret_access_key: Optional[SecretKeySelector] = None
    region: Optional[SecretKeySelector] = None
    session_token: Optional[SecretKeySelector] = None
    inherit_from_iam_role: bool = Field(default=False, alias="inheritFromIAMRole")


class AzureCredentials(ApiModel):
    connection_string: Optional[SecretKeySelector] = None
    storage_account: Optional[SecretKeySelector] = None
    storage_key: Optional[SecretKeySelector] = None
    storage_sas_token: Optional[SecretKeySelector] = None
    inherit_from_azure_ad: bool = Field(default=False, alias="inheritFromAzureAD")


class GoogleCredentials(ApiModel):
    application_credentials: Optional[SecretKeySelector] = None
    gke_environment: bool = False


class WalBackupConfiguration(ApiModel):
    compression: Optional[str] = None
    encryption: Optional[str] = None
    max_parallel: int = 0
    archive_additional_command_args: List[str] = Field(default_factory=list)
    restore_additional_command_args: List[str] = Field(default_factory=list)


class BarmanObjectStoreConfiguration(ApiModel):
    """Where and how the archiving tool reaches the object store."""

    destination_path: str
    endpoint_url: Optional[str] = Field(default=None, alias="endpointURL")
    endpoint_ca: Optional[SecretKeySelector] = Field(default=None, alias="endpointCA")
    s3_credentials: Optional[S3Credentials] = None
    azure_credentials: Optional[AzureCredentials] = None
    google_credentials: Optional[GoogleCredentials] = None
    wal: Optional[WalBackupConfiguration] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    history_tags: Dict[str, str] = Field(default_factory=dict)

    def wal_max_parallel(self) -> int:
        """Prefetch / archive fan-out, at least 1."""
        if self.wal is not None and self.wal.max_parallel > 1:
            return self.wal.max_parallel
        return 1


class EnvVar(ApiModel):
    name: str
    value: str = ""


class InstanceSidecarConfiguration(ApiModel):
    env: List[EnvVar] = Field(default_factory=list)
    retention_policy_interval_seconds: int = 0


class ObjectStoreSpec(ApiModel):
    configuration: BarmanObjectStoreConfiguration
    retention_policy: str = ""
    instance_sidecar_configuration: InstanceSidecarConfiguration = Field(
        default_factory=InstanceSidecarConfiguration
    )


class RecoveryWindow(ApiModel):
    first_recoverability_point: Optional[datetime] = None
    last_successful_backup_time: Optional[datetime] = None
    last_failed_backup_time: Optional[datetime] = None


class ObjectStoreStatus(ApiModel):
    server_recovery_window: Dict[str, RecoveryWindow] = Field(default_factory=dict)


class ObjectStore(ApiModel):
    """Archive configuration: destination, credentials, retention."""

    api_version: str = "barmancloud.cnpg.io/v1"
    kind: str = "ObjectStore"
    metadata: ObjectMeta
    spec: ObjectStoreSpec
    status: ObjectStoreStatus = Field(default_factory=ObjectStoreStatus)


# --- Backup ------------------------------------------------------------------


class LocalObjectReference(ApiModel):
    name: str


class BackupSpec(ApiModel):
    cluster: LocalObjectReference
    method: str = ""


class BackupStatus(ApiModel):
    phase: str = ""
    backup_id: str = ""
    method: str = ""
    server_name: str = ""
    plugin_metadata: Dict[str, str] = Field(default_factory=dict)


class Backup(ApiModel):
    api_version: str = "postgresql.cnpg.io/v1"
    kind: str = "Backup"
    metadata: ObjectMeta
    spec: BackupSpec
    status: BackupStatus = Field(default_factory=BackupStatus)


# --- Core --------------------------------------------------------------------


class Secret(ApiModel):
    api_version: str = "v1"
    kind: str = "Secret"
    metadata: ObjectMeta
    type: str = "Opaque"
    data: Dict[str, str] = Field(default_factory=dict)
    string_data: Dict[str, str] = Field(default_factory=dict)

    def value(self, key: str) -> Optional[str]:
        """Decoded value of ``key``, or None if absent.

        Raises:
            ValueError: If the stored value is not valid base64
        """
        if key in self.string_data:
            return self.string_data[key]
        raw = self.data.get(key)
        if raw is None:
            return None
        try:
            return base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError(f"key {key!r} of secret {self.metadata.name!r} is not valid base64") from e


class EventSource(ApiModel):
    component: str = ""


class Event(ApiModel):
    api_version: str = "v1"
    kind: str = "Event"
    metadata: ObjectMeta
    involved_object: ObjectReference
    reason: str = ""
    message: str = ""
    type: str = "Normal"
    count: int = 1
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    source: EventSource = Field(default_factory=EventSource)
