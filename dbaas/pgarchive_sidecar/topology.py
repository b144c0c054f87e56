"""
Topology-aware selection of the archive a WAL operation must use.

An instance can restore WAL from three archives: its own cluster's,
the one it was bootstrapped from, or the one of the cluster it
replicates. Which one applies depends on the replication state of the
cluster at the time of the request, captured in a TopologySnapshot.

Decision table for restores (first match wins):
    1. promotion token set and not yet recorded -> replica source
    2. replica cluster and this instance is its primary -> replica source
    3. no current primary recorded (bootstrap) -> recovery archive
    4. otherwise -> own archive

Invariants:
    - resolve_restore_target is pure: same snapshot and instance name,
      same result
    - Exactly one ArchiveTarget is selected per operation
    - A selected archive without a name is a ConfigurationError
    - Archiving always targets the cluster's own archive

How to change safely:
    - Add a rule by inserting it in resolve_restore_target at the
      position its precedence demands, then extend the table tests
    - Keep I/O out of this module
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .api.types import Cluster
from .client.base import ObjectKey
from .errors import ConfigurationError
from .plugin_config import PluginConfiguration

logger = logging.getLogger(__name__)


class ArchiveSource(Enum):
    """Which of the cluster's archives a target points to."""

    OWN = "own"
    RECOVERY = "recovery"
    REPLICA_SOURCE = "replica-source"


@dataclass(frozen=True)
class ArchiveTarget:
    """Effective archive and server name for one operation.

    Attributes:
        archive_key: Key of the ObjectStore object
        server_name: Server name (folder) inside the archive
        source: Which archive was selected
    """

    archive_key: ObjectKey
    server_name: str
    source: ArchiveSource


@dataclass(frozen=True)
class TopologySnapshot:
    """Read-only view of the replication state of a cluster.

    Attributes:
        current_primary_name: Instance recorded as primary ("" during bootstrap)
        is_replica_cluster: Whether the cluster replicates another cluster
        promotion_token: Token requested for a replica cluster promotion
        last_promotion_token: Last token the operator recorded as applied
        plugin: Archive references of the cluster
    """

    current_primary_name: str
    is_replica_cluster: bool
    promotion_token: str
    last_promotion_token: str
    plugin: PluginConfiguration

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> TopologySnapshot:
        replica = cluster.spec.replica
        return cls(
            current_primary_name=cluster.status.current_primary,
            is_replica_cluster=cluster.is_replica(),
            promotion_token=replica.promotion_token if replica is not None else "",
            last_promotion_token=cluster.status.last_promotion_token,
            plugin=PluginConfiguration.from_cluster(cluster),
        )

    @property
    def server_name(self) -> str:
        return self.plugin.server_name

    @property
    def recovery_server_name(self) -> str:
        return self.plugin.recovery_server_name

    @property
    def replica_source_server_name(self) -> str:
        return self.plugin.replica_source_server_name


def _target(snapshot: TopologySnapshot, source: ArchiveSource) -> ArchiveTarget:
    plugin = snapshot.plugin
    if source is ArchiveSource.REPLICA_SOURCE:
        name, server_name = plugin.replica_source_archive_name, plugin.replica_source_server_name
    elif source is ArchiveSource.RECOVERY:
        name, server_name = plugin.recovery_archive_name, plugin.recovery_server_name
    else:
        name, server_name = plugin.archive_name, plugin.server_name

    if not name:
        raise ConfigurationError(
            f"no {source.value} archive configured for cluster "
            f"{plugin.namespace}/{plugin.cluster_name}"
        )
    return ArchiveTarget(ObjectKey(plugin.namespace, name), server_name, source)


def resolve_restore_target(snapshot: TopologySnapshot, instance_name: str) -> ArchiveTarget:
    """Select the archive a restore request on ``instance_name`` reads from.

    Args:
        snapshot: Replication state of the cluster
        instance_name: Name of the instance serving the request

    Returns:
        The effective archive target

    Raises:
        ConfigurationError: If the selected archive is not configured
    """
    if snapshot.promotion_token and snapshot.promotion_token != snapshot.last_promotion_token:
        source = ArchiveSource.REPLICA_SOURCE
    elif snapshot.is_replica_cluster and snapshot.current_primary_name == instance_name:
        source = ArchiveSource.REPLICA_SOURCE
    elif not snapshot.current_primary_name:
        source = ArchiveSource.RECOVERY
    else:
        source = ArchiveSource.OWN
    return _target(snapshot, source)


def own_archive_target(snapshot: TopologySnapshot) -> ArchiveTarget:
    """The cluster's own archive, the only destination for archiving.

    Raises:
        ConfigurationError: If the cluster does not archive WAL
    """
    return _target(snapshot, ArchiveSource.OWN)


def is_streaming_available(cluster: Cluster, instance_name: str) -> bool:
    """Whether ``instance_name`` can receive WAL by streaming replication.

    Replicas stream from the primary. The designated primary of a replica
    cluster streams from the source cluster only when that external
    cluster has connection parameters. A primary never streams.
    """
    if cluster.status.current_primary != instance_name:
        return True

    if not cluster.is_replica():
        return False

    source = cluster.spec.replica.source if cluster.spec.replica is not None else ""
    external = cluster.external_cluster(source)
    if external is None:
        logger.debug(
            "Replica source external cluster not found",
            extra={"source": source, "cluster": cluster.metadata.name},
        )
        return False
    return bool(external.connection_parameters)
