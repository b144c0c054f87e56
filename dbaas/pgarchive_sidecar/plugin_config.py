"""
Archive references declared on a Cluster.

A cluster names up to three ObjectStore objects, all through plugin
parameters: its own archive (``spec.plugins``), the archive it was
bootstrapped from (``spec.bootstrap.recovery.source`` external cluster)
and the archive of the cluster it replicates (``spec.replica.source``
external cluster).

Invariants:
    - Server names default to the cluster name when an archive is set
    - Only plugin entries named PLUGIN_NAME are considered
    - Archive names always refer to the cluster's namespace

How to change safely:
    - New parameters go in metadata.py next to PARAM_ARCHIVE_NAME
    - Keep from_cluster pure, it runs on every WAL request
"""

from __future__ import annotations

from dataclasses import dataclass

from .api.types import Cluster, PluginSpec
from .metadata import PARAM_ARCHIVE_NAME, PARAM_SERVER_NAME, PLUGIN_NAME


def _external_plugin(cluster: Cluster, source: str) -> PluginSpec | None:
    if not source:
        return None
    external = cluster.external_cluster(source)
    if external is None or external.plugin is None:
        return None
    if external.plugin.name != PLUGIN_NAME:
        return None
    return external.plugin


def _archive_and_server(cluster: Cluster, parameters: dict[str, str] | None) -> tuple:
    if parameters is None:
        return "", ""
    return (
        parameters.get(PARAM_ARCHIVE_NAME, ""),
        parameters.get(PARAM_SERVER_NAME) or cluster.metadata.name,
    )


@dataclass(frozen=True)
class PluginConfiguration:
    """Archive names and server names a cluster refers to.

    Attributes:
        namespace: Namespace of the cluster
        cluster_name: Name of the cluster
        archive_name: Own ObjectStore name ("" when not archiving)
        server_name: Server name in the own archive
        recovery_archive_name: ObjectStore used at bootstrap
        recovery_server_name: Server name in the recovery archive
        replica_source_archive_name: ObjectStore of the replicated cluster
        replica_source_server_name: Server name in the replica source archive
    """

    namespace: str
    cluster_name: str
    archive_name: str = ""
    server_name: str = ""
    recovery_archive_name: str = ""
    recovery_server_name: str = ""
    replica_source_archive_name: str = ""
    replica_source_server_name: str = ""

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> PluginConfiguration:
        """Extract the archive references of ``cluster``."""
        archive_name = ""
        server_name = cluster.metadata.name
        for plugin in cluster.spec.plugins:
            if plugin.name != PLUGIN_NAME:
                continue
            archive_name = plugin.parameters.get(PARAM_ARCHIVE_NAME, "")
            if plugin.is_enabled() and plugin.parameters.get(PARAM_SERVER_NAME):
                server_name = plugin.parameters[PARAM_SERVER_NAME]

        recovery_plugin = None
        if cluster.spec.bootstrap is not None and cluster.spec.bootstrap.recovery is not None:
            recovery_plugin = _external_plugin(cluster, cluster.spec.bootstrap.recovery.source)
        recovery_archive, recovery_server = _archive_and_server(
            cluster, recovery_plugin.parameters if recovery_plugin else None
        )

        replica_plugin = None
        if cluster.spec.replica is not None:
            replica_plugin = _external_plugin(cluster, cluster.spec.replica.source)
        replica_archive, replica_server = _archive_and_server(
            cluster, replica_plugin.parameters if replica_plugin else None
        )

        return cls(
            namespace=cluster.metadata.namespace,
            cluster_name=cluster.metadata.name,
            archive_name=archive_name,
            server_name=server_name,
            recovery_archive_name=recovery_archive,
            recovery_server_name=recovery_server,
            replica_source_archive_name=replica_archive,
            replica_source_server_name=replica_server,
        )
