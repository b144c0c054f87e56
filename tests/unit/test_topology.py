"""
Unit tests for archive selection.

Tests cover:
- Archive references declared on a cluster
- The restore target decision table
- Archive target of WAL archiving
- Streaming availability
"""

import pytest

from dbaas.pgarchive_sidecar.client.base import ObjectKey
from dbaas.pgarchive_sidecar.errors import ConfigurationError
from dbaas.pgarchive_sidecar.plugin_config import PluginConfiguration
from dbaas.pgarchive_sidecar.topology import (
    ArchiveSource,
    TopologySnapshot,
    is_streaming_available,
    own_archive_target,
    resolve_restore_target,
)
from tests.fakes import CLUSTER_NAME, NAMESPACE, make_cluster


def _snapshot(**kwargs) -> TopologySnapshot:
    kwargs.setdefault("external_archives", {"origin": "origin-store", "upstream": "upstream-store"})
    kwargs.setdefault("recovery_source", "origin")
    kwargs.setdefault("replica_source", "upstream")
    return TopologySnapshot.from_cluster(make_cluster(**kwargs))


class TestPluginConfiguration:
    """Tests for PluginConfiguration.from_cluster."""

    def test_own_archive(self):
        config = PluginConfiguration.from_cluster(make_cluster(server_name="pg-main-v2"))
        assert config.archive_name == "main-store"
        assert config.server_name == "pg-main-v2"
        assert config.namespace == NAMESPACE

    def test_server_name_defaults_to_cluster_name(self):
        config = PluginConfiguration.from_cluster(make_cluster())
        assert config.server_name == CLUSTER_NAME

    def test_disabled_plugin_keeps_archive_but_not_server_name(self):
        config = PluginConfiguration.from_cluster(
            make_cluster(server_name="custom", plugin_enabled=False)
        )
        assert config.archive_name == "main-store"
        assert config.server_name == CLUSTER_NAME

    def test_recovery_and_replica_source_archives(self):
        config = PluginConfiguration.from_cluster(
            make_cluster(
                recovery_source="origin",
                replica_source="upstream",
                external_archives={"origin": "origin-store", "upstream": "upstream-store"},
            )
        )
        assert config.recovery_archive_name == "origin-store"
        assert config.recovery_server_name == CLUSTER_NAME
        assert config.replica_source_archive_name == "upstream-store"
        assert config.replica_source_server_name == CLUSTER_NAME

    def test_unknown_external_cluster_is_ignored(self):
        config = PluginConfiguration.from_cluster(make_cluster(recovery_source="missing"))
        assert config.recovery_archive_name == ""


class TestResolveRestoreTarget:
    """Tests for the restore decision table."""

    def test_pending_promotion_uses_replica_source(self):
        snapshot = _snapshot(
            current_primary="pg-main-1",
            promotion_token="token-2",
            last_promotion_token="token-1",
        )
        target = resolve_restore_target(snapshot, "pg-main-2")
        assert target.source is ArchiveSource.REPLICA_SOURCE
        assert target.archive_key == ObjectKey(NAMESPACE, "upstream-store")

    def test_applied_promotion_token_is_ignored(self):
        snapshot = _snapshot(
            current_primary="pg-main-1",
            promotion_token="token-1",
            last_promotion_token="token-1",
        )
        assert resolve_restore_target(snapshot, "pg-main-2").source is ArchiveSource.OWN

    def test_designated_primary_of_replica_cluster(self):
        snapshot = _snapshot(current_primary="pg-main-1", replica_enabled=True)
        target = resolve_restore_target(snapshot, "pg-main-1")
        assert target.source is ArchiveSource.REPLICA_SOURCE

    def test_replica_instance_of_replica_cluster_uses_own_archive(self):
        snapshot = _snapshot(current_primary="pg-main-1", replica_enabled=True)
        assert resolve_restore_target(snapshot, "pg-main-2").source is ArchiveSource.OWN

    def test_bootstrap_uses_recovery_archive(self):
        snapshot = _snapshot(current_primary="")
        target = resolve_restore_target(snapshot, "pg-main-1")
        assert target.source is ArchiveSource.RECOVERY
        assert target.archive_key.name == "origin-store"

    def test_steady_state_uses_own_archive(self):
        snapshot = _snapshot(current_primary="pg-main-1")
        target = resolve_restore_target(snapshot, "pg-main-2")
        assert target.source is ArchiveSource.OWN
        assert target.archive_key.name == "main-store"
        assert target.server_name == CLUSTER_NAME

    def test_missing_archive_is_a_configuration_error(self):
        snapshot = TopologySnapshot.from_cluster(make_cluster(current_primary=""))
        with pytest.raises(ConfigurationError):
            resolve_restore_target(snapshot, "pg-main-1")

    def test_resolution_is_pure(self):
        """Same snapshot and instance, same answer, snapshot untouched."""
        snapshot = _snapshot(current_primary="pg-main-1", replica_enabled=True)
        first = resolve_restore_target(snapshot, "pg-main-1")
        second = resolve_restore_target(snapshot, "pg-main-1")
        assert first == second
        assert snapshot == _snapshot(current_primary="pg-main-1", replica_enabled=True)


class TestOwnArchiveTarget:
    """Tests for the archiving destination."""

    def test_archiving_ignores_topology(self):
        snapshot = _snapshot(current_primary="", promotion_token="t2", last_promotion_token="t1")
        target = own_archive_target(snapshot)
        assert target.source is ArchiveSource.OWN
        assert target.archive_key.name == "main-store"

    def test_no_own_archive(self):
        snapshot = _snapshot(archive_name=None)
        with pytest.raises(ConfigurationError):
            own_archive_target(snapshot)


class TestStreamingAvailability:
    """Tests for is_streaming_available."""

    def test_replica_instance_streams(self):
        assert is_streaming_available(make_cluster(current_primary="pg-main-1"), "pg-main-2")

    def test_primary_does_not_stream(self):
        assert not is_streaming_available(make_cluster(current_primary="pg-main-1"), "pg-main-1")

    def test_designated_primary_with_connection(self):
        cluster = make_cluster(
            current_primary="pg-main-1",
            replica_source="upstream",
            replica_enabled=True,
            replica_connection=True,
            external_archives={"upstream": "upstream-store"},
        )
        assert is_streaming_available(cluster, "pg-main-1")

    def test_designated_primary_archive_only(self):
        cluster = make_cluster(
            current_primary="pg-main-1",
            replica_source="upstream",
            replica_enabled=True,
            external_archives={"upstream": "upstream-store"},
        )
        assert not is_streaming_available(cluster, "pg-main-1")


class TestReplicaClusterDetection:
    """Tests for Cluster.is_replica and its effect on archive selection."""

    def _cluster(self, **kwargs):
        kwargs.setdefault("current_primary", "pg-main-1")
        kwargs.setdefault("replica_source", "origin")
        kwargs.setdefault("external_archives", {"origin": "origin-store"})
        return make_cluster(**kwargs)

    def test_no_replica_section(self):
        assert not make_cluster().is_replica()

    def test_source_only_is_replica(self):
        assert self._cluster().is_replica()

    def test_primary_set_self_unset(self):
        cluster = self._cluster(replica_primary="origin")
        assert cluster.is_replica()

        target = resolve_restore_target(TopologySnapshot.from_cluster(cluster), "pg-main-1")
        assert target.source is ArchiveSource.REPLICA_SOURCE
        assert target.archive_key == ObjectKey(NAMESPACE, "origin-store")

    def test_primary_is_cluster_name(self):
        cluster = self._cluster(replica_primary=CLUSTER_NAME)
        assert not cluster.is_replica()
        target = resolve_restore_target(TopologySnapshot.from_cluster(cluster), "pg-main-1")
        assert target.source is ArchiveSource.OWN

    def test_self_overrides_cluster_name(self):
        assert not self._cluster(replica_primary="site-a", replica_self="site-a").is_replica()
        assert self._cluster(replica_primary="site-b", replica_self="site-a").is_replica()

    def test_enabled_flag_wins(self):
        assert not self._cluster(replica_enabled=False, replica_primary="origin").is_replica()
        assert self._cluster(replica_enabled=True, replica_primary=CLUSTER_NAME).is_replica()

    def test_designated_primary_streams_from_source(self):
        cluster = self._cluster(replica_primary="origin", replica_connection=True)
        assert is_streaming_available(cluster, "pg-main-1")
