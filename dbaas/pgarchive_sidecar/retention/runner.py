"""
Retention policy enforcement and backup catalog reconciliation.

One cycle, run on the current primary only:
    1. Enforce the ObjectStore retention policy with barman-cloud-backup-delete
    2. Read the remote catalog with barman-cloud-backup-list
    3. Delete local Backup objects whose backup ID is not in the catalog
    4. Store the recovery window computed from the same catalog in the
       ObjectStore status

The remote catalog is the ground truth: a Backup object must not outlive
the backup it describes.

Invariants:
    - Only completed Backups of this cluster taken through this plugin are
      ever deleted, and only when the cluster has a backup section
    - A retention policy failure aborts the cycle before any status write
    - The last failed backup time in the status is preserved

How to change safely:
    - Keep the primary guard first, replicas must not touch the archive
    - Keep delete failures aggregated, one bad object must not block others
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from ..api.schema import BACKUP_V1, CLUSTER_V1, OBJECT_STORE_V1
from ..api.types import (
    BACKUP_METHOD_PLUGIN,
    BACKUP_PHASE_COMPLETED,
    Backup,
    Cluster,
    ObjectStore,
    RecoveryWindow,
)
from ..barman.catalog import BackupCatalog
from ..barman.command import BarmanCloud
from ..barman.credentials import build_credentials_env
from ..client.base import ObjectClient, ObjectKey
from ..errors import ConflictError, RetentionError, SidecarError
from ..events import EventRecorder
from ..metadata import (
    BACKUP_METADATA_CLUSTER_UID,
    BACKUP_METADATA_PLUGIN_NAME,
    DEFAULT_RETENTION_INTERVAL_SECONDS,
    PLUGIN_NAME,
)
from ..metrics import RecoveryWindowMetrics
from ..topology import TopologySnapshot, own_archive_target

logger = logging.getLogger(__name__)

REASON_RETENTION_POLICY_FAILED = "RetentionPolicyFailed"


def is_reconcilable_backup(backup: Backup, cluster: Cluster) -> bool:
    """Whether ``backup`` may be deleted when missing from the catalog.

    A cluster without a backup section never has its Backups reconciled.
    """
    if cluster.spec.backup is None:
        return False
    status = backup.status
    return (
        backup.spec.cluster.name == cluster.metadata.name
        and status.phase == BACKUP_PHASE_COMPLETED
        and status.method == BACKUP_METHOD_PLUGIN
        and status.plugin_metadata.get(BACKUP_METADATA_CLUSTER_UID) == cluster.metadata.uid
        and status.plugin_metadata.get(BACKUP_METADATA_PLUGIN_NAME) == PLUGIN_NAME
    )


class RetentionPolicyRunner:
    """Periodic retention work for one cluster.

    Attributes:
        client: Control-plane client
        barman: Archiving tool facade
        events: Records warnings on the cluster
        pod_name: Name of this instance
        default_interval_seconds: Interval when none is configured, and
            after a failure

    Example:
        >>> runner = RetentionPolicyRunner(client, barman, events, "default", "pg-main", "pg-main-1")
        >>> IntervalScheduler("retention", runner.cycle)
    """

    def __init__(
        self,
        client: ObjectClient,
        barman: BarmanCloud,
        events: EventRecorder,
        namespace: str,
        cluster_name: str,
        pod_name: str,
        certificates_dir: str = "/barman-certificates",
        scratch_dir: str = "/controller",
        base_env: Mapping[str, str] | None = None,
        default_interval_seconds: float = DEFAULT_RETENTION_INTERVAL_SECONDS,
        metrics: RecoveryWindowMetrics | None = None,
        max_status_attempts: int = 5,
    ) -> None:
        self.client = client
        self.barman = barman
        self.events = events
        self.cluster_key = ObjectKey(namespace, cluster_name)
        self.pod_name = pod_name
        self.certificates_dir = certificates_dir
        self.scratch_dir = scratch_dir
        self.default_interval_seconds = default_interval_seconds
        self.metrics = metrics
        self.max_status_attempts = max_status_attempts
        self._base_env = base_env

    async def cycle(self) -> float:
        """Run one retention cycle.

        Returns:
            Seconds to wait before the next cycle

        Raises:
            RetentionError: If the policy could not be enforced or some
                Backups could not be deleted
            SidecarError: If the control plane or the tool failed
        """
        cluster = await self.client.get(CLUSTER_V1, self.cluster_key)
        if cluster.status.current_primary != self.pod_name:
            logger.debug(
                "Not the current primary, skipping retention",
                extra={"current_primary": cluster.status.current_primary},
            )
            return self.default_interval_seconds

        snapshot = TopologySnapshot.from_cluster(cluster)
        if not snapshot.plugin.archive_name:
            logger.debug("Cluster does not archive WAL, skipping retention")
            return self.default_interval_seconds

        target = own_archive_target(snapshot)
        store = await self.client.get(OBJECT_STORE_V1, target.archive_key)
        base_env = os.environ if self._base_env is None else self._base_env
        env = await build_credentials_env(
            self.client, store, base_env, self.certificates_dir, self.scratch_dir
        )
        configuration = store.spec.configuration

        if store.spec.retention_policy:
            await self._apply_retention_policy(cluster, store, target.server_name, env)
        else:
            logger.debug("No retention policy configured", extra={"object_store": store.metadata.name})

        catalog = await self.barman.list_backups(configuration, target.server_name, env)
        await self.delete_backups_not_in_catalog(cluster, catalog.backup_ids())
        store = await self.update_recovery_window(target.archive_key, target.server_name, catalog)

        if self.metrics is not None:
            self.metrics.collect_from(store, target.server_name)

        return self._next_interval(store)

    async def _apply_retention_policy(
        self,
        cluster: Cluster,
        store: ObjectStore,
        server_name: str,
        env: Mapping[str, str],
    ) -> None:
        policy = store.spec.retention_policy
        logger.info(
            "Applying backup retention policy",
            extra={"object_store": store.metadata.name, "retention_policy": policy},
        )
        try:
            await self.barman.delete_backups_by_policy(
                store.spec.configuration, server_name, policy, env
            )
        except SidecarError as e:
            logger.error(
                "Error while enforcing retention policies",
                extra={"object_store": store.metadata.name, "retention_policy": policy, "error": e.message},
            )
            await self.events.warning(cluster, REASON_RETENTION_POLICY_FAILED, "Retention policy failed")
            raise RetentionError(f"retention policy {policy!r} failed: {e.message}", errors=[e.message]) from e

    async def delete_backups_not_in_catalog(self, cluster: Cluster, backup_ids: list[str]) -> list[str]:
        """Delete the Backups of ``cluster`` the catalog no longer holds.

        Args:
            cluster: Cluster being reconciled
            backup_ids: Backup IDs present in the remote catalog

        Returns:
            Names of the deleted Backup objects

        Raises:
            RetentionError: If at least one deletion failed, after all of
                them were attempted
        """
        in_catalog = set(backup_ids)
        backups = await self.client.list(BACKUP_V1, cluster.metadata.namespace)

        deleted: list[str] = []
        errors: list[str] = []
        for backup in backups:
            if not is_reconcilable_backup(backup, cluster):
                continue
            if backup.status.backup_id in in_catalog:
                continue
            try:
                await self.client.delete(BACKUP_V1, backup)
            except SidecarError as e:
                errors.append(f"{backup.metadata.name}: {e.message}")
                continue
            deleted.append(backup.metadata.name)
            logger.info(
                "Deleted Backup not present in the catalog",
                extra={"backup": backup.metadata.name, "backup_id": backup.status.backup_id},
            )

        if errors:
            raise RetentionError("got errors while deleting Backups not in the cluster", errors=errors)
        return deleted

    async def update_recovery_window(
        self, store_key: ObjectKey, server_name: str, catalog: BackupCatalog
    ) -> ObjectStore:
        """Persist the recovery window of ``server_name`` in the ObjectStore status.

        Re-reads and retries when the write loses a race.

        Raises:
            ConflictError: If every attempt conflicted
        """
        conflict: ConflictError | None = None
        for attempt in range(1, self.max_status_attempts + 1):
            store = await self.client.get(OBJECT_STORE_V1, store_key)
            previous = store.status.server_recovery_window.get(server_name) or RecoveryWindow()
            store.status.server_recovery_window[server_name] = RecoveryWindow(
                first_recoverability_point=catalog.first_recoverability_point(),
                last_successful_backup_time=catalog.last_successful_backup_time(),
                last_failed_backup_time=previous.last_failed_backup_time,
            )
            try:
                return await self.client.update_status(OBJECT_STORE_V1, store)
            except ConflictError as e:
                conflict = e
                logger.debug(
                    "Recovery window update conflicted, retrying",
                    extra={"object_store": str(store_key), "attempt": attempt},
                )
        raise ConflictError(
            f"recovery window of {store_key} not updated after {self.max_status_attempts} attempts"
        ) from conflict

    def _next_interval(self, store: ObjectStore) -> float:
        configured = store.spec.instance_sidecar_configuration.retention_policy_interval_seconds
        if configured > 0:
            return float(configured)
        return self.default_interval_seconds
