"""
WAL archive and restore request handlers.

This module holds the bodies of the archive, restore and capability
calls the instance manager makes for every WAL file. The RPC transport
is not part of this module: errors carry a grpc.StatusCode
(SidecarError.status_code) for the transport to map.

Restore flow:
    1. WAL already spooled -> copy it to the destination, done
    2. streaming available and end-of-stream flag set -> clear the flag,
       raise EndOfStreamError
    3. fetch the requested segment plus up to maxParallel - 1 following
       ones into the spool
    4. requested file missing or failed -> raise, nothing else matters
    5. any prefetched file missing and streaming available -> set the flag
    6. copy to the destination, prune older segments from the spool

Invariants:
    - Only the requested file's outcome decides success
    - Restoring a spooled file makes no control-plane or tool call
    - Archiving always targets the cluster's own archive

How to change safely:
    - Keep the spool check before any remote call
    - Never swallow WalNotFoundError or EndOfStreamError, PostgreSQL
      recovery relies on telling them apart
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..api.schema import CLUSTER_V1, OBJECT_STORE_V1
from ..api.types import Cluster, ObjectStore
from ..barman.credentials import build_credentials_env
from ..client.base import ObjectClient
from ..errors import EndOfStreamError, MissingPermissionsError, WalNotFoundError
from ..metadata import SKIP_EMPTY_WAL_ARCHIVE_CHECK_ANNOTATION
from ..topology import (
    TopologySnapshot,
    is_streaming_available,
    own_archive_target,
    resolve_restore_target,
)
from .archiver import ArchiveResult, WalArchiver
from .restorer import RestoreOutcome, RestoreResult, WalRestorer
from .segment import Segment, is_segment_name
from .spool import WalSpool

logger = logging.getLogger(__name__)

CAPABILITY_ARCHIVE_WAL = "ARCHIVE_WAL"
CAPABILITY_RESTORE_WAL = "RESTORE_WAL"


@dataclass(frozen=True)
class RestoreSummary:
    """What a restore call did.

    Attributes:
        wal_name: Requested WAL file name
        from_spool: Served from a previous prefetch without remote calls
        results: Per-file outcomes, requested file first
        end_of_stream_set: Whether the end-of-stream flag was set
        download_seconds: Time spent fetching
        total_seconds: Time spent in the call
    """

    wal_name: str
    from_spool: bool
    results: list[RestoreResult] = field(default_factory=list)
    end_of_stream_set: bool = False
    download_seconds: float = 0.0
    total_seconds: float = 0.0

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful


def gather_wal_files_to_restore(wal_name: str, max_parallel: int) -> list[str]:
    """The requested name followed by the names to prefetch.

    Names that are not regular segments (history files, backup labels,
    partial files) are restored alone.
    """
    if not is_segment_name(wal_name) or max_parallel <= 1:
        return [wal_name]
    try:
        return [segment.name for segment in Segment.from_name(wal_name).next_segments(max_parallel)]
    except ValueError as e:
        logger.warning(
            "Cannot compute WAL files to prefetch, restoring the requested one only",
            extra={"wal_name": wal_name, "error": str(e)},
        )
        return [wal_name]


def is_empty_archive_check_enabled(cluster: Cluster) -> bool:
    return cluster.metadata.annotations.get(SKIP_EMPTY_WAL_ARCHIVE_CHECK_ANNOTATION) != "enabled"


class WalService:
    """Handles WAL archive and restore requests for one instance.

    Attributes:
        client: Control-plane client (wrapped by the secret cache)
        instance_name: Name of this instance
        restorer: Downloads WAL files into the restore spool
        archiver: Pushes WAL files

    Example:
        >>> service = WalService(client, "pg-main-1", restorer, archiver)
        >>> await service.restore("000000010000000000000005", "/pgdata/pg_wal/RECOVERYXLOG", cluster_json)
    """

    def __init__(
        self,
        client: ObjectClient,
        instance_name: str,
        restorer: WalRestorer,
        archiver: WalArchiver,
        certificates_dir: str = "/barman-certificates",
        scratch_dir: str = "/controller",
        base_env: Mapping[str, str] | None = None,
        decode_cluster: Callable[[Any], Cluster] = CLUSTER_V1.decode,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.instance_name = instance_name
        self.restorer = restorer
        self.archiver = archiver
        self.certificates_dir = certificates_dir
        self.scratch_dir = scratch_dir
        self._base_env = base_env
        self._decode_cluster = decode_cluster
        self._clock = clock

    @property
    def spool(self) -> WalSpool:
        return self.restorer.spool

    def get_capabilities(self) -> list[str]:
        return [CAPABILITY_ARCHIVE_WAL, CAPABILITY_RESTORE_WAL]

    async def _tool_env(self, store: ObjectStore) -> dict[str, str]:
        base_env = os.environ if self._base_env is None else self._base_env
        try:
            return await build_credentials_env(
                self.client, store, base_env, self.certificates_dir, self.scratch_dir
            )
        except MissingPermissionsError as e:
            logger.info(e.message, extra={"object_store": store.metadata.name})
            raise

    async def archive(self, source_path: str, cluster_definition: Any) -> ArchiveResult:
        """Archive one WAL file to the cluster's own archive.

        Args:
            source_path: Path of the WAL file PostgreSQL asks to archive
            cluster_definition: Cluster definition as JSON or a parsed mapping

        Returns:
            Whether the file was archived now or already archived ahead

        Raises:
            ConfigurationError: If the cluster does not archive WAL
            MissingPermissionsError: If the credentials cannot be read yet
            ToolExecutionError: If the tool failed (classified)
        """
        wal_name = os.path.basename(source_path)
        logger.debug("WAL archive start", extra={"wal_name": wal_name})

        cluster = self._decode_cluster(cluster_definition)
        target = own_archive_target(TopologySnapshot.from_cluster(cluster))
        store = await self.client.get(OBJECT_STORE_V1, target.archive_key)
        env = await self._tool_env(store)

        result = await self.archiver.archive(
            source_path,
            store.spec.configuration,
            target.server_name,
            env,
            check_empty_archive=is_empty_archive_check_enabled(cluster),
        )
        logger.debug(
            "WAL archive end",
            extra={"wal_name": wal_name, "status": result.status.value},
        )
        return result

    async def restore(
        self, wal_name: str, destination_path: str, cluster_definition: Any
    ) -> RestoreSummary:
        """Restore one WAL file to ``destination_path``.

        Args:
            wal_name: WAL file PostgreSQL asks for
            destination_path: Where PostgreSQL expects it
            cluster_definition: Cluster definition as JSON or a parsed mapping

        Returns:
            Summary of what was fetched

        Raises:
            WalNotFoundError: If the archive does not hold ``wal_name``
            EndOfStreamError: If a previous prefetch reached the end of
                the archived WAL and streaming can take over
            ConfigurationError: If the selected archive is not configured
            ToolExecutionError: If the tool failed (classified)
        """
        start = self._clock()
        cluster = self._decode_cluster(cluster_definition)
        target = resolve_restore_target(TopologySnapshot.from_cluster(cluster), self.instance_name)

        if self.spool.contains(wal_name):
            self.spool.copy_out(wal_name, destination_path)
            logger.info("Restored WAL file from spool", extra={"wal_name": wal_name})
            return RestoreSummary(wal_name, from_spool=True, total_seconds=self._clock() - start)

        streaming = is_streaming_available(cluster, self.instance_name)
        if streaming and self.spool.is_end_of_stream():
            self.spool.reset_end_of_stream()
            logger.info("End of WAL stream flag found, switching to streaming", extra={"wal_name": wal_name})
            raise EndOfStreamError()

        store = await self.client.get(OBJECT_STORE_V1, target.archive_key)
        logger.info(
            "Restoring WAL file",
            extra={
                "object_store": store.metadata.name,
                "server_name": target.server_name,
                "archive_source": target.source.value,
                "wal_name": wal_name,
            },
        )
        env = await self._tool_env(store)

        configuration = store.spec.configuration
        max_parallel = configuration.wal_max_parallel()
        wal_names = gather_wal_files_to_restore(wal_name, max_parallel)

        download_start = self._clock()
        results = await self.restorer.restore_list(
            configuration, target.server_name, wal_names, env, max_parallel
        )
        download_seconds = self._clock() - download_start

        requested = results[0]
        if requested.outcome is RestoreOutcome.NOT_FOUND:
            raise WalNotFoundError(wal_name)
        if requested.outcome is RestoreOutcome.ERROR:
            raise requested.error

        end_of_stream = streaming and any(r.outcome is RestoreOutcome.NOT_FOUND for r in results)
        if end_of_stream:
            logger.info(
                "Set end-of-wal-stream flag as one of the WAL files to be prefetched was not found",
                extra={"wal_name": wal_name},
            )
            self.spool.set_end_of_stream()

        self.spool.copy_out(wal_name, destination_path)
        if is_segment_name(wal_name):
            self.spool.prune_before(wal_name)

        summary = RestoreSummary(
            wal_name,
            from_spool=False,
            results=results,
            end_of_stream_set=end_of_stream,
            download_seconds=download_seconds,
            total_seconds=self._clock() - start,
        )
        logger.info(
            "WAL restore command completed",
            extra={
                "wal_name": wal_name,
                "max_parallel": max_parallel,
                "successful_wal_restore": summary.successful,
                "failed_wal_restore": summary.failed,
                "download_seconds": round(download_seconds, 3),
                "total_seconds": round(summary.total_seconds, 3),
            },
        )
        return summary
