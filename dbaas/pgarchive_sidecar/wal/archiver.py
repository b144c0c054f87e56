"""
WAL archiving through barman-cloud-wal-archive.

PostgreSQL calls the archive command once per completed WAL file. With
``wal.maxParallel`` > 1, the archiver also pushes up to maxParallel - 1
other WAL files PostgreSQL has marked ready in ``pg_wal/archive_status``
and records them in the archive spool. When PostgreSQL later asks for
one of those, the marker is consumed and no tool runs.

Invariants:
    - Only the requested file's result decides the outcome; a failed
      push-ahead is logged and left for PostgreSQL to request again
    - A marker exists in the archive spool only for a successful push,
      and every successful push-ahead gets one, even when the requested
      file failed
    - The empty-archive check runs before anything is pushed, and its
      trigger file is removed after the first successful archive

How to change safely:
    - Keep tool exit classifications intact (see barman.command)
    - Test with a fake ToolRunner, never a real object store
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..api.types import BarmanObjectStoreConfiguration
from ..barman.command import BarmanCloud
from ..errors import SidecarError, SpoolError
from ..metadata import CHECK_EMPTY_WAL_ARCHIVE_FILE
from .segment import is_wal_file
from .spool import WalSpool

logger = logging.getLogger(__name__)

READY_SUFFIX = ".ready"


class ArchiveStatus(Enum):
    """Outcome of an archive request."""

    ARCHIVED = "archived"
    ALREADY_ARCHIVED = "already-archived"


@dataclass(frozen=True)
class ArchiveResult:
    """Outcome of an archive request.

    Attributes:
        wal_name: Requested WAL file name
        status: Archived now, or already archived ahead
        archived_ahead: Other WAL files pushed by this request
    """

    wal_name: str
    status: ArchiveStatus
    archived_ahead: list[str] = field(default_factory=list)


class WalArchiver:
    """Pushes WAL files to an archive.

    Example:
        >>> archiver = WalArchiver(barman, WalSpool("/controller/wal-archive-spool"), pgdata)
        >>> await archiver.archive("pg_wal/000000010000000000000005", config, "pg-main", env)
    """

    def __init__(self, barman: BarmanCloud, spool: WalSpool, pgdata: str) -> None:
        self.barman = barman
        self.spool = spool
        self.pgdata = Path(pgdata)

    @property
    def empty_check_file(self) -> Path:
        return self.pgdata / CHECK_EMPTY_WAL_ARCHIVE_FILE

    @property
    def archive_status_dir(self) -> Path:
        return self.pgdata / "pg_wal" / "archive_status"

    def gather_ready_wal_files(self, max_results: int, skip: str) -> list[str]:
        """Oldest WAL files PostgreSQL has marked ready, excluding ``skip``."""
        if max_results <= 0:
            return []
        try:
            entries = sorted(os.listdir(self.archive_status_dir))
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(
                "Cannot list archive status directory",
                extra={"path": str(self.archive_status_dir), "error": str(e)},
            )
            return []

        ready: list[str] = []
        for entry in entries:
            if not entry.endswith(READY_SUFFIX):
                continue
            name = entry[: -len(READY_SUFFIX)]
            if name == skip or not is_wal_file(name) or self.spool.contains(name):
                continue
            ready.append(name)
            if len(ready) >= max_results:
                break
        return ready

    async def archive(
        self,
        source_path: str,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        env: Mapping[str, str],
        check_empty_archive: bool = True,
    ) -> ArchiveResult:
        """Archive ``source_path`` and, if configured, push ready files ahead.

        Args:
            source_path: Path of the WAL file, absolute or relative to PGDATA
            configuration: Destination archive
            server_name: Server name inside the archive
            env: Tool environment
            check_empty_archive: Whether the empty-archive check may run

        Returns:
            The archive result

        Raises:
            ArchiveNotEmptyError: If the first archive targets a used location
            SpoolError: If the archive spool cannot be read
            ToolExecutionError: If the requested file could not be pushed
        """
        wal_name = os.path.basename(source_path)

        if check_empty_archive and self.empty_check_file.exists():
            logger.info(
                "Checking that the WAL archive is empty before the first archive",
                extra={"server_name": server_name},
            )
            await self.barman.check_wal_archive(configuration, server_name, env)

        if self.spool.remove(wal_name):
            logger.info("WAL file already archived, skipping", extra={"wal_name": wal_name})
            return ArchiveResult(wal_name, ArchiveStatus.ALREADY_ARCHIVED)

        max_parallel = configuration.wal_max_parallel()
        ahead = self.gather_ready_wal_files(max_parallel - 1, skip=wal_name)
        paths = [self._resolve(source_path)] + [str(self.pgdata / "pg_wal" / name) for name in ahead]

        semaphore = asyncio.Semaphore(max_parallel)

        async def push(path: str) -> SidecarError | None:
            async with semaphore:
                try:
                    await self.barman.archive_wal(configuration, server_name, path, env)
                except SidecarError as e:
                    return e
                return None

        errors = await asyncio.gather(*(push(path) for path in paths))

        archived_ahead = []
        for name, error in zip(ahead, errors[1:]):
            if error is not None:
                logger.warning(
                    "Failed to archive WAL file ahead of request",
                    extra={"wal_name": name, "error": error.message},
                )
                continue
            self.spool.ensure()
            self.spool.touch(name)
            archived_ahead.append(name)

        if errors[0] is not None:
            raise errors[0]

        self._consume_empty_check_file()

        logger.debug(
            "WAL file archived",
            extra={"wal_name": wal_name, "archived_ahead": archived_ahead},
        )
        return ArchiveResult(wal_name, ArchiveStatus.ARCHIVED, archived_ahead)

    def _resolve(self, source_path: str) -> str:
        path = Path(source_path)
        if not path.is_absolute():
            path = self.pgdata / path
        return str(path)

    def _consume_empty_check_file(self) -> None:
        try:
            self.empty_check_file.unlink(missing_ok=True)
        except OSError as e:
            raise SpoolError(CHECK_EMPTY_WAL_ARCHIVE_FILE, e) from e
