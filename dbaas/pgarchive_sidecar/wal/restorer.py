"""
Parallel download of WAL files into the restore spool.

Invariants:
    - Results are returned in input order, one per requested name
    - At most ``max_parallel`` tool processes run at the same time
    - A name already present in the spool is not fetched again
    - A failed or cancelled download leaves no file under the WAL name

How to change safely:
    - Callers decide which results are authoritative, this module only
      reports outcomes
    - Do not catch CancelledError here, cancellation must reach the
      tool runner so it kills the child process
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from ..api.types import BarmanObjectStoreConfiguration
from ..barman.command import BarmanCloud
from ..errors import SidecarError, WalNotFoundError
from .spool import WalSpool

logger = logging.getLogger(__name__)


class RestoreOutcome(Enum):
    """Outcome of fetching one WAL file."""

    FOUND = "found"
    NOT_FOUND = "not-found"
    ERROR = "error"


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of fetching one WAL file.

    Attributes:
        wal_name: Requested name
        outcome: Found, not found or failed
        error: The failure for NOT_FOUND and ERROR outcomes
        duration_seconds: Time spent on this file
        from_spool: True when the file was already spooled
    """

    wal_name: str
    outcome: RestoreOutcome
    error: SidecarError | None = None
    duration_seconds: float = 0.0
    from_spool: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is RestoreOutcome.FOUND


class WalRestorer:
    """Fetches WAL files into a spool directory.

    Example:
        >>> restorer = WalRestorer(barman, WalSpool("/controller/wal-restore-spool"))
        >>> results = await restorer.restore_list(config, "pg-main", names, env, max_parallel=3)
    """

    def __init__(
        self,
        barman: BarmanCloud,
        spool: WalSpool,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.barman = barman
        self.spool = spool
        self._clock = clock

    async def restore_list(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        wal_names: list[str],
        env: Mapping[str, str],
        max_parallel: int = 1,
    ) -> list[RestoreResult]:
        """Fetch every name of ``wal_names`` into the spool.

        Args:
            configuration: Archive to read from
            server_name: Server name inside the archive
            wal_names: Names to fetch, requested one first
            env: Tool environment
            max_parallel: Concurrent downloads

        Returns:
            One result per name, in input order

        Raises:
            SpoolError: If the spool directory cannot be created
        """
        self.spool.ensure()
        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def fetch(wal_name: str) -> RestoreResult:
            async with semaphore:
                return await self._fetch_one(configuration, server_name, wal_name, env)

        return list(await asyncio.gather(*(fetch(name) for name in wal_names)))

    async def _fetch_one(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        wal_name: str,
        env: Mapping[str, str],
    ) -> RestoreResult:
        start = self._clock()
        if self.spool.contains(wal_name):
            return RestoreResult(wal_name, RestoreOutcome.FOUND, from_spool=True)

        temp_path = self.spool.temp_path_for(wal_name)
        try:
            try:
                await self.barman.restore_wal(
                    configuration, server_name, wal_name, str(temp_path), env
                )
                self.spool.commit(wal_name)
            finally:
                self.spool.discard_temp(wal_name)
        except WalNotFoundError as e:
            logger.debug("WAL file not found in the archive", extra={"wal_name": wal_name})
            return RestoreResult(wal_name, RestoreOutcome.NOT_FOUND, e, self._clock() - start)
        except SidecarError as e:
            logger.warning(
                "Failed to restore WAL file",
                extra={"wal_name": wal_name, "error": e.message, "error_code": e.code},
            )
            return RestoreResult(wal_name, RestoreOutcome.ERROR, e, self._clock() - start)

        return RestoreResult(wal_name, RestoreOutcome.FOUND, duration_seconds=self._clock() - start)
