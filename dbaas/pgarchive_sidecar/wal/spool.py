"""
Local spool directory for WAL files.

Two spools exist per instance:
    - the restore spool holds WAL files fetched ahead of PostgreSQL's
      requests, plus the end-of-WAL-stream flag
    - the archive spool holds empty markers for WAL files that were
      pushed ahead of PostgreSQL's archive requests

Invariants:
    - A file named after a WAL is always complete: downloads land under
      a temporary name and are renamed into place
    - The end-of-stream flag is a plain file, its presence is the state
    - Every OSError surfaces as SpoolError

How to change safely:
    - Single writer per instance, no locking across processes
    - Never prune files that are not regular segment names
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from pathlib import Path

from ..errors import SpoolError
from ..metadata import END_OF_WAL_STREAM_FLAG
from .segment import is_segment_name

logger = logging.getLogger(__name__)

TEMP_PREFIX = "."
TEMP_SUFFIX = ".part"


class WalSpool:
    """A directory of WAL files keyed by name.

    Example:
        >>> spool = WalSpool("/controller/wal-restore-spool")
        >>> if spool.contains("000000010000000000000005"):
        ...     spool.copy_out("000000010000000000000005", "/pgdata/pg_wal/RECOVERYXLOG")
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def ensure(self) -> None:
        """Create the spool directory if missing."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SpoolError(str(self.directory), e) from e

    def path_for(self, wal_name: str) -> Path:
        return self.directory / wal_name

    def temp_path_for(self, wal_name: str) -> Path:
        """Download location of ``wal_name`` before it is committed."""
        return self.directory / f"{TEMP_PREFIX}{wal_name}{TEMP_SUFFIX}"

    def contains(self, wal_name: str) -> bool:
        try:
            return self.path_for(wal_name).is_file()
        except OSError as e:
            raise SpoolError(wal_name, e) from e

    def commit(self, wal_name: str) -> None:
        """Move a completed download into place."""
        try:
            os.replace(self.temp_path_for(wal_name), self.path_for(wal_name))
        except OSError as e:
            raise SpoolError(wal_name, e) from e

    def discard_temp(self, wal_name: str) -> None:
        """Drop a partial download, if any."""
        try:
            self.temp_path_for(wal_name).unlink(missing_ok=True)
        except OSError as e:
            raise SpoolError(wal_name, e) from e

    def copy_out(self, wal_name: str, destination: str | Path) -> None:
        """Copy a spooled WAL file to ``destination``.

        The copy goes through a temporary file next to the destination so
        PostgreSQL never reads a truncated file.
        """
        destination = Path(destination)
        staging = destination.with_name(f"{TEMP_PREFIX}{destination.name}{TEMP_SUFFIX}")
        try:
            shutil.copyfile(self.path_for(wal_name), staging)
            os.replace(staging, destination)
        except OSError as e:
            staging.unlink(missing_ok=True)
            raise SpoolError(wal_name, e) from e

    def touch(self, wal_name: str) -> None:
        """Record ``wal_name`` with an empty marker file."""
        try:
            self.path_for(wal_name).touch()
        except OSError as e:
            raise SpoolError(wal_name, e) from e

    def remove(self, wal_name: str) -> bool:
        """Remove ``wal_name`` from the spool.

        Returns:
            True if the file existed
        """
        try:
            self.path_for(wal_name).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SpoolError(wal_name, e) from e
        return True

    def segment_names(self) -> list[str]:
        """Names of the regular segments in the spool, sorted."""
        return sorted(self._iter_names(is_segment_name))

    def prune_before(self, wal_name: str) -> int:
        """Remove every spooled segment sorting before ``wal_name``.

        Returns:
            Number of files removed
        """
        removed = 0
        for name in self.segment_names():
            if name >= wal_name:
                break
            if self.remove(name):
                removed += 1
        if removed:
            logger.debug(
                "Pruned old WAL files from spool",
                extra={"before": wal_name, "removed_count": removed},
            )
        return removed

    def _iter_names(self, predicate) -> Iterator[str]:
        try:
            entries = list(os.scandir(self.directory))
        except FileNotFoundError:
            return
        except OSError as e:
            raise SpoolError(str(self.directory), e) from e
        for entry in entries:
            if entry.is_file() and predicate(entry.name):
                yield entry.name

    # End-of-WAL-stream flag

    @property
    def end_of_stream_path(self) -> Path:
        return self.directory / END_OF_WAL_STREAM_FLAG

    def is_end_of_stream(self) -> bool:
        try:
            return self.end_of_stream_path.exists()
        except OSError as e:
            raise SpoolError(END_OF_WAL_STREAM_FLAG, e) from e

    def set_end_of_stream(self) -> None:
        self.ensure()
        try:
            self.end_of_stream_path.touch()
        except OSError as e:
            raise SpoolError(END_OF_WAL_STREAM_FLAG, e) from e

    def reset_end_of_stream(self) -> None:
        try:
            self.end_of_stream_path.unlink(missing_ok=True)
        except OSError as e:
            raise SpoolError(END_OF_WAL_STREAM_FLAG, e) from e
