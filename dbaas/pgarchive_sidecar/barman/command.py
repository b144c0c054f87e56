"""
Invocation of the barman-cloud command line tools.

The sidecar never talks to the object store itself: every transfer goes
through one of the barman-cloud executables, run as a subprocess with
the credentials in its environment.

Exit codes are classified per tool:

    tool                     1             2             3            other
    wal-restore              not found     connectivity  bad input    generic
    wal-archive              generic       connectivity  bad input    generic
    check-wal-archive        not empty     connectivity  bad input    generic
    backup-list / -delete    generic       connectivity  bad input    generic

Invariants:
    - Classified failures map to distinct exception types, never one
      catch-all error
    - Credentials only travel through the environment, never argv
    - Cancelling the calling task kills the child process

How to change safely:
    - New options go in the builder of the tool that accepts them
    - Keep argument order: options first, then positional arguments
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from ..api.types import BarmanObjectStoreConfiguration
from ..errors import (
    ArchiveNotEmptyError,
    ConfigurationError,
    ToolConnectivityError,
    ToolExecutionError,
    WalNotFoundError,
)
from .catalog import BackupCatalog

logger = logging.getLogger(__name__)

WAL_ARCHIVE = "barman-cloud-wal-archive"
WAL_RESTORE = "barman-cloud-wal-restore"
CHECK_WAL_ARCHIVE = "barman-cloud-check-wal-archive"
BACKUP_LIST = "barman-cloud-backup-list"
BACKUP_DELETE = "barman-cloud-backup-delete"

EXIT_NOT_FOUND = 1
EXIT_CONNECTIVITY = 2
EXIT_INPUT_ERROR = 3

SUPPORTED_COMPRESSIONS = frozenset({"gzip", "bzip2", "snappy", "lz4", "xz", "zstd"})

_RETENTION_POLICY_RE = re.compile(r"^([1-9][0-9]*)([dwm])$")
_RETENTION_UNITS = {"d": "DAYS", "w": "WEEKS", "m": "MONTHS"}


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool run.

    Attributes:
        exit_code: Process exit code
        stdout: Standard output
        stderr: Tail of the error output
    """

    exit_code: int
    stdout: str = ""
    stderr: str = ""


class ToolRunner(Protocol):
    """Runs one archiving tool command."""

    async def run(self, args: Sequence[str], env: Mapping[str, str]) -> ToolResult:
        ...


class SubprocessToolRunner:
    """ToolRunner spawning the executables with asyncio.

    Example:
        >>> runner = SubprocessToolRunner(bin_dir="/usr/local/bin")
        >>> result = await runner.run(["barman-cloud-backup-list", "--help"], os.environ)
    """

    def __init__(self, bin_dir: str = "", stderr_tail_lines: int = 20) -> None:
        self.bin_dir = bin_dir
        self.stderr_tail_lines = stderr_tail_lines

    def _executable(self, tool: str) -> str:
        return os.path.join(self.bin_dir, tool) if self.bin_dir else tool

    async def run(self, args: Sequence[str], env: Mapping[str, str]) -> ToolResult:
        tool = args[0]
        try:
            process = await asyncio.create_subprocess_exec(
                self._executable(tool),
                *args[1:],
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env),
            )
        except OSError as e:
            raise ToolExecutionError(tool, -1, reason=f"cannot start the tool: {e}") from e

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            logger.warning("Tool cancelled, process killed", extra={"tool": tool, "pid": process.pid})
            raise

        tail = stderr.decode("utf-8", errors="replace").splitlines()[-self.stderr_tail_lines :]
        return ToolResult(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr="\n".join(tail),
        )


def retention_policy_to_barman(policy: str) -> str:
    """Translate ``30d``/``4w``/``6m`` into a barman retention policy.

    Raises:
        ConfigurationError: If the policy is malformed
    """
    match = _RETENTION_POLICY_RE.match(policy.strip())
    if match is None:
        raise ConfigurationError(
            f"invalid retention policy {policy!r}, expected a number followed by d, w or m"
        )
    return f"RECOVERY WINDOW OF {match.group(1)} {_RETENTION_UNITS[match.group(2)]}"


def cloud_provider_options(configuration: BarmanObjectStoreConfiguration) -> list[str]:
    if configuration.s3_credentials is not None:
        return ["--cloud-provider", "aws-s3"]
    if configuration.azure_credentials is not None:
        return ["--cloud-provider", "azure-blob-storage"]
    if configuration.google_credentials is not None:
        return ["--cloud-provider", "google-cloud-storage"]
    return []


def endpoint_options(configuration: BarmanObjectStoreConfiguration) -> list[str]:
    if configuration.endpoint_url:
        return ["--endpoint-url", configuration.endpoint_url]
    return []


def _tag_options(flag: str, tags: Mapping[str, str]) -> list[str]:
    if not tags:
        return []
    return [flag, *(f"{key},{value}" for key, value in sorted(tags.items()))]


def wal_archive_args(
    configuration: BarmanObjectStoreConfiguration, server_name: str, wal_path: str
) -> list[str]:
    """Arguments of barman-cloud-wal-archive for one WAL file.

    Raises:
        ConfigurationError: If the compression is not supported
    """
    options: list[str] = []
    wal = configuration.wal
    if wal is not None and wal.compression:
        if wal.compression not in SUPPORTED_COMPRESSIONS:
            raise ConfigurationError(f"unsupported WAL compression {wal.compression!r}")
        options.append(f"--{wal.compression}")
    if wal is not None and wal.encryption:
        options.extend(["--encryption", wal.encryption])
    options += endpoint_options(configuration)
    options += cloud_provider_options(configuration)
    options += _tag_options("--tags", configuration.tags)
    options += _tag_options("--history-tags", configuration.history_tags)
    if wal is not None:
        options += wal.archive_additional_command_args
    return [WAL_ARCHIVE, *options, configuration.destination_path, server_name, wal_path]


def wal_restore_args(
    configuration: BarmanObjectStoreConfiguration,
    server_name: str,
    wal_name: str,
    destination: str,
) -> list[str]:
    options = endpoint_options(configuration) + cloud_provider_options(configuration)
    if configuration.wal is not None:
        options += configuration.wal.restore_additional_command_args
    return [WAL_RESTORE, *options, configuration.destination_path, server_name, wal_name, destination]


def check_wal_archive_args(configuration: BarmanObjectStoreConfiguration, server_name: str) -> list[str]:
    options = endpoint_options(configuration) + cloud_provider_options(configuration)
    return [CHECK_WAL_ARCHIVE, *options, configuration.destination_path, server_name]


def backup_list_args(configuration: BarmanObjectStoreConfiguration, server_name: str) -> list[str]:
    options = ["--format", "json"]
    options += endpoint_options(configuration) + cloud_provider_options(configuration)
    return [BACKUP_LIST, *options, configuration.destination_path, server_name]


def backup_delete_args(
    configuration: BarmanObjectStoreConfiguration, server_name: str, retention_policy: str
) -> list[str]:
    options = ["--retention-policy", retention_policy_to_barman(retention_policy)]
    options += endpoint_options(configuration) + cloud_provider_options(configuration)
    return [BACKUP_DELETE, *options, configuration.destination_path, server_name]


def classify_failure(tool: str, result: ToolResult) -> ToolExecutionError:
    """Map a non-zero exit code of ``tool`` to its exception."""
    code = result.exit_code
    if code == EXIT_CONNECTIVITY:
        return ToolConnectivityError(tool, code, stderr=result.stderr)
    if code == EXIT_INPUT_ERROR:
        return ToolExecutionError(
            tool, code, reason="invalid input", stderr=result.stderr, code="TOOL_INPUT_ERROR"
        )
    if code == EXIT_NOT_FOUND and tool == CHECK_WAL_ARCHIVE:
        return ArchiveNotEmptyError(tool, code, stderr=result.stderr)
    return ToolExecutionError(tool, code, stderr=result.stderr)


class BarmanCloud:
    """Typed facade over the barman-cloud tools.

    Attributes:
        runner: Executes the commands (SubprocessToolRunner in production)

    Example:
        >>> barman = BarmanCloud(SubprocessToolRunner())
        >>> catalog = await barman.list_backups(store.spec.configuration, "pg-main", env)
    """

    def __init__(self, runner: ToolRunner) -> None:
        self.runner = runner

    async def _run(self, args: list[str], env: Mapping[str, str]) -> ToolResult:
        logger.debug("Running archiving tool", extra={"tool": args[0], "arguments": args[1:]})
        return await self.runner.run(args, env)

    async def archive_wal(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        wal_path: str,
        env: Mapping[str, str],
    ) -> None:
        """Push one WAL file.

        Raises:
            ToolExecutionError: Classified by exit code
        """
        result = await self._run(wal_archive_args(configuration, server_name, wal_path), env)
        if result.exit_code != 0:
            raise classify_failure(WAL_ARCHIVE, result)

    async def restore_wal(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        wal_name: str,
        destination: str,
        env: Mapping[str, str],
    ) -> None:
        """Fetch one WAL file into ``destination``.

        Raises:
            WalNotFoundError: If the archive does not hold ``wal_name``
            ToolExecutionError: Classified by exit code
        """
        result = await self._run(
            wal_restore_args(configuration, server_name, wal_name, destination), env
        )
        if result.exit_code == EXIT_NOT_FOUND:
            raise WalNotFoundError(wal_name)
        if result.exit_code != 0:
            raise classify_failure(WAL_RESTORE, result)

    async def check_wal_archive(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        env: Mapping[str, str],
    ) -> None:
        """Verify that the archive holds no WAL for ``server_name``.

        Raises:
            ArchiveNotEmptyError: If WAL files were found
            ToolExecutionError: Classified by exit code
        """
        result = await self._run(check_wal_archive_args(configuration, server_name), env)
        if result.exit_code != 0:
            raise classify_failure(CHECK_WAL_ARCHIVE, result)

    async def list_backups(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        env: Mapping[str, str],
    ) -> BackupCatalog:
        """Read the backup catalog of ``server_name``.

        Raises:
            ToolExecutionError: Classified by exit code, or when the output
                is not a valid catalog
        """
        result = await self._run(backup_list_args(configuration, server_name), env)
        if result.exit_code != 0:
            raise classify_failure(BACKUP_LIST, result)
        try:
            return BackupCatalog.from_json(result.stdout)
        except ValueError as e:
            raise ToolExecutionError(BACKUP_LIST, 0, reason=f"cannot parse the backup list: {e}") from e

    async def delete_backups_by_policy(
        self,
        configuration: BarmanObjectStoreConfiguration,
        server_name: str,
        retention_policy: str,
        env: Mapping[str, str],
    ) -> None:
        """Delete the backups falling out of ``retention_policy``.

        Raises:
            ConfigurationError: If the policy is malformed
            ToolExecutionError: Classified by exit code
        """
        result = await self._run(backup_delete_args(configuration, server_name, retention_policy), env)
        if result.exit_code != 0:
            raise classify_failure(BACKUP_DELETE, result)
