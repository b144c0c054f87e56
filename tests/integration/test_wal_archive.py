"""
Integration tests for WAL archiving.

Tests cover:
- Archiving to the cluster's own archive
- Pushing ready WAL files ahead and consuming their markers
- The empty-archive check and its annotation
- Failures of the requested file and of files pushed ahead
"""

import os
import tempfile
from pathlib import Path

import pytest

from dbaas.pgarchive_sidecar.api.schema import CLUSTER_V1, OBJECT_STORE_V1, SECRET_V1
from dbaas.pgarchive_sidecar.barman.command import CHECK_WAL_ARCHIVE, WAL_ARCHIVE, BarmanCloud
from dbaas.pgarchive_sidecar.client.memory import InMemoryObjectClient
from dbaas.pgarchive_sidecar.errors import (
    ArchiveNotEmptyError,
    ConfigurationError,
    ToolConnectivityError,
)
from dbaas.pgarchive_sidecar.metadata import (
    CHECK_EMPTY_WAL_ARCHIVE_FILE,
    SKIP_EMPTY_WAL_ARCHIVE_CHECK_ANNOTATION,
)
from dbaas.pgarchive_sidecar.wal.archiver import ArchiveStatus, WalArchiver
from dbaas.pgarchive_sidecar.wal.restorer import WalRestorer
from dbaas.pgarchive_sidecar.wal.service import WalService
from dbaas.pgarchive_sidecar.wal.spool import WalSpool
from tests.fakes import FakeToolRunner, make_cluster, make_object_store, make_secret, wal_bytes

SEG_5 = "000000010000000000000005"
SEG_6 = "000000010000000000000006"
SEG_7 = "000000010000000000000007"


class TestWalArchive:
    """Integration tests for WalService.archive."""

    @pytest.fixture
    def pgdata(self):
        """Create a temporary PGDATA with pg_wal/archive_status."""
        with tempfile.TemporaryDirectory() as tmpdir:
            os.makedirs(os.path.join(tmpdir, "pg_wal", "archive_status"))
            yield tmpdir

    @pytest.fixture
    def runner(self):
        return FakeToolRunner()

    @pytest.fixture
    def client(self):
        client = InMemoryObjectClient()
        client.add(SECRET_V1, make_secret())
        return client

    def _service(self, client, runner, pgdata, max_parallel=1):
        client.add(OBJECT_STORE_V1, make_object_store(max_parallel=max_parallel))
        barman = BarmanCloud(runner)
        return WalService(
            client=client,
            instance_name="pg-main-1",
            restorer=WalRestorer(barman, WalSpool(os.path.join(pgdata, "restore-spool"))),
            archiver=WalArchiver(barman, WalSpool(os.path.join(pgdata, "archive-spool")), pgdata),
            certificates_dir=os.path.join(pgdata, "certificates"),
            scratch_dir=pgdata,
            base_env={"PATH": "/usr/bin"},
        )

    def _write_wal(self, pgdata, name, ready=True):
        path = os.path.join(pgdata, "pg_wal", name)
        Path(path).write_bytes(wal_bytes(name))
        if ready:
            Path(pgdata, "pg_wal", "archive_status", f"{name}.ready").touch()
        return path

    def _cluster(self, **kwargs):
        return CLUSTER_V1.encode(make_cluster(**kwargs))

    @pytest.mark.asyncio
    async def test_archives_to_own_archive(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        service = self._service(client, runner, pgdata)

        result = await service.archive(path, self._cluster())

        assert result.status is ArchiveStatus.ARCHIVED
        assert result.archived_ahead == []
        [call] = runner.calls_for(WAL_ARCHIVE)
        assert call[-3:] == ["s3://backups/main-store", "pg-main", path]
        assert runner.archive[SEG_5] == wal_bytes(SEG_5)
        assert runner.envs[0]["AWS_SECRET_ACCESS_KEY"] == "s3cr3t"

    @pytest.mark.asyncio
    async def test_custom_server_name(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        service = self._service(client, runner, pgdata)

        await service.archive(path, self._cluster(server_name="pg-main-v2"))

        [call] = runner.calls_for(WAL_ARCHIVE)
        assert call[-2] == "pg-main-v2"

    @pytest.mark.asyncio
    async def test_relative_path_resolved_against_pgdata(self, client, runner, pgdata):
        self._write_wal(pgdata, SEG_5)
        service = self._service(client, runner, pgdata)

        await service.archive(os.path.join("pg_wal", SEG_5), self._cluster())

        [call] = runner.calls_for(WAL_ARCHIVE)
        assert call[-1] == os.path.join(pgdata, "pg_wal", SEG_5)

    @pytest.mark.asyncio
    async def test_pushes_ready_files_ahead(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        self._write_wal(pgdata, SEG_6)
        self._write_wal(pgdata, SEG_7)
        service = self._service(client, runner, pgdata, max_parallel=3)

        result = await service.archive(path, self._cluster())

        assert result.status is ArchiveStatus.ARCHIVED
        assert result.archived_ahead == [SEG_6, SEG_7]
        assert sorted(runner.archive) == [SEG_5, SEG_6, SEG_7]
        assert service.archiver.spool.contains(SEG_6)
        assert service.archiver.spool.contains(SEG_7)

    @pytest.mark.asyncio
    async def test_marker_consumed_without_tool_call(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        path_6 = self._write_wal(pgdata, SEG_6)
        service = self._service(client, runner, pgdata, max_parallel=2)
        await service.archive(path, self._cluster())
        tool_calls = len(runner.calls)

        result = await service.archive(path_6, self._cluster())

        assert result.status is ArchiveStatus.ALREADY_ARCHIVED
        assert len(runner.calls) == tool_calls
        assert not service.archiver.spool.contains(SEG_6)

    @pytest.mark.asyncio
    async def test_failed_push_ahead_is_not_fatal(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        self._write_wal(pgdata, SEG_6)
        self._write_wal(pgdata, SEG_7)
        runner.wal_exit_codes[SEG_7] = 4
        service = self._service(client, runner, pgdata, max_parallel=3)

        result = await service.archive(path, self._cluster())

        assert result.status is ArchiveStatus.ARCHIVED
        assert result.archived_ahead == [SEG_6]
        assert not service.archiver.spool.contains(SEG_7)

    @pytest.mark.asyncio
    async def test_requested_failure_raises(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        runner.wal_exit_codes[SEG_5] = 2
        service = self._service(client, runner, pgdata)

        with pytest.raises(ToolConnectivityError):
            await service.archive(path, self._cluster())

    @pytest.mark.asyncio
    async def test_requested_failure_keeps_ahead_markers(self, client, runner, pgdata):
        """Files pushed ahead are not uploaded again after the requested one failed."""
        path = self._write_wal(pgdata, SEG_5)
        path_6 = self._write_wal(pgdata, SEG_6)
        runner.wal_exit_codes[SEG_5] = 2
        service = self._service(client, runner, pgdata, max_parallel=2)

        with pytest.raises(ToolConnectivityError):
            await service.archive(path, self._cluster())
        assert service.archiver.spool.contains(SEG_6)

        uploads = len(runner.calls_for(WAL_ARCHIVE))
        result = await service.archive(path_6, self._cluster())
        assert result.status is ArchiveStatus.ALREADY_ARCHIVED
        assert len(runner.calls_for(WAL_ARCHIVE)) == uploads

    @pytest.mark.asyncio
    async def test_empty_check_runs_once(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        path_6 = self._write_wal(pgdata, SEG_6)
        check_file = Path(pgdata, CHECK_EMPTY_WAL_ARCHIVE_FILE)
        check_file.touch()
        service = self._service(client, runner, pgdata)

        await service.archive(path, self._cluster())

        assert runner.calls[0][0] == CHECK_WAL_ARCHIVE
        assert not check_file.exists()

        await service.archive(path_6, self._cluster())
        assert len(runner.calls_for(CHECK_WAL_ARCHIVE)) == 1

    @pytest.mark.asyncio
    async def test_non_empty_archive_is_refused(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        check_file = Path(pgdata, CHECK_EMPTY_WAL_ARCHIVE_FILE)
        check_file.touch()
        runner.tool_exit_codes[CHECK_WAL_ARCHIVE] = 1
        service = self._service(client, runner, pgdata)

        with pytest.raises(ArchiveNotEmptyError):
            await service.archive(path, self._cluster())

        assert runner.calls_for(WAL_ARCHIVE) == []
        assert check_file.exists()

    @pytest.mark.asyncio
    async def test_annotation_skips_empty_check(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        Path(pgdata, CHECK_EMPTY_WAL_ARCHIVE_FILE).touch()
        runner.tool_exit_codes[CHECK_WAL_ARCHIVE] = 1
        service = self._service(client, runner, pgdata)

        result = await service.archive(
            path,
            self._cluster(annotations={SKIP_EMPTY_WAL_ARCHIVE_CHECK_ANNOTATION: "enabled"}),
        )

        assert result.status is ArchiveStatus.ARCHIVED
        assert runner.calls_for(CHECK_WAL_ARCHIVE) == []

    @pytest.mark.asyncio
    async def test_replica_still_archives_to_own_archive(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        client.add(OBJECT_STORE_V1, make_object_store("origin-store"))
        service = self._service(client, runner, pgdata)
        cluster = self._cluster(
            replica_source="origin",
            replica_enabled=True,
            external_archives={"origin": "origin-store"},
        )

        await service.archive(path, cluster)

        [call] = runner.calls_for(WAL_ARCHIVE)
        assert "s3://backups/main-store" in call

    @pytest.mark.asyncio
    async def test_no_own_archive(self, client, runner, pgdata):
        path = self._write_wal(pgdata, SEG_5)
        service = self._service(client, runner, pgdata)

        with pytest.raises(ConfigurationError):
            await service.archive(path, self._cluster(archive_name=None))
        assert runner.calls == []
