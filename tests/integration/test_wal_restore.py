"""
Integration tests for WAL restore with prefetch.

Tests cover:
- Parallel prefetch into the spool and serving from it
- End-of-WAL-stream flag set / consumed
- Not-found and failures of the requested file
- Idempotent restores
- Spool pruning
- Credentials read through the secret cache
"""

import os
import tempfile
from pathlib import Path

import pytest

from dbaas.pgarchive_sidecar.api.schema import CLUSTER_V1, OBJECT_STORE_V1, SECRET_V1, ObjectKind
from dbaas.pgarchive_sidecar.barman.command import WAL_RESTORE, BarmanCloud
from dbaas.pgarchive_sidecar.client.cache import CachingObjectClient
from dbaas.pgarchive_sidecar.client.memory import InMemoryObjectClient
from dbaas.pgarchive_sidecar.errors import (
    EndOfStreamError,
    MissingPermissionsError,
    ToolConnectivityError,
    WalNotFoundError,
)
from dbaas.pgarchive_sidecar.wal.archiver import WalArchiver
from dbaas.pgarchive_sidecar.wal.restorer import RestoreOutcome, WalRestorer
from dbaas.pgarchive_sidecar.wal.service import WalService
from dbaas.pgarchive_sidecar.wal.spool import WalSpool
from tests.fakes import FakeToolRunner, make_cluster, make_object_store, make_secret, wal_bytes

SEG_5 = "000000010000000000000005"
SEG_6 = "000000010000000000000006"
SEG_7 = "000000010000000000000007"


class TestWalRestore:
    """Integration tests for WalService.restore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def runner(self):
        return FakeToolRunner()

    @pytest.fixture
    def backing(self):
        client = InMemoryObjectClient()
        client.add(SECRET_V1, make_secret())
        return client

    @pytest.fixture
    def client(self, backing):
        return CachingObjectClient(backing)

    def _service(self, client, runner, data_dir, instance_name="pg-main-2", max_parallel=1):
        backing = client.client if isinstance(client, CachingObjectClient) else client
        backing.add(OBJECT_STORE_V1, make_object_store(max_parallel=max_parallel))
        barman = BarmanCloud(runner)
        return WalService(
            client=client,
            instance_name=instance_name,
            restorer=WalRestorer(barman, WalSpool(os.path.join(data_dir, "restore-spool"))),
            archiver=WalArchiver(barman, WalSpool(os.path.join(data_dir, "archive-spool")), data_dir),
            certificates_dir=os.path.join(data_dir, "certificates"),
            scratch_dir=data_dir,
            base_env={"PATH": "/usr/bin"},
        )

    def _cluster(self, current_primary="pg-main-1"):
        return CLUSTER_V1.encode(make_cluster(current_primary=current_primary))

    def _destination(self, data_dir):
        return os.path.join(data_dir, "RECOVERYXLOG")

    @pytest.mark.asyncio
    async def test_prefetch_sets_end_of_stream(self, client, runner, data_dir):
        """maxParallel=3, 5 and 6 archived, 7 missing: 5 served, 6 spooled, flag set."""
        runner.archive = {SEG_5: wal_bytes(SEG_5), SEG_6: wal_bytes(SEG_6)}
        service = self._service(client, runner, data_dir, max_parallel=3)
        destination = self._destination(data_dir)

        summary = await service.restore(SEG_5, destination, self._cluster())

        assert Path(destination).read_bytes() == wal_bytes(SEG_5)
        assert sorted(runner.restored_names()) == [SEG_5, SEG_6, SEG_7]
        assert service.spool.contains(SEG_6)
        assert not service.spool.contains(SEG_7)
        assert service.spool.is_end_of_stream()
        assert summary.end_of_stream_set
        assert [r.outcome for r in summary.results] == [
            RestoreOutcome.FOUND,
            RestoreOutcome.FOUND,
            RestoreOutcome.NOT_FOUND,
        ]
        assert summary.successful == 2
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_spooled_file_then_end_of_stream(self, client, backing, runner, data_dir):
        """After a prefetch hit the end, 6 comes from the spool and 7 ends the stream."""
        runner.archive = {SEG_5: wal_bytes(SEG_5), SEG_6: wal_bytes(SEG_6)}
        service = self._service(client, runner, data_dir, max_parallel=3)
        destination = self._destination(data_dir)
        await service.restore(SEG_5, destination, self._cluster())
        store_reads = backing.call_count("get", ObjectKind.OBJECT_STORE)
        tool_calls = len(runner.calls)

        summary = await service.restore(SEG_6, destination, self._cluster())

        assert summary.from_spool
        assert Path(destination).read_bytes() == wal_bytes(SEG_6)
        assert len(runner.calls) == tool_calls
        assert backing.call_count("get", ObjectKind.OBJECT_STORE) == store_reads

        with pytest.raises(EndOfStreamError):
            await service.restore(SEG_7, destination, self._cluster())
        assert not service.spool.is_end_of_stream()
        assert len(runner.calls) == tool_calls

    @pytest.mark.asyncio
    async def test_not_found_without_prefetch_leaves_flag(self, client, runner, data_dir):
        """maxParallel=1, requested file missing: not found, flag untouched."""
        service = self._service(client, runner, data_dir, max_parallel=1)

        with pytest.raises(WalNotFoundError):
            await service.restore(SEG_5, self._destination(data_dir), self._cluster())

        assert runner.restored_names() == [SEG_5]
        assert not service.spool.is_end_of_stream()
        assert not os.path.exists(self._destination(data_dir))

    @pytest.mark.asyncio
    async def test_requested_missing_ignores_prefetched(self, client, runner, data_dir):
        """Only the requested file decides: found prefetches do not turn it into success."""
        runner.archive = {SEG_6: wal_bytes(SEG_6), SEG_7: wal_bytes(SEG_7)}
        service = self._service(client, runner, data_dir, max_parallel=3)

        with pytest.raises(WalNotFoundError):
            await service.restore(SEG_5, self._destination(data_dir), self._cluster())
        assert not service.spool.is_end_of_stream()

    @pytest.mark.asyncio
    async def test_requested_failure_is_returned_unchanged(self, client, runner, data_dir):
        runner.archive = {SEG_6: wal_bytes(SEG_6)}
        runner.wal_exit_codes[SEG_5] = 2
        service = self._service(client, runner, data_dir, max_parallel=2)

        with pytest.raises(ToolConnectivityError):
            await service.restore(SEG_5, self._destination(data_dir), self._cluster())

    @pytest.mark.asyncio
    async def test_primary_never_sets_flag(self, client, runner, data_dir):
        """Without streaming a missing prefetch is simply ignored."""
        runner.archive = {SEG_5: wal_bytes(SEG_5)}
        service = self._service(client, runner, data_dir, instance_name="pg-main-1", max_parallel=3)

        summary = await service.restore(SEG_5, self._destination(data_dir), self._cluster())

        assert not summary.end_of_stream_set
        assert not service.spool.is_end_of_stream()

    @pytest.mark.asyncio
    async def test_restore_twice_fetches_once(self, client, runner, data_dir):
        runner.archive = {SEG_5: wal_bytes(SEG_5)}
        service = self._service(client, runner, data_dir, max_parallel=1)
        destination = self._destination(data_dir)

        await service.restore(SEG_5, destination, self._cluster())
        os.remove(destination)
        await service.restore(SEG_5, destination, self._cluster())

        assert runner.restored_names() == [SEG_5]
        assert Path(destination).read_bytes() == wal_bytes(SEG_5)

    @pytest.mark.asyncio
    async def test_older_segments_are_pruned(self, client, runner, data_dir):
        runner.archive = {
            f"0000000100000000000000{seg:02X}": b"x" for seg in range(0x05, 0x0B)
        }
        service = self._service(client, runner, data_dir, instance_name="pg-main-1", max_parallel=3)
        destination = self._destination(data_dir)

        await service.restore(SEG_5, destination, self._cluster())
        await service.restore("000000010000000000000008", destination, self._cluster())

        assert service.spool.segment_names() == [
            "000000010000000000000008",
            "000000010000000000000009",
            "00000001000000000000000A",
        ]

    @pytest.mark.asyncio
    async def test_history_file_is_restored_alone(self, client, runner, data_dir):
        runner.archive = {"00000002.history": b"1\t0/3000000\tno recovery target"}
        service = self._service(client, runner, data_dir, max_parallel=4)

        await service.restore("00000002.history", self._destination(data_dir), self._cluster())

        assert runner.restored_names() == ["00000002.history"]

    @pytest.mark.asyncio
    async def test_credentials_come_from_cache(self, client, backing, runner, data_dir):
        runner.archive = {SEG_5: wal_bytes(SEG_5), SEG_6: wal_bytes(SEG_6)}
        service = self._service(client, runner, data_dir, instance_name="pg-main-1", max_parallel=1)

        await service.restore(SEG_5, self._destination(data_dir), self._cluster())
        await service.restore(SEG_6, self._destination(data_dir), self._cluster())

        assert backing.call_count("get", ObjectKind.SECRET) == 1
        restore_envs = [
            env for call, env in zip(runner.calls, runner.envs) if call[0] == WAL_RESTORE
        ]
        assert all(env["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE" for env in restore_envs)

    @pytest.mark.asyncio
    async def test_missing_permissions_are_reported(self, client, backing, runner, data_dir):
        backing.forbid(ObjectKind.SECRET)
        service = self._service(client, runner, data_dir)

        with pytest.raises(MissingPermissionsError):
            await service.restore(SEG_5, self._destination(data_dir), self._cluster())
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_bootstrap_reads_recovery_archive(self, runner, data_dir):
        client = InMemoryObjectClient()
        client.add(SECRET_V1, make_secret())
        client.add(OBJECT_STORE_V1, make_object_store("origin-store"))
        runner.archive = {SEG_5: wal_bytes(SEG_5)}
        service = self._service(client, runner, data_dir)
        cluster = make_cluster(
            current_primary="",
            recovery_source="origin",
            external_archives={"origin": "origin-store"},
        )

        await service.restore(SEG_5, self._destination(data_dir), CLUSTER_V1.encode(cluster))

        [call] = runner.calls_for(WAL_RESTORE)
        assert "s3://backups/origin-store" in call

    def test_capabilities(self, client, runner, data_dir):
        service = self._service(client, runner, data_dir)
        assert service.get_capabilities() == ["ARCHIVE_WAL", "RESTORE_WAL"]
