"""
Integration tests for the sidecar orchestrator.

Tests cover:
- Component wiring on a shared cached client
- Start / stop lifecycle without a cluster
- Logging setup
"""

import asyncio
import logging

import json_log_formatter
import pytest

from dbaas.pgarchive_sidecar import main as sidecar_main
from dbaas.pgarchive_sidecar.api.schema import OBJECT_STORE_V1, ObjectKind
from dbaas.pgarchive_sidecar.client.memory import InMemoryObjectClient
from dbaas.pgarchive_sidecar.config import (
    BarmanConfig,
    InstanceConfig,
    ObservabilityConfig,
    SecretCacheConfig,
    SidecarConfig,
)
from dbaas.pgarchive_sidecar.main import Sidecar, setup_logging


class ClosableClient(InMemoryObjectClient):
    """InMemoryObjectClient standing in for the Kubernetes client."""

    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def config(tmp_path):
    return SidecarConfig(
        instance=InstanceConfig(
            namespace="default",
            cluster_name="pg-main",
            pod_name="pg-main-1",
            pgdata=str(tmp_path / "pgdata"),
            spool_directory=str(tmp_path / "restore-spool"),
            archive_spool_directory=str(tmp_path / "archive-spool"),
        ),
        barman=BarmanConfig(certificates_dir=str(tmp_path / "certs"), scratch_dir=str(tmp_path)),
        secret_cache=SecretCacheConfig(ttl_seconds=5.0, cleanup_interval_seconds=0.05),
        observability=ObservabilityConfig(log_format="text", metrics_enabled=False),
    )


class TestSidecarBuild:
    """Tests for Sidecar.build."""

    def test_components_share_cached_client(self, config):
        backing = InMemoryObjectClient()
        sidecar = Sidecar(config)

        sidecar.build(backing)

        assert sidecar.client.client is backing
        assert ObjectKind.SECRET in sidecar.client.cached_kinds
        assert ObjectKind.OBJECT_STORE not in sidecar.client.cached_kinds
        assert sidecar.wal_service.client is sidecar.client
        assert sidecar.retention.client is sidecar.client
        assert sidecar.retention.metrics is sidecar.metrics
        assert sidecar.wal_service.instance_name == "pg-main-1"
        assert str(sidecar.wal_service.spool.directory) == config.instance.spool_directory
        assert str(sidecar.wal_service.archiver.spool.directory) == config.instance.archive_spool_directory
        assert sidecar.scheduler.name == "retention"

    def test_cache_is_transparent_for_object_stores(self, config):
        sidecar = Sidecar(config)
        sidecar.build(InMemoryObjectClient())
        assert not sidecar.client.is_cached_kind(OBJECT_STORE_V1)


class TestSidecarLifecycle:
    """Tests for Sidecar.start / stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config, monkeypatch):
        backing = ClosableClient()
        monkeypatch.setattr(
            sidecar_main.KubernetesObjectClient, "from_config", lambda kubernetes_config: backing
        )
        sidecar = Sidecar(config)

        task = asyncio.create_task(sidecar.start())
        for _ in range(100):
            if sidecar.scheduler is not None and sidecar.scheduler.stats["cycles"] >= 1:
                break
            await asyncio.sleep(0.01)

        assert sidecar.wal_service.spool.directory.exists()
        assert backing.call_count("get", ObjectKind.CLUSTER) == 1

        sidecar.request_shutdown()
        await asyncio.wait_for(task, timeout=2)
        await asyncio.wait_for(sidecar.stop(), timeout=2)

        assert backing.closed
        assert sidecar.scheduler.cancelled
        assert sidecar.scheduler.stats["running"] is False

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self, config):
        await Sidecar(config).stop()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(SidecarConfig(observability=ObservabilityConfig(log_format="json", log_level="debug")))
        root = logging.getLogger()
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_text_format(self):
        setup_logging(SidecarConfig(observability=ObservabilityConfig(log_format="text")))
        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)
