"""
pgarchive sidecar - Main entry point.

This module starts the sidecar with all components:
- Control-plane client with the secret cache (and its cleanup loop)
- WAL service (archive / restore request handlers)
- Retention loop (policy, catalog reconciliation, recovery window)
- Prometheus metrics endpoint for the recovery window

The RPC transport that feeds requests to the WAL service is registered by
the embedding process; this module owns the components and their lifecycle.

Usage:
    python -m dbaas.pgarchive_sidecar.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Every component shares the same cached control-plane client
    - Graceful shutdown lets a running retention cycle complete

How to change safely:
    - Wire new components in build() so tests can run them without a cluster
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .barman import BarmanCloud, SubprocessToolRunner
from .client import CachingObjectClient, KubernetesObjectClient, env_ttl_source
from .client.base import ObjectClient
from .config import SidecarConfig
from .errors import ConfigurationError
from .events import EventRecorder
from .metrics import RecoveryWindowMetrics
from .retention import IntervalScheduler, RetentionPolicyRunner
from .wal import WalArchiver, WalRestorer, WalService, WalSpool

logger = logging.getLogger(__name__)


def setup_logging(config: SidecarConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Sidecar configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class Sidecar:
    """pgarchive sidecar orchestrator.

    Attributes:
        config: Sidecar configuration
        client: Cached control-plane client
        wal_service: Archive / restore request handlers
        retention: Retention cycle
        scheduler: Ticker running the retention cycle
        metrics: Recovery window gauges

    Example:
        >>> sidecar = Sidecar()
        >>> await sidecar.start()
        >>> # Sidecar is running
        >>> await sidecar.stop()
    """

    def __init__(self, config: SidecarConfig | None = None) -> None:
        """Initialize the sidecar.

        Args:
            config: Optional configuration (loaded from env if not provided)
        """
        self.config = config or SidecarConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.kube: KubernetesObjectClient | None = None
        self.client: CachingObjectClient | None = None
        self.wal_service: WalService | None = None
        self.retention: RetentionPolicyRunner | None = None
        self.scheduler: IntervalScheduler | None = None
        self.metrics: RecoveryWindowMetrics | None = None

        # Background tasks
        self._tasks: list[asyncio.Task] = []

    def build(self, backing_client: ObjectClient) -> None:
        """Create every component on top of ``backing_client``."""
        instance = self.config.instance
        barman_config = self.config.barman

        self.client = CachingObjectClient(
            backing_client,
            ttl_seconds=env_ttl_source(default=self.config.secret_cache.ttl_seconds),
            cleanup_interval_seconds=self.config.secret_cache.cleanup_interval_seconds,
        )
        barman = BarmanCloud(
            SubprocessToolRunner(
                bin_dir=barman_config.bin_dir,
                stderr_tail_lines=barman_config.stderr_tail_lines,
            )
        )

        self.wal_service = WalService(
            client=self.client,
            instance_name=instance.pod_name,
            restorer=WalRestorer(barman, WalSpool(instance.spool_directory)),
            archiver=WalArchiver(barman, WalSpool(instance.archive_spool_directory), instance.pgdata),
            certificates_dir=barman_config.certificates_dir,
            scratch_dir=barman_config.scratch_dir,
        )

        self.metrics = RecoveryWindowMetrics()
        self.retention = RetentionPolicyRunner(
            client=self.client,
            barman=barman,
            events=EventRecorder(self.client),
            namespace=instance.namespace,
            cluster_name=instance.cluster_name,
            pod_name=instance.pod_name,
            certificates_dir=barman_config.certificates_dir,
            scratch_dir=barman_config.scratch_dir,
            metrics=self.metrics,
        )
        self.scheduler = IntervalScheduler("retention", self.retention.cycle)

    async def start(self) -> None:
        """Start the sidecar and all components."""
        if self._running:
            logger.warning("Sidecar already running")
            return

        logger.info("Starting pgarchive sidecar")
        self.config.log_config()

        try:
            self.kube = KubernetesObjectClient.from_config(self.config.kubernetes)
            self.build(self.kube)
            self.wal_service.spool.ensure()

            if self.config.observability.metrics_enabled:
                self.metrics.start_server(self.config.observability.metrics_port)

            self._tasks.append(asyncio.create_task(self.client.run_cleanup(self._shutdown_event)))
            self._tasks.append(asyncio.create_task(self.scheduler.run()))

            self._running = True
            logger.info("pgarchive sidecar started successfully")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Sidecar startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Stop the sidecar gracefully."""
        if not self._running and not self._tasks and self.kube is None:
            return

        logger.info("Stopping pgarchive sidecar")
        self._shutdown_event.set()

        # The retention loop stops at its next sleep boundary
        if self.scheduler:
            self.scheduler.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        if self.kube:
            await self.kube.close()
            self.kube = None

        self._running = False
        logger.info("pgarchive sidecar stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = SidecarConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create sidecar
    sidecar = Sidecar(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        sidecar.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run sidecar
    try:
        loop.run_until_complete(sidecar.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(sidecar.stop())
        loop.close()


if __name__ == "__main__":
    main()
