"""
Prometheus gauges for the recovery window.

Three gauges, all unix timestamps, zero when unknown:
    - <domain>_first_recoverability_point
    - <domain>_last_available_backup_timestamp
    - <domain>_last_failed_backup_timestamp

where <domain> is the plugin name with dots and dashes replaced by
underscores. Values come from the ObjectStore status the retention
loop maintains, so they are refreshed once per retention cycle.

How to change safely:
    - Metric names are a public contract for dashboards and alerts
    - Use a dedicated CollectorRegistry per instance, tests create many
"""

from __future__ import annotations

import logging
from datetime import datetime

from prometheus_client import CollectorRegistry, Gauge, start_http_server

from .api.types import ObjectStore, RecoveryWindow
from .metadata import PLUGIN_NAME

logger = logging.getLogger(__name__)


def _metric_name(name: str) -> str:
    domain = PLUGIN_NAME.replace(".", "_").replace("-", "_")
    return f"{domain}_{name.replace('.', '_').replace('-', '_')}"


FIRST_RECOVERABILITY_POINT = _metric_name("first_recoverability_point")
LAST_AVAILABLE_BACKUP_TIMESTAMP = _metric_name("last_available_backup_timestamp")
LAST_FAILED_BACKUP_TIMESTAMP = _metric_name("last_failed_backup_timestamp")


def _timestamp(value: datetime | None) -> float:
    return float(int(value.timestamp())) if value is not None else 0.0


class RecoveryWindowMetrics:
    """Recovery window gauges of one server.

    Attributes:
        registry: Registry the gauges are registered in
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.first_recoverability_point = Gauge(
            FIRST_RECOVERABILITY_POINT,
            "The first point of recoverability for the cluster as a unix timestamp",
            registry=self.registry,
        )
        self.last_available_backup = Gauge(
            LAST_AVAILABLE_BACKUP_TIMESTAMP,
            "The last available backup as a unix timestamp",
            registry=self.registry,
        )
        self.last_failed_backup = Gauge(
            LAST_FAILED_BACKUP_TIMESTAMP,
            "The last failed backup as a unix timestamp",
            registry=self.registry,
        )

    def observe(self, window: RecoveryWindow | None) -> None:
        """Set the gauges from ``window``, zeroing them when it is None."""
        window = window or RecoveryWindow()
        self.first_recoverability_point.set(_timestamp(window.first_recoverability_point))
        self.last_available_backup.set(_timestamp(window.last_successful_backup_time))
        self.last_failed_backup.set(_timestamp(window.last_failed_backup_time))

    def collect_from(self, store: ObjectStore, server_name: str) -> None:
        self.observe(store.status.server_recovery_window.get(server_name))

    def value(self, name: str) -> float:
        """Current value of a gauge by metric name."""
        result = self.registry.get_sample_value(name)
        return 0.0 if result is None else result

    def start_server(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
        logger.info("Metrics endpoint started", extra={"port": port})
