"""
Configuration management for the pgarchive sidecar.

All configuration is done via environment variables - no config files inside containers.
The archive configuration itself (destination, credentials, retention) lives in
ObjectStore objects on the control plane; this module only covers what the
sidecar process needs to find them.

Invariants:
    - All settings have sensible defaults for local development
    - The instance identity (namespace, cluster, pod) MUST be set in production
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Settings read on every call (like the cache TTL) must stay out of
      the frozen dataclasses, see client.cache.env_ttl_source
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"


@dataclass(frozen=True)
class InstanceConfig:
    """Identity and local paths of the PostgreSQL instance.

    Attributes:
        namespace: Namespace of the cluster
        cluster_name: Name of the Cluster object
        pod_name: Name of this instance (its pod)
        pgdata: PostgreSQL data directory
        spool_directory: Directory holding prefetched WAL files
        archive_spool_directory: Directory of markers for WAL files archived ahead
    """

    namespace: str = ""
    cluster_name: str = ""
    pod_name: str = ""
    pgdata: str = "/var/lib/postgresql/data/pgdata"
    spool_directory: str = "/controller/wal-restore-spool"
    archive_spool_directory: str = "/controller/wal-archive-spool"

    @classmethod
    def from_env(cls) -> InstanceConfig:
        """Load configuration from environment variables."""
        return cls(
            namespace=os.getenv("NAMESPACE", ""),
            cluster_name=os.getenv("CLUSTER_NAME", ""),
            pod_name=os.getenv("POD_NAME", ""),
            pgdata=os.getenv("PGDATA", "/var/lib/postgresql/data/pgdata"),
            spool_directory=os.getenv("SPOOL_DIRECTORY", "/controller/wal-restore-spool"),
            archive_spool_directory=os.getenv(
                "ARCHIVE_SPOOL_DIRECTORY", "/controller/wal-archive-spool"
            ),
        )


@dataclass(frozen=True)
class BarmanConfig:
    """Archiving tool configuration.

    Attributes:
        bin_dir: Directory of the barman-cloud executables ("" = search $PATH)
        certificates_dir: Directory holding one endpoint CA bundle per ObjectStore
        scratch_dir: Writable directory for credential files the tools read
        stderr_tail_lines: Lines of tool error output kept in errors
    """

    bin_dir: str = ""
    certificates_dir: str = "/barman-certificates"
    scratch_dir: str = "/controller"
    stderr_tail_lines: int = 20

    @classmethod
    def from_env(cls) -> BarmanConfig:
        """Load configuration from environment variables."""
        return cls(
            bin_dir=os.getenv("BARMAN_BIN_DIR", ""),
            certificates_dir=os.getenv("BARMAN_CERTIFICATES_DIR", "/barman-certificates"),
            scratch_dir=os.getenv("BARMAN_SCRATCH_DIR", "/controller"),
            stderr_tail_lines=int(os.getenv("BARMAN_STDERR_TAIL_LINES", "20")),
        )


@dataclass(frozen=True)
class SecretCacheConfig:
    """Secret cache configuration.

    The TTL recorded here is only the startup value used for logging;
    the cache re-reads SECRET_CACHE_TTL_SECONDS on every call.

    Attributes:
        ttl_seconds: Freshness window of cached secrets (0 disables caching)
        cleanup_interval_seconds: Interval of the expired-entry sweep
    """

    ttl_seconds: float = 10.0
    cleanup_interval_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> SecretCacheConfig:
        """Load configuration from environment variables."""
        return cls(
            ttl_seconds=float(os.getenv("SECRET_CACHE_TTL_SECONDS", "10")),
            cleanup_interval_seconds=float(os.getenv("SECRET_CACHE_CLEANUP_SECONDS", "30")),
        )


@dataclass(frozen=True)
class KubernetesConfig:
    """Kubernetes API server access.

    Attributes:
        api_server: Base URL of the API server
        token_path: Service account token file
        ca_path: Service account CA bundle
        timeout_seconds: Request timeout
    """

    api_server: str = "https://kubernetes.default.svc"
    token_path: str = f"{SERVICE_ACCOUNT_DIR}/token"
    ca_path: str = f"{SERVICE_ACCOUNT_DIR}/ca.crt"
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> KubernetesConfig:
        """Load configuration from environment variables."""
        host = os.getenv("KUBERNETES_SERVICE_HOST")
        port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
        api_server = f"https://{host}:{port}" if host else "https://kubernetes.default.svc"
        return cls(
            api_server=os.getenv("KUBERNETES_API_SERVER", api_server),
            token_path=os.getenv("KUBERNETES_TOKEN_PATH", f"{SERVICE_ACCOUNT_DIR}/token"),
            ca_path=os.getenv("KUBERNETES_CA_PATH", f"{SERVICE_ACCOUNT_DIR}/ca.crt"),
            timeout_seconds=float(os.getenv("KUBERNETES_TIMEOUT_SECONDS", "30")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
        metrics_enabled: Whether to expose Prometheus metrics
        metrics_port: Port for metrics endpoint
    """

    log_level: str = "INFO"
    log_format: str = "json"
    metrics_enabled: bool = True
    metrics_port: int = 9090

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            metrics_enabled=os.getenv("METRICS_ENABLED", "true").lower() == "true",
            metrics_port=int(os.getenv("METRICS_PORT", "9090")),
        )


@dataclass
class SidecarConfig:
    """Complete sidecar configuration.

    Attributes:
        instance: Instance identity and paths
        barman: Archiving tool configuration
        secret_cache: Secret cache configuration
        kubernetes: API server access
        observability: Observability configuration
    """

    instance: InstanceConfig = field(default_factory=InstanceConfig)
    barman: BarmanConfig = field(default_factory=BarmanConfig)
    secret_cache: SecretCacheConfig = field(default_factory=SecretCacheConfig)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> SidecarConfig:
        """Load complete configuration from environment variables.

        Returns:
            SidecarConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        try:
            config = cls(
                instance=InstanceConfig.from_env(),
                barman=BarmanConfig.from_env(),
                secret_cache=SecretCacheConfig.from_env(),
                kubernetes=KubernetesConfig.from_env(),
                observability=ObservabilityConfig.from_env(),
            )
        except ValueError as e:
            raise ConfigurationError(f"invalid numeric setting: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        missing = [
            name
            for name, value in (
                ("NAMESPACE", self.instance.namespace),
                ("CLUSTER_NAME", self.instance.cluster_name),
                ("POD_NAME", self.instance.pod_name),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"missing required settings: {', '.join(missing)}",
                messages=[f"{name} is required" for name in missing],
            )

        if self.secret_cache.ttl_seconds < 0:
            raise ConfigurationError("SECRET_CACHE_TTL_SECONDS must not be negative")
        if self.secret_cache.cleanup_interval_seconds <= 0:
            raise ConfigurationError("SECRET_CACHE_CLEANUP_SECONDS must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if not os.path.exists(self.instance.spool_directory):
            logger.warning(
                f"Spool directory does not exist: {self.instance.spool_directory}. "
                "It will be created on first restore."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Sidecar configuration loaded",
            extra={
                "namespace": self.instance.namespace,
                "cluster_name": self.instance.cluster_name,
                "pod_name": self.instance.pod_name,
                "pgdata": self.instance.pgdata,
                "spool_directory": self.instance.spool_directory,
                "barman_bin_dir": self.barman.bin_dir or "$PATH",
                "secret_cache_ttl_seconds": self.secret_cache.ttl_seconds,
                "api_server": self.kubernetes.api_server,
                "log_level": self.observability.log_level,
            },
        )
