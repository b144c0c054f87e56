"""
Integration with the barman-cloud archiving tools.

- command: argument builders, exit-code classification, BarmanCloud facade
- credentials: tool environment assembled from ObjectStore secrets
- catalog: parsed output of barman-cloud-backup-list
"""

from .catalog import BackupCatalog, BackupInfo
from .command import BarmanCloud, SubprocessToolRunner, ToolResult, ToolRunner, retention_policy_to_barman
from .credentials import build_credentials_env

__all__ = [
    "BackupCatalog",
    "BackupInfo",
    "BarmanCloud",
    "SubprocessToolRunner",
    "ToolResult",
    "ToolRunner",
    "retention_policy_to_barman",
    "build_credentials_env",
]
