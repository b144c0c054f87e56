"""
WAL archive and restore for one PostgreSQL instance.

- segment: WAL file names and segment arithmetic
- spool: local restore / archive spool directories
- restorer: parallel downloads into the restore spool
- archiver: pushes through barman-cloud-wal-archive
- service: request handlers tying topology, credentials and tools together
"""

from .archiver import ArchiveResult, ArchiveStatus, WalArchiver
from .restorer import RestoreOutcome, RestoreResult, WalRestorer
from .segment import Segment, is_segment_name, is_wal_file
from .service import RestoreSummary, WalService, gather_wal_files_to_restore
from .spool import WalSpool

__all__ = [
    "ArchiveResult",
    "ArchiveStatus",
    "WalArchiver",
    "RestoreOutcome",
    "RestoreResult",
    "WalRestorer",
    "Segment",
    "is_segment_name",
    "is_wal_file",
    "RestoreSummary",
    "WalService",
    "gather_wal_files_to_restore",
    "WalSpool",
]
