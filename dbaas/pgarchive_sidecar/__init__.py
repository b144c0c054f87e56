"""
pgarchive sidecar - WAL archiving and backup retention for PostgreSQL instances.

This package runs next to every PostgreSQL instance of a cluster and
implements:
- WAL archive and restore against an object store through barman-cloud
- Parallel prefetch of WAL segments into a local spool, with an
  end-of-stream flag telling recovery when to switch to streaming
- A retention loop enforcing the retention policy, reconciling Backup
  objects with the remote catalog and publishing the recovery window
- A TTL cache for the secrets holding object store credentials

Architecture:
    instance manager ──archive/restore──▶ WalService ──▶ barman-cloud-wal-*
                                             │
                                             ├──▶ topology (which archive)
                                             ├──▶ secret cache ──▶ API server
                                             └──▶ spool directory

    IntervalScheduler ──▶ RetentionPolicyRunner ──▶ barman-cloud-backup-*
                                             └──▶ Backup / ObjectStore status

Invariants:
    - The remote catalog is the source of truth for Backup objects
    - Only the requested WAL file decides the outcome of a restore
    - Retention runs on the current primary only

How to change safely:
    - Keep the tool exit code classification stable, recovery depends on it
    - Keep plugin names and metadata keys stable (see metadata.py)

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
