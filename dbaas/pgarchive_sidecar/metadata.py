"""
Well-known names shared by the sidecar components.

These identifiers are part of the contract with the PostgreSQL operator
and with backups taken by earlier releases, so they must not change.
"""

# Plugin name as seen from the instance manager
PLUGIN_NAME = "barman-cloud.cloudnative-pg.io"

# Plugin parameters read from the cluster definition
PARAM_ARCHIVE_NAME = "barmanObjectName"
PARAM_SERVER_NAME = "serverName"

# Keys of the metadata stored in Backup objects taken by this plugin
BACKUP_METADATA_CLUSTER_UID = "clusterUID"
BACKUP_METADATA_PLUGIN_NAME = "pluginName"

# File in PGDATA that, if present, requires the archiver to check that
# the destination archive is empty before the first WAL is pushed
CHECK_EMPTY_WAL_ARCHIVE_FILE = ".check-empty-wal-archive"

# Annotation disabling the empty-archive check on a cluster
SKIP_EMPTY_WAL_ARCHIVE_CHECK_ANNOTATION = "cnpg.io/skipEmptyWalArchiveCheck"

# Sentinel stored in the spool directory once a prefetch hit the end of
# the archived WAL stream
END_OF_WAL_STREAM_FLAG = "end-of-wal-stream"

# Retention loop interval used when none is configured or after a failure
DEFAULT_RETENTION_INTERVAL_SECONDS = 5 * 60
