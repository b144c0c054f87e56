"""
Control-plane object models and schemas.

Payloads are decoded only through an explicit ObjectSchema passed by the
caller, e.g. ``CLUSTER_V1.decode(request.cluster_definition)``.
"""

from .schema import (
    BACKUP_V1,
    CLUSTER_V1,
    EVENT_V1,
    OBJECT_STORE_V1,
    SECRET_V1,
    ObjectKind,
    ObjectSchema,
    decode_object,
)
from .types import (
    BACKUP_METHOD_PLUGIN,
    BACKUP_PHASE_COMPLETED,
    Backup,
    BarmanObjectStoreConfiguration,
    Cluster,
    Event,
    ObjectMeta,
    ObjectStore,
    RecoveryWindow,
    Secret,
)

__all__ = [
    "ObjectKind",
    "ObjectSchema",
    "decode_object",
    "CLUSTER_V1",
    "BACKUP_V1",
    "OBJECT_STORE_V1",
    "SECRET_V1",
    "EVENT_V1",
    "Backup",
    "BarmanObjectStoreConfiguration",
    "Cluster",
    "Event",
    "ObjectMeta",
    "ObjectStore",
    "RecoveryWindow",
    "Secret",
    "BACKUP_METHOD_PLUGIN",
    "BACKUP_PHASE_COMPLETED",
]
