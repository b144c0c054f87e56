"""
Control-plane object access.

Implementations of the ObjectClient protocol:
- KubernetesObjectClient: REST client for the API server
- InMemoryObjectClient: Testing and local development
- CachingObjectClient: TTL read-through cache wrapping either of them
"""

from .base import ObjectClient, ObjectKey
from .cache import CachingObjectClient, env_ttl_source
from .kube import KubernetesObjectClient
from .memory import InMemoryObjectClient

__all__ = [
    "ObjectClient",
    "ObjectKey",
    "CachingObjectClient",
    "env_ttl_source",
    "KubernetesObjectClient",
    "InMemoryObjectClient",
]
