"""
User-visible events on control-plane objects.

Retention failures surface as Warning events on the owning Cluster, the
same place the operator reports its own problems.

Invariants:
    - Recording an event never raises, a failure is only logged
    - Event names are generated by the API server from the object name
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from .api.schema import EVENT_V1
from .api.types import Cluster, Event, EventSource, ObjectMeta
from .client.base import ObjectClient
from .errors import SidecarError

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

DEFAULT_COMPONENT = "pgarchive-sidecar"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventRecorder:
    """Creates v1 Events about clusters.

    Example:
        >>> recorder = EventRecorder(client)
        >>> await recorder.warning(cluster, "RetentionPolicyFailed", "Retention policy failed")
    """

    def __init__(
        self,
        client: ObjectClient,
        component: str = DEFAULT_COMPONENT,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.component = component
        self._now = now

    async def record(self, cluster: Cluster, event_type: str, reason: str, message: str) -> None:
        timestamp = self._now()
        event = Event(
            metadata=ObjectMeta(
                generate_name=f"{cluster.metadata.name}.",
                namespace=cluster.metadata.namespace,
            ),
            involved_object=cluster.reference(),
            reason=reason,
            message=message,
            type=event_type,
            first_timestamp=timestamp,
            last_timestamp=timestamp,
            source=EventSource(component=self.component),
        )
        try:
            await self.client.create(EVENT_V1, event)
        except SidecarError as e:
            logger.warning(
                "Failed to record event",
                extra={"reason": reason, "cluster": cluster.metadata.name, "error": e.message},
            )

    async def normal(self, cluster: Cluster, reason: str, message: str) -> None:
        await self.record(cluster, EVENT_TYPE_NORMAL, reason, message)

    async def warning(self, cluster: Cluster, reason: str, message: str) -> None:
        await self.record(cluster, EVENT_TYPE_WARNING, reason, message)
