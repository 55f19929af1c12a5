"""
In-process change feed for realtime row-change streams.

Domain services publish row changes (bookings, orders, ...) per tenant; the
``/api/changes/stream`` endpoint relays them to connected devices as
Server-Sent Events. Each subscriber owns a bounded asyncio.Queue; a slow
subscriber loses its oldest events rather than blocking publishers, and
the device recovers missed state through its own refresh on reconnect.

Usage:
    feed = ChangeFeed()

    queue = await feed.subscribe("rest_1")
    try:
        event = await queue.get()
    finally:
        feed.unsubscribe("rest_1", queue)

    await feed.publish("rest_1", {"table": "orders", "type": "INSERT", "new": {...}})
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from backend.src.utils.logging_config import get_logger

logger = get_logger("changes")

DEFAULT_QUEUE_SIZE = 256


class ChangeFeed:
    """
    Fan-out of change events to per-tenant subscriber queues.

    Maintains a mapping of tenant ids to the queues of the devices streaming
    that tenant's changes, so several devices of one restaurant receive the
    same events.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()
        self._queue_size = queue_size
        self._sequence = 0

    async def subscribe(self, tenant_id: str) -> asyncio.Queue:
        """
        Register a new subscriber queue for a tenant.

        Returns:
            The queue events for this tenant will be put on
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            self._subscribers.setdefault(tenant_id, set()).add(queue)
            logger.debug(
                f"Change stream subscribed for tenant {tenant_id}. "
                f"Total subscribers: {len(self._subscribers[tenant_id])}"
            )
        return queue

    def unsubscribe(self, tenant_id: str, queue: asyncio.Queue) -> None:
        """
        Remove a subscriber queue.

        Synchronous so it can run from a streaming response's cleanup.
        """
        queues = self._subscribers.get(tenant_id)
        if queues is None:
            return
        queues.discard(queue)
        logger.debug(
            f"Change stream unsubscribed for tenant {tenant_id}. "
            f"Remaining subscribers: {len(queues)}"
        )
        if not queues:
            del self._subscribers[tenant_id]

    async def publish(self, tenant_id: str, change: Dict[str, Any]) -> int:
        """
        Publish a change to every subscriber of a tenant.

        The event is stamped with a feed sequence number and commit time.

        Args:
            tenant_id: Tenant the changed row belongs to
            change: {"table", "type", "new", "old"} as produced by the publisher

        Returns:
            Number of subscribers the event was queued for
        """
        self._sequence += 1
        event = {
            **change,
            "tenant_id": tenant_id,
            "sequence": self._sequence,
            "commit_timestamp": change.get("commit_timestamp")
            or datetime.now(timezone.utc).isoformat(),
        }

        queues = self._subscribers.get(tenant_id, set()).copy()
        for queue in queues:
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning(
                    "Change stream subscriber lagging, dropped oldest event",
                    extra={"tenant_id": tenant_id, "dropped_sequence": dropped.get("sequence")},
                )
            queue.put_nowait(event)

        logger.debug(
            "Published change event",
            extra={
                "tenant_id": tenant_id,
                "table": change.get("table"),
                "type": change.get("type"),
                "subscribers": len(queues),
            },
        )
        return len(queues)

    def get_subscriber_count(self, tenant_id: Optional[str] = None) -> int:
        """
        Get the number of connected stream subscribers.

        Args:
            tenant_id: Count one tenant's subscribers; all tenants when None
        """
        if tenant_id:
            return len(self._subscribers.get(tenant_id, set()))
        return sum(len(queues) for queues in self._subscribers.values())
