"""
Event-to-notification bridge.

Listens to the restaurant's bookings and orders change streams through the
ConnectionManager and turns qualifying row changes into notification
intents: inserts of new records, and updates that move a record into a
status staff must act on. Each intent carries the channel's connectivity
so the receiving device can mark notifications raised while offline.

Intents go to an OutboxSink. While the sink is unreachable they are kept
in a bounded buffer and flushed after the manager's next recovery pass.
"""

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Sequence

from device.src.api_client import ApiConnectionError, ApiError, ServiceBellApiClient
from device.src.change_stream import TopicFilter
from device.src.connection_manager import ChannelPhase, ConnectionManager, SubscriptionHandle

logger = logging.getLogger("servicebell.device.bridge")

DEDUP_WINDOW = 512
MAX_BUFFERED_INTENTS = 500

CONNECTIVITY_ONLINE = "online"
CONNECTIVITY_RECONNECTING = "reconnecting"
CONNECTIVITY_OFFLINE = "offline"


# ============================================================================
# Rules
# ============================================================================


@dataclass(frozen=True)
class NotificationRule:
    """
    Maps one kind of row change to a notification.

    An UPDATE rule with ``status`` fires only when the row crosses into
    that status, i.e. the old row had a different one.
    """

    table: str
    event: str
    notification_type: str
    title: str
    body: str
    status: Optional[str] = None
    priority: str = "normal"

    def matches(self, change: Dict[str, Any]) -> bool:
        if change.get("table") != self.table or change.get("type") != self.event:
            return False
        if self.status is None:
            return True
        new = change.get("new") or {}
        old = change.get("old") or {}
        return new.get("status") == self.status and old.get("status") != self.status

    def render_body(self, row: Dict[str, Any]) -> str:
        try:
            return self.body.format(**row)
        except (KeyError, IndexError, ValueError):
            return self.body.split("{")[0].strip() or self.title


DEFAULT_RULES: Sequence[NotificationRule] = (
    NotificationRule(
        table="bookings",
        event="INSERT",
        notification_type="new_booking",
        title="New Booking",
        body="New booking for {party_size} guests",
        priority="high",
    ),
    NotificationRule(
        table="bookings",
        event="UPDATE",
        notification_type="booking_confirmed",
        title="Booking Confirmed",
        body="Booking has been confirmed",
        status="confirmed",
    ),
    NotificationRule(
        table="orders",
        event="INSERT",
        notification_type="new_order",
        title="New Order",
        body="New order received",
        priority="high",
    ),
    NotificationRule(
        table="orders",
        event="UPDATE",
        notification_type="order_ready",
        title="Order Ready",
        body="Order is ready for pickup",
        status="ready",
        priority="high",
    ),
)

_ID_KEYS = {"bookings": "booking_id", "orders": "order_id"}


# ============================================================================
# Collaborators
# ============================================================================


class RecipientResolver(Protocol):
    def recipients_for(
        self, tenant_id: str, rule: NotificationRule, row: Dict[str, Any]
    ) -> List[str]:
        ...


class StaticRecipientResolver:
    """Sends every notification to a fixed list of staff ids."""

    def __init__(self, recipients: Iterable[str]):
        self._recipients = list(dict.fromkeys(recipients))

    def recipients_for(
        self, tenant_id: str, rule: NotificationRule, row: Dict[str, Any]
    ) -> List[str]:
        return list(self._recipients)


class OutboxSink(Protocol):
    async def enqueue(self, intent: Dict[str, Any]) -> Any:
        """
        Persist one intent.

        Raises:
            ApiConnectionError: If the outbox cannot be reached right now
        """
        ...


class ApiOutboxSink:
    """OutboxSink posting to ``POST /api/notifications/enqueue``."""

    def __init__(self, api_client: ServiceBellApiClient):
        self._api_client = api_client

    async def enqueue(self, intent: Dict[str, Any]) -> Any:
        try:
            return await self._api_client.enqueue(
                recipient_id=intent["recipient_id"],
                title=intent["title"],
                body=intent.get("body", ""),
                payload=intent.get("payload"),
                channel=intent.get("channel", "push"),
                priority=intent.get("priority", "normal"),
            )
        except ApiError as e:
            if e.status_code is not None and e.status_code >= 500:
                raise ApiConnectionError(str(e), status_code=e.status_code)
            raise


# ============================================================================
# Bridge
# ============================================================================


class NotificationBridge:
    """
    Turns booking and order changes of one restaurant into intents.

    Args:
        manager: Shared connection manager
        sink: Where intents are enqueued
        resolver: Chooses the staff who receive each notification
        tenant_id: Restaurant whose changes are watched
        rules: Change-to-notification rules
        enable_bookings: Watch the bookings table
        enable_orders: Watch the orders table
    """

    def __init__(
        self,
        manager: ConnectionManager,
        sink: OutboxSink,
        resolver: RecipientResolver,
        tenant_id: str,
        rules: Sequence[NotificationRule] = DEFAULT_RULES,
        enable_bookings: bool = True,
        enable_orders: bool = True,
        dedup_window: int = DEDUP_WINDOW,
        max_buffered: int = MAX_BUFFERED_INTENTS,
    ):
        self._manager = manager
        self._sink = sink
        self._resolver = resolver
        self.tenant_id = tenant_id
        self._rules = list(rules)
        self._tables = [
            table
            for table, enabled in (("bookings", enable_bookings), ("orders", enable_orders))
            if enabled
        ]
        self._dedup_window = dedup_window
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._buffer: Deque[Dict[str, Any]] = deque(maxlen=max_buffered)
        self._handles: List[SubscriptionHandle] = []
        self._recovery_hooked = False

    @property
    def channel(self) -> str:
        return f"restaurant:{self.tenant_id}"

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def start(self) -> None:
        """Subscribe to the watched tables. Needs a running event loop."""
        if self._handles:
            return
        row_filter = f"restaurant_id=eq.{self.tenant_id}"
        for table in self._tables:
            handle = self._manager.subscribe(
                self.channel, TopicFilter(table=table, row_filter=row_filter), self.handle_change
            )
            self._handles.append(handle)
        if not self._recovery_hooked:
            self._manager.on_recovered(self.flush)
            self._recovery_hooked = True
        logger.info("Bridge watching %s for restaurant %s", ", ".join(self._tables), self.tenant_id)

    async def stop(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            await self._manager.unsubscribe(handle)

    def connectivity(self) -> str:
        phase = self._manager.phase(self.channel)
        if phase is ChannelPhase.CONNECTED:
            return CONNECTIVITY_ONLINE
        if phase is ChannelPhase.CONNECTING:
            return CONNECTIVITY_RECONNECTING
        return CONNECTIVITY_OFFLINE

    def build_intents(self, change: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Intents for one change, one per recipient of every matching rule."""
        row = change.get("new") or {}
        row_id = row.get("id")
        if row_id is None:
            return []

        intents = []
        for rule in self._rules:
            if not rule.matches(change):
                continue
            id_key = _ID_KEYS.get(rule.table, "record_id")
            for recipient in self._resolver.recipients_for(self.tenant_id, rule, row):
                intents.append(
                    {
                        "recipient_id": recipient,
                        "title": rule.title,
                        "body": rule.render_body(row),
                        "priority": rule.priority,
                        "channel": "push",
                        "payload": {
                            "type": rule.notification_type,
                            id_key: row_id,
                            "restaurant_id": self.tenant_id,
                            "url": f"/{rule.table}/{row_id}",
                            "idempotency_key": (
                                f"{rule.table}:{row_id}:{rule.notification_type}:{recipient}"
                            ),
                            "connectivity": self.connectivity(),
                        },
                    }
                )
        return intents

    async def handle_change(self, change: Dict[str, Any]) -> int:
        """
        Enqueue the intents of one change.

        Returns:
            Number of intents accepted (sent or buffered)
        """
        accepted = 0
        for intent in self.build_intents(change):
            key = intent["payload"]["idempotency_key"]
            if self._is_duplicate(key):
                logger.debug("Skipping duplicate intent %s", key)
                continue
            if await self._send_or_buffer(intent):
                accepted += 1
        return accepted

    async def flush(self) -> int:
        """
        Retry buffered intents in order, stopping at the first that still
        cannot be delivered.

        Returns:
            Number of intents flushed
        """
        flushed = 0
        while self._buffer:
            intent = self._buffer[0]
            try:
                await self._sink.enqueue(intent)
            except ApiConnectionError as e:
                logger.info("Outbox still unreachable, %d intents buffered: %s", len(self._buffer), e)
                break
            except ApiError as e:
                logger.error(
                    "Dropping buffered intent %s rejected by server: %s",
                    intent["payload"]["idempotency_key"],
                    e,
                )
            else:
                flushed += 1
            self._buffer.popleft()
        if flushed:
            logger.info("Flushed %d buffered intents", flushed)
        return flushed

    def _is_duplicate(self, key: str) -> bool:
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        while len(self._seen) > self._dedup_window:
            self._seen.popitem(last=False)
        return False

    async def _send_or_buffer(self, intent: Dict[str, Any]) -> bool:
        if self._buffer:
            # Keep order behind intents already waiting
            self._buffer.append(intent)
            return True
        try:
            await self._sink.enqueue(intent)
        except ApiConnectionError as e:
            if len(self._buffer) == self._buffer.maxlen:
                logger.warning("Intent buffer full, dropping oldest buffered intent")
            self._buffer.append(intent)
            logger.warning("Outbox unreachable, buffered intent: %s", e)
            return True
        except ApiError as e:
            logger.error(
                "Outbox rejected intent %s: %s", intent["payload"]["idempotency_key"], e
            )
            return False
        return True
