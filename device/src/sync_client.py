"""
Device sync and acknowledgement client.

Push delivery alone is not reliable, so the device also:
- heartbeats every 30-60 seconds; a ``check_notifications`` command from
  the server triggers a sync pull
- pulls queued notifications, presents them and reports them delivered
- reports clicks, which acknowledge the notification locally and stop
  its escalation
- re-presents unacknowledged notifications every ping interval up to
  ``max_pings`` times

A failed heartbeat or sync is logged and simply retried on the next beat.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

from device.src import __version__
from device.src.api_client import ApiError, AuthenticationError, ServiceBellApiClient
from device.src.config import DEFAULT_PING_INTERVAL, clamp_heartbeat_interval
from device.src.connection_manager import LivenessSignal
from device.src.notification_store import NotificationStore, StoredNotification

logger = logging.getLogger("servicebell.device.sync")

OFFLINE_PREFIX = "[Offline] "
COMMAND_CHECK_NOTIFICATIONS = "check_notifications"

# Message bus types
MSG_GET_UNACKNOWLEDGED = "GET_UNACKNOWLEDGED_NOTIFICATIONS"
MSG_ACKNOWLEDGE = "ACKNOWLEDGE_NOTIFICATION"
MSG_ACKNOWLEDGE_ALL = "ACKNOWLEDGE_ALL_NOTIFICATIONS"
MSG_TOGGLE_PERSISTENT = "TOGGLE_PERSISTENT_NOTIFICATIONS"
MSG_CLEANUP = "CLEANUP_OLD_NOTIFICATIONS"


def display_title(notification: StoredNotification) -> str:
    """Title as shown to staff, marked when raised while the producer was offline."""
    connectivity = notification.data.get("connectivity", "online")
    if connectivity != "online" and not notification.title.startswith(OFFLINE_PREFIX):
        return f"{OFFLINE_PREFIX}{notification.title}"
    return notification.title


class Presenter(Protocol):
    def present(self, notification: StoredNotification, title: str, ping: int) -> None:
        """Show a notification. ``ping`` is 0 for the first showing."""
        ...


class LoggingPresenter:
    """Presenter for headless devices: writes notifications to the log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logging.getLogger("servicebell.device.notifications")

    def present(self, notification: StoredNotification, title: str, ping: int) -> None:
        suffix = f" (reminder {ping}/{notification.max_pings})" if ping else ""
        self._log.warning("%s: %s%s", title, notification.body, suffix)


class DeviceSyncClient:
    """
    Heartbeat, sync pull, acknowledgement and escalation for one device.

    Args:
        api_client: Client for the notification endpoints
        store: Local notification store
        presenter: Shows notifications to staff
        heartbeat_interval: Seconds between heartbeats (clamped to 30-60)
        ping_interval: Seconds between re-presentations
        endpoint: Push endpoint of this device, refreshed by heartbeats
        on_liveness: Receives ONLINE when the server is reachable again and
            RESUMED when the process slept through several beats
    """

    def __init__(
        self,
        api_client: ServiceBellApiClient,
        store: NotificationStore,
        presenter: Optional[Presenter] = None,
        heartbeat_interval: float = 30,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        endpoint: Optional[str] = None,
        on_liveness: Optional[Callable[[LivenessSignal], None]] = None,
    ):
        self._api = api_client
        self.store = store
        self._presenter = presenter or LoggingPresenter()
        self.heartbeat_interval = clamp_heartbeat_interval(heartbeat_interval)
        self.ping_interval = ping_interval
        self._endpoint = endpoint
        self._on_liveness = on_liveness
        self._reachable = True
        self._last_beat_wall: Optional[float] = None

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def heartbeat(self) -> Optional[Dict[str, Any]]:
        """
        Send one heartbeat and follow its command.

        Returns:
            The server response, or None if the server was unreachable

        Raises:
            AuthenticationError: If the access token is rejected
        """
        now = time.time()
        if self._last_beat_wall is not None and now - self._last_beat_wall > 3 * self.heartbeat_interval:
            logger.info("Woke up after %.0fs without heartbeats", now - self._last_beat_wall)
            self._signal(LivenessSignal.RESUMED)
        self._last_beat_wall = now

        try:
            response = await self._api.heartbeat(
                timestamp=int(now * 1000),
                client_version=__version__,
                endpoint=self._endpoint,
            )
        except AuthenticationError:
            raise
        except ApiError as e:
            if self._reachable:
                logger.warning("Heartbeat failed, will retry next beat: %s", e)
            self._reachable = False
            return None

        if not self._reachable:
            logger.info("Server reachable again")
            self._reachable = True
            self._signal(LivenessSignal.ONLINE)

        interval = response.get("heartbeat_interval")
        if interval:
            self.heartbeat_interval = clamp_heartbeat_interval(interval)

        if response.get("command") == COMMAND_CHECK_NOTIFICATIONS:
            logger.debug("Server reports %s pending notifications", response.get("pending"))
            await self.sync_now()
        return response

    async def heartbeat_loop(self, shutdown_event: asyncio.Event) -> None:
        """Heartbeat until ``shutdown_event`` is set."""
        while not shutdown_event.is_set():
            await self.heartbeat()
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass

    def _signal(self, signal: LivenessSignal) -> None:
        if self._on_liveness is None:
            return
        try:
            self._on_liveness(signal)
        except Exception:
            logger.exception("Liveness callback failed")

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def sync_now(self) -> int:
        """
        Pull queued notifications, present and confirm each.

        Returns:
            Number of notifications received, 0 if the server was unreachable
        """
        try:
            response = await self._api.sync()
        except AuthenticationError:
            raise
        except ApiError as e:
            logger.warning("Sync failed, will retry next beat: %s", e)
            return 0

        notifications = response.get("notifications", [])
        for message in notifications:
            await self._receive(message)
        if notifications:
            logger.info("Synced %d notifications", len(notifications))
        return len(notifications)

    async def handle_push(self, message: Dict[str, Any]) -> None:
        """Entry point for a push message: present it, then pull anything else waiting."""
        await self._receive(message)
        try:
            response = await self._api.check_pending()
        except AuthenticationError:
            raise
        except ApiError as e:
            logger.warning("Check pending failed: %s", e)
            return
        for pending in response.get("notifications", []):
            await self._receive(pending)

    async def handle_click(self, notification_id: int) -> bool:
        """
        Staff opened a notification: acknowledge it locally and report the click.

        Returns:
            True if it was acknowledged by this call
        """
        acknowledged = self.store.acknowledge(notification_id)
        await self._track("clicked", notification_id)
        return acknowledged

    async def _receive(self, message: Dict[str, Any]) -> None:
        notification, created = self.store.add(message)
        if created:
            self._present(notification, ping=0)
        await self._track("delivered", notification.id)

    async def _track(self, event_type: str, notification_id: int) -> None:
        try:
            await self._api.track_delivery(event_type, notification_id)
        except ApiError as e:
            logger.warning("Failed to report %s for notification %s: %s", event_type, notification_id, e)

    def _present(self, notification: StoredNotification, ping: int) -> None:
        try:
            self._presenter.present(notification, display_title(notification), ping)
        except Exception:
            logger.exception("Presenter failed for notification %s", notification.id)

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    def escalate(self, now: Optional[datetime] = None) -> int:
        """
        Re-present unacknowledged notifications that are due.

        Returns:
            Number of notifications re-presented
        """
        if not self.store.persistent_enabled:
            return 0
        due = self.store.due_for_ping(timedelta(seconds=self.ping_interval), now=now)
        for notification in due:
            self.store.record_ping(notification.id, now=now)
            self._present(notification, ping=notification.ping_count)
            if notification.exhausted:
                logger.info(
                    "Giving up on notification %s after %d reminders",
                    notification.id,
                    notification.ping_count,
                )
        return len(due)

    async def escalation_loop(self, shutdown_event: asyncio.Event) -> None:
        """Check for due reminders every few seconds until shutdown."""
        tick = max(1.0, min(5.0, self.ping_interval / 2))
        while not shutdown_event.is_set():
            self.escalate()
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=tick)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Message bus
    # -------------------------------------------------------------------------

    async def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Handle a request from the local UI.

        Arguments may sit at the top level or under ``data``.

        Returns:
            Reply message, or None for unknown types
        """
        message_type = message.get("type")
        args = message.get("data") or message

        if message_type == MSG_GET_UNACKNOWLEDGED:
            return {
                "type": "UNACKNOWLEDGED_NOTIFICATIONS",
                "notifications": [
                    n.model_dump(mode="json") for n in self.store.unacknowledged()
                ],
            }

        if message_type == MSG_ACKNOWLEDGE:
            try:
                notification_id = int(args["notificationId"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring %s without a valid notificationId: %r", message_type, args)
                return {"type": "ERROR", "error": "notificationId must be an integer"}
            acknowledged = await self.handle_click(notification_id)
            return {
                "type": "NOTIFICATION_ACKNOWLEDGED",
                "notificationId": notification_id,
                "acknowledged": acknowledged,
            }

        if message_type == MSG_ACKNOWLEDGE_ALL:
            ids = self.store.acknowledge_all()
            for notification_id in ids:
                await self._track("clicked", notification_id)
            return {"type": "ALL_NOTIFICATIONS_ACKNOWLEDGED", "count": len(ids)}

        if message_type == MSG_TOGGLE_PERSISTENT:
            enabled = bool(args.get("enabled", True))
            self.store.set_persistent(enabled)
            logger.info("Persistent notifications %s", "enabled" if enabled else "disabled")
            return {"type": "PERSISTENT_NOTIFICATIONS_TOGGLED", "enabled": enabled}

        if message_type == MSG_CLEANUP:
            return {"type": "OLD_NOTIFICATIONS_CLEANED", "removed": self.store.cleanup()}

        logger.warning("Ignoring unknown message type: %s", message_type)
        return None
