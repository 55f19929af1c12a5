"""
Local store of received notifications.

Keeps every notification the device presented until it is acknowledged,
so the escalation loop can re-present ("ping") it. Stored as a single JSON
file at {data_dir}/notifications.json.
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from device.src.config import DEFAULT_MAX_PINGS, get_default_data_dir

logger = logging.getLogger("servicebell.device.store")

STORE_FILENAME = "notifications.json"
CLEANUP_AGE = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoredNotification(BaseModel):
    """A notification as presented on this device."""

    id: int
    type: str = "notification"
    title: str
    body: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime
    ping_count: int = Field(default=0, ge=0)
    last_ping_at: Optional[datetime] = None
    max_pings: int = Field(default=DEFAULT_MAX_PINGS, ge=0)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None

    @property
    def tag(self) -> str:
        return f"servicebell-{self.id}"

    @property
    def exhausted(self) -> bool:
        """All re-presentations used up without an acknowledgement."""
        return not self.acknowledged and self.ping_count >= self.max_pings


class NotificationStoreState(BaseModel):
    persistent_enabled: bool = True
    notifications: List[StoredNotification] = Field(default_factory=list)


class NotificationStore:
    """
    JSON-file backed notification store.

    Every mutation is written through to disk. A missing or unreadable
    file starts an empty store.

    Args:
        path: Store file (defaults to the platform data directory)
        max_pings: Re-presentations granted to new notifications
    """

    def __init__(self, path: Optional[Path] = None, max_pings: int = DEFAULT_MAX_PINGS):
        self.path = Path(path) if path else get_default_data_dir() / STORE_FILENAME
        self.max_pings = max_pings
        self._state = self._load()

    def _load(self) -> NotificationStoreState:
        if not self.path.exists():
            return NotificationStoreState()
        try:
            return NotificationStoreState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except Exception as e:
            logger.warning("Failed to load notification store %s: %s", self.path, e)
            return NotificationStoreState()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(self._state.model_dump_json(indent=2), encoding="utf-8")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def persistent_enabled(self) -> bool:
        return self._state.persistent_enabled

    def get(self, notification_id: int) -> Optional[StoredNotification]:
        for notification in self._state.notifications:
            if notification.id == notification_id:
                return notification
        return None

    def all(self) -> List[StoredNotification]:
        return list(self._state.notifications)

    def unacknowledged(self) -> List[StoredNotification]:
        return [n for n in self._state.notifications if not n.acknowledged]

    def due_for_ping(
        self, interval: timedelta, now: Optional[datetime] = None
    ) -> List[StoredNotification]:
        """Unacknowledged notifications with pings left whose last showing is ``interval`` old."""
        now = now or _utcnow()
        due = []
        for notification in self.unacknowledged():
            if notification.exhausted:
                continue
            last_shown = notification.last_ping_at or notification.received_at
            if now - last_shown >= interval:
                due.append(notification)
        return due

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add(
        self, message: Dict[str, Any], now: Optional[datetime] = None
    ) -> Tuple[StoredNotification, bool]:
        """
        Record a received notification ``{id, title, body, data}``.

        Returns:
            (stored notification, created). A notification already in the
            store is returned unchanged with created=False.
        """
        existing = self.get(int(message["id"]))
        if existing is not None:
            return existing, False

        data = message.get("data") or {}
        notification = StoredNotification(
            id=int(message["id"]),
            type=data.get("type", "notification"),
            title=message.get("title", ""),
            body=message.get("body", ""),
            data=data,
            received_at=now or _utcnow(),
            max_pings=self.max_pings,
        )
        self._state.notifications.append(notification)
        self._save()
        return notification, True

    def record_ping(self, notification_id: int, now: Optional[datetime] = None) -> None:
        notification = self.get(notification_id)
        if notification is None:
            return
        notification.ping_count += 1
        notification.last_ping_at = now or _utcnow()
        self._save()

    def acknowledge(self, notification_id: int, now: Optional[datetime] = None) -> bool:
        """
        Mark a notification acknowledged.

        Returns:
            True if this call acknowledged it; False if unknown or already done
        """
        notification = self.get(notification_id)
        if notification is None or notification.acknowledged:
            return False
        notification.acknowledged = True
        notification.acknowledged_at = now or _utcnow()
        self._save()
        return True

    def acknowledge_all(self, now: Optional[datetime] = None) -> List[int]:
        """Acknowledge everything still open. Returns the ids acknowledged."""
        now = now or _utcnow()
        ids = []
        for notification in self.unacknowledged():
            notification.acknowledged = True
            notification.acknowledged_at = now
            ids.append(notification.id)
        if ids:
            self._save()
        return ids

    def set_persistent(self, enabled: bool) -> None:
        self._state.persistent_enabled = bool(enabled)
        self._save()

    def cleanup(self, max_age: timedelta = CLEANUP_AGE, now: Optional[datetime] = None) -> int:
        """
        Drop acknowledged or exhausted notifications received more than
        ``max_age`` ago.

        Returns:
            Number of notifications removed
        """
        cutoff = (now or _utcnow()) - max_age
        kept = [
            n
            for n in self._state.notifications
            if not ((n.acknowledged or n.exhausted) and n.received_at < cutoff)
        ]
        removed = len(self._state.notifications) - len(kept)
        if removed:
            self._state.notifications = kept
            self._save()
            logger.debug("Removed %d old notifications", removed)
        return removed
