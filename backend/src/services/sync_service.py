"""
Device sync service: the pull half of the dual-path delivery guarantee.

Devices heartbeat, pull queued intents the push path may have missed, and
report delivery and clicks. Together with the dispatcher this gives
at-least-once delivery even when the push gateway silently drops messages.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.src.models import AcknowledgementRecord, IntentStatus, NotificationIntent
from backend.src.services.exceptions import ValidationError
from backend.src.services.outbox_service import OutboxService
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

COMMAND_CHECK_NOTIFICATIONS = "check_notifications"

DELIVERY_EVENT_DELIVERED = "delivered"
DELIVERY_EVENT_CLICKED = "clicked"
DELIVERY_EVENTS = (DELIVERY_EVENT_DELIVERED, DELIVERY_EVENT_CLICKED)


@dataclass
class HeartbeatResult:
    command: Optional[str]
    pending: int


class SyncService:
    """
    Server side of the device sync and acknowledgement protocol.

    Handles:
    - Heartbeats (last_seen refresh, "check now" command)
    - Sync pull (queued intents handed to the device and marked sent)
    - Pending checks (retryable intents claimed for the device)
    - Delivery/click acknowledgements
    """

    def __init__(
        self,
        db: Session,
        outbox: Optional[OutboxService] = None,
        registry: Optional[PushSubscriptionService] = None,
        batch_size: int = 10,
    ):
        self.db = db
        self.outbox = outbox or OutboxService(db)
        self.registry = registry or PushSubscriptionService(db)
        self.batch_size = batch_size

    def heartbeat(
        self,
        recipient_id: str,
        endpoint: Optional[str] = None,
        client_version: Optional[str] = None,
    ) -> HeartbeatResult:
        """
        Record device liveness and tell it whether to sync.

        Args:
            recipient_id: Authenticated recipient
            endpoint: Push endpoint of the calling device, when it has one
            client_version: Reported client version (logged only)

        Returns:
            HeartbeatResult with ``check_notifications`` when intents are queued
        """
        refreshed = self.registry.touch(recipient_id, endpoint=endpoint)
        pending = self.outbox.count_pending_for(recipient_id)
        logger.debug(
            "Device heartbeat",
            extra={
                "recipient_id": recipient_id,
                "client_version": client_version,
                "subscriptions_refreshed": refreshed,
                "pending": pending,
            },
        )
        return HeartbeatResult(
            command=COMMAND_CHECK_NOTIFICATIONS if pending > 0 else None,
            pending=pending,
        )

    def pull(self, recipient_id: str) -> List[NotificationIntent]:
        """
        Hand queued intents to the device.

        Returning them is the delivery confirmation for this path, so each
        returned intent is marked sent.
        """
        intents = self.outbox.list_queued_for(recipient_id, limit=self.batch_size)
        for intent in intents:
            self.outbox.mark_sent(intent.id)
        if intents:
            logger.info(
                "Delivered intents through sync pull",
                extra={"recipient_id": recipient_id, "count": len(intents)},
            )
        return intents

    def pending_count(self, recipient_id: str) -> int:
        return self.outbox.count_pending_for(recipient_id)

    def check_pending(self, recipient_id: str) -> List[NotificationIntent]:
        """
        Claim the recipient's deliverable intents (fresh or retryable).

        Claimed intents move to processing; a delivered acknowledgement marks
        them sent, otherwise maintenance returns them to the queue once the
        claim times out.
        """
        return self.outbox.claim_batch(self.batch_size, recipient_id=recipient_id)

    def track_delivery(self, recipient_id: str, event_type: str, notification_id: int) -> AcknowledgementRecord:
        """
        Record a delivered or clicked acknowledgement.

        Idempotent: repeating an event keeps the first timestamp. A delivery
        report for an intent still queued or processing marks it sent.

        Raises:
            ValidationError: If event_type is not delivered/clicked
            NotFoundError: If the intent does not belong to the recipient
        """
        if event_type not in DELIVERY_EVENTS:
            raise ValidationError(
                f"type must be one of {', '.join(DELIVERY_EVENTS)}", field="type"
            )

        intent = self.outbox.get_for_recipient(notification_id, recipient_id)
        record = self.db.execute(
            select(AcknowledgementRecord).where(AcknowledgementRecord.notification_id == intent.id)
        ).scalar_one_or_none()
        if record is None:
            record = AcknowledgementRecord(notification_id=intent.id, recipient_id=recipient_id)
            self.db.add(record)

        now = datetime.utcnow()
        if event_type == DELIVERY_EVENT_CLICKED:
            changed = record.mark_clicked(now)
        else:
            changed = record.mark_delivered(now)
        self.db.commit()

        if intent.status in (IntentStatus.QUEUED, IntentStatus.PROCESSING):
            self.outbox.mark_sent(intent.id)

        if changed:
            logger.info(
                "Notification acknowledged",
                extra={"intent_id": intent.id, "recipient_id": recipient_id, "event": event_type},
            )
        self.db.refresh(record)
        return record
