"""
Delivery dispatcher: drains the outbox into the push gateway.

One ``dispatch_batch`` call claims a bounded set of push intents and fans
each one out to every active subscription of its recipient:

- no active subscription: the intent fails with ``no_subscriptions``
  without consuming retry budget
- gateway accepted at least one copy: the intent is sent
- only transient failures: the intent is retried (and fails for good once
  its attempts reach max_attempts)
- endpoints reported gone are deactivated on the spot; they never count as
  a failed attempt

The dispatcher is synchronous, like the other services; the scheduler runs
it in a worker thread.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from backend.src.models import IntentChannel, IntentPriority, NotificationIntent
from backend.src.services.outbox_service import OutboxService, REASON_NO_SUBSCRIPTIONS
from backend.src.services.push_gateway import PushDeliveryError, PushGateway, PushGoneError
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.utils.logging_config import get_logger


logger = get_logger("dispatch")

DEFAULT_ICON = "/icons/icon-192x192.png"
DEFAULT_BADGE = "/icons/badge-72x72.png"


@dataclass
class DispatchReport:
    """Outcome counters for one dispatch batch."""

    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deactivated: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "retried": self.retried,
            "failed": self.failed,
            "deactivated": self.deactivated,
        }


def notification_tag(intent: NotificationIntent) -> str:
    """
    Collapse tag for the device: one visible notification per booking/order.

    Falls back to the intent id when the payload names no domain record.
    """
    payload = intent.payload or {}
    if payload.get("booking_id") is not None:
        return f"booking-{payload['booking_id']}"
    if payload.get("order_id") is not None:
        return f"order-{payload['order_id']}"
    return f"notif-{intent.id}"


def build_push_message(intent: NotificationIntent) -> Dict[str, Any]:
    """Web Push message body for an intent."""
    payload = dict(intent.payload or {})
    data = {
        **payload,
        "notification_id": intent.id,
        "url": payload.get("url", "/"),
        "timestamp": intent.created_at.isoformat() + "Z" if intent.created_at else None,
    }
    return {
        "title": intent.title,
        "body": intent.body,
        "icon": payload.get("icon", DEFAULT_ICON),
        "badge": DEFAULT_BADGE,
        "tag": notification_tag(intent),
        "priority": intent.priority.value,
        "requireInteraction": intent.priority == IntentPriority.HIGH,
        "data": data,
    }


class DeliveryDispatcher:
    """
    Fans claimed outbox intents out to the push gateway.

    Usage:
        >>> dispatcher = DeliveryDispatcher(db, WebPushGateway.from_settings(settings))
        >>> report = dispatcher.dispatch_batch(limit=50)
    """

    def __init__(
        self,
        db: Session,
        gateway: PushGateway,
        max_attempts: int = 5,
        outbox: Optional[OutboxService] = None,
        registry: Optional[PushSubscriptionService] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.outbox = outbox or OutboxService(db, max_attempts=max_attempts)
        self.registry = registry or PushSubscriptionService(db)

    def dispatch_batch(self, limit: int = 50) -> DispatchReport:
        """
        Claim and deliver up to ``limit`` push intents.

        Args:
            limit: Maximum number of intents handled in this batch

        Returns:
            DispatchReport with per-outcome counts
        """
        report = DispatchReport()
        intents = self.outbox.claim_batch(limit, channel=IntentChannel.PUSH.value)
        report.claimed = len(intents)

        for intent in intents:
            self._deliver(intent, report)

        if report.claimed:
            logger.info("Dispatch batch finished", extra=report.as_dict())
        return report

    def _deliver(self, intent: NotificationIntent, report: DispatchReport) -> None:
        subscriptions = self.registry.active_for(intent.recipient_id, tenant_id=intent.tenant_id)
        if not subscriptions:
            self.outbox.mark_failed(intent.id, REASON_NO_SUBSCRIPTIONS)
            report.failed += 1
            return

        message = build_push_message(intent)
        urgency = "high" if intent.priority == IntentPriority.HIGH else "normal"

        delivered: List = []
        gone = 0
        errors: List[str] = []

        for subscription in subscriptions:
            endpoint_short = subscription.endpoint[:60]
            try:
                self.gateway.send(subscription, message, urgency=urgency)
                delivered.append(subscription)
                logger.debug(
                    "Push delivered",
                    extra={"intent_id": intent.id, "subscription_id": subscription.id, "endpoint": endpoint_short},
                )
            except PushGoneError:
                logger.info(
                    "Deactivating gone push subscription",
                    extra={"intent_id": intent.id, "subscription_id": subscription.id, "endpoint": endpoint_short},
                )
                self.registry.deactivate(subscription.endpoint)
                report.deactivated += 1
                gone += 1
            except PushDeliveryError as e:
                errors.append(str(e))
                logger.warning(
                    f"Push delivery failed: {e}",
                    extra={
                        "intent_id": intent.id,
                        "subscription_id": subscription.id,
                        "endpoint": endpoint_short,
                        "status_code": e.status_code,
                    },
                )

        if delivered:
            self.registry.mark_seen(delivered)
            self.outbox.mark_sent(intent.id)
            report.sent += 1
        elif errors:
            updated = self.outbox.mark_retry(intent.id, reason=errors[-1][:255])
            if updated.status.is_terminal:
                report.failed += 1
            else:
                report.retried += 1
        else:
            # every endpoint turned out to be gone
            self.outbox.mark_failed(intent.id, REASON_NO_SUBSCRIPTIONS)
            report.failed += 1

        if gone or errors:
            logger.info(
                "Push fan-out summary",
                extra={
                    "intent_id": intent.id,
                    "total": len(subscriptions),
                    "success": len(delivered),
                    "failed": len(errors),
                    "removed": gone,
                },
            )
