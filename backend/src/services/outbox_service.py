"""
Outbox service: the durable queue of notification intents.

Producers call ``enqueue``; the delivery dispatcher and the device sync
endpoints call ``claim_batch`` and the ``mark_*`` transitions. Claiming is a
single conditional UPDATE so that concurrent dispatchers never receive the
same intent:

- PostgreSQL: candidate ids are picked with ``FOR UPDATE SKIP LOCKED`` inside
  the UPDATE's subquery, so a second worker skips rows the first one holds.
- SQLite: the same conditional UPDATE (``WHERE status = 'queued'``) runs under
  SQLite's single-writer lock.

Retries are tracked with ``attempts`` only; an intent never exceeds its
``max_attempts`` and a failed intent is never claimed again.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from backend.src.models import (
    IntentChannel,
    IntentPriority,
    IntentStatus,
    NotificationIntent,
)
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

DEFAULT_MAX_ATTEMPTS = 5

# Failure reasons recorded on permanently rejected intents
REASON_NO_SUBSCRIPTIONS = "no_subscriptions"
REASON_RETRIES_EXHAUSTED = "retries_exhausted"

_PRIORITY_RANK = case(
    (NotificationIntent.priority == IntentPriority.HIGH, 1),
    else_=0,
)


def _is_due(now: datetime):
    """Intents without a schedule, or whose scheduled time has passed."""
    return or_(
        NotificationIntent.scheduled_for.is_(None),
        NotificationIntent.scheduled_for <= now,
    )


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class OutboxService:
    """
    Service for the notification outbox.

    Handles the intent lifecycle:
    - Enqueue (producers, validated synchronously)
    - Claim (atomic queued -> processing)
    - Mark sent / retry / failed
    - Pull views for devices (queued entries, pending count)
    - Maintenance (stale claims, finished intent purge)
    """

    def __init__(self, db: Session, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts
        self._is_sqlite = self._check_is_sqlite()

    def _check_is_sqlite(self) -> bool:
        """Check if the database backend is SQLite."""
        bind = self.db.get_bind()
        return bind is not None and bind.dialect.name == "sqlite"

    # =========================================================================
    # Producers
    # =========================================================================

    def enqueue(
        self,
        recipient_id: str,
        tenant_id: str,
        title: str,
        body: str = "",
        payload: Optional[Dict[str, Any]] = None,
        channel: str = IntentChannel.PUSH.value,
        priority: str = IntentPriority.NORMAL.value,
        scheduled_for: Optional[datetime] = None,
    ) -> NotificationIntent:
        """
        Insert a new intent in the queued state.

        Duplicate content is allowed; producers that need dedup put an
        ``idempotency_key`` in the payload.

        Args:
            recipient_id: User id of the recipient
            tenant_id: Restaurant id
            title: Notification title
            body: Notification body
            payload: Optional JSON object forwarded to the device
            channel: "push" or "in_app"
            priority: "normal" or "high"
            scheduled_for: Earliest delivery time (UTC); None delivers right away

        Returns:
            The persisted intent

        Raises:
            ValidationError: On missing recipient/tenant/title, unknown channel
                or priority, or a payload that is not a JSON object
        """
        if not recipient_id or not str(recipient_id).strip():
            raise ValidationError("recipient_id is required", field="recipient_id")
        if not tenant_id or not str(tenant_id).strip():
            raise ValidationError("tenant_id is required", field="tenant_id")
        if not title or not title.strip():
            raise ValidationError("title is required", field="title")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object", field="payload")

        try:
            channel_value = IntentChannel(channel)
        except ValueError:
            raise ValidationError(f"Unknown channel: {channel}", field="channel")
        try:
            priority_value = IntentPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}", field="priority")

        intent = NotificationIntent(
            recipient_id=str(recipient_id),
            tenant_id=str(tenant_id),
            channel=channel_value,
            title=title.strip(),
            body=body or "",
            payload=payload or {},
            priority=priority_value,
            status=IntentStatus.QUEUED,
            attempts=0,
            max_attempts=self.max_attempts,
            scheduled_for=_to_naive_utc(scheduled_for) if scheduled_for else None,
        )
        self.db.add(intent)
        self.db.commit()
        self.db.refresh(intent)

        logger.info(
            "Notification intent enqueued",
            extra={
                "intent_id": intent.id,
                "recipient_id": intent.recipient_id,
                "tenant_id": intent.tenant_id,
                "channel": channel_value.value,
                "priority": priority_value.value,
                "scheduled_for": intent.scheduled_for.isoformat() if intent.scheduled_for else None,
            },
        )
        return intent

    # =========================================================================
    # Claiming
    # =========================================================================

    def claim_batch(
        self,
        limit: int,
        channel: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ) -> List[NotificationIntent]:
        """
        Atomically claim up to ``limit`` claimable intents.

        Claimable means queued (fresh or retryable), due (no scheduled_for, or
        scheduled_for in the past) and with attempts below the intent's
        max_attempts. Ordering is priority desc, created_at asc.
        Claimed intents are in ``processing`` when this returns.

        Args:
            limit: Maximum number of intents to claim
            channel: Restrict to one channel ("push" or "in_app")
            recipient_id: Restrict to one recipient (device check-pending path)

        Returns:
            The claimed intents, in claim order
        """
        if limit <= 0:
            return []

        now = datetime.utcnow()
        candidates = self.claim_candidates(limit, now, channel=channel, recipient_id=recipient_id)

        stmt = (
            update(NotificationIntent)
            .where(
                NotificationIntent.id.in_(candidates.scalar_subquery()),
                NotificationIntent.status == IntentStatus.QUEUED,
            )
            .values(status=IntentStatus.PROCESSING, claimed_at=now, updated_at=now)
            .returning(NotificationIntent.id)
            .execution_options(synchronize_session=False)
        )
        claimed_ids = [row[0] for row in self.db.execute(stmt)]
        self.db.commit()

        if not claimed_ids:
            return []

        intents = (
            self.db.execute(
                select(NotificationIntent)
                .where(NotificationIntent.id.in_(claimed_ids))
                .order_by(_PRIORITY_RANK.desc(), NotificationIntent.created_at.asc(), NotificationIntent.id.asc())
                .execution_options(populate_existing=True)
            )
            .scalars()
            .all()
        )
        logger.debug(
            "Claimed notification intents",
            extra={"count": len(intents), "channel": channel, "recipient_id": recipient_id},
        )
        return list(intents)

    def claim_candidates(
        self,
        limit: int,
        now: datetime,
        channel: Optional[str] = None,
        recipient_id: Optional[str] = None,
    ):
        """
        SELECT of the ids ``claim_batch`` may take, in claim order.

        On PostgreSQL the rows are locked with SKIP LOCKED so a concurrent
        worker picks different ones. SQLite serializes writers instead.
        """
        candidates = select(NotificationIntent.id).where(
            NotificationIntent.status == IntentStatus.QUEUED,
            NotificationIntent.attempts < NotificationIntent.max_attempts,
            _is_due(now),
        )
        if channel is not None:
            candidates = candidates.where(NotificationIntent.channel == IntentChannel(channel))
        if recipient_id is not None:
            candidates = candidates.where(NotificationIntent.recipient_id == recipient_id)
        candidates = candidates.order_by(
            _PRIORITY_RANK.desc(),
            NotificationIntent.created_at.asc(),
            NotificationIntent.id.asc(),
        ).limit(limit)
        if not self._is_sqlite:
            candidates = candidates.with_for_update(skip_locked=True)
        return candidates

    # =========================================================================
    # Transitions
    # =========================================================================

    def mark_sent(self, intent_id: int) -> NotificationIntent:
        """
        Mark an intent as sent (terminal). Already-sent intents are left untouched.

        Raises:
            NotFoundError: If the intent does not exist
        """
        intent = self._get(intent_id)
        if intent.status == IntentStatus.SENT:
            return intent
        intent.status = IntentStatus.SENT
        intent.sent_at = datetime.utcnow()
        intent.claimed_at = None
        intent.failure_reason = None
        self.db.commit()
        return intent

    def mark_retry(self, intent_id: int, reason: Optional[str] = None) -> NotificationIntent:
        """
        Record a failed delivery round.

        Increments attempts; the intent goes back to queued, or to failed once
        attempts reaches max_attempts. Terminal intents are left untouched.

        Raises:
            NotFoundError: If the intent does not exist
        """
        intent = self._get(intent_id)
        if intent.status.is_terminal:
            return intent

        intent.attempts = min(intent.attempts + 1, intent.max_attempts)
        intent.claimed_at = None
        if intent.attempts >= intent.max_attempts:
            intent.status = IntentStatus.FAILED
            intent.failure_reason = reason or REASON_RETRIES_EXHAUSTED
            logger.warning(
                "Notification intent exhausted its retries",
                extra={
                    "intent_id": intent.id,
                    "recipient_id": intent.recipient_id,
                    "attempts": intent.attempts,
                    "reason": intent.failure_reason,
                },
            )
        else:
            intent.status = IntentStatus.QUEUED
            intent.failure_reason = reason
        self.db.commit()
        return intent

    def mark_failed(self, intent_id: int, reason: str) -> NotificationIntent:
        """
        Permanently fail an intent without consuming retry budget.

        Raises:
            NotFoundError: If the intent does not exist
        """
        intent = self._get(intent_id)
        if intent.status.is_terminal:
            return intent
        intent.status = IntentStatus.FAILED
        intent.failure_reason = reason
        intent.claimed_at = None
        self.db.commit()
        logger.info(
            "Notification intent failed permanently",
            extra={"intent_id": intent.id, "recipient_id": intent.recipient_id, "reason": reason},
        )
        return intent

    # =========================================================================
    # Device pull views
    # =========================================================================

    def list_queued_for(self, recipient_id: str, limit: int = 10) -> List[NotificationIntent]:
        """
        Queued intents for a recipient that no device has confirmed yet.
        Intents scheduled for later are left out until they are due.

        Oldest first, high priority ahead of normal.
        """
        return list(
            self.db.execute(
                select(NotificationIntent)
                .where(
                    NotificationIntent.recipient_id == recipient_id,
                    NotificationIntent.status == IntentStatus.QUEUED,
                    _is_due(datetime.utcnow()),
                )
                .order_by(_PRIORITY_RANK.desc(), NotificationIntent.created_at.asc(), NotificationIntent.id.asc())
                .limit(limit)
            )
            .scalars()
            .all()
        )

    def count_pending_for(self, recipient_id: str) -> int:
        """Number of due queued intents waiting for a recipient."""
        return self.db.execute(
            select(func.count(NotificationIntent.id)).where(
                NotificationIntent.recipient_id == recipient_id,
                NotificationIntent.status == IntentStatus.QUEUED,
                _is_due(datetime.utcnow()),
            )
        ).scalar_one()

    def get_for_recipient(self, intent_id: int, recipient_id: str) -> NotificationIntent:
        """
        Fetch an intent owned by a recipient.

        Raises:
            NotFoundError: If it does not exist or belongs to someone else
        """
        intent = self.db.get(NotificationIntent, intent_id)
        if intent is None or intent.recipient_id != recipient_id:
            raise NotFoundError("Notification", intent_id)
        return intent

    # =========================================================================
    # Maintenance
    # =========================================================================

    def requeue_stale_claims(self, older_than: datetime) -> int:
        """
        Hand abandoned processing claims back to the queue.

        A claim older than ``older_than`` belongs to a dispatcher that died or
        a device that never confirmed; it counts as a failed round.

        Returns:
            Number of intents released
        """
        stale_ids = self.db.execute(
            select(NotificationIntent.id).where(
                NotificationIntent.status == IntentStatus.PROCESSING,
                NotificationIntent.claimed_at < older_than,
            )
        ).scalars().all()

        for intent_id in stale_ids:
            self.mark_retry(intent_id, reason="claim_timeout")

        if stale_ids:
            logger.info("Released stale outbox claims", extra={"count": len(stale_ids)})
        return len(stale_ids)

    def purge_finished(self, older_than: datetime) -> int:
        """
        Delete sent and failed intents created before ``older_than``.

        Returns:
            Number of intents deleted
        """
        result = self.db.execute(
            delete(NotificationIntent)
            .where(
                NotificationIntent.status.in_([IntentStatus.SENT, IntentStatus.FAILED]),
                NotificationIntent.created_at < older_than,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    def _get(self, intent_id: int) -> NotificationIntent:
        intent = self.db.get(NotificationIntent, intent_id)
        if intent is None:
            raise NotFoundError("Notification", intent_id)
        return intent
