"""
NotificationIntent model: one entry of the notification outbox.

Producers (the change-event bridge, domain services) insert intents in the
``queued`` state; the delivery dispatcher and the device sync endpoints move
them through ``processing`` to ``sent`` or ``failed``. Only OutboxService
mutates ``status`` and ``attempts``.
"""

import enum
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from backend.src.models import Base


class IntentStatus(str, enum.Enum):
    """
    Outbox entry status.

    Transitions:
        queued -> processing (claimed)
        processing -> sent (terminal)
        processing -> queued (transient failure, attempts < max_attempts)
        processing -> failed (terminal: retries exhausted or permanent rejection)
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (IntentStatus.SENT, IntentStatus.FAILED)


class IntentChannel(str, enum.Enum):
    """Delivery channel: Web Push through the gateway, or in-app (pull only)."""

    PUSH = "push"
    IN_APP = "in_app"


class IntentPriority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class NotificationIntent(Base):
    """
    A request to notify one recipient, with its delivery bookkeeping.

    Attributes:
        recipient_id: User id of the recipient (issued by the auth service)
        tenant_id: Restaurant the intent belongs to
        channel: push or in_app
        title / body: Display text
        payload: Opaque JSON object forwarded to the device as ``data``
        priority: normal or high (high is claimed first)
        status: queued, processing, sent or failed
        attempts: Failed delivery rounds so far (never above max_attempts)
        max_attempts: Retry budget captured at enqueue time
        failure_reason: Last transient error, or the permanent rejection reason
        scheduled_for: Not deliverable before this time (None means immediately)
        claimed_at: When the current processing claim was taken
        sent_at: Set exactly when status becomes sent
    """

    __tablename__ = "notification_intents"

    id = Column(Integer, primary_key=True, autoincrement=True)

    recipient_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    channel = Column(
        Enum(IntentChannel, native_enum=False, length=16, values_callable=_enum_values),
        default=IntentChannel.PUSH,
        nullable=False,
    )
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    payload = Column(JSONB().with_variant(JSON(), "sqlite"), nullable=False, default=dict)
    priority = Column(
        Enum(IntentPriority, native_enum=False, length=16, values_callable=_enum_values),
        default=IntentPriority.NORMAL,
        nullable=False,
    )

    status = Column(
        Enum(IntentStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=IntentStatus.QUEUED,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    failure_reason = Column(String(255), nullable=True)

    scheduled_for = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    claimed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    acknowledgement = relationship(
        "AcknowledgementRecord",
        back_populates="intent",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_notification_intents_claimable", "status", "channel", "priority", "created_at"),
        Index("ix_notification_intents_recipient_status", "recipient_id", "status"),
        Index("ix_notification_intents_scheduled_for", "scheduled_for"),
    )

    @property
    def is_retryable(self) -> bool:
        """Queued after at least one failed round, with budget left."""
        return (
            self.status == IntentStatus.QUEUED
            and 0 < self.attempts < self.max_attempts
        )

    def to_device_message(self) -> dict:
        """Shape returned to devices by the sync endpoints: {id, title, body, data}."""
        data = dict(self.payload or {})
        data.setdefault("notification_id", self.id)
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "data": data,
        }

    def __repr__(self) -> str:
        return (
            f"<NotificationIntent(id={self.id}, recipient='{self.recipient_id}', "
            f"status='{self.status.value if self.status else None}', attempts={self.attempts})>"
        )
