"""
PushSubscription model for Web Push notification subscriptions.

Stores the push service endpoint and encryption keys needed to deliver
push notifications to one device of a restaurant staff member.

The endpoint is the natural key: a device re-subscribing upserts its row in
place. Subscriptions are never removed on the request path; they are
deactivated and the maintenance job deletes them once stale.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from backend.src.models import Base


class PushSubscription(Base):
    """
    Web Push subscription for a specific recipient on a specific device.

    Attributes:
        endpoint: Push service URL (globally unique)
        recipient_id: Owning user id
        tenant_id: Restaurant the subscription was registered under
        p256dh_key: ECDH public key for payload encryption (Base64url)
        auth_key: Auth secret for message authentication (Base64url)
        device_name: Optional label from the device info
        user_agent: Optional user agent from the device info
        is_active: False once the gateway reported it gone or it went silent
        last_seen: Refreshed by subscribe, heartbeat and successful delivery
        deactivated_at: When is_active last flipped to False
    """

    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    endpoint = Column(String(1024), nullable=False, unique=True)
    recipient_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    p256dh_key = Column(String(255), nullable=False)
    auth_key = Column(String(255), nullable=False)

    device_name = Column(String(100), nullable=True)
    user_agent = Column(String(512), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_seen = Column(DateTime, nullable=False, default=datetime.utcnow)
    deactivated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_push_subscriptions_recipient_active", "recipient_id", "is_active"),
    )

    @property
    def subscription_info(self) -> dict:
        """Subscription in the shape the Web Push library expects."""
        return {
            "endpoint": self.endpoint,
            "keys": {
                "p256dh": self.p256dh_key,
                "auth": self.auth_key,
            },
        }

    def __repr__(self) -> str:
        return (
            f"<PushSubscription(id={self.id}, recipient='{self.recipient_id}', "
            f"active={self.is_active}, endpoint='{self.endpoint[:40]}')>"
        )
