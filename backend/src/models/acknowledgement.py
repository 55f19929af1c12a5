"""
AcknowledgementRecord model: device-confirmed receipt of a notification.

Distinct from the gateway-confirmed ``sent`` state of the intent: a record
exists once the device reports ``delivered`` or ``clicked`` for an intent.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from backend.src.models import Base


class AcknowledgementRecord(Base):
    """
    Delivery and click acknowledgement for one notification intent.

    Invariants:
        delivered_at is written once (first delivery wins).
        clicked implies delivered.
    """

    __tablename__ = "notification_acknowledgements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    notification_id = Column(
        Integer,
        ForeignKey("notification_intents.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    recipient_id = Column(String(64), nullable=False, index=True)

    delivered = Column(Boolean, nullable=False, default=False)
    delivered_at = Column(DateTime, nullable=True)
    clicked = Column(Boolean, nullable=False, default=False)
    clicked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    intent = relationship("NotificationIntent", back_populates="acknowledgement")

    def mark_delivered(self, at: datetime) -> bool:
        """Record delivery; returns False when it was already recorded."""
        if self.delivered:
            return False
        self.delivered = True
        self.delivered_at = at
        return True

    def mark_clicked(self, at: datetime) -> bool:
        """Record a click (and delivery, if missing); returns False when already clicked."""
        self.mark_delivered(at)
        if self.clicked:
            return False
        self.clicked = True
        self.clicked_at = at
        return True
