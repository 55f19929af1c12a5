"""
SQLAlchemy models for the ServiceBell notification store.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Imported here so they are registered with Base.metadata
# (required for create_all in tests and Alembic autogenerate)
from backend.src.models.notification_intent import (  # noqa: E402
    NotificationIntent,
    IntentStatus,
    IntentChannel,
    IntentPriority,
)
from backend.src.models.push_subscription import PushSubscription  # noqa: E402
from backend.src.models.acknowledgement import AcknowledgementRecord  # noqa: E402

__all__ = [
    "Base",
    "NotificationIntent",
    "IntentStatus",
    "IntentChannel",
    "IntentPriority",
    "PushSubscription",
    "AcknowledgementRecord",
]
