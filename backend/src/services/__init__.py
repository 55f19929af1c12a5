"""
Service layer for business logic.

This module exports all service classes for use in API endpoints and the
dispatch scheduler.
"""

from backend.src.services.outbox_service import OutboxService
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.services.delivery_dispatcher import DeliveryDispatcher, DispatchReport
from backend.src.services.sync_service import SyncService
from backend.src.services.maintenance_service import MaintenanceService, MaintenanceReport
from backend.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "OutboxService",
    "PushSubscriptionService",
    "DeliveryDispatcher",
    "DispatchReport",
    "SyncService",
    "MaintenanceService",
    "MaintenanceReport",
    "ServiceError",
    "NotFoundError",
    "ValidationError",
]
