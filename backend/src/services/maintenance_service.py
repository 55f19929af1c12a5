"""
Maintenance service for the periodic cron job.

Keeps the notification store bounded:
- Purges acknowledgement history past its retention window
- Deletes subscriptions that are inactive and stale
- Deactivates subscriptions that stopped heartbeating
- Returns abandoned processing claims to the queue
- Purges finished intents past their retention window
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from backend.src.config.settings import AppSettings
from backend.src.models import AcknowledgementRecord
from backend.src.services.outbox_service import OutboxService
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.utils.logging_config import get_logger


logger = get_logger("db")


@dataclass
class MaintenanceReport:
    acknowledgements_purged: int = 0
    subscriptions_deleted: int = 0
    subscriptions_deactivated: int = 0
    claims_released: int = 0
    intents_purged: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class MaintenanceService:
    """Periodic cleanup of acknowledgements, subscriptions and outbox entries."""

    def __init__(
        self,
        db: Session,
        settings: AppSettings,
        outbox: Optional[OutboxService] = None,
        registry: Optional[PushSubscriptionService] = None,
    ):
        self.db = db
        self.settings = settings
        self.outbox = outbox or OutboxService(db, max_attempts=settings.max_attempts)
        self.registry = registry or PushSubscriptionService(db)

    def purge_acknowledgements(self, older_than: datetime) -> int:
        """Delete acknowledgement records created before ``older_than``."""
        result = self.db.execute(
            delete(AcknowledgementRecord)
            .where(AcknowledgementRecord.created_at < older_than)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    def run(self, now: Optional[datetime] = None) -> MaintenanceReport:
        """
        Run every cleanup step once.

        Stale inactive subscriptions are deleted before silent ones are
        deactivated, so a subscription is deleted one run after it goes
        inactive at the earliest.

        Args:
            now: Reference time (defaults to utcnow)

        Returns:
            MaintenanceReport with per-step counts
        """
        now = now or datetime.utcnow()
        settings = self.settings
        subscription_cutoff = now - timedelta(days=settings.subscription_inactive_days)

        report = MaintenanceReport(
            acknowledgements_purged=self.purge_acknowledgements(
                now - timedelta(days=settings.ack_retention_days)
            ),
            subscriptions_deleted=self.registry.delete_stale(subscription_cutoff),
        )
        report.subscriptions_deactivated = self.registry.deactivate_inactive(subscription_cutoff)
        report.claims_released = self.outbox.requeue_stale_claims(
            now - timedelta(seconds=settings.claim_timeout_seconds)
        )
        report.intents_purged = self.outbox.purge_finished(
            now - timedelta(days=settings.intent_retention_days)
        )

        logger.info("Notification maintenance completed", extra=report.as_dict())
        return report
