"""
Push subscription service: the subscription registry.

Provides business logic for registering, deactivating, listing and
cleaning up Web Push subscriptions. Registration is a single
``INSERT ... ON CONFLICT (endpoint) DO UPDATE`` so a device re-registering
concurrently (app relaunch racing a stale timer) still ends with one row.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from backend.src.models import PushSubscription
from backend.src.services.exceptions import NotFoundError, ServiceError, ValidationError
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class PushSubscriptionService:
    """
    Service for managing Web Push subscriptions.

    Handles subscription lifecycle:
    - Upsert (keyed by endpoint)
    - Deactivate (gateway reported gone, user opted out, went silent)
    - Active subscriptions for fan-out
    - last_seen refresh from heartbeats and deliveries
    - Stale cleanup
    """

    def __init__(self, db: Session):
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(PushSubscription)
        if dialect == "sqlite":
            return sqlite_insert(PushSubscription)
        raise ServiceError(f"Subscription upsert is not supported on {dialect}")

    def upsert(
        self,
        endpoint: str,
        recipient_id: str,
        tenant_id: str,
        p256dh_key: str,
        auth_key: str,
        device_name: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PushSubscription:
        """
        Insert or update the subscription keyed by endpoint.

        An existing row (any recipient, active or not) is taken over by the
        caller: keys and ownership are replaced, ``is_active`` is set and
        ``last_seen`` refreshed.

        Args:
            endpoint: Push service endpoint URL
            recipient_id: Owning user id
            tenant_id: Restaurant id
            p256dh_key: ECDH public key (Base64url)
            auth_key: Auth secret (Base64url)
            device_name: Optional device label
            user_agent: Optional user agent string

        Returns:
            The stored PushSubscription

        Raises:
            ValidationError: If endpoint or keys are missing
            ServiceError: If the database has no upsert support
        """
        if not endpoint:
            raise ValidationError("endpoint is required", field="endpoint")
        if not p256dh_key or not auth_key:
            raise ValidationError("Subscription keys p256dh and auth are required", field="keys")

        now = datetime.utcnow()
        values = {
            "endpoint": endpoint,
            "recipient_id": recipient_id,
            "tenant_id": tenant_id,
            "p256dh_key": p256dh_key,
            "auth_key": auth_key,
            "device_name": device_name,
            "user_agent": user_agent,
            "is_active": True,
            "last_seen": now,
            "deactivated_at": None,
            "updated_at": now,
        }
        stmt = self._insert().values(created_at=now, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[PushSubscription.endpoint],
            set_={key: stmt.excluded[key] for key in values if key != "endpoint"},
        )
        self.db.execute(stmt)
        self.db.commit()

        subscription = self.db.execute(
            select(PushSubscription)
            .where(PushSubscription.endpoint == endpoint)
            .execution_options(populate_existing=True)
        ).scalar_one()
        logger.info(
            "Upserted push subscription",
            extra={
                "subscription_id": subscription.id,
                "recipient_id": recipient_id,
                "endpoint_prefix": endpoint[:60],
            },
        )
        return subscription

    def deactivate(self, endpoint: str) -> bool:
        """
        Mark a subscription inactive.

        Idempotent: an unknown or already inactive endpoint is a no-op.

        Returns:
            True if an active subscription was deactivated
        """
        now = datetime.utcnow()
        result = self.db.execute(
            update(PushSubscription)
            .where(PushSubscription.endpoint == endpoint, PushSubscription.is_active.is_(True))
            .values(is_active=False, deactivated_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        changed = (result.rowcount or 0) > 0
        if changed:
            logger.info("Deactivated push subscription", extra={"endpoint_prefix": endpoint[:60]})
        return changed

    def remove(self, endpoint: str, recipient_id: str) -> None:
        """
        Opt a device out on behalf of its owner.

        Raises:
            NotFoundError: If the endpoint is not registered to this recipient
        """
        subscription = self.db.execute(
            select(PushSubscription).where(
                PushSubscription.endpoint == endpoint,
                PushSubscription.recipient_id == recipient_id,
            )
        ).scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("PushSubscription", endpoint[:60])
        self.deactivate(endpoint)

    def active_for(self, recipient_id: str, tenant_id: Optional[str] = None) -> List[PushSubscription]:
        """All active subscriptions of a recipient, optionally within one tenant."""
        query = select(PushSubscription).where(
            PushSubscription.recipient_id == recipient_id,
            PushSubscription.is_active.is_(True),
        )
        if tenant_id is not None:
            query = query.where(PushSubscription.tenant_id == tenant_id)
        return list(self.db.execute(query.order_by(PushSubscription.id)).scalars().all())

    def touch(self, recipient_id: str, endpoint: Optional[str] = None) -> int:
        """
        Refresh last_seen for a heartbeat.

        With an endpoint only that device is refreshed; without one every
        active subscription of the recipient is.

        Returns:
            Number of subscriptions refreshed
        """
        stmt = update(PushSubscription).where(
            PushSubscription.recipient_id == recipient_id,
            PushSubscription.is_active.is_(True),
        )
        if endpoint:
            stmt = stmt.where(PushSubscription.endpoint == endpoint)
        result = self.db.execute(
            stmt.values(last_seen=datetime.utcnow()).execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        return result.rowcount or 0

    def mark_seen(self, subscriptions: List[PushSubscription]) -> None:
        """Refresh last_seen after successful deliveries (caller commits)."""
        now = datetime.utcnow()
        for subscription in subscriptions:
            subscription.last_seen = now

    def deactivate_inactive(self, older_than: datetime) -> int:
        """
        Deactivate active subscriptions not seen since ``older_than``.

        Returns:
            Number of subscriptions deactivated
        """
        now = datetime.utcnow()
        result = self.db.execute(
            update(PushSubscription)
            .where(PushSubscription.is_active.is_(True), PushSubscription.last_seen < older_than)
            .values(is_active=False, deactivated_at=now, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        return result.rowcount or 0

    def delete_stale(self, older_than: datetime) -> int:
        """
        Delete inactive subscriptions whose last_seen is older than ``older_than``.

        Returns:
            Number of subscriptions deleted
        """
        result = self.db.execute(
            delete(PushSubscription)
            .where(PushSubscription.is_active.is_(False), PushSubscription.last_seen < older_than)
            .execution_options(synchronize_session="fetch")
        )
        self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Deleted stale push subscriptions", extra={"count": count})
        return count
