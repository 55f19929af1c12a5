"""
Notifications API endpoints.

Provides endpoints for:
- Push subscription management (subscribe, unsubscribe, VAPID public key)
- Device sync (heartbeat, sync pull, pending count, check-pending, track-delivery)
- Producer enqueue
- Scheduler-invoked maintenance and dispatch (cron secret)

All routes are mounted under /api.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from backend.src.config.settings import get_settings
from backend.src.db.database import get_db
from backend.src.middleware.auth import TenantContext, require_auth, require_cron_secret
from backend.src.models import IntentChannel
from backend.src.schemas.notifications import (
    DeviceNotification,
    DispatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    MaintenanceResponse,
    PendingCountResponse,
    PushSubscriptionResponse,
    SubscribeRequest,
    SyncResponse,
    TrackDeliveryRequest,
    TrackDeliveryResponse,
    UnsubscribeRequest,
    VapidKeyResponse,
)
from backend.src.services.delivery_dispatcher import DeliveryDispatcher
from backend.src.services.dispatch_scheduler import DispatchScheduler
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.maintenance_service import MaintenanceService
from backend.src.services.outbox_service import OutboxService
from backend.src.services.push_gateway import PushGateway
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.services.sync_service import SyncService
from backend.src.utils.logging_config import get_logger
from backend.src.utils.rate_limit import limiter


logger = get_logger("api")

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"],
)


# ============================================================================
# Dependencies
# ============================================================================


def get_outbox_service(db: Session = Depends(get_db)) -> OutboxService:
    """Create OutboxService with the configured retry budget."""
    return OutboxService(db=db, max_attempts=get_settings().max_attempts)


def get_push_subscription_service(
    db: Session = Depends(get_db),
) -> PushSubscriptionService:
    """Create PushSubscriptionService instance with database session."""
    return PushSubscriptionService(db=db)


def get_sync_service(
    db: Session = Depends(get_db),
    outbox: OutboxService = Depends(get_outbox_service),
    registry: PushSubscriptionService = Depends(get_push_subscription_service),
) -> SyncService:
    return SyncService(
        db=db,
        outbox=outbox,
        registry=registry,
        batch_size=get_settings().sync_batch_size,
    )


def get_maintenance_service(db: Session = Depends(get_db)) -> MaintenanceService:
    return MaintenanceService(db=db, settings=get_settings())


def get_dispatch_scheduler(request: Request) -> Optional[DispatchScheduler]:
    """The app's dispatch scheduler, if one is running."""
    return getattr(request.app.state, "dispatch_scheduler", None)


def get_push_gateway(request: Request) -> Optional[PushGateway]:
    """The app's push gateway, or None when VAPID is not configured."""
    return getattr(request.app.state, "push_gateway", None)


def _bad_request(err: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=err.message)


# ============================================================================
# Push Subscription Endpoints
# ============================================================================


@router.post(
    "/subscribe",
    response_model=PushSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push subscription",
)
@limiter.limit("10/minute")
async def subscribe(
    request: Request,
    body: SubscribeRequest,
    ctx: TenantContext = Depends(require_auth),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """
    Register the calling device's Web Push subscription.

    Re-registering the same endpoint updates the existing subscription in
    place and reactivates it.
    """
    device = body.device_info
    try:
        subscription = service.upsert(
            endpoint=body.subscription.endpoint,
            recipient_id=ctx.user_id,
            tenant_id=ctx.tenant_id,
            p256dh_key=body.subscription.keys.p256dh,
            auth_key=body.subscription.keys.auth,
            device_name=device.name if device else None,
            user_agent=(device.user_agent if device else None) or request.headers.get("User-Agent"),
        )
    except ValidationError as err:
        raise _bad_request(err) from err

    return PushSubscriptionResponse.model_validate(subscription)


@router.delete(
    "/subscribe",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a push subscription",
)
@limiter.limit("10/minute")
async def unsubscribe(
    request: Request,
    body: UnsubscribeRequest,
    ctx: TenantContext = Depends(require_auth),
    service: PushSubscriptionService = Depends(get_push_subscription_service),
):
    """Deactivate the caller's subscription matching the given endpoint."""
    try:
        service.remove(endpoint=body.endpoint, recipient_id=ctx.user_id)
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription not found",
        ) from err


@router.get(
    "/vapid-key",
    response_model=VapidKeyResponse,
    summary="Get the VAPID public key",
)
async def get_vapid_key():
    """Return the public key devices pass to pushManager.subscribe()."""
    settings = get_settings()
    if not settings.vapid_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications are not configured",
        )
    return VapidKeyResponse(public_key=settings.vapid_public_key)


# ============================================================================
# Device Sync Endpoints
# ============================================================================


@router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Pull queued notifications",
)
async def sync_notifications(
    ctx: TenantContext = Depends(require_auth),
    service: SyncService = Depends(get_sync_service),
):
    """
    Return queued notifications for the caller and mark them sent.

    Returning an entry here is its delivery confirmation, so a second call
    does not return it again.
    """
    intents = service.pull(ctx.user_id)
    notifications = [DeviceNotification(**intent.to_device_message()) for intent in intents]
    return SyncResponse(notifications=notifications, count=len(notifications))


@router.get(
    "/sync",
    response_model=PendingCountResponse,
    summary="Count queued notifications",
)
async def get_pending_count(
    ctx: TenantContext = Depends(require_auth),
    service: SyncService = Depends(get_sync_service),
):
    """Number of queued notifications for the caller; nothing is consumed."""
    return PendingCountResponse(pending_count=service.pending_count(ctx.user_id))


@router.post(
    "/heartbeat",
    response_model=HeartbeatResponse,
    summary="Device heartbeat",
)
async def heartbeat(
    body: HeartbeatRequest,
    ctx: TenantContext = Depends(require_auth),
    service: SyncService = Depends(get_sync_service),
):
    """
    Record device liveness.

    Answers with ``command: "check_notifications"`` when entries are queued
    for the caller.
    """
    result = service.heartbeat(
        recipient_id=ctx.user_id,
        endpoint=body.endpoint,
        client_version=body.client_version,
    )
    return HeartbeatResponse(
        command=result.command,
        pending=result.pending,
        heartbeat_interval=get_settings().heartbeat_interval_seconds,
        server_time=datetime.utcnow().isoformat() + "Z",
    )


@router.post(
    "/check-pending",
    response_model=SyncResponse,
    summary="Claim pending notifications for this device",
)
async def check_pending(
    ctx: TenantContext = Depends(require_auth),
    service: SyncService = Depends(get_sync_service),
):
    """
    Return queued and retryable notifications and move them to processing.

    The device confirms each one through track-delivery.
    """
    intents = service.check_pending(ctx.user_id)
    notifications = [DeviceNotification(**intent.to_device_message()) for intent in intents]
    return SyncResponse(notifications=notifications, count=len(notifications))


@router.post(
    "/track-delivery",
    response_model=TrackDeliveryResponse,
    summary="Acknowledge delivery or click",
)
async def track_delivery(
    body: TrackDeliveryRequest,
    ctx: TenantContext = Depends(require_auth),
    service: SyncService = Depends(get_sync_service),
):
    """Record that a notification was shown (delivered) or opened (clicked)."""
    try:
        record = service.track_delivery(
            recipient_id=ctx.user_id,
            event_type=body.type,
            notification_id=body.notification_id,
        )
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        ) from err
    except ValidationError as err:
        raise _bad_request(err) from err

    return TrackDeliveryResponse.model_validate(record)


# ============================================================================
# Producer Endpoint
# ============================================================================


@router.post(
    "/enqueue",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a notification intent",
)
async def enqueue_notification(
    body: EnqueueRequest,
    ctx: TenantContext = Depends(require_auth),
    outbox: OutboxService = Depends(get_outbox_service),
    scheduler: Optional[DispatchScheduler] = Depends(get_dispatch_scheduler),
):
    """
    Add an intent to the outbox for a recipient in the caller's restaurant.

    Returns as soon as the intent is stored; delivery happens in the
    background.
    """
    try:
        intent = outbox.enqueue(
            recipient_id=body.recipient_id,
            tenant_id=ctx.tenant_id,
            title=body.title,
            body=body.body,
            payload=body.payload,
            channel=body.channel,
            priority=body.priority,
            scheduled_for=body.scheduled_for,
        )
    except ValidationError as err:
        raise _bad_request(err) from err

    # Scheduled intents are picked up by the periodic dispatch once due
    if scheduler is not None and intent.channel == IntentChannel.PUSH and intent.scheduled_for is None:
        scheduler.notify()

    return EnqueueResponse(
        id=intent.id,
        status=intent.status.value,
        created_at=intent.created_at,
        scheduled_for=intent.scheduled_for,
    )


# ============================================================================
# Scheduler-invoked Endpoints
# ============================================================================


@router.api_route(
    "/cron",
    methods=["GET", "POST"],
    response_model=MaintenanceResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Run notification maintenance",
)
async def run_maintenance(
    service: MaintenanceService = Depends(get_maintenance_service),
):
    """Purge old acknowledgements and clean up stale subscriptions and claims."""
    report = service.run()
    return MaintenanceResponse(**report.as_dict())


@router.post(
    "/cron/dispatch",
    response_model=DispatchResponse,
    dependencies=[Depends(require_cron_secret)],
    summary="Run one dispatch batch",
)
async def run_dispatch(
    db: Session = Depends(get_db),
    gateway: Optional[PushGateway] = Depends(get_push_gateway),
):
    """Deliver one batch of queued push notifications now."""
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications are not configured",
        )
    settings = get_settings()
    dispatcher = DeliveryDispatcher(db, gateway, max_attempts=settings.max_attempts)
    report = dispatcher.dispatch_batch(settings.dispatch_batch_size)
    return DispatchResponse(**report.as_dict())
