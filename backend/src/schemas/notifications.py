"""
Pydantic schemas for notification API request/response validation.

Provides data validation and serialization for:
- Push subscription registration (subscribe, unsubscribe)
- Device sync (heartbeat, sync pull, check-pending, track-delivery)
- Producer enqueue
- Maintenance and dispatch triggers

Device-facing bodies use the camelCase names the web clients send
(``deviceInfo``, ``notificationId``, ``pendingCount``).
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


# ============================================================================
# Push Subscription Schemas
# ============================================================================


class SubscriptionKeys(BaseModel):
    """Encryption keys from the browser's PushSubscription."""

    p256dh: str = Field(..., min_length=1, description="Base64url-encoded ECDH public key")
    auth: str = Field(..., min_length=1, description="Base64url-encoded auth secret")


class PushSubscriptionData(BaseModel):
    """The serialized browser PushSubscription."""

    endpoint: str = Field(..., max_length=1024, description="Push service endpoint URL (must be HTTPS)")
    keys: SubscriptionKeys

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint_https(cls, v: str) -> str:
        """Ensure endpoint uses HTTPS."""
        if not v.startswith("https://"):
            raise ValueError("Push subscription endpoint must use HTTPS")
        return v


class DeviceInfo(BaseModel):
    """Optional description of the subscribing device."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = Field(default=None, max_length=100)
    user_agent: Optional[str] = Field(default=None, alias="userAgent", max_length=512)
    platform: Optional[str] = Field(default=None, max_length=100)


class SubscribeRequest(BaseModel):
    """
    Schema for registering a push subscription.

    Required:
        subscription: {endpoint, keys: {p256dh, auth}}

    Optional:
        deviceInfo: {name, userAgent, platform}
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "subscription": {
                    "endpoint": "https://fcm.googleapis.com/fcm/send/abc123...",
                    "keys": {
                        "p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0...",
                        "auth": "tBHItJI5svbpC7htUH8g...",
                    },
                },
                "deviceInfo": {"name": "Kitchen tablet", "userAgent": "Mozilla/5.0 ..."},
            }
        },
    )

    subscription: PushSubscriptionData
    device_info: Optional[DeviceInfo] = Field(default=None, alias="deviceInfo")


class PushSubscriptionResponse(BaseModel):
    """Response schema for a push subscription."""

    id: int
    endpoint: str
    device_name: Optional[str] = None
    is_active: bool
    last_seen: datetime
    created_at: datetime

    @field_serializer("last_seen", "created_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}


class UnsubscribeRequest(BaseModel):
    """Schema for removing a push subscription by endpoint."""

    endpoint: str = Field(..., min_length=1, description="The push service endpoint URL to unsubscribe")


class VapidKeyResponse(BaseModel):
    """Public VAPID key for the device's pushManager.subscribe call."""

    public_key: str = Field(..., alias="publicKey")

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Device Sync Schemas
# ============================================================================


class DeviceNotification(BaseModel):
    """One notification as handed to a device."""

    id: int
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)


class SyncResponse(BaseModel):
    notifications: List[DeviceNotification]
    count: int


class PendingCountResponse(BaseModel):
    pending_count: int = Field(..., serialization_alias="pendingCount")


class HeartbeatRequest(BaseModel):
    """
    Device liveness report.

    ``timestamp`` is the device clock in epoch milliseconds; ``endpoint``
    narrows the last_seen refresh to the calling device.
    """

    timestamp: Optional[float] = None
    client_version: Optional[str] = Field(default=None, max_length=50)
    endpoint: Optional[str] = Field(default=None, max_length=1024)


class HeartbeatResponse(BaseModel):
    command: Optional[Literal["check_notifications"]] = None
    pending: int
    heartbeat_interval: int = Field(..., description="Seconds until the next expected heartbeat")
    server_time: str


class TrackDeliveryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["delivered", "clicked"]
    notification_id: int = Field(..., alias="notificationId", ge=1)


class TrackDeliveryResponse(BaseModel):
    notification_id: int = Field(..., serialization_alias="notificationId")
    delivered: bool
    delivered_at: Optional[datetime] = None
    clicked: bool
    clicked_at: Optional[datetime] = None

    @field_serializer("delivered_at", "clicked_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() + "Z" if v else None

    model_config = {"from_attributes": True}


# ============================================================================
# Producer Schemas
# ============================================================================


class EnqueueRequest(BaseModel):
    """
    Schema for enqueueing a notification intent.

    The tenant is taken from the caller's token; the recipient is explicit
    because producers notify other staff members.
    """

    recipient_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(default="", max_length=4000)
    payload: Dict[str, Any] = Field(default_factory=dict)
    channel: Literal["push", "in_app"] = "push"
    priority: Literal["normal", "high"] = "normal"
    scheduled_for: Optional[datetime] = Field(
        default=None,
        description="Earliest delivery time; omit to deliver right away",
    )

    @field_validator("recipient_id", "title")
    @classmethod
    def reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class EnqueueResponse(BaseModel):
    id: int
    status: str
    created_at: datetime
    scheduled_for: Optional[datetime] = None

    @field_serializer("created_at", "scheduled_for")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() + "Z" if v else None


# ============================================================================
# Maintenance Schemas
# ============================================================================


class MaintenanceResponse(BaseModel):
    acknowledgements_purged: int
    subscriptions_deleted: int
    subscriptions_deactivated: int
    claims_released: int
    intents_purged: int


class DispatchResponse(BaseModel):
    claimed: int
    sent: int
    retried: int
    failed: int
    deactivated: int
