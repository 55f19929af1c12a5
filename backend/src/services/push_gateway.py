"""
Push gateway client: delivers one encrypted message to one subscription.

``WebPushGateway`` wraps pywebpush (VAPID-signed, aes128gcm encrypted Web
Push). Outcomes are reduced to three cases the dispatcher cares about:

- returns normally: the gateway accepted the message
- ``PushGoneError``: the endpoint is permanently invalid (404/410)
- ``PushDeliveryError``: anything else (timeouts, 5xx, 429, network errors)
"""

import json
from typing import Any, Dict, Optional, Protocol

from pywebpush import WebPushException, webpush

from backend.src.models import PushSubscription
from backend.src.utils.logging_config import get_logger


logger = get_logger("dispatch")

GONE_STATUS_CODES = (404, 410)


class PushDeliveryError(Exception):
    """Transient push delivery failure; the intent should be retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PushGoneError(Exception):
    """Raised when the push service reports the subscription gone (404/410)."""

    def __init__(self, endpoint: str, status_code: Optional[int] = None):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(f"Push subscription gone: {endpoint[:60]}")


class PushNotConfiguredError(Exception):
    """Raised when a gateway is built without VAPID credentials."""
    pass


class PushGateway(Protocol):
    """Send primitive used by the delivery dispatcher."""

    def send(
        self,
        subscription: PushSubscription,
        message: Dict[str, Any],
        urgency: str = "normal",
        topic: Optional[str] = None,
    ) -> None:
        ...


class WebPushGateway:
    """
    Web Push sender backed by pywebpush.

    Args:
        vapid_private_key: Base64url VAPID private key (or PEM path)
        vapid_claims: VAPID claims, at least {"sub": "mailto:..."}
        ttl: Seconds the push service should hold an undelivered message
        timeout: Bound on each gateway request; exceeding it is transient
    """

    def __init__(
        self,
        vapid_private_key: str,
        vapid_claims: Dict[str, str],
        ttl: int = 86400,
        timeout: float = 10.0,
    ):
        if not vapid_private_key or not vapid_claims.get("sub"):
            raise PushNotConfiguredError(
                "VAPID_PRIVATE_KEY and VAPID_SUBJECT must be set to deliver Web Push"
            )
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = vapid_claims
        self.ttl = ttl
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "WebPushGateway":
        return cls(
            vapid_private_key=settings.vapid_private_key,
            vapid_claims=settings.vapid_claims,
            ttl=settings.push_ttl_seconds,
            timeout=settings.push_timeout_seconds,
        )

    def send(
        self,
        subscription: PushSubscription,
        message: Dict[str, Any],
        urgency: str = "normal",
        topic: Optional[str] = None,
    ) -> None:
        """
        Send a push message to a single subscription.

        Args:
            subscription: Target push subscription
            message: JSON-serializable message (title, body, data, tag, ...)
            urgency: Web Push Urgency header (very-low, low, normal, high)
            topic: Optional Topic header; a newer message with the same topic
                replaces an undelivered older one at the push service

        Raises:
            PushGoneError: If the subscription returned 404/410
            PushDeliveryError: If delivery failed for any other reason
        """
        headers = {"Urgency": urgency}
        if topic:
            headers["Topic"] = topic

        # pywebpush's vapid_claims are mutated per call (aud/exp), so pass a copy
        claims = dict(self.vapid_claims)

        try:
            webpush(
                subscription_info=subscription.subscription_info,
                data=json.dumps(message),
                vapid_private_key=self.vapid_private_key,
                vapid_claims=claims,
                ttl=self.ttl,
                headers=headers,
                timeout=self.timeout,
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code in GONE_STATUS_CODES:
                raise PushGoneError(subscription.endpoint, status_code=status_code) from e
            raise PushDeliveryError(str(e), status_code=status_code) from e
        except Exception as e:
            # requests timeouts and connection errors surface here
            raise PushDeliveryError(f"{type(e).__name__}: {e}") from e
