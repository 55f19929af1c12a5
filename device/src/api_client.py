"""
Device API client for the ServiceBell notification endpoints.

Wraps heartbeat, sync pull, delivery tracking, subscription and the
producer enqueue endpoint. Transport failures are mapped to
ApiConnectionError so callers can treat them as "try again later".
"""

from datetime import datetime
from typing import Any, Optional

import httpx

from device.src import __version__


# ============================================================================
# Constants
# ============================================================================

API_BASE_PATH = "/api/notifications"
DEFAULT_TIMEOUT = 10.0  # seconds
USER_AGENT = f"ServiceBell-Device/{__version__}"


# ============================================================================
# Exceptions
# ============================================================================


class ApiError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApiConnectionError(ApiError):
    """Raised when the server cannot be reached or does not answer in time."""

    pass


class AuthenticationError(ApiError):
    """Raised when the access token is missing, invalid or expired."""

    pass


# ============================================================================
# API Client
# ============================================================================


class ServiceBellApiClient:
    """
    Async HTTP client for the device-facing notification API.

    Usage:
        >>> async with ServiceBellApiClient(server_url, api_token) as client:
        ...     response = await client.heartbeat(endpoint=endpoint)
    """

    def __init__(
        self,
        server_url: str,
        api_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            server_url: Base URL of the ServiceBell server
            api_token: Bearer token carrying the staff id and restaurant
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._server_url = server_url.rstrip("/")
        self._api_token = api_token

        headers = {
            "User-Agent": USER_AGENT,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"

        self._client = httpx.AsyncClient(
            base_url=self._server_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def server_url(self) -> str:
        return self._server_url

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to ApiConnectionError."""
        try:
            response = await self._client.request(method, f"{API_BASE_PATH}{path}", **kwargs)
        except httpx.ConnectError as e:
            raise ApiConnectionError(f"Failed to connect to server: {e}")
        except httpx.TimeoutException as e:
            raise ApiConnectionError(f"Connection timed out: {e}")
        except httpx.TransportError as e:
            raise ApiConnectionError(f"Transport error: {e}")

        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired access token", status_code=401)
        return response

    @staticmethod
    def _fail(action: str, response: httpx.Response) -> ApiError:
        detail = ""
        try:
            detail = response.json().get("detail", "")
        except ValueError:
            pass
        message = f"{action} failed with status {response.status_code}"
        if detail:
            message = f"{message}: {detail}"
        return ApiError(message, status_code=response.status_code)

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def heartbeat(
        self,
        timestamp: Optional[float] = None,
        client_version: Optional[str] = __version__,
        endpoint: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Report liveness to the server.

        Args:
            timestamp: Client time in milliseconds since the epoch
            client_version: Version string of this device
            endpoint: Push endpoint whose last_seen should be refreshed

        Returns:
            {command, pending, heartbeat_interval, server_time}

        Raises:
            AuthenticationError: If the access token is rejected
            ApiConnectionError: If connection to server fails
        """
        payload: dict[str, Any] = {}
        if timestamp is not None:
            payload["timestamp"] = timestamp
        if client_version:
            payload["client_version"] = client_version
        if endpoint:
            payload["endpoint"] = endpoint

        response = await self._request("POST", "/heartbeat", json=payload)
        if response.status_code == 200:
            return response.json()
        raise self._fail("Heartbeat", response)

    # -------------------------------------------------------------------------
    # Sync Pull
    # -------------------------------------------------------------------------

    async def sync(self) -> dict[str, Any]:
        """
        Pull queued notifications. The server marks every returned entry sent.

        Returns:
            {notifications: [{id, title, body, data}], count}
        """
        response = await self._request("POST", "/sync")
        if response.status_code == 200:
            return response.json()
        raise self._fail("Sync", response)

    async def pending_count(self) -> int:
        """Return how many notifications are queued for this recipient."""
        response = await self._request("GET", "/sync")
        if response.status_code == 200:
            return int(response.json().get("pendingCount", 0))
        raise self._fail("Pending count", response)

    async def check_pending(self) -> dict[str, Any]:
        """
        Claim notifications waiting for a retry.

        Returns:
            {notifications: [...], count}
        """
        response = await self._request("POST", "/check-pending")
        if response.status_code == 200:
            return response.json()
        raise self._fail("Check pending", response)

    async def track_delivery(self, event_type: str, notification_id: int) -> dict[str, Any]:
        """
        Report that a notification was delivered to or clicked on this device.

        Args:
            event_type: "delivered" or "clicked"
            notification_id: Outbox id of the notification

        Returns:
            The acknowledgement record

        Raises:
            ApiError: 404 if the notification is unknown to the server
        """
        response = await self._request(
            "POST",
            "/track-delivery",
            json={"type": event_type, "notificationId": notification_id},
        )
        if response.status_code == 200:
            return response.json()
        raise self._fail("Track delivery", response)

    # -------------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        recipient_id: str,
        title: str,
        body: str = "",
        payload: Optional[dict[str, Any]] = None,
        channel: str = "push",
        priority: str = "normal",
        scheduled_for: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Add a notification intent to the outbox.

        ``scheduled_for`` defers delivery until that time.

        Returns:
            {id, status, created_at}
        """
        response = await self._request(
            "POST",
            "/enqueue",
            json={
                "recipient_id": recipient_id,
                "title": title,
                "body": body,
                "payload": payload or {},
                "channel": channel,
                "priority": priority,
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
            },
        )
        if response.status_code == 202:
            return response.json()
        raise self._fail("Enqueue", response)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        device_name: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> dict[str, Any]:
        """Register (or refresh) this device's push subscription."""
        device_info: dict[str, Any] = {"userAgent": USER_AGENT}
        if device_name:
            device_info["name"] = device_name
        if platform:
            device_info["platform"] = platform

        response = await self._request(
            "POST",
            "/subscribe",
            json={
                "subscription": {"endpoint": endpoint, "keys": {"p256dh": p256dh, "auth": auth}},
                "deviceInfo": device_info,
            },
        )
        if response.status_code == 201:
            return response.json()
        raise self._fail("Subscribe", response)

    async def unsubscribe(self, endpoint: str) -> None:
        """Deactivate this device's push subscription."""
        response = await self._request("DELETE", "/subscribe", json={"endpoint": endpoint})
        if response.status_code != 204:
            raise self._fail("Unsubscribe", response)

    async def get_vapid_key(self) -> str:
        """Return the server's VAPID public key."""
        response = await self._request("GET", "/vapid-key")
        if response.status_code == 200:
            return response.json()["publicKey"]
        raise self._fail("VAPID key", response)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "ServiceBellApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
