"""
Change stream transport.

Reads row changes of the device's restaurant from the server's
``GET /api/changes/stream`` Server-Sent Events endpoint. The connection
manager only depends on the ChangeStreamTransport protocol, so tests can
feed it scripted streams.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Sequence

import httpx

from device.src import __version__

logger = logging.getLogger("servicebell.device.stream")

STREAM_PATH = "/api/changes/stream"
CONNECT_TIMEOUT = 10.0  # seconds
# Server sends a keepalive every 15 seconds
READ_TIMEOUT = 45.0  # seconds

EVENT_READY = "ready"
EVENT_CHANGE = "change"
EVENT_KEEPALIVE = "keepalive"


class ChangeStreamError(Exception):
    """Raised when the change stream cannot be opened or drops."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class StreamMessage:
    """One frame received on a change stream."""

    event: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TopicFilter:
    """
    Declarative filter for the changes a consumer wants.

    Attributes:
        table: Table name (e.g. "bookings")
        event: INSERT, UPDATE, DELETE or "*"
        row_filter: Optional ``column=eq.value`` condition on the row
    """

    table: str
    event: str = "*"
    row_filter: Optional[str] = None

    def __post_init__(self):
        if self.event != "*" and self.event not in ("INSERT", "UPDATE", "DELETE"):
            raise ValueError(f"Unsupported event type: {self.event}")
        if self.row_filter is not None:
            self._parse_row_filter(self.row_filter)

    @staticmethod
    def _parse_row_filter(row_filter: str) -> tuple[str, str]:
        column, sep, condition = row_filter.partition("=")
        if not sep or not column or not condition.startswith("eq."):
            raise ValueError(f"Row filter must look like 'column=eq.value': {row_filter!r}")
        return column, condition[len("eq."):]

    def matches(self, change: Dict[str, Any]) -> bool:
        if change.get("table") != self.table:
            return False
        if self.event != "*" and change.get("type") != self.event:
            return False
        if self.row_filter is None:
            return True

        column, expected = self._parse_row_filter(self.row_filter)
        row = change.get("new") or change.get("old") or {}
        value = row.get(column)
        return value is not None and str(value) == expected


class ChangeStreamTransport(Protocol):
    """Opens one change stream connection per call."""

    def stream(self, channel: str, tables: Sequence[str]) -> AsyncIterator[StreamMessage]:
        """
        Yield frames until the connection ends.

        Raises:
            ChangeStreamError: If the stream cannot be opened or drops
        """
        ...


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[StreamMessage]:
    """
    Turn Server-Sent Events lines into StreamMessages.

    Comment lines (keepalives) become EVENT_KEEPALIVE messages so the
    consumer can count them as signs of life.
    """
    event: Optional[str] = None
    data_lines: list[str] = []

    async for line in lines:
        line = line.rstrip("\r")
        if line == "":
            if data_lines:
                raw = "\n".join(data_lines)
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring malformed change stream frame: %.200s", raw)
                else:
                    yield StreamMessage(event=event or EVENT_CHANGE, data=data)
            event = None
            data_lines = []
            continue

        if line.startswith(":"):
            yield StreamMessage(event=EVENT_KEEPALIVE)
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)


class SseChangeStreamTransport:
    """
    ChangeStreamTransport over the server's SSE endpoint.

    Args:
        server_url: Base URL of the ServiceBell server
        api_token: Bearer token carrying the staff id and restaurant
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        server_url: str,
        api_token: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=server_url.rstrip("/"),
            headers={
                "User-Agent": f"ServiceBell-Device/{__version__}",
                "Accept": "text/event-stream",
                "Authorization": f"Bearer {api_token}",
            },
            timeout=httpx.Timeout(CONNECT_TIMEOUT, read=READ_TIMEOUT),
            transport=transport,
        )

    async def stream(self, channel: str, tables: Sequence[str]) -> AsyncIterator[StreamMessage]:
        params = {"channel": channel}
        if tables:
            params["tables"] = ",".join(tables)
        request = self._client.build_request("GET", STREAM_PATH, params=params)

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise ChangeStreamError(f"Change stream connect timed out: {e}")
        except httpx.TransportError as e:
            raise ChangeStreamError(f"Failed to open change stream: {e}")

        try:
            if response.status_code != 200:
                raise ChangeStreamError(
                    f"Change stream rejected with status {response.status_code}",
                    status_code=response.status_code,
                )
            async for message in parse_sse(response.aiter_lines()):
                yield message
        except httpx.TimeoutException as e:
            raise ChangeStreamError(f"Change stream went silent: {e}")
        except httpx.TransportError as e:
            raise ChangeStreamError(f"Change stream dropped: {e}")
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()
