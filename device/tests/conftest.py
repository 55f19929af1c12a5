"""
Pytest configuration and fixtures for ServiceBell Device tests.

Provides temporary configuration files, a file-backed notification store,
a scripted change stream transport and a recording presenter.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Generator, List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from device.src.change_stream import (
    EVENT_CHANGE,
    EVENT_READY,
    ChangeStreamError,
    StreamMessage,
)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def temp_config_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for device configuration files.

    Yields:
        Path to temporary configuration directory
    """
    with tempfile.TemporaryDirectory(prefix="servicebell_device_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def device_config() -> dict:
    """Sample device configuration."""
    return {
        "server_url": "http://localhost:8000",
        "api_token": "test-access-token",
        "tenant_id": "rest_1",
        "recipients": ["staff_1", "staff_2"],
        "endpoint": "https://fcm.googleapis.com/fcm/send/device-1",
        "heartbeat_interval_seconds": 45,
        "backoff_base_seconds": 0.5,
        "backoff_max_seconds": 20.0,
        "max_pings": 5,
        "log_level": "DEBUG",
    }


@pytest.fixture
def device_config_file(temp_config_dir: Path, device_config: dict) -> Path:
    """Write the sample configuration to a YAML file."""
    config_path = temp_config_dir / "device-config.yaml"
    with open(config_path, "w") as f:
        yaml.dump(device_config, f)
    return config_path


@pytest.fixture(autouse=True)
def clean_device_env(monkeypatch):
    """Keep SERVICEBELL_DEVICE_* variables of the host out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("SERVICEBELL_DEVICE_") and name != "SERVICEBELL_DEVICE_VERSION":
            monkeypatch.delenv(name, raising=False)


# ============================================================================
# Store and Presenter Fixtures
# ============================================================================


@pytest.fixture
def store(temp_config_dir: Path):
    """Notification store writing into the temporary directory."""
    from device.src.notification_store import NotificationStore

    return NotificationStore(path=temp_config_dir / "notifications.json", max_pings=3)


class RecordingPresenter:
    """Presenter that remembers what it showed."""

    def __init__(self):
        self.shown: List[Dict[str, Any]] = []

    def present(self, notification, title: str, ping: int) -> None:
        self.shown.append({"id": notification.id, "title": title, "ping": ping})


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def mock_api() -> MagicMock:
    """ServiceBellApiClient stand-in with every call succeeding."""
    api = MagicMock()
    api.heartbeat = AsyncMock(
        return_value={"command": None, "pending": 0, "heartbeat_interval": 30, "server_time": "x"}
    )
    api.sync = AsyncMock(return_value={"notifications": [], "count": 0})
    api.check_pending = AsyncMock(return_value={"notifications": [], "count": 0})
    api.track_delivery = AsyncMock(return_value={})
    api.enqueue = AsyncMock(return_value={"id": 1, "status": "queued"})
    return api


# ============================================================================
# Change Stream Fixtures
# ============================================================================


_END_OF_STREAM = object()


class ScriptedTransport:
    """
    ChangeStreamTransport driven by a script.

    Each connection pops the next entry of ``script``:
    - an Exception instance: the connection fails with it
    - a list of change dicts: "ready" is sent, then the changes, then the
      connection stays open until cancelled
    When the script is empty, connections fail with ChangeStreamError.
    """

    def __init__(self, script: Optional[list] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []
        self.open_streams = 0
        self.closed = False
        self.inbox: Optional[asyncio.Queue] = None

    async def stream(self, channel: str, tables: Sequence[str]) -> AsyncIterator[StreamMessage]:
        self.calls.append({"channel": channel, "tables": list(tables)})
        step = self.script.pop(0) if self.script else ChangeStreamError("server unavailable")
        if isinstance(step, Exception):
            raise step

        self.open_streams += 1
        self.inbox = asyncio.Queue()
        try:
            yield StreamMessage(event=EVENT_READY, data={"channel": channel})
            for change in step:
                yield StreamMessage(event=EVENT_CHANGE, data=change)
            while True:
                change = await self.inbox.get()
                if change is _END_OF_STREAM:
                    return
                yield StreamMessage(event=EVENT_CHANGE, data=change)
        finally:
            self.open_streams -= 1

    async def push(self, change: Dict[str, Any]) -> None:
        """Deliver a change on the currently open connection."""
        await self.inbox.put(change)

    async def end(self) -> None:
        """Close the currently open connection from the server side."""
        await self.inbox.put(_END_OF_STREAM)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def transport_factory():
    return ScriptedTransport


async def wait_until(predicate, timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


@pytest.fixture
def eventually():
    return wait_until
