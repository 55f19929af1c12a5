"""
Device main loop.

Wires the connection manager, notification bridge and sync client
together and runs them until SIGINT/SIGTERM. SIGUSR1 asks the connection
manager for a recovery pass.
"""

import asyncio
import logging
import signal
from typing import Optional

from device.src import __version__
from device.src.api_client import AuthenticationError, ServiceBellApiClient
from device.src.backoff import ReconnectBackoff
from device.src.change_stream import ChangeStreamTransport, SseChangeStreamTransport
from device.src.config import DeviceConfig
from device.src.connection_manager import ConnectionManager, LivenessSignal
from device.src.notification_bridge import (
    ApiOutboxSink,
    NotificationBridge,
    StaticRecipientResolver,
)
from device.src.notification_store import NotificationStore
from device.src.sync_client import DeviceSyncClient, Presenter


# ============================================================================
# Logging Setup
# ============================================================================


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Setup logging for the device.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured logger
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    return logging.getLogger("servicebell.device")


# ============================================================================
# Device Runner
# ============================================================================


class DeviceRunner:
    """
    Main device loop runner.

    Owns the single ConnectionManager of the process and hands it to the
    bridge. Runs the heartbeat and escalation loops until shutdown.

    Attributes:
        config: Device configuration
        logger: Logger instance
    """

    def __init__(
        self,
        config: DeviceConfig,
        presenter: Optional[Presenter] = None,
        transport: Optional[ChangeStreamTransport] = None,
        api_client: Optional[ServiceBellApiClient] = None,
        store: Optional[NotificationStore] = None,
    ):
        self.config = config
        self.logger = setup_logging(config.log_level)
        self._shutdown_event = asyncio.Event()

        self.api_client = api_client or ServiceBellApiClient(
            server_url=config.server_url,
            api_token=config.api_token,
        )
        self.store = store or NotificationStore(max_pings=config.max_pings)
        self.manager = ConnectionManager(
            transport or SseChangeStreamTransport(config.server_url, config.api_token),
            backoff=ReconnectBackoff(
                base=config.backoff_base_seconds,
                max_delay=config.backoff_max_seconds,
                jitter=config.backoff_jitter,
            ),
            max_reconnect_attempts=config.max_reconnect_attempts,
            health_check_interval=config.health_check_interval_seconds,
            recovery_debounce=config.recovery_debounce_seconds,
        )
        self.bridge: Optional[NotificationBridge] = None
        if config.recipients:
            self.bridge = NotificationBridge(
                self.manager,
                ApiOutboxSink(self.api_client),
                StaticRecipientResolver(config.recipients),
                tenant_id=config.tenant_id,
            )
        self.sync_client = DeviceSyncClient(
            self.api_client,
            self.store,
            presenter=presenter,
            heartbeat_interval=config.heartbeat_interval_seconds,
            ping_interval=config.ping_interval_seconds,
            endpoint=config.endpoint or None,
            on_liveness=self.manager.trigger_recovery,
        )

    async def run(self) -> int:
        """
        Run the device until shutdown.

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)
        if hasattr(signal, "SIGUSR1"):
            loop.add_signal_handler(signal.SIGUSR1, self.manager.trigger_recovery, LivenessSignal.MANUAL)

        if not self.config.is_configured:
            self.logger.error("Device is not configured (server_url, api_token and tenant_id are required).")
            return 1

        self.logger.info(f"Starting ServiceBell Device v{__version__}")
        self.logger.info(f"Server: {self.config.server_url}")
        self.logger.info(f"Restaurant: {self.config.tenant_id}")
        self.logger.info(f"Heartbeat interval: {self.sync_client.heartbeat_interval}s")

        try:
            return await self._main_loop()
        except asyncio.CancelledError:
            self.logger.info("Device shutdown requested")
            return 0
        except AuthenticationError as e:
            self.logger.error(f"Authentication failed: {e}")
            return 3
        finally:
            await self._shutdown()

    async def _main_loop(self) -> int:
        self.manager.start()
        if self.bridge is not None:
            self.bridge.start()
        else:
            self.logger.warning("No recipients configured, change notifications are not produced")

        # Catch up on anything queued while the device was off
        await self.sync_client.sync_now()

        heartbeat_task = asyncio.create_task(self.sync_client.heartbeat_loop(self._shutdown_event))
        escalation_task = asyncio.create_task(self.sync_client.escalation_loop(self._shutdown_event))
        tasks = [heartbeat_task, escalation_task]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc:
                    raise exc
        finally:
            self._shutdown_event.set()
            for task in tasks:
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

        self.logger.info("Device stopped")
        return 0

    async def _shutdown(self) -> None:
        if self.bridge is not None:
            await self.bridge.stop()
            if self.bridge.buffered:
                self.logger.warning(f"{self.bridge.buffered} intents were still buffered at shutdown")
        await self.manager.close()
        await self.api_client.close()

    def request_shutdown(self) -> None:
        """Request graceful shutdown of the device."""
        self._shutdown_event.set()
