"""
Connection manager for change stream channels.

Owns one transport connection per channel name and multiplexes consumer
callbacks over it by topic filter. Dropped connections are retried with
capped exponential backoff; after too many consecutive failures a channel
parks in ``degraded`` until an external liveness signal arrives through
``trigger_recovery``. Every timer is an asyncio task owned by the manager
and cancelled on unsubscribe or close.

Phases per channel:
    connecting -> connected -> (degraded | closed)
    degraded -> connecting    on triggered recovery
    closed -> connecting      on explicit reconnect()
"""

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from device.src.backoff import ReconnectBackoff
from device.src.change_stream import (
    EVENT_CHANGE,
    ChangeStreamError,
    ChangeStreamTransport,
    TopicFilter,
)

logger = logging.getLogger("servicebell.device.connection")

DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_HEALTH_CHECK_INTERVAL = 30.0  # seconds
DEFAULT_RECOVERY_DEBOUNCE = 1.0  # seconds


class ChannelPhase(str, Enum):
    """Lifecycle phase of a change stream channel."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CLOSED = "closed"


class LivenessSignal(str, Enum):
    """External hints that the connection may be usable again."""

    VISIBLE = "visible"
    FOCUS = "focus"
    ONLINE = "online"
    RESUMED = "resumed"
    MANUAL = "manual"


ChangeCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
PhaseListener = Callable[[str, ChannelPhase], None]
RecoveredCallback = Callable[[], Union[None, Awaitable[None]]]


@dataclass(eq=False)
class SubscriptionHandle:
    """Returned by ConnectionManager.subscribe; pass it back to unsubscribe."""

    id: int
    channel: str
    topic: TopicFilter
    callback: ChangeCallback
    active: bool = True


@dataclass(eq=False)
class _Channel:
    name: str
    phase: ChannelPhase = ChannelPhase.CONNECTING
    phase_since: float = 0.0
    handles: List[SubscriptionHandle] = field(default_factory=list)
    tables: Tuple[str, ...] = ()
    failures: int = 0
    connects: int = 0
    last_event_at: Optional[float] = None
    task: Optional[asyncio.Task] = None


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ConnectionManager:
    """
    Resilient multiplexer over a ChangeStreamTransport.

    Create one instance at startup and hand it to every consumer.

    Args:
        transport: Opens change stream connections
        backoff: Reconnect delay policy
        max_reconnect_attempts: Consecutive failures before a channel degrades
        health_check_interval: Seconds between health checks
        recovery_debounce: Window in which recovery triggers are coalesced
        clock: Monotonic time source, replaceable in tests
    """

    def __init__(
        self,
        transport: ChangeStreamTransport,
        backoff: Optional[ReconnectBackoff] = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        recovery_debounce: float = DEFAULT_RECOVERY_DEBOUNCE,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        self._transport = transport
        self._backoff = backoff or ReconnectBackoff()
        self._max_reconnect_attempts = max_reconnect_attempts
        self._health_check_interval = health_check_interval
        self._recovery_debounce = recovery_debounce
        self._clock = clock or time.monotonic

        self._channels: Dict[str, _Channel] = {}
        self._handle_ids = itertools.count(1)
        self._listeners: List[PhaseListener] = []
        self._recovered_callbacks: List[RecoveredCallback] = []
        self._pending_reasons: List[LivenessSignal] = []
        self._health_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._closed = False
        self.recovery_passes = 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def phase(self, channel: str) -> Optional[ChannelPhase]:
        """Phase of a channel, or None if nobody subscribed to it."""
        state = self._channels.get(channel)
        return state.phase if state else None

    def status(self) -> Dict[str, Dict[str, Any]]:
        """Per-channel snapshot for logging and the CLI."""
        return {
            name: {
                "phase": state.phase.value,
                "consumers": len(state.handles),
                "tables": list(state.tables),
                "failures": state.failures,
                "connects": state.connects,
            }
            for name, state in self._channels.items()
        }

    def add_listener(self, listener: PhaseListener) -> None:
        """Call ``listener(channel, phase)`` on every phase change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: PhaseListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on_recovered(self, callback: RecoveredCallback) -> None:
        """Call ``callback()`` after every recovery pass."""
        self._recovered_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic health check. Needs a running event loop."""
        if self._closed:
            raise RuntimeError("ConnectionManager is closed")
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def close(self) -> None:
        """Cancel the health check, any pending recovery, and every channel."""
        self._closed = True
        for task in (self._health_task, self._debounce_task):
            await self._cancel(task)
        self._health_task = None
        self._debounce_task = None

        for state in list(self._channels.values()):
            await self._stop_channel(state)
            for handle in state.handles:
                handle.active = False
            self._set_phase(state, ChannelPhase.CLOSED)
        self._channels.clear()

        aclose = getattr(self._transport, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Connection manager closed")

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(
        self, channel: str, topic: TopicFilter, callback: ChangeCallback
    ) -> SubscriptionHandle:
        """
        Register a consumer for changes matching ``topic`` on ``channel``.

        The first consumer opens the channel. A consumer asking for a table
        the open connection does not carry reopens it with the wider table set.
        """
        if self._closed:
            raise RuntimeError("ConnectionManager is closed")

        handle = SubscriptionHandle(
            id=next(self._handle_ids), channel=channel, topic=topic, callback=callback
        )
        state = self._channels.get(channel)
        if state is None:
            state = _Channel(name=channel, phase_since=self._clock())
            self._channels[channel] = state
            state.handles.append(handle)
            logger.info("Opening channel %s", channel)
            self._start_channel(state)
        else:
            state.handles.append(handle)
            if state.phase is not ChannelPhase.CLOSED and topic.table not in state.tables:
                self._start_channel(state)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """
        Remove a consumer. The last consumer of a channel tears it down,
        including any pending backoff timer. Unsubscribing twice is a no-op.
        """
        if not handle.active:
            return
        handle.active = False

        state = self._channels.get(handle.channel)
        if state is None:
            return
        if handle in state.handles:
            state.handles.remove(handle)
        if state.handles:
            return

        del self._channels[handle.channel]
        await self._stop_channel(state)
        self._set_phase(state, ChannelPhase.CLOSED)
        logger.info("Closed channel %s (no consumers left)", state.name)

    async def disconnect(self, channel: str) -> None:
        """Drop a channel's connection but keep its consumers (phase closed)."""
        state = self._channels.get(channel)
        if state is None:
            return
        await self._stop_channel(state)
        self._set_phase(state, ChannelPhase.CLOSED)

    def reconnect(self, channel: str) -> bool:
        """
        Reopen a channel immediately with a fresh failure count.

        Returns:
            False if the channel does not exist
        """
        state = self._channels.get(channel)
        if state is None or self._closed:
            return False
        state.failures = 0
        self._start_channel(state)
        return True

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def trigger_recovery(self, reason: Union[LivenessSignal, str] = LivenessSignal.MANUAL) -> None:
        """
        Single entry point for liveness signals.

        Signals arriving within the debounce window share one recovery pass.
        """
        if self._closed:
            return
        signal = LivenessSignal(reason)
        self._pending_reasons.append(signal)
        logger.debug("Recovery requested (%s)", signal.value)
        if self._debounce_task is None or self._debounce_task.done():
            self._debounce_task = asyncio.create_task(self._debounced_recovery())

    async def _debounced_recovery(self) -> None:
        # Signals that arrive while a pass runs its callbacks get a pass of their own
        while self._pending_reasons:
            await asyncio.sleep(self._recovery_debounce)
            reasons, self._pending_reasons = self._pending_reasons, []
            await self._recover(reasons)

    async def _recover(self, reasons: List[LivenessSignal]) -> None:
        self.recovery_passes += 1
        reconnected = []
        for state in list(self._channels.values()):
            if state.phase in (ChannelPhase.CONNECTING, ChannelPhase.DEGRADED):
                state.failures = 0
                self._start_channel(state)
                reconnected.append(state.name)

        logger.info(
            "Recovery pass (%s): reconnecting %s",
            ", ".join(sorted({r.value for r in reasons})) or "none",
            reconnected or "nothing",
        )
        for callback in list(self._recovered_callbacks):
            try:
                await _call(callback)
            except Exception:
                logger.exception("Recovered callback failed")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_check_interval)
            self.check_health()

    def check_health(self) -> List[str]:
        """
        Force a reconnect of channels stuck connecting without any event
        for a whole health check interval. Degraded channels wait for
        trigger_recovery instead.

        Returns:
            Names of the channels that were restarted
        """
        now = self._clock()
        restarted = []
        for state in list(self._channels.values()):
            if state.phase is not ChannelPhase.CONNECTING:
                continue
            last_sign = max(state.last_event_at or 0.0, state.phase_since)
            if now - last_sign >= self._health_check_interval:
                logger.warning("Channel %s silent for %.0fs, reconnecting", state.name, now - last_sign)
                self._start_channel(state)
                restarted.append(state.name)
        return restarted

    # -------------------------------------------------------------------------
    # Channel tasks
    # -------------------------------------------------------------------------

    def _start_channel(self, state: _Channel) -> None:
        if state.task is not None and not state.task.done():
            state.task.cancel()
        state.task = asyncio.create_task(self._run_channel(state), name=f"channel:{state.name}")

    async def _stop_channel(self, state: _Channel) -> None:
        task, state.task = state.task, None
        if task is asyncio.current_task():
            # Unsubscribed from inside one of the channel's own callbacks
            task.cancel()
            return
        await self._cancel(task)

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_channel(self, state: _Channel) -> None:
        state.tables = tuple(sorted({h.topic.table for h in state.handles}))

        while True:
            self._set_phase(state, ChannelPhase.CONNECTING)
            state.connects += 1
            try:
                async for message in self._transport.stream(state.name, state.tables):
                    state.last_event_at = self._clock()
                    state.failures = 0
                    if state.phase is not ChannelPhase.CONNECTED:
                        self._set_phase(state, ChannelPhase.CONNECTED)
                    if message.event == EVENT_CHANGE:
                        await self._dispatch(state, message.data)
                reason = "stream ended"
            except ChangeStreamError as e:
                reason = str(e)
            except Exception as e:
                logger.exception("Unexpected error on channel %s", state.name)
                reason = repr(e)

            state.failures += 1
            if state.failures >= self._max_reconnect_attempts:
                self._set_phase(state, ChannelPhase.DEGRADED)
                logger.warning(
                    "Channel %s degraded after %d failed attempts (%s), waiting for recovery",
                    state.name,
                    state.failures,
                    reason,
                )
                return

            self._set_phase(state, ChannelPhase.CONNECTING)
            delay = self._backoff.delay(state.failures - 1)
            logger.info(
                "Channel %s disconnected (%s), retry %d/%d in %.1fs",
                state.name,
                reason,
                state.failures,
                self._max_reconnect_attempts,
                delay,
            )
            await asyncio.sleep(delay)

    async def _dispatch(self, state: _Channel, change: Dict[str, Any]) -> None:
        for handle in list(state.handles):
            if not handle.active or not handle.topic.matches(change):
                continue
            try:
                await _call(handle.callback, change)
            except Exception:
                logger.exception(
                    "Change callback failed on channel %s (table %s)", state.name, handle.topic.table
                )

    def _set_phase(self, state: _Channel, phase: ChannelPhase) -> None:
        if state.phase is phase:
            return
        previous, state.phase = state.phase, phase
        state.phase_since = self._clock()
        logger.info("Channel %s: %s -> %s", state.name, previous.value, phase.value)
        for listener in list(self._listeners):
            try:
                listener(state.name, phase)
            except Exception:
                logger.exception("Phase listener failed")
