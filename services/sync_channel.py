#!/usr/bin/env python3
"""
Sync Channel - Best-effort real-time push of order events

Delivery guarantees:
- At-least-once: the same event may arrive more than once
- No ordering across event types; per-order seq is non-decreasing when present
- Nothing is buffered while disconnected; a reconnect emits resync_required
  instead of replaying missed events

All inbound payloads pass through one asyncio.Queue and are dispatched by a
single pump task, so handlers never run concurrently with each other.

ChannelHub is the publishing side of the in-memory transport: the backend
broadcasts into it, every connected SyncChannel receives a copy.
"""

import asyncio
import logging
from typing import Any, Callable, List, Optional, Union

from core.event_bus import EventBus, Subscription
from core.event_schemas import ChannelEvent, EventType, parse_event
from core.exceptions import AuthError, ValidationError
from core.logger_factory import SYNC_LOG, log_event

logger = logging.getLogger(__name__)

ANY_EVENT = "*"

Listener = Callable[[Any], None]


class ChannelHub:
    """
    In-memory broadcast point shared by the backend and all connected channels.
    """

    def __init__(self, authenticate: Optional[Callable[[Optional[str]], None]] = None):
        self._authenticate = authenticate
        self._listeners: List[Listener] = []
        self.broadcast_count = 0

    def authenticate(self, credentials: Optional[str]) -> None:
        """Raise AuthError if the credentials are not accepted."""
        if self._authenticate is not None:
            self._authenticate(credentials)

    def attach(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that detaches it."""
        self._listeners.append(listener)

        def _detach() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _detach

    def broadcast(self, payload: Any) -> int:
        """Deliver a payload to every attached listener."""
        self.broadcast_count += 1
        listeners = list(self._listeners)
        for listener in listeners:
            listener(payload)
        return len(listeners)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class SyncChannel:
    """
    Client end of the push channel.

    Usage:
        channel = SyncChannel(hub)
        sub = channel.subscribe(EventType.ORDER_ASSIGNED, on_assigned)
        await channel.connect(credentials)
        ...
        sub.close()
        await channel.disconnect()
    """

    def __init__(self, hub: ChannelHub, name: str = "channel"):
        self.hub = hub
        self.name = name
        self._bus = EventBus(f"channel:{name}")
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._detach: Optional[Callable[[], None]] = None
        self._connected = False
        self._was_connected = False
        self.received = 0
        self.dropped_malformed = 0

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(self, event_type: Union[EventType, str], handler: Callable[[ChannelEvent], None]) -> Subscription:
        """
        Subscribe to one event type, or to every event with "*".

        Returns:
            Subscription handle; close() detaches the handler
        """
        topic = event_type.value if isinstance(event_type, EventType) else event_type
        return self._bus.subscribe(topic, handler)

    async def connect(self, credentials: Optional[str] = None) -> None:
        """
        Open the channel and start the pump.

        Raises:
            AuthError: credentials rejected by the hub
        """
        if self._connected:
            return

        try:
            self.hub.authenticate(credentials)
        except AuthError:
            log_event(SYNC_LOG(), "channel_auth_failed", level=logging.WARNING, channel=self.name)
            raise

        self._queue = asyncio.Queue()
        self._detach = self.hub.attach(self._enqueue)
        self._connected = True
        self._pump_task = asyncio.get_running_loop().create_task(self._pump(self._queue))

        reconnect = self._was_connected
        self._was_connected = True
        logger.info(f"[{self.name}] connected (reconnect={reconnect})")
        log_event(SYNC_LOG(), "channel_connected", channel=self.name, reconnect=reconnect)

        if reconnect:
            # Missed events are not replayed; consumers resynchronize with a pull
            self._queue.put_nowait(ChannelEvent(event_type=EventType.RESYNC_REQUIRED))

    async def disconnect(self) -> None:
        """Close the channel. Queued, undelivered events are discarded."""
        if not self._connected:
            return

        self._connected = False
        if self._detach is not None:
            self._detach()
            self._detach = None

        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        discarded = 0
        if self._queue is not None:
            # Settle discarded items so pending drain() calls return
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                discarded += 1
        self._queue = None
        logger.info(f"[{self.name}] disconnected ({discarded} undelivered events discarded)")
        log_event(SYNC_LOG(), "channel_disconnected", channel=self.name, discarded=discarded)

    async def drain(self) -> None:
        """Wait until every event received so far has been dispatched."""
        queue = self._queue
        if queue is not None:
            await queue.join()

    def _enqueue(self, payload: Any) -> None:
        if self._connected and self._queue is not None:
            self._queue.put_nowait(payload)

    async def _pump(self, queue: asyncio.Queue) -> None:
        while True:
            payload = await queue.get()
            try:
                self._dispatch(payload)
            finally:
                queue.task_done()

    def _dispatch(self, payload: Any) -> None:
        try:
            event = parse_event(payload)
        except ValidationError as e:
            self.dropped_malformed += 1
            logger.warning(f"[{self.name}] dropping malformed event: {e}")
            log_event(SYNC_LOG(), "event_malformed", level=logging.WARNING, channel=self.name, error=str(e))
            return

        self.received += 1
        self._bus.publish(event.event_type.value, event)
        self._bus.publish(ANY_EVENT, event)
