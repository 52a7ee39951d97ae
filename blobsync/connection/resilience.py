"""Reconnect timing and lifecycle state for the real-time channel.

The state machine performs no I/O. The transport reports connect and
disconnect signals through the transition methods and asks
``next_retry_delay`` how long to wait before its next reconnect attempt.
"""

import asyncio
import random
import threading
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from blobsync.core.logging import get_logger
from blobsync.core.notifications import Notification, NotificationBus, NotificationType

logger = get_logger("blobsync.connection")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


StateListener = Callable[[ConnectionState, ConnectionState], None]

# Delay in seconds for the first reconnect attempts; later ones are randomized
RETRY_SCHEDULE = (3.0, 5.0, 10.0)
DEGRADED_DELAY_MIN = 10.0
DEGRADED_DELAY_SPAN = 10.0


class ConnectionMonitor:
    """Single-writer, many-reader connection state with reconnect backoff.

    Once reconnect attempts reach the randomized tier the connection counts
    as degraded and one "Connection lost" notification is published. It is
    not repeated until a successful connection re-arms it.
    """

    def __init__(self, bus: Optional[NotificationBus] = None, rng: Optional[random.Random] = None):
        self._bus = bus or NotificationBus()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._attempts = 0
        self._notified_this_episode = False
        self._listeners: list[StateListener] = []
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def attempts(self) -> int:
        """Reconnect attempts since the last successful connection."""
        with self._lock:
            return self._attempts

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a ``(old, new)`` state change listener.

        Returns:
            Function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # -- transitions -------------------------------------------------------

    def begin_connect(self) -> None:
        self._transition(
            ConnectionState.CONNECTING,
            allowed_from={ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING},
        )

    def connected(self) -> None:
        """Connection (re)established; resets backoff and re-arms the notification."""
        self._transition(
            ConnectionState.CONNECTED,
            allowed_from={ConnectionState.CONNECTING, ConnectionState.RECONNECTING},
        )

    def connection_lost(self, error: Optional[BaseException] = None) -> None:
        if error is not None:
            logger.info("connection_lost", error=str(error))
        self._transition(
            ConnectionState.RECONNECTING,
            allowed_from={ConnectionState.CONNECTED, ConnectionState.CONNECTING},
        )

    def shutdown(self) -> None:
        self._transition(ConnectionState.DISCONNECTED, allowed_from=set(ConnectionState))

    def auth_failed(self, reason: str = "") -> None:
        logger.warning("connection_auth_failed", reason=reason)
        self._transition(ConnectionState.DISCONNECTED, allowed_from=set(ConnectionState))

    def _transition(self, new: ConnectionState, allowed_from: set[ConnectionState]) -> None:
        with self._lock:
            old = self._state
            if old not in allowed_from:
                raise ValueError(f"Invalid connection transition {old.value} -> {new.value}")
            if old is new:
                return
            self._state = new
            if new is ConnectionState.CONNECTED:
                self._attempts = 0
                self._notified_this_episode = False
                waiters, self._waiters = self._waiters, []
            else:
                waiters = []
            listeners = list(self._listeners)

        logger.info("connection_state_changed", old=old.value, new=new.value)

        for loop, future in waiters:
            try:
                loop.call_soon_threadsafe(_resolve, future)
            except RuntimeError:
                # Loop already closed
                pass

        for listener in listeners:
            try:
                listener(old, new)
            except Exception:
                logger.exception("connection_listener_failed", old=old.value, new=new.value)

    # -- backoff -------------------------------------------------------------

    def next_retry_delay(self, previous_retry_count: Optional[int] = None) -> float:
        """Seconds to wait before the next reconnect attempt.

        Args:
            previous_retry_count: Attempts already made since the last
                successful connection; the internal counter when omitted

        Returns:
            3, 5 and 10 seconds for the first three attempts, then a random
            delay in [10, 20)
        """
        with self._lock:
            if previous_retry_count is None:
                previous_retry_count = self._attempts
            self._attempts = previous_retry_count + 1

            if previous_retry_count < len(RETRY_SCHEDULE):
                return RETRY_SCHEDULE[previous_retry_count]

            delay = DEGRADED_DELAY_MIN + self._rng.random() * DEGRADED_DELAY_SPAN
            notify = not self._notified_this_episode
            self._notified_this_episode = True

        if notify:
            self._bus.publish(
                Notification(
                    title="Connection lost",
                    message="Connection lost to server",
                    severity=NotificationType.WARNING,
                    duration=timedelta(seconds=10),
                )
            )
        return delay

    async def wait_until_connected(self) -> None:
        """Suspend until the state is Connected. Safe from any event loop."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state is ConnectionState.CONNECTED:
                return
            future = loop.create_future()
            self._waiters.append((loop, future))

        try:
            await future
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
