"""Tests for the connection state machine and reconnect backoff."""

import asyncio
import random
import threading
from unittest.mock import Mock

import pytest

from blobsync.connection import ConnectionMonitor, ConnectionState
from blobsync.core.notifications import NotificationBus, NotificationType


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def notifications(bus: NotificationBus) -> list:
    received: list = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def monitor(bus: NotificationBus) -> ConnectionMonitor:
    return ConnectionMonitor(bus=bus, rng=random.Random(7))


def _lose_connection(monitor: ConnectionMonitor) -> None:
    monitor.begin_connect()
    monitor.connected()
    monitor.connection_lost(ConnectionResetError("peer reset"))


class TestRetrySchedule:
    @pytest.mark.parametrize("previous,expected", [(0, 3.0), (1, 5.0), (2, 10.0)])
    def test_fixed_delays_for_first_attempts(self, monitor, previous, expected):
        assert monitor.next_retry_delay(previous) == expected

    def test_later_attempts_are_randomized_between_10_and_20(self, monitor):
        delays = [monitor.next_retry_delay(n) for n in range(3, 40)]

        assert all(10.0 <= d < 20.0 for d in delays)
        assert len(set(delays)) > 1

    def test_internal_counter_advances(self, monitor):
        delays = [monitor.next_retry_delay() for _ in range(4)]

        assert delays[:3] == [3.0, 5.0, 10.0]
        assert 10.0 <= delays[3] < 20.0
        assert monitor.attempts == 4

    def test_successful_connection_resets_schedule(self, monitor):
        _lose_connection(monitor)
        for _ in range(5):
            monitor.next_retry_delay()

        monitor.begin_connect()
        monitor.connected()

        assert monitor.attempts == 0
        assert monitor.next_retry_delay() == 3.0


class TestConnectionLostNotification:
    def test_not_published_during_fixed_delays(self, monitor, notifications):
        for _ in range(3):
            monitor.next_retry_delay()
        assert notifications == []

    def test_published_once_per_episode(self, monitor, notifications):
        _lose_connection(monitor)
        for _ in range(10):
            monitor.next_retry_delay()

        assert len(notifications) == 1
        assert notifications[0].title == "Connection lost"
        assert notifications[0].message == "Connection lost to server"
        assert notifications[0].severity is NotificationType.WARNING

    def test_rearmed_after_successful_connection(self, monitor, notifications):
        _lose_connection(monitor)
        for _ in range(5):
            monitor.next_retry_delay()

        monitor.begin_connect()
        monitor.connected()
        monitor.connection_lost()
        for _ in range(5):
            monitor.next_retry_delay()

        assert len(notifications) == 2


class TestTransitions:
    def test_starts_disconnected(self, monitor):
        assert monitor.state is ConnectionState.DISCONNECTED
        assert not monitor.is_connected

    def test_full_lifecycle(self, monitor):
        listener = Mock()
        monitor.subscribe(listener)

        _lose_connection(monitor)
        monitor.begin_connect()
        monitor.connected()
        monitor.shutdown()

        transitions = [(c.args[0], c.args[1]) for c in listener.call_args_list]
        assert transitions == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
            (ConnectionState.CONNECTED, ConnectionState.RECONNECTING),
            (ConnectionState.RECONNECTING, ConnectionState.CONNECTING),
            (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
            (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
        ]

    def test_invalid_transitions_are_rejected(self, monitor):
        with pytest.raises(ValueError):
            monitor.connected()
        with pytest.raises(ValueError):
            monitor.connection_lost()

        monitor.begin_connect()
        monitor.connected()
        with pytest.raises(ValueError):
            monitor.begin_connect()

    def test_auth_failure_disconnects(self, monitor):
        monitor.begin_connect()
        monitor.auth_failed("token expired")
        assert monitor.state is ConnectionState.DISCONNECTED

    def test_unsubscribe_and_failing_listener(self, monitor):
        failing = Mock(side_effect=RuntimeError("listener bug"))
        removed = Mock()
        monitor.subscribe(failing)
        monitor.subscribe(removed)()

        monitor.begin_connect()

        failing.assert_called_once()
        removed.assert_not_called()
        assert monitor.state is ConnectionState.CONNECTING


@pytest.mark.asyncio
class TestWaitUntilConnected:
    async def test_returns_immediately_when_connected(self, monitor):
        monitor.begin_connect()
        monitor.connected()
        await asyncio.wait_for(monitor.wait_until_connected(), timeout=1)

    async def test_blocks_until_connected(self, monitor):
        waiter = asyncio.create_task(monitor.wait_until_connected())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        monitor.begin_connect()
        await asyncio.sleep(0.01)
        assert not waiter.done()

        monitor.connected()
        await asyncio.wait_for(waiter, timeout=1)

    async def test_woken_from_another_thread(self, monitor):
        waiter = asyncio.create_task(monitor.wait_until_connected())
        await asyncio.sleep(0.01)

        def connect():
            monitor.begin_connect()
            monitor.connected()

        thread = threading.Thread(target=connect)
        thread.start()
        await asyncio.wait_for(waiter, timeout=1)
        thread.join()

    async def test_cancelled_waiter_is_discarded(self, monitor):
        waiter = asyncio.create_task(monitor.wait_until_connected())
        await asyncio.sleep(0.01)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert monitor._waiters == []
