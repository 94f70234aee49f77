"""
Tests for the Notification Subscriber retry state machine.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from conftest import FakeEventSource
from hdaguard.config import WatchConfig
from hdaguard.core.subscriber import NotificationSubscriber, StateKind, SubscriberState


class RecordingSleep:
    """Sleep stand-in that records requested durations without waiting."""

    def __init__(self, interrupt_after: int | None = None) -> None:
        self.calls: list[float] = []
        self.interrupt_after = interrupt_after

    async def __call__(self, seconds: float) -> bool:
        self.calls.append(seconds)
        await asyncio.sleep(0)
        return self.interrupt_after is not None and len(self.calls) >= self.interrupt_after


def _subscriber(
    source: FakeEventSource,
    sleep: RecordingSleep,
    max_retries: int = 3,
    changes: list[str] | None = None,
) -> NotificationSubscriber:
    config = WatchConfig(
        retry_interval_seconds=300,
        max_retries=max_retries,
        long_retry_interval_minutes=30,
    )
    on_change = changes.append if changes is not None else (lambda _desc: None)
    return NotificationSubscriber(source, on_change, config, sleep=sleep)


def _names(subscriber: NotificationSubscriber) -> list[str]:
    return [str(s) for s in subscriber.history]


class TestSubscriberState:
    """Tests for the tagged state value."""

    def test_str(self) -> None:
        """Test state rendering used in logs and status output."""
        assert str(SubscriberState.registering(2)) == "registering(2)"
        assert str(SubscriberState.active()) == "active"
        assert str(SubscriberState.backoff_wait()) == "backoff_wait"
        assert str(SubscriberState.unregistered()) == "unregistered"

    def test_equality(self) -> None:
        """Test states compare by kind and attempt."""
        assert SubscriberState.registering(1) == SubscriberState.registering(1)
        assert SubscriberState.registering(1) != SubscriberState.registering(2)


class TestRegister:
    """Tests for the registration sequence."""

    def test_initial_state(self) -> None:
        """Test a new subscriber starts unregistered."""
        subscriber = _subscriber(FakeEventSource(), RecordingSleep())

        assert subscriber.state.kind == StateKind.UNREGISTERED
        assert subscriber.is_active is False
        assert subscriber.retry_count == 0

    @pytest.mark.asyncio
    async def test_success_first_attempt(self) -> None:
        """Test registration succeeds without waiting."""
        source = FakeEventSource()
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep)

        assert await subscriber.register() is True

        assert subscriber.is_active is True
        assert _names(subscriber) == ["unregistered", "registering(0)", "active"]
        assert sleep.calls == []
        assert source.attempts == 1

    @pytest.mark.asyncio
    async def test_success_after_retries(self) -> None:
        """Test short retries until the platform accepts the registration."""
        source = FakeEventSource(failures=2)
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep)

        assert await subscriber.register() is True

        assert _names(subscriber) == [
            "unregistered",
            "registering(0)",
            "registering(1)",
            "registering(2)",
            "active",
        ]
        assert sleep.calls == [300.0, 300.0]
        assert subscriber.retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_bound(self) -> None:
        """Test max_retries=3 gives three short retries then the long backoff."""
        source = FakeEventSource(failures=-1)
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep, max_retries=3)

        assert await subscriber.register() is False

        assert _names(subscriber) == [
            "unregistered",
            "registering(0)",
            "registering(1)",
            "registering(2)",
            "registering(3)",
            "backoff_wait",
            "unregistered",
        ]
        assert source.attempts == 4
        assert sleep.calls == [300.0, 300.0, 300.0, 1800.0]
        attempts = [s.attempt for s in subscriber.history if s.kind == StateKind.REGISTERING]
        assert max(attempts) == 3

    @pytest.mark.asyncio
    async def test_zero_retries(self) -> None:
        """Test max_retries=0 enters backoff after the first failure."""
        source = FakeEventSource(failures=-1)
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep, max_retries=0)

        await subscriber.register()

        assert _names(subscriber) == [
            "unregistered", "registering(0)", "backoff_wait", "unregistered",
        ]
        assert sleep.calls == [1800.0]

    @pytest.mark.asyncio
    async def test_cycle_restarts_after_backoff(self) -> None:
        """Test a fresh sequence starts at attempt zero after backoff."""
        source = FakeEventSource(failures=5)
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep, max_retries=3)

        assert await subscriber.register() is False
        assert await subscriber.register() is True

        assert _names(subscriber)[-4:] == [
            "unregistered", "registering(0)", "registering(1)", "active",
        ]
        assert source.attempts == 6
        assert sleep.calls == [300.0, 300.0, 300.0, 1800.0, 300.0]

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_retry_wait(self) -> None:
        """Test an interrupted wait ends the sequence unregistered."""
        source = FakeEventSource(failures=-1)
        sleep = RecordingSleep(interrupt_after=1)
        subscriber = _subscriber(source, sleep)

        assert await subscriber.register() is False

        assert source.attempts == 1
        assert subscriber.state.kind == StateKind.UNREGISTERED

    @pytest.mark.asyncio
    async def test_register_when_active_is_noop(self) -> None:
        """Test an active subscriber does not register twice."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())

        await subscriber.register()
        await subscriber.register()

        assert source.attempts == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retried(self) -> None:
        """Test non-AccessError failures follow the same retry path."""

        class FlakySource(FakeEventSource):
            def subscribe(self, callback):
                self.attempts += 1
                if self.attempts == 1:
                    raise OSError("COM not ready")
                return super().subscribe(callback)

        source = FlakySource()
        sleep = RecordingSleep()
        subscriber = _subscriber(source, sleep)

        assert await subscriber.register() is True
        assert sleep.calls == [300.0]

    @pytest.mark.asyncio
    async def test_events_reach_callback(self) -> None:
        """Test events from the live subscription reach on_change."""
        source = FakeEventSource()
        changes: list[str] = []
        subscriber = _subscriber(source, RecordingSleep(), changes=changes)

        await subscriber.register()
        source.current.fire("Win32_DeviceChangeEvent type 1")

        assert changes == ["Win32_DeviceChangeEvent type 1"]


class TestLiveness:
    """Tests for subscription loss detection."""

    @pytest.mark.asyncio
    async def test_alive_subscription(self) -> None:
        """Test a live subscription stays active."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        await subscriber.register()

        assert await subscriber.check_liveness() is True
        assert subscriber.is_active is True

    @pytest.mark.asyncio
    async def test_lost_subscription(self) -> None:
        """Test a dead subscription moves to unregistered and is released."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        await subscriber.register()
        lost = source.current
        lost.alive = False

        assert await subscriber.check_liveness() is False

        assert subscriber.state.kind == StateKind.UNREGISTERED
        assert lost.cancelled is True

    @pytest.mark.asyncio
    async def test_reregister_after_loss(self) -> None:
        """Test a lost subscription is replaced by a new one."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        await subscriber.register()
        source.current.alive = False
        await subscriber.check_liveness()

        assert await subscriber.register() is True
        assert len(source.subscriptions) == 2
        assert source.current.is_alive()

    @pytest.mark.asyncio
    async def test_liveness_when_unregistered(self) -> None:
        """Test liveness reports False before registration."""
        subscriber = _subscriber(FakeEventSource(), RecordingSleep())
        assert await subscriber.check_liveness() is False


class TestClose:
    """Tests for subscriber shutdown."""

    @pytest.mark.asyncio
    async def test_close_cancels_subscription(self) -> None:
        """Test close releases the live subscription."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        await subscriber.register()

        subscriber.close()

        assert source.current.cancelled is True
        assert subscriber.state.kind == StateKind.UNREGISTERED

    @pytest.mark.asyncio
    async def test_no_registration_after_close(self) -> None:
        """Test a closed subscriber makes no further attempts."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        subscriber.close()

        assert await subscriber.register() is False
        assert source.attempts == 0

    @pytest.mark.asyncio
    async def test_cancelled_registration_releases_late_subscription(self) -> None:
        """Test a subscription completing after cancellation is not left running."""
        source = FakeEventSource(subscribe_delay=0.2)
        subscriber = _subscriber(source, RecordingSleep())

        task = asyncio.create_task(subscriber.register())
        while source.attempts == 0:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for _ in range(100):
            if source.subscriptions and source.current.cancelled:
                break
            await asyncio.sleep(0.01)

        assert len(source.subscriptions) == 1
        assert source.current.cancelled is True
        assert subscriber.is_active is False


class TestReleaseOffLoop:
    """Tests for releasing platform subscriptions without blocking the loop."""

    @pytest.mark.asyncio
    async def test_lost_subscription_cancelled_on_worker_thread(self) -> None:
        """Test a dead subscription is cancelled off the event loop thread."""
        source = FakeEventSource()
        subscriber = _subscriber(source, RecordingSleep())
        await subscriber.register()
        lost = source.current
        lost.alive = False

        cancel_threads: list[int] = []
        original_cancel = lost.cancel

        def recording_cancel() -> None:
            cancel_threads.append(threading.get_ident())
            original_cancel()

        lost.cancel = recording_cancel

        assert await subscriber.check_liveness() is False

        assert lost.cancelled is True
        assert cancel_threads and cancel_threads[0] != threading.get_ident()
