"""
Notification Subscriber.

Keeps a device-change subscription registered for the life of the
process. Registration failures are retried a bounded number of times
at a short interval, then the subscriber cools down for a long interval
and starts the whole sequence again.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from hdaguard.config import WatchConfig
from hdaguard.devices.base import (
    AccessError,
    DeviceChangeCallback,
    DeviceEventSource,
    Subscription,
)


logger = logging.getLogger(__name__)

# Waits for the given number of seconds; returns True if interrupted by shutdown
SleepFunc = Callable[[float], Awaitable[bool]]


async def _plain_sleep(seconds: float) -> bool:
    await asyncio.sleep(seconds)
    return False


def _cancel_quietly(subscription: Subscription | None) -> None:
    if subscription is None:
        return
    try:
        subscription.cancel()
    except Exception as e:
        logger.debug("Error cancelling subscription: %s", e)


def _release_orphan(future: asyncio.Future) -> None:
    """Cancel a subscription that arrived after registration was abandoned."""
    if future.cancelled() or future.exception() is not None:
        return
    logger.debug("Releasing subscription from abandoned registration")
    _cancel_quietly(future.result())


class StateKind(Enum):
    """Subscriber lifecycle states."""

    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    ACTIVE = "active"
    BACKOFF_WAIT = "backoff_wait"


@dataclass(frozen=True)
class SubscriberState:
    """Tagged subscriber state; attempt is meaningful while registering."""

    kind: StateKind
    attempt: int = 0

    @classmethod
    def unregistered(cls) -> SubscriberState:
        return cls(StateKind.UNREGISTERED)

    @classmethod
    def registering(cls, attempt: int) -> SubscriberState:
        return cls(StateKind.REGISTERING, attempt)

    @classmethod
    def active(cls) -> SubscriberState:
        return cls(StateKind.ACTIVE)

    @classmethod
    def backoff_wait(cls) -> SubscriberState:
        return cls(StateKind.BACKOFF_WAIT)

    def __str__(self) -> str:
        if self.kind == StateKind.REGISTERING:
            return f"registering({self.attempt})"
        return self.kind.value


class NotificationSubscriber:
    """
    Device-change subscription with two-tier registration retry.

    State machine:
        Unregistered -> Registering(0)
        Registering(n) -> Active                  on success
        Registering(n) -> Registering(n+1)        on failure, n < max_retries
        Registering(n) -> BackoffWait             on failure, n >= max_retries
        BackoffWait -> Unregistered               after the long interval
        Active -> Unregistered                    when the subscription dies
    """

    def __init__(
        self,
        event_source: DeviceEventSource,
        on_change: DeviceChangeCallback,
        config: WatchConfig,
        sleep: SleepFunc | None = None,
    ) -> None:
        """
        Initialize the subscriber.

        Args:
            event_source: Platform event source to register with
            on_change: Callback run for every device change event
            config: Retry bounds and intervals
            sleep: Interruptible wait used between attempts
        """
        self.event_source = event_source
        self.on_change = on_change
        self.max_retries = config.max_retries
        self.retry_interval = float(config.retry_interval_seconds)
        self.long_retry_interval = float(config.long_retry_interval_seconds)
        self._sleep = sleep or _plain_sleep

        self.state = SubscriberState.unregistered()
        self.history: list[SubscriberState] = [self.state]
        self._subscription: Subscription | None = None
        self._closed = False

    @property
    def is_active(self) -> bool:
        return self.state.kind == StateKind.ACTIVE

    @property
    def retry_count(self) -> int:
        """Short retries used in the current attempt sequence."""
        if self.state.kind == StateKind.REGISTERING:
            return self.state.attempt
        return 0

    def _transition(self, state: SubscriberState) -> None:
        logger.debug("Subscriber %s -> %s", self.state, state)
        self.state = state
        self.history.append(state)
        # Bounded; the loop never terminates
        if len(self.history) > 100:
            del self.history[:-50]

    async def register(self) -> bool:
        """
        Drive one full attempt sequence.

        Ends Active on success, or Unregistered after the long backoff
        when every short retry failed.

        Returns:
            True if the subscription is active
        """
        if self.is_active:
            return True

        attempt = 0
        self._transition(SubscriberState.registering(attempt))

        while not self._closed:
            pending = asyncio.get_running_loop().run_in_executor(
                None, self.event_source.subscribe, self.on_change
            )
            try:
                # The worker thread cannot be interrupted; a subscription it
                # returns after cancellation must still be released
                subscription = await asyncio.shield(pending)
            except asyncio.CancelledError:
                pending.add_done_callback(_release_orphan)
                raise
            except AccessError as e:
                error = e
            except Exception as e:
                error = e
                logger.debug("Unexpected registration error", exc_info=True)
            else:
                if self._closed:
                    _cancel_quietly(subscription)
                    break
                self._subscription = subscription
                self._transition(SubscriberState.active())
                logger.info("Device change notifications active")
                return True

            if attempt < self.max_retries:
                logger.warning(
                    "Notification registration failed (attempt %d of %d): %s; retrying in %.0fs",
                    attempt + 1, self.max_retries + 1, error, self.retry_interval,
                )
                if await self._sleep(self.retry_interval):
                    break
                attempt += 1
                self._transition(SubscriberState.registering(attempt))
                continue

            logger.warning(
                "Notification registration failed after %d retries: %s; "
                "polling only, next attempt in %.0f minutes",
                self.max_retries, error, self.long_retry_interval / 60,
            )
            self._transition(SubscriberState.backoff_wait())
            await self._sleep(self.long_retry_interval)
            break

        self._transition(SubscriberState.unregistered())
        return False

    async def check_liveness(self) -> bool:
        """
        Detect a lost subscription.

        The dead subscription is released on a worker thread; cancelling
        a platform watcher may join its thread.

        Returns:
            True if the subscription is active and still delivering
        """
        if not self.is_active:
            return False

        if self._subscription is not None and self._subscription.is_alive():
            return True

        logger.warning("Device change subscription lost; re-registering")
        subscription, self._subscription = self._subscription, None
        self._transition(SubscriberState.unregistered())
        await asyncio.to_thread(_cancel_quietly, subscription)
        return False

    def _release(self) -> None:
        subscription, self._subscription = self._subscription, None
        _cancel_quietly(subscription)

    def close(self) -> None:
        """Cancel the subscription and stop further registration attempts."""
        self._closed = True
        self._release()
        if self.state.kind != StateKind.UNREGISTERED:
            self._transition(SubscriberState.unregistered())
