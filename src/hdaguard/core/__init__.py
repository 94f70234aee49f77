"""
HDA Guard Core - reconciliation and notification handling.

Provides the reconciliation pass and the device-change subscriber
driven by the watchdog daemon.
"""

from hdaguard.core.reconciler import (
    Bucket,
    DeviceOutcome,
    Outcome,
    PassSummary,
    PassTrigger,
    Reconciler,
)
from hdaguard.core.subscriber import (
    NotificationSubscriber,
    StateKind,
    SubscriberState,
)

__all__ = [
    "Bucket",
    "DeviceOutcome",
    "NotificationSubscriber",
    "Outcome",
    "PassSummary",
    "PassTrigger",
    "Reconciler",
    "StateKind",
    "SubscriberState",
]
