"""
Device inventory contracts.

Defines the device snapshot record, the disable result classification,
and the abstract interfaces every platform backend implements.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence


class AccessError(Exception):
    """Platform device API unavailable (privilege, missing subsystem)."""

    pass


class DeviceStatus(Enum):
    """Device state as reported by the platform."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    ERROR = "error"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DeviceRecord:
    """
    Snapshot of one hardware device at enumeration time.

    Recreated on every enumeration and never persisted.
    """

    identifier: str
    display_name: str
    status: DeviceStatus

    @property
    def is_enabled(self) -> bool:
        """Check if the device is currently enabled."""
        return self.status == DeviceStatus.ENABLED

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary."""
        return {
            "identifier": self.identifier,
            "display_name": self.display_name,
            "status": self.status.value,
        }


class DisableStatus(Enum):
    """Classification of a disable command result."""

    DISABLED = "disabled"
    ALREADY_DISABLED = "already_disabled"
    TRANSIENT_FAILURE = "transient_failure"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class DisableResult:
    """Result of a single disable command."""

    status: DisableStatus
    message: str = ""

    @classmethod
    def disabled(cls) -> DisableResult:
        return cls(DisableStatus.DISABLED)

    @classmethod
    def already_disabled(cls, message: str = "") -> DisableResult:
        return cls(DisableStatus.ALREADY_DISABLED, message)

    @classmethod
    def transient(cls, message: str) -> DisableResult:
        return cls(DisableStatus.TRANSIENT_FAILURE, message)

    @classmethod
    def hard(cls, message: str) -> DisableResult:
        return cls(DisableStatus.HARD_FAILURE, message)


class DeviceInventory(ABC):
    """Enumerates devices and issues disable commands."""

    @abstractmethod
    def list_devices(self) -> Sequence[DeviceRecord]:
        """
        Enumerate all devices currently known to the platform.

        Raises:
            AccessError: If the platform device API is unavailable.
        """

    @abstractmethod
    def disable(self, identifier: str) -> DisableResult:
        """Disable the device with the given instance identifier."""


# Receives a short description of the change, for logging
DeviceChangeCallback = Callable[[str], None]


class Subscription(ABC):
    """Handle for a live device-change subscription."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Check whether events are still being delivered."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivering events and release platform resources."""


class DeviceEventSource(ABC):
    """Registers for device topology change notifications."""

    @abstractmethod
    def subscribe(self, callback: DeviceChangeCallback) -> Subscription:
        """
        Register a callback for device change events.

        The callback runs on a thread owned by the event source.

        Raises:
            AccessError: If registration with the platform fails.
        """
