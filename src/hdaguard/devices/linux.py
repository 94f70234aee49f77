"""
Linux device backend.

Enumerates PCI functions using pyudev, disables them by unbinding the
kernel driver through sysfs, and monitors udev for topology changes.
"""

from __future__ import annotations

import errno
import logging
import re
from pathlib import Path
from typing import Any

from hdaguard.devices.base import (
    AccessError,
    DeviceChangeCallback,
    DeviceEventSource,
    DeviceInventory,
    DeviceRecord,
    DeviceStatus,
    DisableResult,
    Subscription,
)


logger = logging.getLogger(__name__)

SUBSYSTEM = "pci"

# Actions that may bring a banned function back
WATCHED_ACTIONS = frozenset({"add", "bind", "change"})

# Raised by sysfs while the device or its driver is changing state
TRANSIENT_ERRNOS = frozenset({errno.EBUSY, errno.EAGAIN, errno.ENODEV, errno.ENOENT})

# PCI base class 04 (multimedia), subclass 03 (audio device, i.e. HDA)
HDA_CLASS = 0x0403

VENDOR_SUFFIX = re.compile(r",?\s+(Corporation|Corp\.?|Inc\.?|Co\.?|Ltd\.?|Limited)$", re.IGNORECASE)


def short_vendor(vendor: str) -> str:
    """Strip corporate suffixes: "NVIDIA Corporation" -> "NVIDIA"."""
    while True:
        stripped = VENDOR_SUFFIX.sub("", vendor)
        if stripped == vendor:
            return vendor
        vendor = stripped


def is_hda_function(device: Any) -> bool:
    """Check the PCI class code for a High Definition Audio controller."""
    try:
        return int(device.get("PCI_CLASS") or "", 16) >> 8 == HDA_CLASS
    except ValueError:
        return False


def display_name(device: Any) -> str:
    """
    Build a human readable name from udev hardware database properties.

    High Definition Audio functions are named the way Windows names them,
    "<vendor> High Definition Audio", with the hardware model appended,
    so the same ban pattern works on both platforms.
    """
    vendor = short_vendor(device.get("ID_VENDOR_FROM_DATABASE") or "")
    model = device.get("ID_MODEL_FROM_DATABASE") or ""

    if is_hda_function(device):
        name = " ".join(part for part in (vendor, "High Definition Audio") if part)
        return f"{name} ({model})" if model else name

    name = " ".join(part for part in (vendor, model) if part)
    return name or device.get("PCI_ID") or device.sys_name


class LinuxDeviceInventory(DeviceInventory):
    """
    PCI device inventory.

    A function is considered enabled while a kernel driver is bound to it.
    """

    def __init__(self, sysfs_root: str | Path = "/sys") -> None:
        self.sysfs_root = Path(sysfs_root)

    def list_devices(self) -> list[DeviceRecord]:
        try:
            import pyudev

            context = pyudev.Context()
            udev_devices = list(context.list_devices(subsystem=SUBSYSTEM))
        except ImportError as e:
            raise AccessError(f"pyudev not available: {e}") from e
        except OSError as e:
            raise AccessError(f"udev enumeration failed: {e}") from e

        return [
            DeviceRecord(
                identifier=device.sys_name,
                display_name=display_name(device),
                status=DeviceStatus.ENABLED if device.driver else DeviceStatus.DISABLED,
            )
            for device in udev_devices
        ]

    def _device_path(self, identifier: str) -> Path:
        return self.sysfs_root / "bus" / SUBSYSTEM / "devices" / identifier

    def disable(self, identifier: str) -> DisableResult:
        device_path = self._device_path(identifier)
        if not device_path.exists():
            return DisableResult.transient(f"device {identifier} not present")

        driver_link = device_path / "driver"
        if not driver_link.exists():
            return DisableResult.already_disabled("no driver bound")

        # The driver link disappears once the unbind succeeds
        driver = driver_link.resolve()
        unbind = driver / "unbind"
        try:
            unbind.write_text(identifier)
        except OSError as e:
            if e.errno in TRANSIENT_ERRNOS:
                return DisableResult.transient(f"{unbind}: {e.strerror}")
            return DisableResult.hard(f"{unbind}: {e.strerror or e}")

        logger.debug("Unbound %s from %s", identifier, driver.name)
        return DisableResult.disabled()


class UdevSubscription(Subscription):
    """Wraps a running pyudev MonitorObserver."""

    def __init__(self, observer: Any) -> None:
        self._observer = observer
        self._cancelled = False

    def is_alive(self) -> bool:
        return not self._cancelled and self._observer.is_alive()

    def cancel(self) -> None:
        self._cancelled = True
        self._observer.send_stop()


class UdevDeviceEventSource(DeviceEventSource):
    """Device change notifications from the udev netlink socket."""

    def subscribe(self, callback: DeviceChangeCallback) -> UdevSubscription:
        try:
            import pyudev

            context = pyudev.Context()
            monitor = pyudev.Monitor.from_netlink(context)
            monitor.filter_by(subsystem=SUBSYSTEM)
        except ImportError as e:
            raise AccessError(f"pyudev not available: {e}") from e
        except OSError as e:
            raise AccessError(f"udev monitor unavailable: {e}") from e

        def handle(device: Any) -> None:
            if device.action not in WATCHED_ACTIONS:
                return
            try:
                callback(f"udev {device.action} {device.sys_name}")
            except Exception as e:
                logger.error("Device change handler error: %s", e)

        observer = pyudev.MonitorObserver(
            monitor, callback=handle, name="hdaguard-udev-events"
        )
        try:
            observer.start()
        except (OSError, RuntimeError) as e:
            raise AccessError(f"udev observer failed to start: {e}") from e

        return UdevSubscription(observer)
