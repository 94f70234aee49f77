"""
Device Inventory - platform adapters.

Enumerates devices, issues disable commands, and delivers device
topology change notifications.
"""

from __future__ import annotations

from hdaguard.devices.base import (
    AccessError,
    DeviceChangeCallback,
    DeviceEventSource,
    DeviceInventory,
    DeviceRecord,
    DeviceStatus,
    DisableResult,
    DisableStatus,
    Subscription,
)


def get_platform_backend(
    registration_timeout: float = 30.0,
) -> tuple[DeviceInventory, DeviceEventSource]:
    """
    Get the inventory and event source for the current platform.

    Returns:
        Tuple of (DeviceInventory, DeviceEventSource)

    Raises:
        RuntimeError: If platform is not supported
    """
    import platform

    system = platform.system().lower()
    if system == "windows":
        from hdaguard.devices.windows import WindowsDeviceInventory, WmiDeviceEventSource

        return (
            WindowsDeviceInventory(),
            WmiDeviceEventSource(registration_timeout=registration_timeout),
        )
    elif system == "linux":
        from hdaguard.devices.linux import LinuxDeviceInventory, UdevDeviceEventSource

        return LinuxDeviceInventory(), UdevDeviceEventSource()
    else:
        raise RuntimeError(f"Unsupported platform: {system}")


__all__ = [
    "AccessError",
    "DeviceChangeCallback",
    "DeviceEventSource",
    "DeviceInventory",
    "DeviceRecord",
    "DeviceStatus",
    "DisableResult",
    "DisableStatus",
    "Subscription",
    "get_platform_backend",
]
