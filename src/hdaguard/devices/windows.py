"""
Windows device backend.

Enumerates Plug and Play devices through WMI, disables them with the
PnpDevice PowerShell cmdlets, and watches Win32_DeviceChangeEvent for
topology changes.
"""

from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
from typing import Any, Iterator

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

# Win32_PnPEntity.ConfigManagerErrorCode values
CM_PROB_NONE = 0
CM_PROB_DISABLED = 22

# WBEM_E_FAILED, surfaced as "Generic failure" while a device is mid-transition
WBEM_E_FAILED = "0x80041001"

DEVICE_CHANGE_QUERY = "SELECT * FROM Win32_DeviceChangeEvent"

DISABLE_TIMEOUT = 60


@contextlib.contextmanager
def _com_initialized() -> Iterator[None]:
    """Initialize COM for the calling thread."""
    try:
        import pythoncom
    except ImportError as e:
        raise AccessError(f"pywin32 is not available: {e}") from e

    pythoncom.CoInitialize()
    try:
        yield
    finally:
        pythoncom.CoUninitialize()


def status_from_error_code(code: int | None) -> DeviceStatus:
    """Map a ConfigManagerErrorCode to a device status."""
    if code is None:
        return DeviceStatus.UNKNOWN
    if code == CM_PROB_NONE:
        return DeviceStatus.ENABLED
    if code == CM_PROB_DISABLED:
        return DeviceStatus.DISABLED
    return DeviceStatus.ERROR


def classify_disable_failure(output: str) -> DisableResult:
    """
    Classify a failed Disable-PnpDevice invocation.

    The cmdlet reports a generic WMI failure for devices that are
    in the middle of a state change, and it can reject devices that
    are already in the disabled state. Neither is a real error.
    """
    message = " ".join(output.split())
    lowered = message.lower()

    if "generic failure" in lowered or WBEM_E_FAILED in lowered:
        return DisableResult.transient(message)
    if "already disabled" in lowered:
        return DisableResult.already_disabled(message)
    return DisableResult.hard(message or "Disable-PnpDevice failed")


def _ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string."""
    return "'" + value.replace("'", "''") + "'"


class WindowsDeviceInventory(DeviceInventory):
    """Device inventory backed by WMI and PowerShell."""

    def __init__(self, timeout: float = DISABLE_TIMEOUT) -> None:
        self.timeout = timeout

    def list_devices(self) -> list[DeviceRecord]:
        try:
            import wmi
        except ImportError as e:
            raise AccessError(f"WMI module not available: {e}") from e

        with _com_initialized():
            try:
                entities = wmi.WMI().Win32_PnPEntity()
            except Exception as e:
                raise AccessError(f"WMI device query failed: {e}") from e

            devices = []
            for entity in entities:
                record = self._to_record(entity)
                if record is not None:
                    devices.append(record)
        return devices

    def _to_record(self, entity: Any) -> DeviceRecord | None:
        """Convert a Win32_PnPEntity instance to a DeviceRecord."""
        identifier = (getattr(entity, "PNPDeviceID", "") or "").strip()
        if not identifier:
            return None
        name = (getattr(entity, "Name", "") or "").strip()
        code = getattr(entity, "ConfigManagerErrorCode", None)
        return DeviceRecord(
            identifier=identifier,
            display_name=name,
            status=status_from_error_code(code),
        )

    def disable(self, identifier: str) -> DisableResult:
        command = (
            "[Console]::OutputEncoding = [System.Text.Encoding]::UTF8; "
            f"Disable-PnpDevice -InstanceId {_ps_quote(identifier)} "
            "-Confirm:$false -ErrorAction Stop"
        )
        try:
            result = subprocess.run(
                ["powershell", "-NoLogo", "-NoProfile", "-NonInteractive", "-Command", command],
                capture_output=True,
                text=False,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return DisableResult.hard("powershell.exe not found")
        except subprocess.TimeoutExpired:
            return DisableResult.hard(
                f"Disable-PnpDevice timed out after {self.timeout:.0f}s"
            )

        if result.returncode == 0:
            return DisableResult.disabled()

        output = (result.stderr or b"").decode("utf-8", errors="replace").strip()
        if not output:
            output = (result.stdout or b"").decode("utf-8", errors="replace").strip()
        return classify_disable_failure(output)


class WmiSubscription(Subscription):
    """Win32_DeviceChangeEvent watcher running on its own COM thread."""

    POLL_TIMEOUT_MS = 1000

    def __init__(self, callback: DeviceChangeCallback) -> None:
        self._callback = callback
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._error: Exception | None = None
        self._thread = threading.Thread(
            target=self._run,
            name="hdaguard-wmi-events",
            daemon=True,
        )

    def start(self, timeout: float) -> None:
        """Start the watcher thread and wait for the query to register."""
        self._thread.start()
        if not self._ready.wait(timeout):
            self.cancel()
            raise AccessError(
                f"WMI event registration timed out after {timeout:.0f}s"
            )
        if self._error is not None:
            raise AccessError(f"WMI event registration failed: {self._error}")

    def _run(self) -> None:
        try:
            with _com_initialized():
                import wmi

                try:
                    watcher = wmi.WMI().watch_for(raw_wql=DEVICE_CHANGE_QUERY)
                except Exception as e:
                    self._error = e
                    return
                finally:
                    self._ready.set()

                self._watch(wmi, watcher)
        except Exception as e:
            if not self._ready.is_set():
                self._error = e
                self._ready.set()
            else:
                logger.warning("WMI event watcher stopped: %s", e)

    def _watch(self, wmi: Any, watcher: Any) -> None:
        while not self._stop.is_set():
            try:
                event = watcher(timeout_ms=self.POLL_TIMEOUT_MS)
            except wmi.x_wmi_timed_out:
                continue

            event_type = getattr(event, "EventType", "?")
            try:
                self._callback(f"Win32_DeviceChangeEvent type {event_type}")
            except Exception as e:
                logger.error("Device change handler error: %s", e)

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def cancel(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=(self.POLL_TIMEOUT_MS / 1000) * 2)


class WmiDeviceEventSource(DeviceEventSource):
    """Device change notifications from WMI."""

    def __init__(self, registration_timeout: float = 30.0) -> None:
        self.registration_timeout = registration_timeout

    def subscribe(self, callback: DeviceChangeCallback) -> WmiSubscription:
        subscription = WmiSubscription(callback)
        subscription.start(self.registration_timeout)
        return subscription
