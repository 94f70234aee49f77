"""
Pytest configuration and shared fixtures for HDA Guard tests.
"""

from __future__ import annotations

import tempfile
import threading
import time
from pathlib import Path
from typing import Generator

import pytest
import yaml

from hdaguard.config import GuardConfig
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


NVIDIA_NAME = "NVIDIA High Definition Audio (Monitor A)"


class FakeInventory(DeviceInventory):
    """In-memory device inventory.

    Disabling an enabled device flips its status, so repeated passes see
    the effect of earlier ones.
    """

    def __init__(
        self,
        devices: list[DeviceRecord] | None = None,
        disable_delay: float = 0.0,
    ) -> None:
        self.devices = {d.identifier: d for d in (devices or [])}
        self.results: dict[str, DisableResult | Exception] = {}
        self.list_error: Exception | None = None
        self.disable_calls: list[str] = []
        self.disable_delay = disable_delay
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter_lock = threading.Lock()

    def add(self, identifier: str, name: str, status: DeviceStatus = DeviceStatus.ENABLED) -> None:
        self.devices[identifier] = DeviceRecord(identifier, name, status)

    def set_status(self, identifier: str, status: DeviceStatus) -> None:
        device = self.devices[identifier]
        self.devices[identifier] = DeviceRecord(device.identifier, device.display_name, status)

    def list_devices(self) -> list[DeviceRecord]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.devices.values())

    def disable(self, identifier: str) -> DisableResult:
        with self._counter_lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self.disable_calls.append(identifier)
            if self.disable_delay:
                time.sleep(self.disable_delay)

            configured = self.results.get(identifier)
            if isinstance(configured, Exception):
                raise configured
            if configured is not None:
                return configured

            device = self.devices.get(identifier)
            if device is None:
                return DisableResult.transient("device vanished")
            if device.status == DeviceStatus.DISABLED:
                return DisableResult.already_disabled("already disabled")
            self.set_status(identifier, DeviceStatus.DISABLED)
            return DisableResult.disabled()
        finally:
            with self._counter_lock:
                self.in_flight -= 1


class FakeSubscription(Subscription):
    """Subscription whose liveness is controlled by the test."""

    def __init__(self, callback: DeviceChangeCallback) -> None:
        self.callback = callback
        self.alive = True
        self.cancelled = False

    def is_alive(self) -> bool:
        return self.alive and not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self, description: str = "device change") -> None:
        self.callback(description)


class FakeEventSource(DeviceEventSource):
    """Event source that fails a configurable number of registrations."""

    def __init__(self, failures: int = 0, subscribe_delay: float = 0.0) -> None:
        # Negative means always fail
        self.failures = failures
        self.subscribe_delay = subscribe_delay
        self.attempts = 0
        self.subscriptions: list[FakeSubscription] = []

    def subscribe(self, callback: DeviceChangeCallback) -> FakeSubscription:
        self.attempts += 1
        if self.subscribe_delay:
            time.sleep(self.subscribe_delay)
        if self.failures < 0 or self.attempts <= self.failures:
            raise AccessError("event subsystem unavailable")
        subscription = FakeSubscription(callback)
        self.subscriptions.append(subscription)
        return subscription

    @property
    def current(self) -> FakeSubscription | None:
        return self.subscriptions[-1] if self.subscriptions else None


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config_data(temp_dir: Path) -> dict:
    """Configuration dictionary pointing all state into the temp dir."""
    return {
        "daemon": {
            "log_level": "debug",
            "log_file": str(temp_dir / "hda-guard.log"),
            "pid_file": str(temp_dir / "hda-guard.pid"),
        },
        "policy": {
            "device_pattern": "*NVIDIA High Definition Audio*",
        },
        "watch": {
            "retry_interval_seconds": 300,
            "max_retries": 3,
            "long_retry_interval_minutes": 30,
        },
        "database": {
            "path": str(temp_dir / "history.db"),
        },
    }


@pytest.fixture
def sample_config(temp_dir: Path, config_data: dict) -> Path:
    """Create a sample configuration file."""
    config_path = temp_dir / "hda-guard.yaml"
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def guard_config(config_data: dict) -> GuardConfig:
    """GuardConfig with state paths in the temp dir."""
    return GuardConfig.from_dict(config_data)


@pytest.fixture
def inventory() -> FakeInventory:
    """Inventory with one banned and one unrelated device, both enabled."""
    return FakeInventory(
        [
            DeviceRecord("HDAUDIO\\FUNC_01&VEN_10DE&DEV_0083\\1", NVIDIA_NAME, DeviceStatus.ENABLED),
            DeviceRecord("HDAUDIO\\FUNC_01&VEN_10EC&DEV_0256\\1", "Realtek Audio", DeviceStatus.ENABLED),
        ]
    )


@pytest.fixture
def event_source() -> FakeEventSource:
    """Event source that registers on the first attempt."""
    return FakeEventSource()
