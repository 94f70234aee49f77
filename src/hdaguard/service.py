"""
Boot-time service registration.

Registers the watchdog daemon with the host service manager so it is
started at boot and restarted after a crash: a systemd unit on Linux,
a Task Scheduler task on Windows.
"""

from __future__ import annotations

import logging
import os
import platform
import subprocess
import sys
import tempfile
from pathlib import Path
from xml.sax.saxutils import escape

from hdaguard.config import GuardConfig


logger = logging.getLogger(__name__)

SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")
COMMAND_TIMEOUT = 60


class PrivilegeError(Exception):
    """Operation requires administrator/root privileges."""

    pass


class ServiceError(Exception):
    """Service manager command failed."""

    pass


def has_elevated_privilege() -> bool:
    """Check if the process runs as administrator (Windows) or root."""
    if platform.system() == "Windows":
        try:
            import ctypes

            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def daemon_command(config_path: str | Path | None) -> list[str]:
    """Command line the service manager runs."""
    command = [sys.executable, "-m", "hdaguard.daemon"]
    if config_path:
        command.extend(["--config", str(Path(config_path).resolve())])
    return command


def render_systemd_unit(config: GuardConfig, config_path: str | Path | None = None) -> str:
    """Render the systemd unit for the daemon."""
    service = config.service
    exec_start = " ".join(
        f'"{part}"' if " " in part else part for part in daemon_command(config_path)
    )
    restart_sec = service.restart_interval_minutes * 60
    # Allow restart_count restarts within the window they can occur in
    interval = restart_sec * (service.restart_count + 1) + 60
    return (
        "[Unit]\n"
        "Description=HDA Guard - keep NVIDIA HD Audio devices disabled\n"
        "After=systemd-udevd.service\n"
        f"StartLimitIntervalSec={interval}\n"
        f"StartLimitBurst={service.restart_count}\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"ExecStart={exec_start}\n"
        "Restart=on-failure\n"
        f"RestartSec={restart_sec}\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def render_task_xml(config: GuardConfig, config_path: str | Path | None = None) -> str:
    """Render the Task Scheduler definition for the daemon."""
    service = config.service
    command = daemon_command(config_path)
    arguments = " ".join(f'"{part}"' if " " in part else part for part in command[1:])
    return f"""<?xml version="1.0" encoding="UTF-16"?>
<Task version="1.2" xmlns="http://schemas.microsoft.com/windows/2004/02/mit/task">
  <RegistrationInfo>
    <Description>HDA Guard - keep NVIDIA HD Audio devices disabled</Description>
  </RegistrationInfo>
  <Triggers>
    <BootTrigger>
      <Enabled>true</Enabled>
    </BootTrigger>
  </Triggers>
  <Principals>
    <Principal id="Author">
      <UserId>S-1-5-18</UserId>
      <RunLevel>HighestAvailable</RunLevel>
    </Principal>
  </Principals>
  <Settings>
    <MultipleInstancesPolicy>IgnoreNew</MultipleInstancesPolicy>
    <DisallowStartIfOnBatteries>false</DisallowStartIfOnBatteries>
    <StopIfGoingOnBatteries>false</StopIfGoingOnBatteries>
    <StartWhenAvailable>true</StartWhenAvailable>
    <ExecutionTimeLimit>PT0S</ExecutionTimeLimit>
    <RestartOnFailure>
      <Interval>PT{service.restart_interval_minutes}M</Interval>
      <Count>{service.restart_count}</Count>
    </RestartOnFailure>
    <Enabled>true</Enabled>
  </Settings>
  <Actions Context="Author">
    <Exec>
      <Command>{escape(command[0])}</Command>
      <Arguments>{escape(arguments)}</Arguments>
    </Exec>
  </Actions>
</Task>
"""


def _run(command: list[str], check: bool = True) -> subprocess.CompletedProcess:
    logger.debug("Running: %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ServiceError(f"{command[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise ServiceError(f"{command[0]} timed out") from e

    if check and result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip()
        raise ServiceError(f"{' '.join(command[:2])} failed: {output}")
    return result


def _unit_path(config: GuardConfig) -> Path:
    return SYSTEMD_UNIT_DIR / f"{config.service.name}.service"


def install_service(config: GuardConfig, config_path: str | Path | None = None) -> None:
    """
    Register the daemon to start at boot with restart-on-crash.

    Raises:
        PrivilegeError: If not running elevated
        ServiceError: If the service manager rejects the registration
    """
    if not has_elevated_privilege():
        raise PrivilegeError("Installing the service requires administrator privileges")

    system = platform.system()
    if system == "Linux":
        unit_path = _unit_path(config)
        unit_path.write_text(render_systemd_unit(config, config_path))
        _run(["systemctl", "daemon-reload"])
        _run(["systemctl", "enable", "--now", f"{config.service.name}.service"])
        logger.info("Installed systemd unit %s", unit_path)
    elif system == "Windows":
        with tempfile.TemporaryDirectory() as tmpdir:
            xml_path = Path(tmpdir) / "task.xml"
            xml_path.write_text(render_task_xml(config, config_path), encoding="utf-16")
            _run(["schtasks", "/Create", "/TN", config.service.name, "/XML", str(xml_path), "/F"])
        _run(["schtasks", "/Run", "/TN", config.service.name])
        logger.info("Installed scheduled task %s", config.service.name)
    else:
        raise ServiceError(f"Unsupported platform: {system}")


def uninstall_service(config: GuardConfig) -> None:
    """
    Remove the boot-time registration and stop the daemon.

    Raises:
        PrivilegeError: If not running elevated
        ServiceError: If the service manager rejects the removal
    """
    if not has_elevated_privilege():
        raise PrivilegeError("Removing the service requires administrator privileges")

    system = platform.system()
    if system == "Linux":
        _run(["systemctl", "disable", "--now", f"{config.service.name}.service"], check=False)
        unit_path = _unit_path(config)
        if unit_path.exists():
            unit_path.unlink()
        _run(["systemctl", "daemon-reload"])
        logger.info("Removed systemd unit %s", unit_path)
    elif system == "Windows":
        _run(["schtasks", "/End", "/TN", config.service.name], check=False)
        _run(["schtasks", "/Delete", "/TN", config.service.name, "/F"])
        logger.info("Removed scheduled task %s", config.service.name)
    else:
        raise ServiceError(f"Unsupported platform: {system}")


def query_service(config: GuardConfig) -> str:
    """
    Query the service manager for the registration state.

    Returns:
        Short state string ("active", "inactive", "not installed", ...)
    """
    system = platform.system()
    try:
        if system == "Linux":
            result = _run(
                ["systemctl", "is-active", f"{config.service.name}.service"],
                check=False,
            )
            state = result.stdout.strip()
            if state in ("inactive", "unknown") and not _unit_path(config).exists():
                return "not installed"
            return state or "unknown"
        if system == "Windows":
            result = _run(
                ["schtasks", "/Query", "/TN", config.service.name, "/FO", "LIST"],
                check=False,
            )
            if result.returncode != 0:
                return "not installed"
            for line in result.stdout.splitlines():
                key, _, value = line.partition(":")
                if key.strip().lower() == "status":
                    return value.strip().lower()
            return "installed"
    except ServiceError as e:
        return f"unknown ({e})"
    return "unsupported"
