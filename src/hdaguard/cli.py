"""
HDA Guard Command Line Interface.

Provides commands for managing HDA Guard:
- start: Start the daemon
- stop: Stop the daemon
- status: Show daemon status
- check: Run an immediate forced pass
- devices: List matching devices
- history: Show recent passes
- log: Show the end of the log file
- install/uninstall: Register the daemon with the service manager
"""

from __future__ import annotations

import argparse
import json
import os
import platform
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any

from hdaguard import __version__
from hdaguard.audit.database import AuditDatabase
from hdaguard.config import GuardConfig, find_config_path, load_config, validate_config
from hdaguard.core.reconciler import PassTrigger, Reconciler
from hdaguard.devices import AccessError, get_platform_backend
from hdaguard.logsetup import setup_logging, tail_log
from hdaguard.policy.matcher import matches
from hdaguard.policy.models import BanPolicy
from hdaguard.service import (
    PrivilegeError,
    ServiceError,
    has_elevated_privilege,
    install_service,
    query_service,
    uninstall_service,
)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="hda-guard",
        description="Keep NVIDIA HD Audio devices disabled",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # start command
    start_parser = subparsers.add_parser(
        "start", help="Run the daemon in the foreground"
    )
    start_parser.set_defaults(func=cmd_start)

    # stop command
    stop_parser = subparsers.add_parser("stop", help="Stop the daemon")
    stop_parser.set_defaults(func=cmd_stop)

    # status command
    status_parser = subparsers.add_parser("status", help="Show daemon status")
    status_parser.set_defaults(func=cmd_status)

    # check command
    check_parser = subparsers.add_parser(
        "check", help="Disable every matching device now"
    )
    check_parser.set_defaults(func=cmd_check)

    # devices command
    devices_parser = subparsers.add_parser("devices", help="List matching devices")
    devices_parser.add_argument(
        "-a", "--all",
        action="store_true",
        help="Show all devices, not only those matching the ban policy",
    )
    devices_parser.set_defaults(func=cmd_devices)

    # history command
    history_parser = subparsers.add_parser("history", help="Show recent passes")
    history_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of passes to show",
    )
    history_parser.set_defaults(func=cmd_history)

    # log command
    log_parser = subparsers.add_parser("log", help="Show the end of the log file")
    log_parser.add_argument(
        "-n", "--lines",
        type=int,
        default=50,
        help="Number of lines to show",
    )
    log_parser.set_defaults(func=cmd_log)

    # service commands
    install_parser = subparsers.add_parser(
        "install", help="Start the daemon at boot, restart on failure"
    )
    install_parser.set_defaults(func=cmd_install)

    uninstall_parser = subparsers.add_parser(
        "uninstall", help="Remove the boot-time registration"
    )
    uninstall_parser.set_defaults(func=cmd_uninstall)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    # Execute command
    try:
        return args.func(args)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


def get_config(args: argparse.Namespace) -> GuardConfig:
    """Load and validate configuration.

    Raises:
        ValueError: If the configuration is invalid
    """
    config = load_config(args.config)
    errors = validate_config(config)
    if errors:
        raise ValueError("; ".join(errors))
    return config


def get_db(config: GuardConfig) -> AuditDatabase:
    """Get database instance from config."""
    return AuditDatabase(config.database.path, wal_mode=config.database.wal_mode)


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                for key, value in item.items():
                    print(f"  {key}: {value}")
                print()
            else:
                print(f"  {item}")
    else:
        print(data)


def read_pid(pid_file: Path) -> int | None:
    """Read the daemon PID, or None if missing or unreadable."""
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def process_running(pid: int) -> bool:
    """Check if a process with the given PID exists."""
    if platform.system() == "Windows":
        # os.kill(pid, 0) sends CTRL_C_EVENT on Windows
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"],
            capture_output=True,
            text=True,
        )
        return str(pid) in result.stdout

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def cmd_start(args: argparse.Namespace) -> int:
    """Start the daemon."""
    from hdaguard.daemon import main as daemon_main

    daemon_args = []
    if args.config:
        daemon_args.extend(["-c", args.config])

    return daemon_main(daemon_args)


def cmd_stop(args: argparse.Namespace) -> int:
    """Stop the daemon."""
    config = get_config(args)
    pid_file = Path(config.daemon.pid_file)

    if not pid_file.exists():
        print("Daemon is not running (no PID file)")
        return 1

    pid = read_pid(pid_file)
    if pid is None:
        print(f"Invalid PID file: {pid_file}")
        return 1

    try:
        os.kill(pid, signal.SIGTERM)
        print(f"Sent SIGTERM to daemon (PID {pid})")
        return 0
    except ProcessLookupError:
        print("Daemon process not found, removing stale PID file")
        pid_file.unlink()
        return 1
    except OSError as e:
        print(f"Error stopping daemon: {e}")
        return 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show daemon status."""
    config = get_config(args)
    pid_file = Path(config.daemon.pid_file)

    daemon_pid = read_pid(pid_file) if pid_file.exists() else None
    daemon_running = daemon_pid is not None and process_running(daemon_pid)

    # History is optional; report what is available
    stats: dict[str, Any] = {}
    last_pass = None
    try:
        db = get_db(config)
        try:
            stats = db.get_statistics()
            record = db.get_last_pass()
            last_pass = record.to_dict() if record else None
        finally:
            db.close()
    except Exception as e:
        stats = {"error": str(e)}

    status_data = {
        "version": __version__,
        "daemon_running": daemon_running,
        "daemon_pid": daemon_pid,
        "service": query_service(config),
        "config_file": args.config or str(find_config_path() or "default"),
        "device_pattern": config.policy.device_pattern,
        "database": config.database.path,
        "last_pass": last_pass,
        "statistics": stats,
    }

    if getattr(args, "json", False):
        output(status_data, args)
        return 0

    print("HDA Guard Status")
    print("=" * 50)
    print(f"Version:        {status_data['version']}")
    print(f"Daemon:         {'Running' if daemon_running else 'Stopped'}")
    if daemon_pid:
        print(f"PID:            {daemon_pid}")
    print(f"Service:        {status_data['service']}")
    print(f"Config:         {status_data['config_file']}")
    print(f"Pattern:        {status_data['device_pattern']}")
    print(f"Database:       {status_data['database']}")
    print()
    if last_pass:
        print("Last Pass:")
        print(f"  Started:      {last_pass['started_at']}")
        print(f"  Trigger:      {last_pass['trigger']}")
        if last_pass["error"]:
            print(f"  Aborted:      {last_pass['error']}")
        else:
            print(
                f"  Result:       {last_pass['disabled']} disabled, "
                f"{last_pass['already_compliant']} already compliant, "
                f"{last_pass['errored']} errored"
            )
        print()
    print("Statistics:")
    if "error" in stats:
        print(f"  Unavailable:  {stats['error']}")
    else:
        print(f"  Total Passes:     {stats.get('total_passes', 0)}")
        print(f"  Aborted Passes:   {stats.get('aborted_passes', 0)}")
        print(f"  Devices Disabled: {stats.get('devices_disabled', 0)}")
        print(f"  Device Errors:    {stats.get('device_errors', 0)}")
        print(f"  Disabled (24h):   {stats.get('disabled_last_24h', 0)}")

    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Run a forced pass immediately."""
    config = get_config(args)
    setup_logging(log_level=config.daemon.log_level, log_file=config.daemon.log_file)

    if not has_elevated_privilege():
        print("Warning: not running as administrator; disable commands will fail",
              file=sys.stderr)

    try:
        inventory, _ = get_platform_backend()
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    db = None
    try:
        db = get_db(config)
    except Exception as e:
        print(f"Warning: pass history unavailable: {e}", file=sys.stderr)

    reconciler = Reconciler(inventory, audit_db=db)
    try:
        summary = reconciler.run_pass(
            BanPolicy.from_config(config.policy),
            force=True,
            trigger=PassTrigger.MANUAL,
        )
    except AccessError as e:
        print(f"Error: cannot enumerate devices: {e}", file=sys.stderr)
        return 1
    finally:
        if db is not None:
            db.close()

    if getattr(args, "json", False):
        output(summary.to_dict(), args)
    else:
        print(
            f"Disabled: {summary.disabled}  "
            f"Already compliant: {summary.already_compliant}  "
            f"Errored: {summary.errored}"
        )
        for outcome in summary.outcomes:
            line = f"  {outcome.outcome.value:<18} {outcome.device.display_name}"
            if outcome.message:
                line += f" ({outcome.message})"
            print(line)

    return 1 if summary.errored else 0


def cmd_devices(args: argparse.Namespace) -> int:
    """List devices in the inventory."""
    config = get_config(args)
    policy = BanPolicy.from_config(config.policy)

    try:
        inventory, _ = get_platform_backend()
        devices = inventory.list_devices()
    except (RuntimeError, AccessError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    rows = []
    for device in devices:
        banned = matches(device, policy)
        if banned or args.all:
            rows.append({**device.to_dict(), "banned": banned})

    if getattr(args, "json", False):
        output(rows, args)
        return 0

    title = "All Devices" if args.all else f"Devices matching {policy.pattern!r}"
    print(f"{title} ({len(rows)} total)")
    print("=" * 78)
    if not rows:
        print("No devices found.")
        return 0

    print(f"{'Status':<10} {'Banned':<7} {'Name':<30} {'Identifier'}")
    print("-" * 78)
    for row in rows:
        print(
            f"{row['status']:<10} "
            f"{'yes' if row['banned'] else '':<7} "
            f"{row['display_name'][:30]:<30} "
            f"{row['identifier']}"
        )

    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """Show recent passes."""
    config = get_config(args)
    db = get_db(config)

    try:
        passes = db.get_recent_passes(limit=args.limit)

        if getattr(args, "json", False):
            output([p.to_dict() for p in passes], args)
            return 0

        print(f"Recent Passes ({len(passes)} shown)")
        print("=" * 78)
        if not passes:
            print("No passes recorded.")
            return 0

        print(f"{'Started':<20} {'Trigger':<13} {'Disabled':>8} {'Compliant':>9} {'Errored':>7}")
        print("-" * 78)
        for record in passes:
            started = record.started_at.strftime("%Y-%m-%d %H:%M:%S")
            trigger = record.trigger + ("*" if record.forced else "")
            if record.error:
                print(f"{started:<20} {trigger:<13} aborted: {record.error[:40]}")
            else:
                print(
                    f"{started:<20} {trigger:<13} "
                    f"{record.disabled:>8} {record.already_compliant:>9} {record.errored:>7}"
                )
    finally:
        db.close()

    return 0


def cmd_log(args: argparse.Namespace) -> int:
    """Show the end of the log file."""
    config = get_config(args)
    if not config.daemon.log_file:
        print("No log file configured")
        return 1

    try:
        lines = tail_log(config.daemon.log_file, lines=args.lines)
    except FileNotFoundError:
        print(f"Log file not found: {config.daemon.log_file}")
        return 1

    if getattr(args, "json", False):
        output(lines, args)
    else:
        for line in lines:
            print(line)
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    """Register the daemon with the service manager."""
    config = get_config(args)
    config_path = args.config or find_config_path()

    try:
        install_service(config, config_path)
    except (PrivilegeError, ServiceError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Installed service {config.service.name}")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    """Remove the daemon from the service manager."""
    config = get_config(args)

    try:
        uninstall_service(config)
    except (PrivilegeError, ServiceError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Removed service {config.service.name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
