"""
HDA Guard Daemon.

Watchdog loop that keeps banned devices disabled:
- Forced startup pass for devices already enabled at launch
- Device-change notifications trigger passes as they arrive
- A routine polling pass runs every interval regardless
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hdaguard import __version__
from hdaguard.audit.database import AuditDatabase
from hdaguard.config import GuardConfig, load_config, validate_config
from hdaguard.core.reconciler import PassSummary, PassTrigger, Reconciler
from hdaguard.core.subscriber import NotificationSubscriber
from hdaguard.devices import DeviceEventSource, DeviceInventory, get_platform_backend
from hdaguard.logsetup import setup_logging
from hdaguard.policy.models import BanPolicy
from hdaguard.service import has_elevated_privilege

logger = logging.getLogger("hdaguard")


class GuardDaemon:
    """
    Main HDA Guard daemon.

    Owns the notification subscriber and the polling timer; both invoke
    the reconciler.
    """

    def __init__(
        self,
        config: GuardConfig,
        inventory: DeviceInventory | None = None,
        event_source: DeviceEventSource | None = None,
        audit_db: AuditDatabase | None = None,
    ) -> None:
        """
        Initialize daemon with configuration.

        Args:
            config: Validated configuration object
            inventory: Device inventory (platform default if None)
            event_source: Device event source (platform default if None)
            audit_db: Pass history store (opened from config if None)
        """
        self.config = config
        self.policy = BanPolicy.from_config(config.policy)
        self.poll_interval = float(config.watch.retry_interval_seconds)

        if inventory is None or event_source is None:
            platform_inventory, platform_events = get_platform_backend(
                registration_timeout=config.watch.registration_timeout_seconds,
            )
            inventory = inventory or platform_inventory
            event_source = event_source or platform_events

        self._db = audit_db
        self.reconciler = Reconciler(inventory, audit_db=audit_db)
        self.subscriber = NotificationSubscriber(
            event_source,
            on_change=self._on_device_change,
            config=config.watch,
            sleep=self.wait,
        )

        # State
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._register_task: asyncio.Task | None = None
        self._stats_lock = threading.Lock()
        self._stats: dict[str, Any] = {
            "passes_run": 0,
            "passes_aborted": 0,
            "notification_passes": 0,
            "devices_disabled": 0,
            "device_errors": 0,
            "start_time": None,
        }

    @property
    def db(self) -> AuditDatabase | None:
        """Get or open the pass history database.

        History is optional; failure to open it is logged and the daemon
        keeps enforcing without it.
        """
        if self._db is None:
            try:
                self._db = AuditDatabase(
                    self.config.database.path,
                    wal_mode=self.config.database.wal_mode,
                )
            except Exception as e:
                logger.warning("Pass history unavailable (%s): %s", self.config.database.path, e)
                return None
            self.reconciler.audit_db = self._db
        return self._db

    async def wait(self, seconds: float) -> bool:
        """
        Sleep unless shutdown is requested first.

        Returns:
            True if interrupted by shutdown
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _on_device_change(self, description: str) -> None:
        """Event source callback; runs on the event source's thread."""
        logger.info("Device change notification: %s", description)
        summary = self.reconciler.run_pass_safely(
            self.policy, force=False, trigger=PassTrigger.NOTIFICATION
        )
        self._update_stats(summary, notification=True)

    def _update_stats(self, summary: PassSummary | None, notification: bool = False) -> None:
        # Called from the event source thread and the loop
        with self._stats_lock:
            self._stats["passes_run"] += 1
            if notification:
                self._stats["notification_passes"] += 1
            if summary is None:
                self._stats["passes_aborted"] += 1
                return
            self._stats["devices_disabled"] += summary.disabled
            self._stats["device_errors"] += summary.errored

    async def run_pass(self, force: bool, trigger: PassTrigger) -> PassSummary | None:
        """Run a pass on a worker thread."""
        summary = await asyncio.to_thread(
            self.reconciler.run_pass_safely, self.policy, force, trigger
        )
        self._update_stats(summary)
        return summary

    def _write_pid_file(self) -> None:
        pid_file = Path(self.config.daemon.pid_file)
        try:
            pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid_file.write_text(str(os.getpid()))
        except OSError as e:
            logger.warning("Cannot write PID file %s: %s", pid_file, e)

    def _remove_pid_file(self) -> None:
        pid_file = Path(self.config.daemon.pid_file)
        try:
            if pid_file.exists() and pid_file.read_text().strip() == str(os.getpid()):
                pid_file.unlink()
        except OSError as e:
            logger.debug("Cannot remove PID file %s: %s", pid_file, e)

    async def start(self) -> None:
        """Start the daemon and run the forced startup pass."""
        logger.info("Starting HDA Guard daemon v%s", __version__)
        self.running = True
        self._stats["start_time"] = datetime.now(timezone.utc)
        self._write_pid_file()

        logger.info("Ban policy: %s", self.policy.pattern)

        db = self.db
        if db is not None:
            try:
                await asyncio.to_thread(db.prune, self.config.database.retention_days)
            except Exception as e:
                logger.warning("Failed to prune pass history: %s", e)

        # Devices may already be enabled before the watcher started
        await self.run_pass(force=True, trigger=PassTrigger.STARTUP)

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        logger.info("Stopping HDA Guard daemon...")
        self.running = False
        self._shutdown_event.set()

        if self._register_task is not None and not self._register_task.done():
            self._register_task.cancel()
            try:
                await self._register_task
            except asyncio.CancelledError:
                pass
        await asyncio.to_thread(self.subscriber.close)

        if self._db is not None:
            self._db.close()

        self._remove_pid_file()
        logger.info("Daemon stopped")

    async def _ensure_subscriber(self) -> None:
        """Start a registration sequence unless one is active or in flight."""
        if await self.subscriber.check_liveness():
            return
        if self._register_task is not None and not self._register_task.done():
            return
        self._register_task = asyncio.create_task(self._register())

    async def _register(self) -> None:
        try:
            await self.subscriber.register()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Subscriber registration error: %s", e, exc_info=True)

    async def run(self) -> None:
        """Main watchdog loop."""
        await self.start()

        try:
            while self.running and not self._shutdown_event.is_set():
                await self._ensure_subscriber()
                if await self.wait(self.poll_interval):
                    break
                await self.run_pass(force=False, trigger=PassTrigger.POLL)

        except asyncio.CancelledError:
            logger.info("Daemon loop cancelled")
        except Exception as e:
            logger.error("Daemon error: %s", e, exc_info=True)
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        """Ask the loop to exit; interrupts the current wait."""
        self.running = False
        self._shutdown_event.set()

    def handle_signal(self, signum: int) -> None:
        """Handle termination signals."""
        sig_name = signal.Signals(signum).name
        logger.info("Received signal %s, initiating shutdown", sig_name)
        self.request_shutdown()

    def get_statistics(self) -> dict[str, Any]:
        """Get daemon statistics."""
        with self._stats_lock:
            stats = dict(self._stats)

        uptime = None
        if stats["start_time"]:
            uptime = (datetime.now(timezone.utc) - stats["start_time"]).total_seconds()

        return {
            **stats,
            "uptime_seconds": uptime,
            "running": self.running,
            "subscriber_state": str(self.subscriber.state),
            "device_pattern": self.policy.pattern,
        }


async def run_daemon(config: GuardConfig) -> int:
    """Run the daemon with the given configuration."""
    try:
        daemon = GuardDaemon(config)
    except RuntimeError as e:
        logger.error("%s", e)
        return 1

    # Set up signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: daemon.handle_signal(s))
        except NotImplementedError:
            # Proactor event loops have no add_signal_handler
            signal.signal(sig, lambda s, _frame: loop.call_soon_threadsafe(daemon.handle_signal, s))

    try:
        await daemon.run()
    except Exception as e:
        logger.exception("Daemon crashed: %s", e)
        return 1

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the daemon."""
    parser = argparse.ArgumentParser(
        prog="hda-guard-daemon",
        description="HDA Guard watchdog daemon",
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
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Validate configuration
    errors = validate_config(config)
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    log_level = "debug" if args.verbose else config.daemon.log_level
    setup_logging(
        log_level=log_level,
        log_file=config.daemon.log_file,
        retention_days=config.daemon.log_retention_days,
    )

    if not has_elevated_privilege():
        logger.error("Administrator privileges are required to disable devices")
        return 1

    return asyncio.run(run_daemon(config))


if __name__ == "__main__":
    sys.exit(main())
