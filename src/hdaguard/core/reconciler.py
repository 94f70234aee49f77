"""
Reconciler - one enumerate, filter, disable pass.

Brings live device state into agreement with the ban policy and
classifies every in-scope device into exactly one outcome bucket.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from hdaguard.devices.base import (
    AccessError,
    DeviceInventory,
    DeviceRecord,
    DisableResult,
    DisableStatus,
)
from hdaguard.logsetup import SUCCESS
from hdaguard.policy.matcher import matches, requires_action
from hdaguard.policy.models import BanPolicy

if TYPE_CHECKING:
    from hdaguard.audit.database import AuditDatabase


logger = logging.getLogger(__name__)


class PassTrigger(str, Enum):
    """What started a pass."""

    STARTUP = "startup"
    POLL = "poll"
    NOTIFICATION = "notification"
    MANUAL = "manual"


class Outcome(str, Enum):
    """Per-device result of a pass."""

    DISABLED = "disabled"
    TRANSIENT_FAILURE = "transient_failure"
    ALREADY_DISABLED = "already_disabled"
    NOT_ENABLED = "not_enabled"
    FAILED = "failed"


class Bucket(str, Enum):
    """Pass summary accounting buckets."""

    DISABLED = "disabled"
    ALREADY_COMPLIANT = "already_compliant"
    ERRORED = "errored"


OUTCOME_BUCKETS = {
    Outcome.DISABLED: Bucket.DISABLED,
    Outcome.TRANSIENT_FAILURE: Bucket.DISABLED,
    Outcome.ALREADY_DISABLED: Bucket.ALREADY_COMPLIANT,
    Outcome.NOT_ENABLED: Bucket.ALREADY_COMPLIANT,
    Outcome.FAILED: Bucket.ERRORED,
}

RESULT_OUTCOMES = {
    DisableStatus.DISABLED: Outcome.DISABLED,
    DisableStatus.TRANSIENT_FAILURE: Outcome.TRANSIENT_FAILURE,
    DisableStatus.ALREADY_DISABLED: Outcome.ALREADY_DISABLED,
    DisableStatus.HARD_FAILURE: Outcome.FAILED,
}


@dataclass(frozen=True)
class DeviceOutcome:
    """Classified result for one in-scope device."""

    device: DeviceRecord
    outcome: Outcome
    message: str = ""

    @property
    def bucket(self) -> Bucket:
        return OUTCOME_BUCKETS[self.outcome]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.device.to_dict(),
            "outcome": self.outcome.value,
            "bucket": self.bucket.value,
            "message": self.message,
        }


@dataclass
class PassSummary:
    """Result of one reconciliation pass."""

    trigger: PassTrigger = PassTrigger.MANUAL
    forced: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    outcomes: list[DeviceOutcome] = field(default_factory=list)
    error: str | None = None

    def _count(self, bucket: Bucket) -> int:
        return sum(1 for o in self.outcomes if o.bucket == bucket)

    @property
    def disabled(self) -> int:
        return self._count(Bucket.DISABLED)

    @property
    def already_compliant(self) -> int:
        return self._count(Bucket.ALREADY_COMPLIANT)

    @property
    def errored(self) -> int:
        return self._count(Bucket.ERRORED)

    @property
    def aborted(self) -> bool:
        """Check if enumeration failed and the pass did not run."""
        return self.error is not None

    def counts(self) -> dict[str, int]:
        return {
            "disabled": self.disabled,
            "already_compliant": self.already_compliant,
            "errored": self.errored,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "trigger": self.trigger.value,
            "forced": self.forced,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            **self.counts(),
            "error": self.error,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class Reconciler:
    """
    Executes reconciliation passes.

    Passes are serialized: a notification-triggered pass and a
    poll-triggered pass never interleave device operations.
    """

    def __init__(
        self,
        inventory: DeviceInventory,
        audit_db: AuditDatabase | None = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            inventory: Platform device inventory
            audit_db: Optional pass history store
        """
        self.inventory = inventory
        self.audit_db = audit_db
        self._lock = threading.Lock()

    def run_pass(
        self,
        policy: BanPolicy,
        force: bool = False,
        trigger: PassTrigger = PassTrigger.MANUAL,
    ) -> PassSummary:
        """
        Run one full pass.

        Args:
            policy: Ban policy to enforce
            force: Disable every match regardless of current status
            trigger: What started the pass

        Returns:
            PassSummary for the pass

        Raises:
            AccessError: If device enumeration fails
        """
        with self._lock:
            summary = PassSummary(trigger=trigger, forced=force)
            try:
                devices = self.inventory.list_devices()
            except AccessError as e:
                summary.error = str(e)
                summary.finished_at = datetime.now(timezone.utc)
                self._record(summary)
                raise

            for device in devices:
                if not matches(device, policy):
                    continue
                if requires_action(device, policy, force):
                    outcome = self._disable(device)
                else:
                    outcome = DeviceOutcome(device, Outcome.NOT_ENABLED)
                self._report(outcome)
                summary.outcomes.append(outcome)

            summary.finished_at = datetime.now(timezone.utc)

        logger.info(
            "Pass complete (%s%s): %d disabled, %d already compliant, %d errored",
            trigger.value,
            ", forced" if force else "",
            summary.disabled,
            summary.already_compliant,
            summary.errored,
        )
        self._record(summary)
        return summary

    def run_pass_safely(
        self,
        policy: BanPolicy,
        force: bool = False,
        trigger: PassTrigger = PassTrigger.MANUAL,
    ) -> PassSummary | None:
        """
        Run a pass, logging instead of raising.

        Used by the watchdog loop and event callbacks, where no error may
        terminate the process.
        """
        try:
            return self.run_pass(policy, force=force, trigger=trigger)
        except AccessError as e:
            logger.error("Pass aborted (%s): device enumeration failed: %s", trigger.value, e)
        except Exception as e:
            logger.error("Pass failed (%s): %s", trigger.value, e, exc_info=True)
        return None

    def _disable(self, device: DeviceRecord) -> DeviceOutcome:
        try:
            result = self.inventory.disable(device.identifier)
        except Exception as e:
            result = DisableResult.hard(str(e) or e.__class__.__name__)
        return DeviceOutcome(device, RESULT_OUTCOMES[result.status], result.message)

    def _report(self, outcome: DeviceOutcome) -> None:
        """Write one log entry per classified outcome."""
        device = outcome.device
        if outcome.outcome == Outcome.DISABLED:
            logger.log(SUCCESS, "Disabled %s (%s)", device.display_name, device.identifier)
        elif outcome.outcome == Outcome.TRANSIENT_FAILURE:
            logger.warning(
                "Disable of %s (%s) reported a transient failure, treated as success: %s",
                device.display_name, device.identifier, outcome.message,
            )
        elif outcome.outcome == Outcome.FAILED:
            logger.warning(
                "Failed to disable %s (%s): %s",
                device.display_name, device.identifier, outcome.message,
            )
        else:
            logger.debug(
                "%s (%s) already compliant: %s",
                device.display_name, device.identifier, device.status.value,
            )

    def _record(self, summary: PassSummary) -> None:
        if self.audit_db is None:
            return
        try:
            self.audit_db.record_pass(summary)
        except Exception as e:
            logger.warning("Failed to record pass history: %s", e)
