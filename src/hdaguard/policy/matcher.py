"""
Policy matcher.

Pure predicates deciding whether a device is in scope and whether it
currently needs to be disabled.
"""

from __future__ import annotations

import fnmatch
import functools
import re

from hdaguard.devices.base import DeviceRecord
from hdaguard.policy.models import BanPolicy


@functools.lru_cache(maxsize=32)
def _compile(pattern: str) -> re.Pattern:
    """Compile a glob pattern into a case-insensitive regex (cached)."""
    return re.compile(fnmatch.translate(pattern), re.IGNORECASE | re.DOTALL)


def matches(device: DeviceRecord, policy: BanPolicy) -> bool:
    """
    Check if a device's display name satisfies the ban pattern.

    Args:
        device: Device snapshot
        policy: Ban policy

    Returns:
        True if the device is in scope
    """
    name = device.display_name or ""
    if policy.is_glob:
        return _compile(policy.pattern).match(name) is not None
    return policy.pattern.casefold() in name.casefold()


def requires_action(device: DeviceRecord, policy: BanPolicy, force: bool = False) -> bool:
    """
    Check if a device must be disabled now.

    Args:
        device: Device snapshot
        policy: Ban policy
        force: Target every match regardless of its current status

    Returns:
        True if the device matches and is enabled (or the check is forced)
    """
    if not matches(device, policy):
        return False
    if force or policy.target_all_statuses:
        return True
    return device.is_enabled
