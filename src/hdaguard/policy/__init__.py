"""
Ban Policy - device scope rules.

Decides which devices must be kept disabled.
"""

from hdaguard.policy.matcher import matches, requires_action
from hdaguard.policy.models import DEFAULT_DEVICE_PATTERN, BanPolicy

__all__ = [
    "BanPolicy",
    "DEFAULT_DEVICE_PATTERN",
    "matches",
    "requires_action",
]
