"""
Ban policy model.

Describes which devices must be kept disabled.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hdaguard.config import PolicyConfig


DEFAULT_DEVICE_PATTERN = "*NVIDIA High Definition Audio*"

GLOB_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class BanPolicy:
    """
    Devices in scope for disabling.

    The pattern is matched case-insensitively against the device display
    name: as a glob when it contains wildcard characters, otherwise as a
    substring.
    """

    pattern: str = DEFAULT_DEVICE_PATTERN
    target_all_statuses: bool = False

    def __post_init__(self) -> None:
        if not self.pattern or not self.pattern.strip():
            raise ValueError("Ban policy pattern must not be empty")

    @property
    def is_glob(self) -> bool:
        """Check if the pattern uses glob wildcards."""
        return any(ch in GLOB_CHARS for ch in self.pattern)

    @classmethod
    def from_config(cls, config: PolicyConfig) -> BanPolicy:
        """Create the policy from the policy configuration section."""
        return cls(
            pattern=config.device_pattern,
            target_all_statuses=config.target_all_statuses,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "pattern": self.pattern,
            "target_all_statuses": self.target_all_statuses,
        }
