"""
HDA Guard - keeps NVIDIA HD Audio devices disabled.

Watches the host device inventory and disables every device matching
the ban policy whenever it reappears, after driver updates, hardware
rescans or reboots.
"""

__version__ = "0.1.0"
__author__ = "HDA Guard Contributors"

from hdaguard.config import GuardConfig, load_config

__all__ = ["GuardConfig", "load_config", "__version__"]
