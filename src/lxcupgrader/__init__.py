"""
LXCUpgrader - Debian release upgrades for Proxmox LXC containers
"""

__version__ = "0.3.0"

from .core import LxcUpgrader, UpgraderError

__all__ = ["LxcUpgrader", "UpgraderError"]
