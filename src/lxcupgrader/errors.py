"""Domain errors for LXCUpgrader."""

from typing import Optional


class UpgraderError(RuntimeError):
    """Raised when the run cannot continue safely."""


class TargetUpgradeError(UpgraderError):
    """Raised when a single container cannot be upgraded; the run moves on."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step
