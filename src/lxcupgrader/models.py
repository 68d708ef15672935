"""Shared domain models for LXCUpgrader."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class SecurityMode(str, Enum):
    UNCONFINED = "unconfined"
    CUSTOM = "custom"


class VersionStatus(str, Enum):
    GOAL = "goal"
    ELIGIBLE = "eligible"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReleaseUpgrade:
    """A single Debian release hop, e.g. bookworm (12) to trixie (13)."""

    prior_major: int
    goal_major: int
    prior_codename: str
    goal_codename: str

    @property
    def goal_prefix(self) -> str:
        return f"{self.goal_major}."

    @property
    def prior_prefix(self) -> str:
        return f"{self.prior_major}."


@dataclass(frozen=True)
class Target:
    """An LXC container selected for upgrade."""

    vmid: int
    name: str
    node: str

    @property
    def label(self) -> str:
        return f"{self.vmid} ({self.name})"


@dataclass(frozen=True)
class SkippedMember:
    """A pool member that is not an LXC container."""

    vmid: int
    name: str
    node: str
    kind: str


@dataclass(frozen=True)
class VersionReport:
    status: VersionStatus
    version: str


@dataclass(frozen=True)
class RunConfig:
    """Run options resolved from the CLI and the config file."""

    dry_run: bool = False
    force: bool = False
    skip_backup: bool = False
    security_mode: SecurityMode = SecurityMode.UNCONFINED
    target_ids: Tuple[int, ...] = ()
    resource_pool: Optional[str] = None
    backup_storage: Optional[str] = None
    ssh_user: str = "root"
    ssh_connect_timeout: int = 10
    package_wait_timeout: int = 1800
    inter_target_pause: float = 5.0
    pve_root: str = "/etc/pve"
    log_file: Optional[str] = None


@dataclass(frozen=True)
class Outcome:
    target: Target
    status: OutcomeStatus
    duration_seconds: float
    message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED
