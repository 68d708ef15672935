"""Debian version detection and classification for containers."""

from packaging import version as pkg_version

from lxcupgrader.constants import DEBIAN_VERSION_FILE
from lxcupgrader.errors import UpgraderError
from lxcupgrader.models import ReleaseUpgrade, VersionReport, VersionStatus

UNKNOWN_VERSION = "unknown"


class VersionGate:
    """Reads /etc/debian_version and decides whether a container can be upgraded."""

    def __init__(self, router, release: ReleaseUpgrade, logger):
        self.router = router
        self.release = release
        self.logger = logger

    def read_version(self, route, vmid: int) -> str:
        """Return the container's Debian version, or ``unknown`` if unreadable."""
        try:
            result = self.router.container_exec(
                route,
                vmid,
                ["cat", DEBIAN_VERSION_FILE],
                check=False,
                capture_output=True,
            )
        except UpgraderError as exc:
            self.logger.info("Failed to check Debian version for container %s: %s", vmid, exc)
            return UNKNOWN_VERSION

        text = (result.stdout or "").strip()
        if result.returncode != 0 or not text:
            self.logger.info(
                "Failed to check Debian version for container %s on %s (might be stopped or unreachable)",
                vmid,
                route.node,
            )
            return UNKNOWN_VERSION
        return text.splitlines()[0].strip()

    def classify(self, version_str: str) -> VersionStatus:
        if not version_str or version_str == UNKNOWN_VERSION:
            return VersionStatus.UNKNOWN

        try:
            parsed = pkg_version.parse(version_str.strip())
        except pkg_version.InvalidVersion:
            return VersionStatus.UNSUPPORTED

        if parsed.major == self.release.goal_major and version_str.startswith(self.release.goal_prefix):
            return VersionStatus.GOAL
        if parsed.major == self.release.prior_major and version_str.startswith(self.release.prior_prefix):
            return VersionStatus.ELIGIBLE
        return VersionStatus.UNSUPPORTED

    def check(self, route, vmid: int) -> VersionReport:
        version_str = self.read_version(route, vmid)
        return VersionReport(status=self.classify(version_str), version=version_str)
