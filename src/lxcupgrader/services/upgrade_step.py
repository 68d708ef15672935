"""APT release upgrade sequence run inside a container."""

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Tuple

from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from lxcupgrader.constants import SOURCES_LIST, SOURCES_LIST_BACKUP
from lxcupgrader.errors import TargetUpgradeError, UpgraderError
from lxcupgrader.errors_catalog import actionable_error
from lxcupgrader.models import ReleaseUpgrade, Target, VersionStatus

NONINTERACTIVE = "export DEBIAN_FRONTEND=noninteractive DEBCONF_NONINTERACTIVE_SEEN=true"


@dataclass(frozen=True)
class UpgradeStep:
    key: str
    title: str
    argv: Tuple[str, ...]


def build_upgrade_steps(release: ReleaseUpgrade) -> List[UpgradeStep]:
    """The fixed five-step sequence, in execution order."""
    return [
        UpgradeStep(
            key="update_current",
            title="Updating current packages",
            argv=("bash", "-c", f"{NONINTERACTIVE} && apt update && apt upgrade -y"),
        ),
        UpgradeStep(
            key="backup_sources",
            title="Backing up sources.list",
            argv=("cp", SOURCES_LIST, SOURCES_LIST_BACKUP),
        ),
        UpgradeStep(
            key="rewrite_sources",
            title=f"Updating sources.list from {release.prior_codename} to {release.goal_codename}",
            argv=("sed", "-i", f"s/{release.prior_codename}/{release.goal_codename}/g", SOURCES_LIST),
        ),
        UpgradeStep(
            key="refresh_indices",
            title="Updating package lists with new repository",
            argv=("apt", "update"),
        ),
        UpgradeStep(
            key="dist_upgrade",
            title=f"Performing distribution upgrade to Debian {release.goal_major}",
            argv=(
                "bash",
                "-c",
                f"{NONINTERACTIVE} NEEDRESTART_MODE=a UCF_FORCE_CONFFNEW=1 && "
                "apt -o Dpkg::Options::=--force-confnew -o Dpkg::Options::=--force-confdef "
                "dist-upgrade -y",
            ),
        ),
    ]


class UpgradeStepService:
    """Runs the upgrade steps for one container and verifies the result."""

    PACKAGE_PROCESS_PATTERN = "apt|dpkg"

    def __init__(
        self,
        router,
        version_gate,
        console_fixer,
        release: ReleaseUpgrade,
        logger,
        console,
        verbose: bool = False,
        package_wait_timeout: int = 1800,
        poll_interval: float = 1.0,
        report_every: int = 60,
    ):
        self.router = router
        self.version_gate = version_gate
        self.console_fixer = console_fixer
        self.release = release
        self.logger = logger
        self.console = console
        self.verbose = verbose
        self.package_wait_timeout = package_wait_timeout
        self.poll_interval = poll_interval
        self.report_every = report_every
        self.steps = build_upgrade_steps(release)

    def upgrade(self, target: Target, route) -> str:
        """Run every step, wait for APT to settle and verify the new release.

        Returns the new Debian version. Raises ``TargetUpgradeError`` on the
        first failing step; later steps are not run.
        """
        total = len(self.steps)
        for index, step in enumerate(self.steps, start=1):
            label = f"Step {index}/{total}: {step.title}"
            self.console.print(f"[blue]{label} in container {target.vmid}...[/blue]")
            self.logger.info("%s in container %s", label, target.vmid)

            if not self.run_step(target, route, step, label):
                if step.key == "dist_upgrade":
                    self.restore_sources(target, route)
                raise TargetUpgradeError(
                    actionable_error("upgrade_step_failed", step=label, vmid=str(target.vmid)),
                    step=step.key,
                )

            self.console.print(f"[green]{step.title}: done[/green]")
            if step.key == "rewrite_sources":
                self._log_sources(target, route)

        self.wait_for_package_manager(target, route)

        self.logger.info("Verifying upgrade completion for container %s", target.vmid)
        report = self.version_gate.check(route, target.vmid)
        if report.status != VersionStatus.GOAL:
            raise TargetUpgradeError(
                actionable_error("verification_failed", vmid=str(target.vmid), version=report.version),
                step="verify",
            )

        self.console.print(
            f"[green]Container {target.label} successfully upgraded to Debian {report.version}[/green]"
        )
        self.logger.info("Container %s upgraded to Debian %s", target.vmid, report.version)

        self.cleanup_packages(target, route)
        self.console_fixer.apply(target, route)
        return report.version

    def run_step(self, target: Target, route, step: UpgradeStep, label: str) -> bool:
        last_lines: Deque[str] = deque(maxlen=40)

        def on_line(line: str):
            last_lines.append(line)
            self.logger.debug(line)
            if self.verbose:
                self.console.print(f"[dim]{line}[/dim]")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self.console,
        ) as progress:
            progress.add_task(f"[bold magenta]{label}...", total=None)
            try:
                returncode = self.router.container_stream(route, target.vmid, list(step.argv), on_line)
            except UpgraderError as exc:
                self.logger.error("%s could not run: %s", label, exc)
                return False

        if returncode == 0:
            return True

        self.logger.error("%s returned non-zero exit code: %s", label, returncode)
        if last_lines:
            self.logger.error("Recent output:\n%s", "\n".join(last_lines))
            self.console.print("[red]Recent output:[/red]")
            for line in last_lines:
                self.console.print(f"[red]{line}[/red]")
        return False

    def restore_sources(self, target: Target, route):
        self.console.print("[yellow]Attempting to restore sources.list backup...[/yellow]")
        self.logger.warning("Restoring sources.list backup in container %s", target.vmid)
        try:
            result = self.router.container_exec(
                route, target.vmid, ["mv", SOURCES_LIST_BACKUP, SOURCES_LIST]
            )
        except UpgraderError as exc:
            self.logger.warning("Could not restore sources.list in container %s: %s", target.vmid, exc)
            return
        if result.returncode != 0:
            self.logger.warning("Could not restore sources.list in container %s", target.vmid)

    def wait_for_package_manager(self, target: Target, route):
        """Block until no apt/dpkg process remains, up to the configured ceiling."""
        self.console.print(f"[blue]Waiting for all apt/dpkg processes to complete in container {target.vmid}...[/blue]")
        max_polls = max(1, math.ceil(self.package_wait_timeout / self.poll_interval))
        report_polls = max(1, int(self.report_every / self.poll_interval))

        for poll in range(max_polls):
            if not self._package_manager_active(target, route):
                self.console.print(f"[green]All upgrade processes completed in container {target.vmid}[/green]")
                return

            if poll and poll % report_polls == 0:
                minutes = int(poll * self.poll_interval // 60)
                self.logger.info(
                    "Still waiting for upgrade processes in container %s... (%s minutes elapsed)",
                    target.vmid,
                    minutes,
                )
                self._log_active_processes(target, route)
            time.sleep(self.poll_interval)

        raise TargetUpgradeError(
            actionable_error(
                "package_wait_timeout",
                vmid=str(target.vmid),
                seconds=str(self.package_wait_timeout),
            ),
            step="wait_for_package_manager",
        )

    def _package_manager_active(self, target: Target, route) -> bool:
        result = self.router.container_exec(
            route, target.vmid, ["pgrep", "-f", self.PACKAGE_PROCESS_PATTERN]
        )
        return result.returncode == 0

    def _log_active_processes(self, target: Target, route):
        result = self.router.container_exec(route, target.vmid, ["ps", "-eo", "pid,args"])
        active = [
            line
            for line in (result.stdout or "").splitlines()
            if "apt" in line or "dpkg" in line
        ]
        if active:
            self.logger.info("Active package processes:\n%s", "\n".join(active))

    def _log_sources(self, target: Target, route):
        pattern = f"({self.release.goal_codename}|{self.release.prior_codename})"
        result = self.router.container_exec(route, target.vmid, ["grep", "-E", pattern, SOURCES_LIST])
        if result.stdout:
            self.logger.info("sources.list now contains:\n%s", result.stdout.strip())

    def cleanup_packages(self, target: Target, route) -> bool:
        self.logger.info("Cleaning up unused packages in container %s", target.vmid)
        try:
            result = self.router.container_exec(
                route,
                target.vmid,
                ["bash", "-c", "DEBIAN_FRONTEND=noninteractive apt autoremove -y"],
            )
        except UpgraderError as exc:
            result = None
            self.logger.debug("autoremove could not run: %s", exc)

        if result is None or result.returncode != 0:
            self.console.print(
                f"[yellow]Failed to clean up packages in container {target.vmid} (upgrade was successful)[/yellow]"
            )
            self.logger.warning("autoremove failed in container %s", target.vmid)
            return False
        return True
