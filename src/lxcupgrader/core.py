import logging
import subprocess
import time
from dataclasses import replace
from typing import Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from .constants import DEBIAN_13, REQUIRED_COMMANDS
from .errors import TargetUpgradeError, UpgraderError
from .errors_catalog import actionable_error
from .models import (
    Outcome,
    OutcomeStatus,
    ReleaseUpgrade,
    RunConfig,
    SecurityMode,
    SkippedMember,
    Target,
    VersionReport,
    VersionStatus,
)
from .services.apparmor import SecurityProfileAdjuster
from .services.backup import BackupService
from .services.cluster import ClusterService
from .services.command_runner import CommandRunner
from .services.console_access import ConsoleAccessFixer
from .services.remote_exec import RemoteExecutionRouter, Route
from .services.targets import TargetResolver
from .services.upgrade_step import UpgradeStepService
from .services.version_gate import VersionGate

console = Console()
logger = logging.getLogger("lxcupgrader")


class LxcUpgrader:
    def __init__(
        self,
        config: RunConfig,
        verbose: bool = False,
        release: ReleaseUpgrade = DEBIAN_13,
    ):
        self.config = config
        self.verbose = verbose
        self.release = release

        self.command_runner = CommandRunner(logger=logger)
        self.cluster_service = ClusterService(run_cmd=self._run_cmd, logger=logger)
        self.router = RemoteExecutionRouter(
            run_cmd=self._run_cmd,
            stream_cmd=self._stream_cmd,
            logger=logger,
            cluster_service=self.cluster_service,
            ssh_user=config.ssh_user,
            connect_timeout=config.ssh_connect_timeout,
        )
        self.target_resolver = TargetResolver(self.cluster_service, logger=logger, console=console)
        self.version_gate = VersionGate(self.router, release=release, logger=logger)
        self.backup_service = BackupService(self.router, logger=logger, console=console)
        self.profile_adjuster = SecurityProfileAdjuster(
            self.router,
            logger=logger,
            console=console,
            pve_root=config.pve_root,
        )
        self.console_fixer = ConsoleAccessFixer(self.router, logger=logger, console=console)
        self.upgrade_step_service = UpgradeStepService(
            router=self.router,
            version_gate=self.version_gate,
            console_fixer=self.console_fixer,
            release=release,
            logger=logger,
            console=console,
            verbose=verbose,
            package_wait_timeout=config.package_wait_timeout,
        )

        self.routes: Dict[int, Route] = {}
        self.skipped_members: List[SkippedMember] = []
        self.outcomes: List[Outcome] = []

    def _run_cmd(self, cmd: List[str], check: bool = True, capture_output: bool = False, **kwargs) -> subprocess.CompletedProcess:
        return self.command_runner.run(cmd, check=check, capture_output=capture_output, **kwargs)

    def _stream_cmd(self, cmd: List[str], on_line, **kwargs) -> int:
        return self.command_runner.stream(cmd, on_line, **kwargs)

    def print_banner(self):
        console.rule(f"[bold]LXC Debian {self.release.goal_major} Upgrade[/bold]")
        console.print("[yellow]PREREQUISITES:[/yellow]")
        console.print("[yellow]1. This tool must be run on a Proxmox node[/yellow]")
        console.print("[yellow]2. Containers must be organized in resource pools (or passed by id)[/yellow]")
        console.print("[yellow]3. Ensure backup storage is available[/yellow]")

        mode = self.config.security_mode
        console.print(f"[blue]AppArmor security mode: {mode.value}[/blue]")
        if mode == SecurityMode.UNCONFINED:
            console.print("[blue]  - Acceptable for homelab environments[/blue]")
            console.print("[blue]  - Consider --security-mode custom for better security[/blue]")
        else:
            console.print("[blue]  - Creates a dedicated AppArmor profile on each node[/blue]")
            console.print("[yellow]  - Proxmox may still override the profile to 'unconfined'[/yellow]")

        logger.info("Starting LXC Debian %s upgrade process", self.release.goal_major)
        if self.config.log_file:
            logger.info("Log file: %s", self.config.log_file)
        if self.config.dry_run:
            console.print("[blue]DRY RUN MODE - No changes will be made[/blue]")
        if self.config.skip_backup:
            console.print("[yellow]BACKUP SKIPPED - This is not recommended for production systems[/yellow]")

    def check_prerequisites(self):
        console.print("[blue]Checking prerequisites...[/blue]")
        for command in REQUIRED_COMMANDS:
            if not self.command_runner.which(command):
                raise UpgraderError(actionable_error("prerequisite_missing", command=command))
        console.print("[green]Running on Proxmox node - prerequisites OK[/green]")
        logger.info("Prerequisites OK")

    def _choose(self, title: str, options: List[str]) -> str:
        console.print(f"[blue]{title}:[/blue]")
        for index, option in enumerate(options, start=1):
            console.print(f"  [{index}] {option}")
        choice = click.prompt(
            f"Select number (1-{len(options)})",
            type=click.IntRange(1, len(options)),
        )
        return options[choice - 1]

    def select_pool(self) -> str:
        if self.config.resource_pool:
            console.print(f"[blue]Using configured resource pool: {self.config.resource_pool}[/blue]")
            return self.config.resource_pool

        pools = self.cluster_service.list_pools()
        if not pools:
            raise UpgraderError(actionable_error("no_pools"))

        console.print("[yellow]IMPORTANT: LXC containers must be organized in resource pools before upgrading![/yellow]")
        console.print("[blue]Note: VMs in pools are automatically skipped[/blue]")
        pool = self._choose("Available resource pools", pools)
        console.print(f"[green]Selected resource pool: {pool}[/green]")
        logger.info("Selected resource pool: %s", pool)
        return pool

    def select_backup_storage(self) -> str:
        if self.config.backup_storage:
            console.print(f"[blue]Using configured backup storage: {self.config.backup_storage}[/blue]")
            return self.config.backup_storage

        storages = self.cluster_service.list_backup_storage()
        if not storages:
            raise UpgraderError(actionable_error("no_backup_storage"))

        storage = self._choose("Available backup storage", storages)
        console.print(f"[green]Selected backup storage: {storage}[/green]")
        logger.info("Selected backup storage: %s", storage)
        return storage

    def discover_targets(self) -> List[Target]:
        if self.config.target_ids:
            targets, skipped = self.target_resolver.resolve_ids(
                self.config.target_ids,
                pool=self.config.resource_pool,
            )
        else:
            pool = self.select_pool()
            self.config = replace(self.config, resource_pool=pool)
            targets, skipped = self.target_resolver.resolve_pool(pool)

        self.skipped_members = skipped
        # one routing decision per target, reused by every phase
        self.routes = {target.vmid: self.router.route_for(target) for target in targets}
        return targets

    def check_version(self, target: Target) -> VersionReport:
        return self.version_gate.check(self.routes[target.vmid], target.vmid)

    def show_plan(self, targets: List[Target]) -> Dict[int, VersionReport]:
        goal = self.release.goal_major
        table = Table(title="Upgrade plan")
        table.add_column("VMID", justify="right")
        table.add_column("Name")
        table.add_column("Node")
        table.add_column("Debian")
        table.add_column("Action")

        reports = {}
        for target in targets:
            report = self.check_version(target)
            reports[target.vmid] = report
            action = {
                VersionStatus.GOAL: "[green]already upgraded[/green]",
                VersionStatus.ELIGIBLE: f"upgrade to {goal}",
                VersionStatus.UNSUPPORTED: "[red]unsupported[/red]",
                VersionStatus.UNKNOWN: "[yellow]skip (unreachable)[/yellow]",
            }[report.status]
            table.add_row(str(target.vmid), target.name, self.routes[target.vmid].describe(), report.version, action)
            logger.info("Plan: %s on %s - Debian %s (%s)", target.label, target.node, report.version, report.status.value)

        console.print(table)
        return reports

    def confirm(self, count: int) -> bool:
        console.print(f"[yellow]This will upgrade {count} container(s) to Debian {self.release.goal_major}.[/yellow]")
        if self.config.skip_backup:
            console.print("[yellow]WARNING: No backups will be created![/yellow]")
        else:
            console.print("[blue]Backups will be created before each upgrade.[/blue]")
        reply = click.prompt("Do you want to proceed? (yes/no)", default="", show_default=False)
        return reply.strip().lower() == "yes"

    def upgrade_target(self, target: Target) -> str:
        route = self.routes[target.vmid]
        if self.config.skip_backup:
            console.print(f"[yellow]Skipping backup for container {target.label} as requested[/yellow]")
            logger.warning("Skipping backup for container %s", target.vmid)
        else:
            self.backup_service.create(target, route, self.config.backup_storage)

        self.profile_adjuster.prepare(target, route, self.config.security_mode)
        return self.upgrade_step_service.upgrade(target, route)

    def process_target(self, target: Target) -> Outcome:
        """Upgrade one container, converting any failure into an outcome."""
        start = time.monotonic()

        def outcome(status: OutcomeStatus, message: Optional[str] = None) -> Outcome:
            return Outcome(target, status, round(time.monotonic() - start, 1), message)

        report = self.check_version(target)
        if report.status == VersionStatus.GOAL:
            console.print(f"[blue]Skipping container {target.label} - already running Debian {report.version}[/blue]")
            logger.info("Skipping container %s - already Debian %s", target.vmid, report.version)
            return outcome(OutcomeStatus.SKIPPED, f"already Debian {report.version}")
        if report.status == VersionStatus.UNKNOWN:
            console.print(
                f"[yellow]Skipping container {target.label} - Debian version unknown (stopped or unreachable)[/yellow]"
            )
            logger.warning("Skipping container %s - version unknown", target.vmid)
            return outcome(OutcomeStatus.SKIPPED, "version unknown")

        console.rule(f"PROCESSING CONTAINER {target.label} ON {target.node}")
        logger.info("Processing container %s on %s", target.label, target.node)
        try:
            if report.status == VersionStatus.UNSUPPORTED:
                raise TargetUpgradeError(
                    actionable_error(
                        "unsupported_version",
                        vmid=str(target.vmid),
                        version=report.version,
                        prior=str(self.release.prior_major),
                    ),
                    step="version_gate",
                )
            console.print(
                f"[blue]Container {target.label} running Debian {report.version} - proceeding with upgrade[/blue]"
            )
            new_version = self.upgrade_target(target)
        except UpgraderError as exc:
            result = outcome(OutcomeStatus.FAILED, str(exc))
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error("Failed to upgrade container %s after %ss: %s", target.label, result.duration_seconds, exc)
            console.print(f"[red]UPGRADE FAILED: {target.label} - will continue with remaining containers[/red]")
            return result
        except Exception as exc:
            result = outcome(OutcomeStatus.FAILED, str(exc))
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error while upgrading container %s", target.vmid)
            return result

        result = outcome(OutcomeStatus.SUCCESS, f"Debian {new_version}")
        console.print(
            f"[green]UPGRADE COMPLETED: {target.label} - Debian {report.version} -> {new_version} "
            f"in {result.duration_seconds}s[/green]"
        )
        logger.info("Container %s upgraded to Debian %s in %ss", target.label, new_version, result.duration_seconds)
        return result

    def print_summary(self):
        succeeded = [item for item in self.outcomes if item.status == OutcomeStatus.SUCCESS]
        failed = [item for item in self.outcomes if item.failed]
        skipped = [item for item in self.outcomes if item.status == OutcomeStatus.SKIPPED]

        console.rule("UPGRADE SUMMARY")
        for line in (
            f"Successfully upgraded: {len(succeeded)} containers",
            f"Failed upgrades: {len(failed)} containers",
            f"Skipped: {len(skipped)} containers",
        ):
            console.print(line)
            logger.info(line)

        if failed:
            console.print("[red]Failed containers:[/red]")
            logger.info("Failed containers:")
            for item in failed:
                console.print(f"[red]  - {item.target.label}[/red]")
                logger.info("  - %s: %s", item.target.label, item.message)

        if self.config.log_file:
            console.print(f"Log file saved: {self.config.log_file}")
        if not failed:
            console.print("[green]All upgrades completed successfully![/green]")

    def finish_dry_run(self) -> int:
        console.print("[blue]DRY RUN completed - no changes made[/blue]")
        logger.info("Dry run completed - no changes made")
        return 0

    def run(self) -> int:
        try:
            self.print_banner()
            self.check_prerequisites()

            targets = self.discover_targets()
            if not targets:
                console.print("[yellow]No LXC containers found to upgrade.[/yellow]")
                logger.warning("No LXC containers found to upgrade")
                return self.finish_dry_run() if self.config.dry_run else 0

            if not self.config.skip_backup and not self.config.dry_run:
                self.config = replace(self.config, backup_storage=self.select_backup_storage())

            reports = self.show_plan(targets)
            pending = [t for t in targets if reports[t.vmid].status != VersionStatus.GOAL]
            if not pending:
                console.print(
                    f"[green]All selected containers are already running Debian {self.release.goal_major}![/green]"
                )
                return self.finish_dry_run() if self.config.dry_run else 0

            already = len(targets) - len(pending)
            console.print(f"[blue]Summary: {len(pending)} containers need upgrade, {already} already upgraded[/blue]")
            logger.info("%s containers need upgrade, %s already upgraded", len(pending), already)

            if self.config.dry_run:
                return self.finish_dry_run()

            if not self.config.force and not self.confirm(len(pending)):
                console.print("[blue]Upgrade cancelled by user[/blue]")
                logger.info("Upgrade cancelled by user")
                return 0

            for index, target in enumerate(targets, start=1):
                result = self.process_target(target)
                self.outcomes.append(result)

                failures = sum(1 for item in self.outcomes if item.failed)
                console.print(f"[blue]Progress: {index} of {len(targets)} containers processed[/blue]")
                if failures:
                    console.print(f"[yellow]Failures so far: {failures}[/yellow]")

                if result.status != OutcomeStatus.SKIPPED and index < len(targets):
                    console.print(f"[dim]Pausing {self.config.inter_target_pause:g} seconds before next container...[/dim]")
                    time.sleep(self.config.inter_target_pause)

            self.print_summary()
            return 1 if any(item.failed for item in self.outcomes) else 0

        except click.exceptions.Abort:
            console.print("[blue]Operation cancelled by user.[/blue]")
            logger.info("Operation cancelled by user")
            return 0
        except KeyboardInterrupt:
            console.print("[bold red]Operation interrupted by user.[/bold red]")
            logger.info("Operation interrupted by user")
            if self.outcomes:
                self.print_summary()
            return 1
        except UpgraderError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return 1
