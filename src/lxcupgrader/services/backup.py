"""Pre-upgrade vzdump backups."""

import json
import re
from datetime import datetime
from typing import List, Optional

from lxcupgrader.constants import TIMESTAMP_FORMAT
from lxcupgrader.errors import TargetUpgradeError
from lxcupgrader.errors_catalog import actionable_error
from lxcupgrader.models import Target

PROGRESS_PATTERN = re.compile(r"INFO|ERROR|archive")


class BackupService:
    """Runs snapshot-mode vzdump on the owning node and checks the archive exists."""

    def __init__(self, router, logger, console):
        self.router = router
        self.logger = logger
        self.console = console

    @staticmethod
    def build_command(vmid: int, storage: str, timestamp: Optional[str] = None) -> List[str]:
        stamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)
        return [
            "vzdump",
            str(vmid),
            "--storage",
            storage,
            "--compress",
            "gzip",
            "--mode",
            "snapshot",
            "--notes-template",
            f"Pre-Debian-13-upgrade-backup-{stamp}",
        ]

    def create(self, target: Target, route, storage: str):
        self.console.print(
            f"[blue]Creating backup for container {target.label} on node {route.node}...[/blue]"
        )
        cmd = self.build_command(target.vmid, storage)
        self.logger.info("Backup command: %s", " ".join(cmd))
        self.console.print("[dim]This may take a few minutes depending on container size...[/dim]")

        def on_line(line: str):
            self.console.print(f"[dim]{line}[/dim]")
            if PROGRESS_PATTERN.search(line):
                self.logger.info("Backup: %s", line)
            else:
                self.logger.debug("Backup: %s", line)

        returncode = self.router.stream(route, cmd, on_line)
        if returncode != 0:
            raise TargetUpgradeError(
                actionable_error(
                    "backup_failed",
                    vmid=str(target.vmid),
                    exit_code=str(returncode),
                    storage=storage,
                ),
                step="backup",
            )

        self.verify(target, route, storage)

    def verify(self, target: Target, route, storage: str) -> bool:
        """Look for the new archive; absence is only a warning."""
        self.logger.info("Verifying backup was created...")
        latest = self.latest_backup(target, route, storage)
        if latest:
            self.console.print(f"[green]Backup completed and verified for container {target.vmid}[/green]")
            self.logger.info("Backup details: %s", latest)
            return True

        self.console.print(
            "[yellow]Backup completed but verification failed - this may be normal in some "
            f"cluster configurations. Please verify manually that the backup exists in {storage}.[/yellow]"
        )
        self.logger.warning("Backup verification failed for container %s on %s", target.vmid, storage)
        return False

    def latest_backup(self, target: Target, route, storage: str) -> Optional[str]:
        marker = f"vzdump-lxc-{target.vmid}-"
        path = f"/nodes/{route.node}/storage/{storage}/content"
        base = ["pvesh", "get", path, "--content", "backup"]

        result = self.router.run(route, base + ["--output-format", "json"])
        if result.returncode == 0:
            try:
                entries = json.loads(result.stdout or "")
            except ValueError:
                entries = None
            if isinstance(entries, list):
                volids = [
                    str(entry.get("volid", ""))
                    for entry in entries
                    if isinstance(entry, dict) and marker in str(entry.get("volid", ""))
                ]
                # vzdump archive names embed a sortable timestamp
                return max(volids) if volids else None

        self.logger.debug("Structured backup listing unavailable, parsing text output.")
        result = self.router.run(route, base)
        if result.returncode != 0:
            return None
        lines = [line.strip() for line in (result.stdout or "").splitlines() if marker in line]
        return lines[-1] if lines else None
