"""Getty overrides that restore console access in Debian 13 containers."""

from typing import Dict

from lxcupgrader.errors import UpgraderError
from lxcupgrader.models import Target

OVERRIDE_CONTENT = """[Service]
# ImportCredential is not supported inside unprivileged LXC
ImportCredential=
"""

OVERRIDE_DIRS = (
    "/etc/systemd/system/console-getty.service.d",
    "/etc/systemd/system/container-getty@.service.d",
)

GETTY_UNITS = (
    "console-getty.service",
    "container-getty@1.service",
    "container-getty@2.service",
)


class ConsoleAccessFixer:
    """Best-effort getty fix-up; never fails the upgrade."""

    def __init__(self, router, logger, console):
        self.router = router
        self.logger = logger
        self.console = console

    def apply(self, target: Target, route) -> bool:
        self.console.print(
            f"[blue]Fixing getty services for Debian 13 compatibility in container {target.label}...[/blue]"
        )
        try:
            return self._apply(target, route)
        except UpgraderError as exc:
            self._warn(f"Console access fix-up failed for container {target.vmid}: {exc}")
            return False

    def _apply(self, target: Target, route) -> bool:
        vmid = target.vmid
        for directory in OVERRIDE_DIRS:
            if self._exec(route, vmid, ["mkdir", "-p", directory]).returncode != 0:
                self._warn(f"Failed to create override directory {directory}")
                return False
            override = f"{directory}/lxc-override.conf"
            if self._exec(route, vmid, ["tee", override], input=OVERRIDE_CONTENT).returncode != 0:
                self._warn(f"Failed to write {override}")
                return False

        if self._exec(route, vmid, ["systemctl", "daemon-reload"]).returncode != 0:
            self._warn(f"Failed to reload systemd daemon in container {vmid}")
            return False

        if self._exec(route, vmid, ["systemctl", "restart", GETTY_UNITS[0]]).returncode != 0:
            self._warn(f"Failed to restart {GETTY_UNITS[0]}")
        if self._exec(route, vmid, ["systemctl", "restart", *GETTY_UNITS[1:]]).returncode != 0:
            self._warn("Failed to restart container-getty services")

        states = self.unit_states(target, route)
        if all(state == "active" for state in states.values()):
            self.console.print(
                f"[green]Getty services fixed - console access should now work for container {vmid}[/green]"
            )
            self.logger.info("Getty services active in container %s", vmid)
        else:
            summary = ", ".join(f"{unit}: {state}" for unit, state in states.items())
            self._warn(f"Some getty services may still have issues ({summary})")
        return True

    def unit_states(self, target: Target, route) -> Dict[str, str]:
        states = {}
        for unit in GETTY_UNITS:
            result = self._exec(route, target.vmid, ["systemctl", "is-active", unit])
            states[unit] = (result.stdout or "").strip() or "failed"
        return states

    def _exec(self, route, vmid: int, argv, **kwargs):
        return self.router.container_exec(route, vmid, argv, check=False, capture_output=True, **kwargs)

    def _warn(self, message: str):
        self.console.print(f"[yellow]{message}[/yellow]")
        self.logger.warning(message)
