"""AppArmor profile adjustment for containers moving to Debian 13.

systemd 257 in Debian 13 needs mount and credential operations that the
default ``lxc-container-default-cgns`` profile denies. Before upgrading, the
container config is switched either to ``unconfined`` or to a dedicated,
narrower profile authored and loaded on the owning node.

The adjustment follows an explicit state machine::

    not-configured --config-written--> pending-restart
    not-configured --already-configured--> verified-applied
    pending-restart --verify-ok--> verified-applied
    pending-restart --verify-mismatch--> verification-failed
    verification-failed --reapplied--> retried-once

A stopped container stays in ``pending-restart``; the profile applies on its
next start. ``retried-once`` is terminal: the run proceeds with a warning.
"""

import os
import shutil
import time
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from lxcupgrader.constants import (
    APPARMOR_CONFIG_KEY,
    APPARMOR_PROFILE_NAME,
    APPARMOR_PROFILE_PATH,
    TIMESTAMP_FORMAT,
)
from lxcupgrader.errors import TargetUpgradeError, UpgraderError
from lxcupgrader.errors_catalog import actionable_error
from lxcupgrader.models import SecurityMode, Target

UNCONFINED = "unconfined"

CUSTOM_PROFILE = f"""# LXC AppArmor profile for Debian 13 containers
# Narrower alternative to the unconfined profile for systemd 257

#include <tunables/global>

profile {APPARMOR_PROFILE_NAME} flags=(attach_disconnected,mediate_deleted) {{
  #include <abstractions/lxc/container-base>

  # systemd mount operations
  mount fstype=tmpfs,
  mount fstype=proc,
  mount fstype=sysfs,
  mount fstype=devpts,
  mount fstype=devtmpfs,
  mount options=(rw,rslave),
  mount options=(rw,rbind),
  mount options=(rw,move),
  mount options=(ro,remount,bind),

  # systemd directories
  /dev/hugepages/ rw,
  /tmp/ rw,
  /run/lock/ rw,
  /dev/mqueue/ rw,
  /run/systemd/mount-rootfs/ rw,
  /run/rpc_pipefs/ rw,

  network inet,
  network inet6,
  network netlink,

  signal (send,receive),

  capability sys_admin,
  capability dac_override,
  capability setuid,
  capability setgid,
  capability net_admin,
  capability sys_chroot,
  capability mknod,
  capability audit_write,

  deny /sys/kernel/security/** w,
  deny /proc/sys/kernel/core_pattern w,
  deny /proc/sys/kernel/modprobe w,
  deny /proc/sysrq-trigger w,
  deny /sys/firmware/** w,
  deny /sys/devices/virtual/powercap/** w,
}}
"""


class ProfileState(str, Enum):
    NOT_CONFIGURED = "not-configured"
    PENDING_RESTART = "pending-restart"
    VERIFIED = "verified-applied"
    VERIFICATION_FAILED = "verification-failed"
    RETRIED = "retried-once"


class ProfileEvent(str, Enum):
    CONFIG_WRITTEN = "config-written"
    ALREADY_CONFIGURED = "already-configured"
    VERIFY_OK = "verify-ok"
    VERIFY_MISMATCH = "verify-mismatch"
    REAPPLIED = "reapplied"


TRANSITIONS: Dict[tuple, ProfileState] = {
    (ProfileState.NOT_CONFIGURED, ProfileEvent.CONFIG_WRITTEN): ProfileState.PENDING_RESTART,
    (ProfileState.NOT_CONFIGURED, ProfileEvent.ALREADY_CONFIGURED): ProfileState.VERIFIED,
    (ProfileState.PENDING_RESTART, ProfileEvent.VERIFY_OK): ProfileState.VERIFIED,
    (ProfileState.PENDING_RESTART, ProfileEvent.VERIFY_MISMATCH): ProfileState.VERIFICATION_FAILED,
    (ProfileState.VERIFICATION_FAILED, ProfileEvent.REAPPLIED): ProfileState.RETRIED,
}


def transition(state: ProfileState, event: ProfileEvent) -> ProfileState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise UpgraderError(f"Invalid AppArmor profile transition: {state.value} on {event.value}") from None


def should_reapply(state: ProfileState) -> bool:
    return state == ProfileState.VERIFICATION_FAILED


def _is_section_header(line: str) -> bool:
    return line.strip().startswith("[")


def read_profile(config_text: str) -> Optional[str]:
    """Return the profile set in the main section of a container config."""
    for line in config_text.splitlines():
        if _is_section_header(line):
            break
        key, sep, value = line.partition(":")
        if sep and key.strip() == APPARMOR_CONFIG_KEY:
            return value.strip()
    return None


def rewrite_profile(config_text: str, profile: str) -> str:
    """Replace any profile directive in the main section with ``profile``.

    Snapshot sections (``[name]``) are left untouched; the new directive goes
    at the end of the main section.
    """
    lines = config_text.splitlines()
    main_end = next((i for i, line in enumerate(lines) if _is_section_header(line)), len(lines))

    main = [
        line
        for line in lines[:main_end]
        if line.partition(":")[0].strip() != APPARMOR_CONFIG_KEY
    ]
    while main and not main[-1].strip():
        main.pop()
    main.append(f"{APPARMOR_CONFIG_KEY}: {profile}")

    rest = lines[main_end:]
    if rest:
        main.append("")
    return "\n".join(main + rest) + "\n"


def profile_matches(expected: str, actual: str) -> bool:
    # /proc/self/attr/current reports "name (mode)" for confined profiles
    parts = actual.strip().split()
    return bool(parts) and parts[0] == expected


class SecurityProfileAdjuster:
    """Applies the AppArmor profile a Debian 13 container needs."""

    def __init__(
        self,
        router,
        logger,
        console,
        pve_root: str = "/etc/pve",
        start_timeout: int = 30,
        settle_seconds: float = 5.0,
    ):
        self.router = router
        self.logger = logger
        self.console = console
        self.pve_root = pve_root
        self.start_timeout = start_timeout
        self.settle_seconds = settle_seconds
        self._custom_profile_ready: Dict[str, bool] = {}

    def config_path(self, target: Target) -> str:
        return os.path.join(self.pve_root, "nodes", target.node, "lxc", f"{target.vmid}.conf")

    def desired_profile(self, route, mode: SecurityMode) -> str:
        if mode != SecurityMode.CUSTOM:
            return UNCONFINED

        if route.node not in self._custom_profile_ready:
            self._custom_profile_ready[route.node] = self.ensure_custom_profile(route)
        if self._custom_profile_ready[route.node]:
            return APPARMOR_PROFILE_NAME
        return UNCONFINED

    def ensure_custom_profile(self, route) -> bool:
        """Author and load the custom profile on the route's node.

        Any failure after the profile file was written removes it again, so a
        later run never mistakes an unloaded profile for a usable one.
        """
        try:
            if not self.has_parser(route):
                self._warn(f"apparmor_parser not available on {route.node}, falling back to unconfined")
                return False

            if self.router.run(route, ["test", "-f", APPARMOR_PROFILE_PATH]).returncode == 0:
                self.logger.info("Custom AppArmor profile already exists on %s", route.node)
                return True
        except UpgraderError as exc:
            self._warn(f"Custom AppArmor profile unavailable ({exc}), falling back to unconfined")
            return False

        self.console.print("[blue]Creating custom AppArmor profile for Debian 13 containers...[/blue]")
        try:
            written = self.router.run(route, ["tee", APPARMOR_PROFILE_PATH], input=CUSTOM_PROFILE)
            if written.returncode != 0:
                self._warn(f"Could not write {APPARMOR_PROFILE_PATH} on {route.node}, falling back to unconfined")
            else:
                loaded = self.router.run(route, ["apparmor_parser", "-r", APPARMOR_PROFILE_PATH])
                if loaded.returncode == 0:
                    self.console.print("[green]Custom AppArmor profile created and loaded[/green]")
                    self.logger.info("Custom AppArmor profile loaded on %s", route.node)
                    return True
                self._warn("Failed to load custom AppArmor profile, falling back to unconfined")
        except UpgraderError as exc:
            self._warn(f"Custom AppArmor profile unavailable ({exc}), falling back to unconfined")

        self.discard_custom_profile(route)
        return False

    def has_parser(self, route) -> bool:
        if not route.is_remote:
            return shutil.which("apparmor_parser") is not None
        found = self.router.run(route, ["sh", "-c", "command -v apparmor_parser"])
        return found.returncode == 0

    def discard_custom_profile(self, route):
        try:
            removed = self.router.run(route, ["rm", "-f", APPARMOR_PROFILE_PATH])
        except UpgraderError as exc:
            self.logger.warning("Could not remove %s on %s: %s", APPARMOR_PROFILE_PATH, route.node, exc)
            return
        if removed.returncode != 0:
            self.logger.warning("Could not remove %s on %s", APPARMOR_PROFILE_PATH, route.node)

    def prepare(self, target: Target, route, mode: SecurityMode) -> ProfileState:
        state = ProfileState.NOT_CONFIGURED
        path = self.config_path(target)
        if not os.path.isfile(path):
            self._warn(
                f"Config file {path} not accessible from this node; "
                "skipping AppArmor pre-configuration"
            )
            return state

        profile = self.desired_profile(route, mode)
        self.console.print(
            f"[blue]Pre-configuring AppArmor profile '{profile}' for container {target.label}...[/blue]"
        )
        self.logger.info("Pre-configuring AppArmor profile %s for container %s", profile, target.vmid)

        try:
            current = read_profile(self._read(path))
        except OSError as exc:
            raise TargetUpgradeError(
                actionable_error("config_write_failed", path=path, reason=str(exc)),
                step="apparmor",
            ) from exc

        if current == profile:
            self.logger.info("Container %s already has AppArmor profile %s", target.vmid, profile)
            return transition(state, ProfileEvent.ALREADY_CONFIGURED)

        self.write_config(path, profile, backup=True)
        state = transition(state, ProfileEvent.CONFIG_WRITTEN)
        self.console.print(f"[green]AppArmor profile set to {profile} for container {target.vmid}[/green]")

        if not self.is_running(target, route):
            self._warn(f"Container {target.vmid} is not running - AppArmor changes will take effect on next start")
            return state

        self.restart(target, route)
        state = transition(state, self._verify_event(target, route, profile))
        if state == ProfileState.VERIFIED:
            self.console.print(f"[green]AppArmor profile verified as {profile} for container {target.vmid}[/green]")
            return state

        if should_reapply(state):
            self.logger.info("Re-applying AppArmor configuration for container %s", target.vmid)
            self.write_config(path, profile, backup=False)
            self.restart(target, route)
            state = transition(state, ProfileEvent.REAPPLIED)
            if self._verify_event(target, route, profile) != ProfileEvent.VERIFY_OK:
                self._warn(f"AppArmor profile still not applied to container {target.vmid}; proceeding anyway")
        return state

    def write_config(self, path: str, profile: str, backup: bool = True):
        try:
            original = self._read(path)
        except OSError as exc:
            raise TargetUpgradeError(
                actionable_error("config_write_failed", path=path, reason=str(exc)),
                step="apparmor",
            ) from exc

        if backup:
            backup_path = f"{path}.apparmor-backup-{datetime.now().strftime(TIMESTAMP_FORMAT)}"
            try:
                shutil.copy2(path, backup_path)
                self.logger.info("Saved config backup to %s", backup_path)
            except OSError as exc:
                self._warn(f"Failed to back up config file {path}: {exc}")

        temp_path = f"{path}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as file_obj:
                file_obj.write(rewrite_profile(original, profile))
            os.replace(temp_path, path)
        except OSError as exc:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
            raise TargetUpgradeError(
                actionable_error("config_write_failed", path=path, reason=str(exc)),
                step="apparmor",
            ) from exc

    def is_running(self, target: Target, route) -> bool:
        result = self.router.run(route, ["pct", "status", str(target.vmid)])
        return result.returncode == 0 and "status: running" in (result.stdout or "")

    def restart(self, target: Target, route):
        vmid = str(target.vmid)
        self.console.print(f"[blue]Restarting container {target.vmid} to apply AppArmor changes...[/blue]")
        if self.router.run(route, ["pct", "stop", vmid]).returncode != 0:
            self._warn("Graceful stop failed, forcing stop...")
            self.router.run(route, ["pct", "shutdown", vmid, "--forceStop", "1"])
        time.sleep(2)

        if self.router.run(route, ["pct", "start", vmid]).returncode != 0:
            raise TargetUpgradeError(
                actionable_error("container_start_failed", vmid=vmid),
                step="apparmor",
            )

        for _ in range(self.start_timeout):
            if self.is_running(target, route):
                break
            time.sleep(1)
        time.sleep(self.settle_seconds)

    def applied_profile(self, target: Target, route) -> str:
        result = self.router.container_exec(route, target.vmid, ["cat", "/proc/self/attr/current"])
        if result.returncode != 0:
            return "unknown"
        return (result.stdout or "").strip() or "unknown"

    def _verify_event(self, target: Target, route, profile: str) -> ProfileEvent:
        actual = self.applied_profile(target, route)
        if profile_matches(profile, actual):
            return ProfileEvent.VERIFY_OK
        self._warn(f"AppArmor profile verification failed for container {target.vmid} (got: {actual})")
        return ProfileEvent.VERIFY_MISMATCH

    @staticmethod
    def _read(path: str) -> str:
        with open(path, "r", encoding="utf-8") as file_obj:
            return file_obj.read()

    def _warn(self, message: str):
        self.console.print(f"[yellow]{message}[/yellow]")
        self.logger.warning(message)
