"""Actionable error catalog for LXCUpgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "prerequisite_missing": {
        "what": "Required Proxmox command not found: {command}.",
        "next": "Run this tool directly on a Proxmox VE node as root.",
    },
    "no_pools": {
        "what": "No resource pools found.",
        "next": "Create a pool and assign containers, e.g. `pvesh set /pools/Media-Server -vms 300,301`.",
    },
    "pool_not_found": {
        "what": "Failed to get members of resource pool '{pool}'.",
        "next": "Check that the pool exists with `pvesh get /pools`.",
    },
    "no_backup_storage": {
        "what": "No active storage accepting backups was found.",
        "next": "Check `pvesm status --content backup` or pass `--skip-backup`.",
    },
    "backup_failed": {
        "what": "Backup of container {vmid} failed (exit code {exit_code}).",
        "next": "Check free space on storage '{storage}' and the vzdump output in the log file.",
    },
    "config_write_failed": {
        "what": "Could not update container config {path}: {reason}",
        "next": "Check that /etc/pve is writable (cluster quorum) and retry.",
    },
    "container_start_failed": {
        "what": "Container {vmid} did not start after applying the AppArmor profile.",
        "next": "Inspect `pct start {vmid} --debug` and the container config.",
    },
    "unsupported_version": {
        "what": "Container {vmid} runs Debian {version}, which is not supported.",
        "next": "Only Debian {prior}.x containers can be upgraded; upgrade it to Debian {prior} first.",
    },
    "upgrade_step_failed": {
        "what": "{step} failed for container {vmid}.",
        "next": "Inspect the log file, repair APT state with `pct enter {vmid}`, then rerun.",
    },
    "package_wait_timeout": {
        "what": "APT/dpkg processes were still running in container {vmid} after {seconds}s.",
        "next": "Check `ps aux | grep -E 'apt|dpkg'` inside the container before retrying.",
    },
    "verification_failed": {
        "what": "Container {vmid} reports Debian {version} after the upgrade.",
        "next": "Review the dist-upgrade output in the log file and restore from backup if needed.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
