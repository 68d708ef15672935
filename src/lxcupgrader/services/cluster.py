"""Proxmox cluster queries through pvesh/pvesm."""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Sequence

from lxcupgrader.errors import UpgraderError
from lxcupgrader.errors_catalog import actionable_error

Parser = Callable[[str], Optional[Any]]

_MEMBER_PATTERN = re.compile(
    r'"id":"(?P<kind>lxc|qemu)/(?P<vmid>\d+)"[^}]*?"name":"(?P<name>[^"]*)"[^}]*?"node":"(?P<node>[^"]*)"'
)


def first_parsed(raw: str, parsers: Sequence[Parser]) -> Optional[Any]:
    """Return the result of the first parser that understands ``raw``."""
    for parser in parsers:
        parsed = parser(raw)
        if parsed is not None:
            return parsed
    return None


def _load_json(raw: str) -> Optional[Any]:
    if not raw or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def parse_pools_json(raw: str) -> Optional[List[str]]:
    data = _load_json(raw)
    if not isinstance(data, list):
        return None
    return [str(item["poolid"]) for item in data if isinstance(item, dict) and item.get("poolid")]


def parse_pools_table(raw: str) -> Optional[List[str]]:
    pools = []
    for line in raw.splitlines():
        if not line.startswith("│"):
            continue
        cells = line.replace("│", " ").split()
        if not cells or cells[0] == "poolid":
            continue
        pools.append(cells[0])
    return pools or None


def _normalize_members(items: List[Any]) -> List[Dict[str, Any]]:
    members = []
    for item in items:
        if not isinstance(item, dict) or "vmid" not in item:
            continue
        members.append(
            {
                "vmid": int(item["vmid"]),
                "name": str(item.get("name", "")),
                "node": str(item.get("node", "")),
                "type": str(item.get("type", "")),
            }
        )
    return members


def parse_members_json(raw: str) -> Optional[List[Dict[str, Any]]]:
    data = _load_json(raw)
    if not isinstance(data, dict) or not isinstance(data.get("members"), list):
        return None
    return _normalize_members(data["members"])


def parse_members_text(raw: str) -> Optional[List[Dict[str, Any]]]:
    members = [
        {
            "vmid": int(match.group("vmid")),
            "name": match.group("name"),
            "node": match.group("node"),
            "type": match.group("kind"),
        }
        for match in _MEMBER_PATTERN.finditer(raw)
    ]
    return members or None


def parse_resources_json(raw: str) -> Optional[List[Dict[str, Any]]]:
    data = _load_json(raw)
    if not isinstance(data, list):
        return None
    return _normalize_members(data)


def parse_storage_status(raw: str) -> Optional[List[str]]:
    active = []
    for index, line in enumerate(raw.splitlines()):
        columns = line.split()
        if index == 0 or len(columns) < 3:
            continue
        if columns[2] == "active":
            active.append(columns[0])
    return active or None


def parse_node_addresses(raw: str) -> Optional[Dict[str, str]]:
    data = _load_json(raw)
    if not isinstance(data, list):
        return None
    return {
        str(item["name"]): str(item["ip"])
        for item in data
        if isinstance(item, dict) and item.get("type") == "node" and item.get("name") and item.get("ip")
    }


class ClusterService:
    """Reads pools, guests, nodes and storage from the local cluster API."""

    def __init__(self, run_cmd: Callable, logger):
        self.run_cmd = run_cmd
        self.logger = logger

    def _pvesh(self, path: str, *args: str, structured: bool = True, check: bool = False):
        cmd = ["pvesh", "get", path, *args]
        if structured:
            cmd += ["--output-format", "json"]
        return self.run_cmd(cmd, check=check, capture_output=True)

    def list_pools(self) -> List[str]:
        result = self._pvesh("/pools")
        pools = parse_pools_json(result.stdout) if result.returncode == 0 else None
        if pools is None:
            self.logger.debug("Structured pool listing unavailable, parsing table output.")
            table = self._pvesh("/pools", structured=False)
            if table.returncode != 0:
                raise UpgraderError("Failed to get resource pools.")
            pools = parse_pools_table(table.stdout)
        return pools or []

    def get_pool_members(self, pool: str) -> List[Dict[str, Any]]:
        result = self._pvesh(f"/pools/{pool}")
        if result.returncode != 0:
            raise UpgraderError(actionable_error("pool_not_found", pool=pool))

        members = first_parsed(result.stdout, (parse_members_json, parse_members_text))
        return members or []

    def list_cluster_guests(self) -> List[Dict[str, Any]]:
        result = self._pvesh("/cluster/resources", "--type", "vm")
        if result.returncode != 0:
            raise UpgraderError("Failed to list cluster resources.")
        return parse_resources_json(result.stdout) or []

    def list_backup_storage(self) -> List[str]:
        for cmd in (["pvesm", "status", "--content", "backup"], ["pvesm", "status"]):
            result = self.run_cmd(cmd, check=False, capture_output=True)
            if result.returncode != 0:
                continue
            storages = parse_storage_status(result.stdout)
            if storages:
                return storages
        return []

    def node_addresses(self) -> Dict[str, str]:
        result = self._pvesh("/cluster/status")
        if result.returncode != 0:
            return {}
        return parse_node_addresses(result.stdout) or {}
