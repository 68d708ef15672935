"""Local or SSH-relayed command execution for containers on any cluster node."""

import ipaddress
import shlex
import socket
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from lxcupgrader.models import Target

COROSYNC_CONF = "/etc/pve/corosync.conf"


@dataclass(frozen=True)
class Route:
    """Where a target's commands run: locally, or over SSH to its node."""

    node: str
    address: Optional[str] = None
    ssh_user: str = "root"
    connect_timeout: int = 10

    @property
    def is_remote(self) -> bool:
        return self.address is not None

    def wrap(self, argv: Sequence[str]) -> List[str]:
        if not self.is_remote:
            return list(argv)
        return [
            "ssh",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "BatchMode=yes",
            f"{self.ssh_user}@{self.address}",
            shlex.join(argv),
        ]

    def describe(self) -> str:
        if self.is_remote:
            return f"{self.node} via ssh {self.address}"
        return f"{self.node or 'local node'} (local)"


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def parse_corosync_nodes(text: str) -> Dict[str, str]:
    """Map node names to ring0 addresses from a corosync.conf nodelist."""
    nodes: Dict[str, str] = {}
    current: Optional[Dict[str, str]] = None
    depth = 0
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line:
            continue
        if line.endswith("{"):
            depth += 1
            if line[:-1].strip() == "node":
                current = {}
            continue
        if line == "}":
            depth -= 1
            if current is not None:
                if current.get("name") and current.get("ring0_addr"):
                    nodes[current["name"]] = current["ring0_addr"]
                current = None
            continue
        if current is not None and ":" in line:
            key, value = line.split(":", 1)
            current[key.strip()] = value.strip()
    return nodes


class RemoteExecutionRouter:
    """Decides the route of each target and runs commands along it."""

    def __init__(
        self,
        run_cmd: Callable,
        stream_cmd: Callable,
        logger,
        cluster_service=None,
        local_node: Optional[str] = None,
        corosync_path: str = COROSYNC_CONF,
        ssh_user: str = "root",
        connect_timeout: int = 10,
    ):
        self.run_cmd = run_cmd
        self.stream_cmd = stream_cmd
        self.logger = logger
        self.cluster = cluster_service
        self.local_node = local_node or socket.gethostname().split(".")[0]
        self.corosync_path = corosync_path
        self.ssh_user = ssh_user
        self.connect_timeout = connect_timeout
        self._addresses: Dict[str, str] = {}

    def is_local(self, node: str) -> bool:
        return not node or node == self.local_node

    def route_for(self, target: Target) -> Route:
        return self.route_for_node(target.node)

    def route_for_node(self, node: str) -> Route:
        if self.is_local(node):
            return Route(node=node or self.local_node)
        return Route(
            node=node,
            address=self.resolve_node_address(node),
            ssh_user=self.ssh_user,
            connect_timeout=self.connect_timeout,
        )

    def resolve_node_address(self, node: str) -> str:
        """Resolve a node name to an address, trying each source once in order."""
        if node in self._addresses:
            return self._addresses[node]

        strategies = (
            ("literal", self._literal_address),
            ("corosync", self._corosync_address),
            ("cluster api", self._cluster_api_address),
        )
        address = None
        for source, strategy in strategies:
            address = strategy(node)
            if address:
                self.logger.debug("Resolved node %s to %s (%s)", node, address, source)
                break

        if not address:
            self.logger.warning("Could not resolve IP for node %s, trying hostname", node)
            address = node

        self._addresses[node] = address
        return address

    @staticmethod
    def _literal_address(node: str) -> Optional[str]:
        return node if is_ip_address(node) else None

    def _corosync_address(self, node: str) -> Optional[str]:
        try:
            with open(self.corosync_path, "r", encoding="utf-8") as file_obj:
                nodes = parse_corosync_nodes(file_obj.read())
        except OSError as exc:
            self.logger.debug("Could not read %s: %s", self.corosync_path, exc)
            return None
        address = nodes.get(node)
        return address if address and is_ip_address(address) else None

    def _cluster_api_address(self, node: str) -> Optional[str]:
        if self.cluster is None:
            return None
        address = self.cluster.node_addresses().get(node)
        return address if address and is_ip_address(address) else None

    def run(self, route: Route, argv: Sequence[str], check: bool = False, capture_output: bool = True, **kwargs):
        return self.run_cmd(route.wrap(argv), check=check, capture_output=capture_output, **kwargs)

    def stream(self, route: Route, argv: Sequence[str], on_line: Callable[[str], None], **kwargs) -> int:
        return self.stream_cmd(route.wrap(argv), on_line, **kwargs)

    @staticmethod
    def _pct_exec(vmid: int, argv: Sequence[str]) -> List[str]:
        return ["pct", "exec", str(vmid), "--", *argv]

    def container_exec(self, route: Route, vmid: int, argv: Sequence[str], **kwargs):
        return self.run(route, self._pct_exec(vmid, argv), **kwargs)

    def container_stream(
        self,
        route: Route,
        vmid: int,
        argv: Sequence[str],
        on_line: Callable[[str], None],
        **kwargs,
    ) -> int:
        return self.stream(route, self._pct_exec(vmid, argv), on_line, **kwargs)
