"""Resolves upgrade targets from resource pools or explicit ids."""

from typing import Any, Dict, Iterable, List, Optional, Tuple

from lxcupgrader.models import SkippedMember, Target

CONTAINER_KIND = "lxc"


class TargetResolver:
    """Splits pool members into LXC targets and skipped guests."""

    def __init__(self, cluster_service, logger, console):
        self.cluster = cluster_service
        self.logger = logger
        self.console = console

    def resolve_pool(self, pool: str) -> Tuple[List[Target], List[SkippedMember]]:
        """Return the pool's containers in discovery order.

        Non-container members are reported and excluded. An empty pool is not
        an error here; the caller decides whether that is fatal.
        """
        self.console.print(f"[blue]Discovering containers in '{pool}' pool...[/blue]")
        self.logger.info("Discovering containers in pool %s", pool)
        members = self.cluster.get_pool_members(pool)
        return self._split(members, scope=f"pool {pool}")

    def resolve_ids(
        self,
        vmids: Iterable[int],
        pool: Optional[str] = None,
    ) -> Tuple[List[Target], List[SkippedMember]]:
        wanted = list(dict.fromkeys(vmids))
        if pool:
            members = self.cluster.get_pool_members(pool)
            scope = f"pool {pool}"
        else:
            members = self.cluster.list_cluster_guests()
            scope = "the cluster"

        by_id = {member["vmid"]: member for member in members}
        selected = []
        for vmid in wanted:
            member = by_id.get(vmid)
            if member is None:
                self.console.print(f"[yellow]Guest {vmid} not found in {scope}, ignoring it.[/yellow]")
                self.logger.warning("Guest %s not found in %s", vmid, scope)
                continue
            selected.append(member)

        return self._split(selected, scope=scope)

    def _split(
        self,
        members: List[Dict[str, Any]],
        scope: str,
    ) -> Tuple[List[Target], List[SkippedMember]]:
        targets: List[Target] = []
        skipped: List[SkippedMember] = []
        for member in members:
            if member.get("type") == CONTAINER_KIND:
                targets.append(Target(vmid=member["vmid"], name=member["name"], node=member["node"]))
            else:
                skipped.append(
                    SkippedMember(
                        vmid=member["vmid"],
                        name=member["name"],
                        node=member["node"],
                        kind=member.get("type") or "unknown",
                    )
                )

        if skipped:
            self.console.print(
                f"[yellow]Skipping {len(skipped)} non-container guest(s) in {scope} "
                "(only LXC containers are upgraded):[/yellow]"
            )
            for member in skipped:
                kind = "VM" if member.kind == "qemu" else member.kind
                self.console.print(f"[yellow]  - {kind} {member.vmid} ({member.name}) on {member.node}[/yellow]")
                self.logger.warning(
                    "Skipping %s %s (%s) on %s", kind, member.vmid, member.name, member.node
                )

        return targets, skipped
