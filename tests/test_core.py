import io

import click
import pytest
from rich.console import Console

import lxcupgrader.core as core_module
from lxcupgrader.constants import DEBIAN_13
from lxcupgrader.core import LxcUpgrader
from lxcupgrader.errors import TargetUpgradeError
from lxcupgrader.models import OutcomeStatus, RunConfig, Target, VersionReport
from lxcupgrader.services.backup import BackupService
from lxcupgrader.services.targets import TargetResolver
from lxcupgrader.services.version_gate import VersionGate


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeResolver:
    def __init__(self, targets):
        self.targets = targets
        self.pools = []

    def resolve_pool(self, pool):
        self.pools.append(pool)
        return list(self.targets), []

    def resolve_ids(self, vmids, pool=None):
        return [target for target in self.targets if target.vmid in vmids], []


class FakeVersionGate:
    """Classifies with the real rules but never touches a container."""

    def __init__(self, versions):
        self.versions = versions
        self.gate = VersionGate(router=None, release=DEBIAN_13, logger=DummyLogger())

    def check(self, route, vmid):
        version = self.versions[vmid]
        return VersionReport(status=self.gate.classify(version), version=version)


class FakeBackup:
    def __init__(self, failing=()):
        self.failing = failing
        self.created = []

    def create(self, target, route, storage):
        self.created.append((target.vmid, storage))
        if target.vmid in self.failing:
            raise TargetUpgradeError(f"Backup of container {target.vmid} failed (exit code 2).", step="backup")


class FakeProfileAdjuster:
    def __init__(self):
        self.prepared = []

    def prepare(self, target, route, mode):
        self.prepared.append(target.vmid)


class FakeDriver:
    def __init__(self):
        self.upgraded = []

    def upgrade(self, target, route):
        self.upgraded.append(target.vmid)
        return "13.1"


class FailingVzdumpRouter:
    def stream(self, route, argv, on_line, **kwargs):
        on_line("ERROR: Backup of VM 301 failed - no space left on device")
        return 2


class FakeCluster:
    def __init__(self, members=None):
        self.members = members or []

    def get_pool_members(self, pool):
        return self.members

    def list_backup_storage(self):
        raise AssertionError("backup storage should not be queried")


@pytest.fixture
def output(monkeypatch):
    buffer = io.StringIO()
    monkeypatch.setattr(core_module, "console", Console(file=buffer, width=200))
    return buffer


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []
    monkeypatch.setattr(core_module.time, "sleep", recorded.append)
    return recorded


def build_upgrader(targets, versions, backup=None, **config):
    options = {"force": True, "resource_pool": "PoolA", "backup_storage": "local"}
    options.update(config)
    upgrader = LxcUpgrader(config=RunConfig(**options))
    upgrader.command_runner.which = lambda name: f"/usr/bin/{name}"
    upgrader.router.local_node = "pve1"
    upgrader.target_resolver = FakeResolver(targets)
    upgrader.version_gate = FakeVersionGate(versions)
    upgrader.backup_service = backup or FakeBackup()
    upgrader.profile_adjuster = FakeProfileAdjuster()
    upgrader.upgrade_step_service = FakeDriver()
    return upgrader


WEB = Target(vmid=301, name="web", node="pve1")
DB = Target(vmid=302, name="db", node="pve1")


def test_run_never_upgrades_containers_already_on_goal(sleeps):
    upgrader = build_upgrader([WEB, DB], {301: "13.1", 302: "12.9"})

    assert upgrader.run() == 0

    assert upgrader.upgrade_step_service.upgraded == [302]
    assert upgrader.backup_service.created == [(302, "local")]
    assert [item.status for item in upgrader.outcomes] == [OutcomeStatus.SKIPPED, OutcomeStatus.SUCCESS]
    assert sleeps == []


def test_run_with_all_targets_on_goal_exits_before_processing():
    upgrader = build_upgrader([WEB], {301: "13.0"})

    assert upgrader.run() == 0
    assert upgrader.outcomes == []
    assert upgrader.upgrade_step_service.upgraded == []


def test_backup_failure_prevents_upgrade_and_fails_run(sleeps):
    backup = FakeBackup(failing=(301,))
    upgrader = build_upgrader([WEB, DB], {301: "12.9", 302: "12.9"}, backup=backup)

    assert upgrader.run() == 1

    assert upgrader.upgrade_step_service.upgraded == [302]
    assert upgrader.profile_adjuster.prepared == [302]
    assert upgrader.outcomes[0].status == OutcomeStatus.FAILED
    assert "Backup of container 301 failed" in upgrader.outcomes[0].message
    assert sleeps == [5.0]


def test_vzdump_failure_is_reported_as_target_failure(sleeps):
    upgrader = build_upgrader([WEB], {301: "12.9"})
    upgrader.backup_service = BackupService(FailingVzdumpRouter(), logger=DummyLogger(), console=DummyConsole())

    assert upgrader.run() == 1

    assert upgrader.upgrade_step_service.upgraded == []
    assert upgrader.profile_adjuster.prepared == []
    assert upgrader.outcomes[0].status == OutcomeStatus.FAILED
    assert upgrader.outcomes[0].message.startswith("Backup of container 301 failed (exit code 2).")


def test_skip_backup_never_creates_backups(sleeps):
    upgrader = build_upgrader([WEB], {301: "12.9"}, skip_backup=True, backup_storage=None)

    assert upgrader.run() == 0
    assert upgrader.backup_service.created == []
    assert upgrader.upgrade_step_service.upgraded == [301]


def test_dry_run_makes_no_changes(output):
    upgrader = build_upgrader([WEB, DB], {301: "12.9", 302: "12.4"}, dry_run=True, backup_storage=None)
    upgrader.cluster_service = FakeCluster()

    assert upgrader.run() == 0

    assert upgrader.backup_service.created == []
    assert upgrader.profile_adjuster.prepared == []
    assert upgrader.upgrade_step_service.upgraded == []
    assert "DRY RUN completed - no changes made" in output.getvalue()


def test_dry_run_with_all_targets_on_goal_reports_completion(output):
    upgrader = build_upgrader([WEB], {301: "13.0"}, dry_run=True, backup_storage=None)
    upgrader.cluster_service = FakeCluster()

    assert upgrader.run() == 0
    assert "already running Debian 13" in output.getvalue()
    assert "DRY RUN completed - no changes made" in output.getvalue()


def test_dry_run_with_empty_selection_reports_completion(output):
    upgrader = build_upgrader([], {}, dry_run=True, backup_storage=None)

    assert upgrader.run() == 0
    assert "No LXC containers found" in output.getvalue()
    assert "DRY RUN completed - no changes made" in output.getvalue()


def test_non_dry_run_exit_without_targets_has_no_dry_run_line(output):
    upgrader = build_upgrader([], {})

    assert upgrader.run() == 0
    assert "DRY RUN" not in output.getvalue()


def test_pool_with_container_and_vm_upgrades_only_the_container(sleeps):
    cluster = FakeCluster(
        members=[
            {"vmid": 301, "name": "web", "node": "pve1", "type": "lxc"},
            {"vmid": 305, "name": "win", "node": "pve2", "type": "qemu"},
        ]
    )
    upgrader = build_upgrader([], {301: "12.9"})
    upgrader.target_resolver = TargetResolver(cluster, logger=DummyLogger(), console=DummyConsole())

    assert upgrader.run() == 0

    assert upgrader.upgrade_step_service.upgraded == [301]
    assert [member.vmid for member in upgrader.skipped_members] == [305]
    assert list(upgrader.routes) == [301]


def test_unsupported_version_fails_and_run_continues(sleeps):
    upgrader = build_upgrader([WEB, DB], {301: "11.0", 302: "12.9"})

    assert upgrader.run() == 1

    assert upgrader.upgrade_step_service.upgraded == [302]
    assert upgrader.backup_service.created == [(302, "local")]
    assert upgrader.outcomes[0].status == OutcomeStatus.FAILED
    assert "not supported" in upgrader.outcomes[0].message
    assert upgrader.outcomes[1].status == OutcomeStatus.SUCCESS


def test_unknown_version_is_skipped(sleeps):
    upgrader = build_upgrader([WEB], {301: "unknown"})

    assert upgrader.run() == 0
    assert upgrader.outcomes[0].status == OutcomeStatus.SKIPPED
    assert upgrader.backup_service.created == []


def test_declined_confirmation_cancels_run(monkeypatch):
    upgrader = build_upgrader([WEB], {301: "12.9"}, force=False)
    monkeypatch.setattr(core_module.click, "prompt", lambda *args, **kwargs: "no")

    assert upgrader.run() == 0
    assert upgrader.upgrade_step_service.upgraded == []


def test_aborted_prompt_cancels_run(monkeypatch):
    upgrader = build_upgrader([WEB], {301: "12.9"}, force=False)

    def abort(*_args, **_kwargs):
        raise click.exceptions.Abort()

    monkeypatch.setattr(core_module.click, "prompt", abort)

    assert upgrader.run() == 0
    assert upgrader.backup_service.created == []


def test_missing_prerequisite_exits_with_error():
    upgrader = build_upgrader([WEB], {301: "12.9"})
    upgrader.command_runner.which = lambda name: None

    assert upgrader.run() == 1
    assert upgrader.outcomes == []


def test_empty_selection_exits_cleanly():
    upgrader = build_upgrader([], {})

    assert upgrader.run() == 0
    assert upgrader.outcomes == []


def test_explicit_ids_bypass_pool_prompt(sleeps):
    upgrader = build_upgrader([WEB, DB], {301: "12.9", 302: "12.9"}, target_ids=(302,), resource_pool=None)

    assert upgrader.run() == 0
    assert upgrader.upgrade_step_service.upgraded == [302]
    assert upgrader.target_resolver.pools == []
