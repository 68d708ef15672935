import io
import subprocess

import pytest
from rich.console import Console

import lxcupgrader.services.upgrade_step as upgrade_step_module
from lxcupgrader.constants import DEBIAN_13
from lxcupgrader.errors import TargetUpgradeError
from lxcupgrader.models import Target, VersionReport, VersionStatus
from lxcupgrader.services.remote_exec import Route
from lxcupgrader.services.upgrade_step import UpgradeStepService, build_upgrade_steps


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class FakeRouter:
    def __init__(self, failing_step=None, busy=False):
        self.failing_step = failing_step
        self.busy = busy
        self.streamed = []
        self.executed = []

    def container_stream(self, route, vmid, argv, on_line, **kwargs):
        self.streamed.append(list(argv))
        on_line("Reading package lists...")
        return 100 if len(self.streamed) == self.failing_step else 0

    def container_exec(self, route, vmid, argv, **kwargs):
        self.executed.append(list(argv))
        if argv[0] == "pgrep":
            return subprocess.CompletedProcess(argv, 0 if self.busy else 1, stdout="", stderr="")
        if argv[0] == "grep":
            return subprocess.CompletedProcess(argv, 0, stdout="deb http://deb.debian.org/debian trixie main\n", stderr="")
        return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")


class FakeVersionGate:
    def __init__(self, version="13.1"):
        self.version = version

    def check(self, route, vmid):
        status = VersionStatus.GOAL if self.version.startswith("13.") else VersionStatus.ELIGIBLE
        return VersionReport(status=status, version=self.version)


class FakeConsoleFixer:
    def __init__(self):
        self.applied = []

    def apply(self, target, route):
        self.applied.append(target.vmid)
        return True


TARGET = Target(vmid=302, name="db", node="pve2")
ROUTE = Route(node="pve2", address="192.168.1.11")


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(upgrade_step_module.time, "sleep", lambda *_: None)


def build_service(router, version_gate=None, console_fixer=None, package_wait_timeout=1800):
    return UpgradeStepService(
        router=router,
        version_gate=version_gate or FakeVersionGate(),
        console_fixer=console_fixer or FakeConsoleFixer(),
        release=DEBIAN_13,
        logger=DummyLogger(),
        console=Console(file=io.StringIO()),
        package_wait_timeout=package_wait_timeout,
        poll_interval=1.0,
    )


def test_build_upgrade_steps_order_and_sources_rewrite():
    steps = build_upgrade_steps(DEBIAN_13)

    assert [step.key for step in steps] == [
        "update_current",
        "backup_sources",
        "rewrite_sources",
        "refresh_indices",
        "dist_upgrade",
    ]
    assert steps[1].argv == ("cp", "/etc/apt/sources.list", "/etc/apt/sources.list.backup")
    assert steps[2].argv == ("sed", "-i", "s/bookworm/trixie/g", "/etc/apt/sources.list")
    assert "--force-confnew" in steps[4].argv[-1]


def test_upgrade_runs_all_steps_then_verifies_and_fixes_console():
    router = FakeRouter()
    fixer = FakeConsoleFixer()
    service = build_service(router, console_fixer=fixer)

    new_version = service.upgrade(TARGET, ROUTE)

    assert new_version == "13.1"
    assert len(router.streamed) == 5
    assert fixer.applied == [302]
    assert ["pgrep", "-f", "apt|dpkg"] in router.executed
    assert any(argv[0] == "bash" and "autoremove" in argv[-1] for argv in router.executed)


def test_failing_step_stops_later_steps():
    router = FakeRouter(failing_step=3)
    fixer = FakeConsoleFixer()
    service = build_service(router, console_fixer=fixer)

    with pytest.raises(TargetUpgradeError, match="Step 3/5") as exc_info:
        service.upgrade(TARGET, ROUTE)

    assert exc_info.value.step == "rewrite_sources"
    assert len(router.streamed) == 3
    assert ["mv", "/etc/apt/sources.list.backup", "/etc/apt/sources.list"] not in router.executed
    assert fixer.applied == []


def test_dist_upgrade_failure_restores_sources_backup():
    router = FakeRouter(failing_step=5)
    service = build_service(router)

    with pytest.raises(TargetUpgradeError) as exc_info:
        service.upgrade(TARGET, ROUTE)

    assert exc_info.value.step == "dist_upgrade"
    assert ["mv", "/etc/apt/sources.list.backup", "/etc/apt/sources.list"] in router.executed


def test_wait_for_package_manager_times_out():
    router = FakeRouter(busy=True)
    service = build_service(router, package_wait_timeout=3)

    with pytest.raises(TargetUpgradeError, match="after 3s") as exc_info:
        service.wait_for_package_manager(TARGET, ROUTE)

    assert exc_info.value.step == "wait_for_package_manager"
    assert router.executed.count(["pgrep", "-f", "apt|dpkg"]) == 3


def test_upgrade_fails_when_version_is_not_goal_afterwards():
    router = FakeRouter()
    fixer = FakeConsoleFixer()
    service = build_service(router, version_gate=FakeVersionGate("12.9"), console_fixer=fixer)

    with pytest.raises(TargetUpgradeError, match="reports Debian 12.9") as exc_info:
        service.upgrade(TARGET, ROUTE)

    assert exc_info.value.step == "verify"
    assert fixer.applied == []
