import subprocess

import pytest

from lxcupgrader.constants import DEBIAN_13
from lxcupgrader.errors import UpgraderError
from lxcupgrader.models import VersionStatus
from lxcupgrader.services.remote_exec import Route
from lxcupgrader.services.version_gate import VersionGate


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class FakeRouter:
    def __init__(self, returncode=0, stdout="", error=None):
        self.returncode = returncode
        self.stdout = stdout
        self.error = error
        self.calls = []

    def container_exec(self, route, vmid, argv, **kwargs):
        self.calls.append((route, vmid, argv))
        if self.error:
            raise self.error
        return subprocess.CompletedProcess(argv, self.returncode, stdout=self.stdout, stderr="")


@pytest.mark.parametrize(
    "version_str, expected",
    [
        ("12.9", VersionStatus.ELIGIBLE),
        ("12.0", VersionStatus.ELIGIBLE),
        ("13.1", VersionStatus.GOAL),
        ("13.0", VersionStatus.GOAL),
        ("11.0", VersionStatus.UNSUPPORTED),
        ("trixie/sid", VersionStatus.UNSUPPORTED),
        ("unknown", VersionStatus.UNKNOWN),
        ("", VersionStatus.UNKNOWN),
    ],
)
def test_classify(version_str, expected):
    gate = VersionGate(FakeRouter(), release=DEBIAN_13, logger=DummyLogger())

    assert gate.classify(version_str) == expected


def test_check_reads_debian_version_file():
    router = FakeRouter(stdout="12.9\n")
    gate = VersionGate(router, release=DEBIAN_13, logger=DummyLogger())
    route = Route(node="pve2", address="192.168.1.11")

    report = gate.check(route, 302)

    assert report.status == VersionStatus.ELIGIBLE
    assert report.version == "12.9"
    assert router.calls == [(route, 302, ["cat", "/etc/debian_version"])]


def test_check_reports_unknown_when_container_is_stopped():
    gate = VersionGate(FakeRouter(returncode=1), release=DEBIAN_13, logger=DummyLogger())

    report = gate.check(Route(node="pve1"), 301)

    assert report.status == VersionStatus.UNKNOWN
    assert report.version == "unknown"


def test_check_reports_unknown_when_node_is_unreachable():
    router = FakeRouter(error=UpgraderError("Command timed out"))
    gate = VersionGate(router, release=DEBIAN_13, logger=DummyLogger())

    report = gate.check(Route(node="pve2", address="192.168.1.11"), 302)

    assert report.status == VersionStatus.UNKNOWN
