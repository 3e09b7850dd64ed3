import subprocess

import pytest

from lca.errors import CommandError, QueryError
from lca.execution.ops import NSENTER, HostOps
from lca.execution.runner import CommandRunner
from lca.ostree.client import OstreeClient, RpmOstreeClient


class FakeRun:
    def __init__(self, returncode=0, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, self.stdout, self.stderr)


def test_host_namespace_commands_are_wrapped_in_nsenter(monkeypatch):
    fake = FakeRun(stdout="/var/lib/containers/storage/overlay/abc/merged\n")
    monkeypatch.setattr(subprocess, "run", fake)

    out = HostOps().mount_image("quay.io/seed:1")

    assert out == "/var/lib/containers/storage/overlay/abc/merged"
    assert fake.calls[0] == NSENTER + ["podman", "image", "mount", "quay.io/seed:1"]


def test_non_zero_exit_raises_command_error(monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(returncode=125, stderr="no such image"))

    with pytest.raises(CommandError) as exc:
        HostOps(in_host_namespace=False).pull_image("quay.io/a:1", "/auth.json")
    assert exc.value.returncode == 125
    assert "no such image" in str(exc.value)


def test_unmount_failure_is_only_logged(monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(returncode=1, stderr="not mounted"))
    HostOps().unmount_and_remove_image("quay.io/a:1")


def test_dry_run_never_executes(monkeypatch):
    def boom(*a, **kw):
        raise AssertionError("subprocess.run called in dry-run")

    monkeypatch.setattr(subprocess, "run", boom)
    assert HostOps(CommandRunner(dry_run=True)).run("systemctl", "reboot") == ""


def test_ostree_admin_uses_sysroot_during_install(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    ops = HostOps(in_host_namespace=False)

    OstreeClient(ops).undeploy(2)
    OstreeClient(ops, ibi=True).deploy("rhcos_4.16.0", "abc", ["--karg-append", '"x"'])

    assert fake.calls[0] == ["ostree", "admin", "undeploy", "2"]
    assert fake.calls[1] == [
        "ostree", "admin", "--sysroot", "/mnt",
        "deploy", "--os", "rhcos_4.16.0", "--no-prune", "--karg-append", '"x"', "abc",
    ]


def test_rpm_ostree_failures_become_query_errors(monkeypatch):
    monkeypatch.setattr(subprocess, "run", FakeRun(returncode=1, stderr="daemon unavailable"))
    with pytest.raises(QueryError):
        RpmOstreeClient(HostOps()).query_status()

    monkeypatch.setattr(subprocess, "run", FakeRun(stdout="not json"))
    with pytest.raises(QueryError):
        RpmOstreeClient(HostOps()).query_status()
