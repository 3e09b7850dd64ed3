import json
import threading
import time

import pytest

from lca.config.models import ErrorMode, PathsConfig, PrecacheConfig
from lca.errors import CommandError, PrecacheError
from lca.observers.dispatcher import EventBus
from lca.observers.events import PrecacheCancelled
from lca.precache.task import PrecacheController, PrecacheTask
from lca.precache.workload import precache_images


class FakeOps:
    def __init__(self, bad=(), gate=None):
        self.bad = set(bad)
        self.gate = gate
        self.entered = threading.Event()
        self.pulled = []

    def pull_image(self, image, auth_file):
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if image in self.bad:
            raise CommandError(["podman", "pull", image], 125, "manifest unknown")
        self.pulled.append(image)


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


def _cfg(**kw):
    base = dict(cancel_grace_seconds=0.2, pull_retries=1, pull_retry_delay_seconds=0)
    base.update(kw)
    return PrecacheConfig(**base)


def test_best_effort_accumulates_failures(tmp_path):
    status = tmp_path / "status.json"
    ops = FakeOps(bad={"quay.io/b:1"})

    result = precache_images(
        ["quay.io/a:1", "quay.io/b:1", "quay.io/c:1"],
        ops=ops, auth_file="/auth.json", mode=ErrorMode.BEST_EFFORT,
        status_path=status, retries=1, retry_delay=0,
    )

    assert ops.pulled == ["quay.io/a:1", "quay.io/c:1"]
    assert list(result.failed) == ["quay.io/b:1"]
    assert result.state == "failed"
    written = json.loads(status.read_text())
    assert written["pulled"] == 2
    assert written["failed"] == ["quay.io/b:1"]


def test_strict_aborts_on_first_failure():
    ops = FakeOps(bad={"quay.io/b:1"})

    with pytest.raises(PrecacheError) as exc:
        precache_images(
            ["quay.io/a:1", "quay.io/b:1", "quay.io/c:1"],
            ops=ops, auth_file="/auth.json", mode=ErrorMode.STRICT, retries=1, retry_delay=0,
        )

    assert exc.value.failed_images == ["quay.io/b:1"]
    assert ops.pulled == ["quay.io/a:1"]


def test_pull_is_retried_before_failing():
    calls = []

    class Flaky:
        def pull_image(self, image, auth_file):
            calls.append(image)
            if len(calls) < 3:
                raise CommandError(["podman", "pull", image], 1, "timeout")

    result = precache_images(["quay.io/a:1"], ops=Flaky(), auth_file="/a", retries=3, retry_delay=0)
    assert result.ok
    assert len(calls) == 3


def test_cancel_leaves_handle_inactive_even_if_worker_is_stuck(tmp_path):
    gate = threading.Event()
    cap = Capture()
    ctrl = PrecacheController(FakeOps(gate=gate), _cfg(), PathsConfig(host_root=str(tmp_path)), EventBus([cap]))

    task = ctrl.start(["quay.io/a:1", "quay.io/b:1"])
    assert task.active and task.cancel is not None

    task.stop()
    try:
        assert task.active is False
        assert task.cancel is None
        cancelled = [e for e in cap.events if isinstance(e, PrecacheCancelled)]
        assert cancelled and cancelled[0].stopped is False
    finally:
        gate.set()


def test_cooperative_cancel_stops_between_images(tmp_path):
    gate = threading.Event()
    ops = FakeOps(gate=gate)
    ctrl = PrecacheController(ops, _cfg(cancel_grace_seconds=5), PathsConfig(host_root=str(tmp_path)))
    task = PrecacheTask()
    ctrl.start(["quay.io/a:1", "quay.io/b:1", "quay.io/c:1"], task=task)

    assert ops.entered.wait(timeout=5)
    threading.Timer(0.05, gate.set).start()
    assert ctrl.cancel(task) is True

    result = task.result()
    ctrl.reset(task)
    assert result.cancelled
    assert ops.pulled == ["quay.io/a:1"]
    assert task.active is False and task.cancel is None


def test_cleanup_removes_bookkeeping_files(tmp_path):
    paths = PathsConfig(host_root=str(tmp_path))
    status = tmp_path / "var/tmp/precache/status.json"
    image_list = tmp_path / "var/tmp/imageListFile"
    status.parent.mkdir(parents=True)
    status.write_text("{}")
    image_list.write_text("quay.io/a:1\n")

    ctrl = PrecacheController(FakeOps(), _cfg(), paths)
    ctrl.cleanup()
    ctrl.cleanup()

    assert not status.exists()
    assert not image_list.exists()


def test_late_worker_does_not_recreate_status_after_cleanup(tmp_path):
    gate = threading.Event()
    ops = FakeOps(gate=gate)
    ctrl = PrecacheController(ops, _cfg(), PathsConfig(host_root=str(tmp_path)))
    status = tmp_path / "var/tmp/precache/status.json"

    task = ctrl.start(["quay.io/a:1", "quay.io/b:1"])
    assert ops.entered.wait(timeout=5)
    future = task._future

    task.stop()
    ctrl.cleanup()
    assert not status.exists()

    gate.set()
    result = future.result(timeout=5)

    assert result.cancelled
    assert ops.pulled == ["quay.io/a:1"]
    assert not status.exists()


def test_cancel_interrupts_retry_backoff():
    calls = []
    cancel = threading.Event()

    class Broken:
        def pull_image(self, image, auth_file):
            calls.append(image)
            cancel.set()
            raise CommandError(["podman", "pull", image], 1, "timeout")

    started = time.monotonic()
    result = precache_images(
        ["quay.io/a:1", "quay.io/b:1"], ops=Broken(), auth_file="/a",
        mode=ErrorMode.STRICT, cancel_event=cancel, retries=5, retry_delay=30,
    )

    assert time.monotonic() - started < 5
    assert result.cancelled
    assert not result.failed
    assert calls == ["quay.io/a:1"]
