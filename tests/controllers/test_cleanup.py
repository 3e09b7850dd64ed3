from lca.controllers.cleanup import CleanupCoordinator
from lca.errors import LcaError
from lca.observers.dispatcher import EventBus
from lca.observers.events import CleanupActionFailed, CleanupSummary


class Recorder:
    def __init__(self):
        self.calls = []

    def hook(self, name, exc=None):
        def _run():
            self.calls.append(name)
            if exc is not None:
                raise exc
        return _run


class FakeTask:
    def __init__(self, rec):
        self.rec = rec

    def stop(self):
        self.rec.calls.append("stop_task")


class FakeStateroots:
    def __init__(self, rec):
        self.undeploy_unbooted = rec.hook("stateroots")


class FakePrecache:
    def __init__(self, rec):
        self.cleanup = rec.hook("precache")


class FakeBackupRestore:
    def __init__(self, rec, backups_error=None):
        self.cleanup_delete_backup_requests = rec.hook("delete_backup_requests")
        self.cleanup_backups = rec.hook("backups", backups_error)
        self.restore_pvs_reclaim_policy = rec.hook("pv_reclaim_policy")


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


def _coordinator(tmp_path, rec, backups_error=None, bus=None):
    return CleanupCoordinator(
        task=FakeTask(rec),
        stateroots=FakeStateroots(rec),
        precache=FakePrecache(rec),
        backup_restore=FakeBackupRestore(rec, backups_error),
        workspace="/var/ibu",
        host_root=str(tmp_path),
        bus=bus,
    )


def test_cleanup_runs_every_action_in_order(tmp_path):
    rec = Recorder()
    workspace = tmp_path / "var" / "ibu"
    (workspace / "checks").mkdir(parents=True)

    report = _coordinator(tmp_path, rec).cleanup()

    assert report.successful
    assert report.message == ""
    assert rec.calls == [
        "stop_task",
        "stateroots",
        "precache",
        "delete_backup_requests",
        "backups",
        "pv_reclaim_policy",
    ]
    assert not workspace.exists()


def test_single_failure_is_reported_and_others_still_run(tmp_path):
    rec = Recorder()
    cap = Capture()

    report = _coordinator(
        tmp_path, rec, backups_error=LcaError("velero unreachable"), bus=EventBus([cap])
    ).cleanup()

    assert not report.successful
    assert report.errors.labels() == ["backups"]
    assert report.message == "velero unreachable "
    assert "stateroots" in rec.calls and "precache" in rec.calls
    assert rec.calls[-1] == "pv_reclaim_policy"

    failed = [e for e in cap.events if isinstance(e, CleanupActionFailed)]
    assert [e.action for e in failed] == ["backups"]
    summary = cap.events[-1]
    assert isinstance(summary, CleanupSummary)
    assert summary.successful is False
    assert summary.failed_actions == ["backups"]


def test_missing_workspace_is_not_an_error(tmp_path):
    rec = Recorder()
    assert _coordinator(tmp_path, rec).cleanup().successful
