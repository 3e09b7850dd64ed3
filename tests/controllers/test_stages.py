import concurrent.futures

import pytest

from lca.config.models import AgentConfig, PathsConfig, PrecacheConfig
from lca.controllers.cleanup import CleanupReport
from lca.controllers.conditions import (
    Condition,
    ConditionReasons as R,
    ConditionStatus as S,
    ConditionTypes as T,
    get_condition,
)
from lca.controllers.resource import ImageBasedUpgrade, Stages
from lca.controllers.stages import StageStateMachine, UpgradeActions, current_stage
from lca.errors import HealthCheckError, LcaError, MultiError
from lca.ostree.models import Deployment
from lca.precache.task import PrecacheTask
from lca.precache.workload import PrecacheResult

MARKER = "lca.openshift.io/manual-cleanup-done"


class FakeClient:
    def __init__(self, fail_update=False):
        self.fail_update = fail_update
        self.updates = []
        self.status_updates = 0

    def update(self, ibu):
        if self.fail_update:
            raise LcaError("conflict")
        self.updates.append(dict(ibu.metadata.annotations))

    def update_status(self, ibu):
        self.status_updates += 1


class FakeCleanup:
    def __init__(self, errors=None):
        self.errors = errors or []
        self.calls = 0

    def cleanup(self):
        self.calls += 1
        errs = MultiError(list(self.errors))
        return CleanupReport(successful=not errs, errors=errs)


class FakeStateroots:
    def __init__(self, booted="rhcos", others=("rhcos_4.16.0",)):
        self.booted = booted
        self.others = list(others)
        self.defaults = []

    def query_deployments(self):
        return [Deployment(name, f"{name}-x.0") for name in self.others] + [
            Deployment(self.booted, f"{self.booted}-y.0", booted=True)
        ]

    def booted_stateroot(self):
        return self.booted

    def set_default(self, stateroot):
        self.defaults.append(stateroot)


class FakePrecache:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.started = []

    def start(self, images, config=None, task=None):
        self.started.append((list(images), config))
        future = concurrent.futures.Future()
        if self.error is not None:
            future.set_exception(self.error)
        else:
            future.set_result(self.result or PrecacheResult(total=len(images), pulled=list(images)))
        task._future = future
        task.cancel = lambda: True
        task.active = True
        return task


class Health:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error:
            raise HealthCheckError(self.error)


class Actions:
    def __init__(self):
        self.calls = []

    def build(self):
        return UpgradeActions(
            setup_stateroot=lambda image, version: self.calls.append(("setup", image, version)) or "rhcos_x",
            backup_application_data=lambda: self.calls.append(("backup",)),
            export_seed_reconfiguration=lambda target: self.calls.append(("seedreconfig", target)),
            export_network_config=lambda target: self.calls.append(("network", target)),
            reboot=lambda: self.calls.append(("reboot",)),
        )


def _cond(t, status, reason=""):
    return Condition(type=t, status=status, reason=reason)


def _ibu(stage, conds=(), annotations=None, version="4.16.0"):
    ibu = ImageBasedUpgrade.model_validate({
        "metadata": {"name": "upgrade", "generation": 2, "annotations": annotations or {}},
        "spec": {"stage": stage, "seedImageRef": {"image": "quay.io/seed:4.16.0", "version": version}},
    })
    ibu.status.conditions = list(conds)
    return ibu


@pytest.fixture
def env(tmp_path):
    class Env:
        pass

    e = Env()
    e.tmp = tmp_path
    e.client = FakeClient()
    e.cleanup = FakeCleanup()
    e.health = Health()
    e.stateroots = FakeStateroots()
    e.precache = FakePrecache()
    e.task = PrecacheTask()
    e.actions = Actions()
    e.config = AgentConfig(paths=PathsConfig(host_root=str(tmp_path)))

    def build():
        return StageStateMachine(
            e.client,
            cleanup=e.cleanup,
            health_check=e.health,
            stateroots=e.stateroots,
            precache=e.precache,
            task=e.task,
            actions=e.actions.build(),
            config=e.config,
        )

    e.build = build
    return e


def test_missing_idle_condition_is_initialised(env):
    ibu = _ibu(Stages.IDLE)
    result = env.build().reconcile(ibu)

    assert not result.requeue
    idle = get_condition(ibu.status.conditions, T.IDLE)
    assert idle.status == S.TRUE and idle.reason == R.IDLE
    assert ibu.status.observed_generation == 2
    assert env.client.status_updates == 1


def test_unknown_stage_is_ignored(env):
    ibu = _ibu("Bogus", [_cond(T.IDLE, S.TRUE, R.IDLE)])
    result = env.build().reconcile(ibu)

    assert not result.requeue
    assert env.client.status_updates == 0


def test_finalize_waits_for_health_without_cleanup(env):
    env.health.error = "node sno not ready"
    ibu = _ibu(Stages.IDLE, [
        _cond(T.IDLE, S.FALSE, R.IN_PROGRESS),
        _cond(T.UPGRADE_COMPLETED, S.TRUE, R.COMPLETED),
    ])

    result = env.build().reconcile(ibu)

    idle = get_condition(ibu.status.conditions, T.IDLE)
    assert idle.status == S.FALSE
    assert idle.reason == R.FINALIZING
    assert idle.message.startswith("Waiting for system to stabilize before finalize (idle) stage can continue")
    assert result.requeue_after == env.config.requeue.health_check_seconds
    assert env.cleanup.calls == 0


def test_finalize_success_resets_to_idle(env):
    ibu = _ibu(Stages.IDLE, [
        _cond(T.IDLE, S.FALSE, R.FINALIZING),
        _cond(T.ROLLBACK_COMPLETED, S.TRUE, R.COMPLETED),
    ])

    result = env.build().reconcile(ibu)

    assert not result.requeue
    assert env.cleanup.calls == 1
    assert [c.type for c in ibu.status.conditions] == [T.IDLE]
    assert ibu.status.conditions[0].status == S.TRUE


def test_finalize_cleanup_failure_parks_in_finalize_failed(env):
    env.cleanup.errors = [("stateroots", LcaError("failed to remove stateroot rhcos"))]
    ibu = _ibu(Stages.IDLE, [
        _cond(T.IDLE, S.FALSE, R.FINALIZING),
        _cond(T.UPGRADE_COMPLETED, S.TRUE, R.COMPLETED),
    ])

    result = env.build().reconcile(ibu)

    idle = get_condition(ibu.status.conditions, T.IDLE)
    assert idle.status == S.FALSE
    assert idle.reason == R.FINALIZE_FAILED
    assert idle.message == (
        "failed to remove stateroot rhcos "
        f"Perform cleanup manually then add '{MARKER}' annotation to ibu CR to transition back to Idle"
    )
    assert result.requeue_after == env.config.requeue.long_seconds
    assert env.client.status_updates == 1


def test_finalize_failed_without_marker_waits(env):
    ibu = _ibu(Stages.IDLE, [_cond(T.IDLE, S.FALSE, R.FINALIZE_FAILED)])

    result = env.build().reconcile(ibu)

    assert result.requeue_after == env.config.requeue.long_seconds
    assert env.health.calls == 0
    assert env.cleanup.calls == 0
    assert env.client.updates == []


def test_finalize_failed_with_marker_consumes_it_and_retries_finalize(env):
    ibu = _ibu(Stages.IDLE, [
        _cond(T.IDLE, S.FALSE, R.FINALIZE_FAILED),
        _cond(T.UPGRADE_COMPLETED, S.TRUE, R.COMPLETED),
    ], annotations={MARKER: ""})

    result = env.build().reconcile(ibu)

    assert env.client.updates == [{}]
    assert MARKER not in ibu.metadata.annotations
    assert env.health.calls == 1
    assert env.cleanup.calls == 1
    assert not result.requeue
    assert [c.type for c in ibu.status.conditions] == [T.IDLE]
    idle = ibu.status.conditions[0]
    assert idle.status == S.TRUE and idle.reason == R.IDLE


def test_abort_failure_reports_errors_with_manual_cleanup_hint(env):
    env.cleanup.errors = [("backups", LcaError("failed to cleanup backups"))]
    ibu = _ibu(Stages.IDLE, [
        _cond(T.IDLE, S.FALSE, R.IN_PROGRESS),
        _cond(T.PREP_IN_PROGRESS, S.TRUE, R.IN_PROGRESS),
    ])

    result = env.build().reconcile(ibu)

    idle = get_condition(ibu.status.conditions, T.IDLE)
    assert idle.reason == R.ABORT_FAILED
    assert idle.status == S.FALSE
    assert idle.message == (
        "failed to cleanup backups "
        f"Perform cleanup manually then add '{MARKER}' annotation to ibu CR to transition back to Idle"
    )
    assert result.requeue_after == env.config.requeue.long_seconds


def test_abort_failed_without_marker_waits(env):
    ibu = _ibu(Stages.IDLE, [_cond(T.IDLE, S.FALSE, R.ABORT_FAILED)])

    result = env.build().reconcile(ibu)

    assert result.requeue_after == env.config.requeue.long_seconds
    assert env.cleanup.calls == 0
    assert env.client.updates == []


def test_abort_failed_with_marker_consumes_it_and_retries_abort(env):
    ibu = _ibu(Stages.IDLE, [_cond(T.IDLE, S.FALSE, R.ABORT_FAILED)], annotations={MARKER: ""})

    result = env.build().reconcile(ibu)

    assert env.client.updates == [{}]
    assert MARKER not in ibu.metadata.annotations
    assert env.cleanup.calls == 1
    assert not result.requeue
    idle = get_condition(ibu.status.conditions, T.IDLE)
    assert idle.status == S.TRUE and idle.reason == R.IDLE


def test_marker_is_restored_when_update_fails(env):
    env.client.fail_update = True
    ibu = _ibu(Stages.IDLE, [_cond(T.IDLE, S.FALSE, R.FINALIZE_FAILED)], annotations={MARKER: ""})

    result = env.build().reconcile(ibu)

    assert MARKER in ibu.metadata.annotations
    assert env.cleanup.calls == 0
    assert result.requeue_after == env.config.requeue.short_seconds


def test_upgrade_before_prep_is_invalid(env):
    ibu = _ibu(Stages.UPGRADE, [_cond(T.IDLE, S.TRUE, R.IDLE)])

    result = env.build().reconcile(ibu)

    assert not result.requeue
    cond = get_condition(ibu.status.conditions, T.UPGRADE_IN_PROGRESS)
    assert cond.status == S.FALSE
    assert cond.reason == R.INVALID_TRANSITION
    assert env.actions.calls == []


def test_pending_cleanup_blocks_new_stage(env):
    ibu = _ibu(Stages.PREP, [_cond(T.IDLE, S.FALSE, R.ABORTING)])

    env.build().reconcile(ibu)

    cond = get_condition(ibu.status.conditions, T.PREP_IN_PROGRESS)
    assert cond.reason == R.INVALID_TRANSITION
    assert env.cleanup.calls == 0


def test_prep_sets_up_stateroot_then_precaches(env):
    image_list = env.tmp / "var" / "tmp" / "imageListFile"
    image_list.parent.mkdir(parents=True)
    image_list.write_text("quay.io/a:1\n\nquay.io/b:1\n")
    machine = env.build()
    ibu = _ibu(Stages.PREP, [_cond(T.IDLE, S.TRUE, R.IDLE)])

    first = machine.reconcile(ibu)
    assert first.requeue_after == env.config.requeue.short_seconds
    assert env.actions.calls == [("setup", "quay.io/seed:4.16.0", "4.16.0")]
    assert env.precache.started[0][0] == ["quay.io/a:1", "quay.io/b:1"]
    assert get_condition(ibu.status.conditions, T.IDLE).status == S.FALSE
    assert get_condition(ibu.status.conditions, T.PREP_IN_PROGRESS).status == S.TRUE

    second = machine.reconcile(ibu)
    assert not second.requeue
    completed = get_condition(ibu.status.conditions, T.PREP_COMPLETED)
    assert completed.status == S.TRUE and completed.reason == R.COMPLETED
    assert env.task.active is False and env.task.cancel is None

    machine.reconcile(ibu)
    assert len(env.actions.calls) == 1
    assert len(env.precache.started) == 1
    assert current_stage(ibu) == Stages.PREP


def test_prep_with_precache_disabled_completes_immediately(env):
    env.config = AgentConfig(
        paths=PathsConfig(host_root=str(env.tmp)), precache=PrecacheConfig(disabled=True)
    )
    ibu = _ibu(Stages.PREP, [_cond(T.IDLE, S.TRUE, R.IDLE)])

    result = env.build().reconcile(ibu)

    assert not result.requeue
    assert env.precache.started == []
    assert get_condition(ibu.status.conditions, T.PREP_COMPLETED).status == S.TRUE


def test_prep_failed_precache_marks_prep_failed(env):
    env.precache.result = PrecacheResult(total=1, cancelled=True)
    (env.tmp / "var" / "tmp").mkdir(parents=True)
    (env.tmp / "var" / "tmp" / "imageListFile").write_text("quay.io/a:1\n")
    machine = env.build()
    ibu = _ibu(Stages.PREP, [_cond(T.IDLE, S.TRUE, R.IDLE)])

    machine.reconcile(ibu)
    machine.reconcile(ibu)

    completed = get_condition(ibu.status.conditions, T.PREP_COMPLETED)
    assert completed.status == S.FALSE and completed.reason == R.FAILED


def _prepped():
    return [
        _cond(T.IDLE, S.FALSE, R.IN_PROGRESS),
        _cond(T.PREP_IN_PROGRESS, S.FALSE, R.COMPLETED),
        _cond(T.PREP_COMPLETED, S.TRUE, R.COMPLETED),
    ]


def test_upgrade_runs_pipeline_once_then_waits_for_reboot(env):
    machine = env.build()
    ibu = _ibu(Stages.UPGRADE, _prepped())

    first = machine.reconcile(ibu)
    assert first.requeue_after == env.config.requeue.long_seconds
    assert env.actions.calls == [
        ("backup",),
        ("seedreconfig", "rhcos_4.16.0"),
        ("network", "rhcos_4.16.0"),
        ("reboot",),
    ]
    assert env.stateroots.defaults == ["rhcos_4.16.0"]
    assert env.health.calls == 1

    machine.reconcile(ibu)
    assert len(env.actions.calls) == 4
    assert env.health.calls == 1


def test_upgrade_waits_for_health_before_starting(env):
    env.health.error = "etcd degraded"
    ibu = _ibu(Stages.UPGRADE, _prepped())

    result = env.build().reconcile(ibu)

    assert result.requeue_after == env.config.requeue.health_check_seconds
    assert env.actions.calls == []


def test_upgrade_completes_once_booted_into_target(env):
    env.stateroots.booted = "rhcos_4.16.0"
    env.stateroots.others = ["rhcos"]
    ibu = _ibu(Stages.UPGRADE, _prepped())

    result = env.build().reconcile(ibu)

    assert not result.requeue
    completed = get_condition(ibu.status.conditions, T.UPGRADE_COMPLETED)
    assert completed.status == S.TRUE
    assert env.actions.calls == []


def test_rollback_before_reboot_restores_booted_default(env):
    conds = _prepped() + [_cond(T.UPGRADE_IN_PROGRESS, S.TRUE, R.IN_PROGRESS)]
    ibu = _ibu(Stages.ROLLBACK, conds)

    result = env.build().reconcile(ibu)

    assert not result.requeue
    assert env.stateroots.defaults == ["rhcos"]
    assert get_condition(ibu.status.conditions, T.ROLLBACK_COMPLETED).status == S.TRUE


def test_rollback_from_new_stateroot_switches_default_and_reboots(env):
    env.stateroots.booted = "rhcos_4.16.0"
    env.stateroots.others = ["rhcos"]
    conds = _prepped() + [_cond(T.UPGRADE_COMPLETED, S.TRUE, R.COMPLETED)]
    ibu = _ibu(Stages.ROLLBACK, conds)

    result = env.build().reconcile(ibu)

    assert result.requeue_after == env.config.requeue.long_seconds
    assert env.stateroots.defaults == ["rhcos"]
    assert env.actions.calls == [("reboot",)]


def test_prep_worker_crash_marks_prep_failed(env):
    env.precache.error = RuntimeError("worker exploded")
    (env.tmp / "var" / "tmp").mkdir(parents=True)
    (env.tmp / "var" / "tmp" / "imageListFile").write_text("quay.io/a:1\n")
    machine = env.build()
    ibu = _ibu(Stages.PREP, [_cond(T.IDLE, S.TRUE, R.IDLE)])

    machine.reconcile(ibu)
    result = machine.reconcile(ibu)

    assert not result.requeue
    completed = get_condition(ibu.status.conditions, T.PREP_COMPLETED)
    assert completed.status == S.FALSE and completed.reason == R.FAILED
    assert completed.message == "precaching failed: worker exploded"
    assert env.client.status_updates == 2
    assert env.task.active is False and env.task.cancel is None
