# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/controllers/stages.py
"""
Stage state machine for an ImageBasedUpgrade resource.

Each reconcile call looks at the desired stage and the current conditions,
runs at most one handler and returns how long to wait before the next call.
Idle is reached through Abort (work pending, nothing committed) or Finalize
(upgrade or rollback completed). A failed Abort or Finalize parks the
resource until an operator sets the manual cleanup annotation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from lca.config.models import AgentConfig
from lca.errors import InvalidTransitionError, LcaError, ManualCleanupError, QueryError
from lca.observers.dispatcher import EventBus
from lca.observers.events import ConditionChanged, StageTransition, new_ctx
from lca.ostree.paths import get_stateroot_name, path_outside_chroot
from lca.ostree.stateroots import StaterootManager
from lca.precache.task import PrecacheController, PrecacheTask
from lca.prep.prep import read_precaching_list
from lca.utils.runonce import Step, StepPipeline, run_once
from .cleanup import CleanupCoordinator
from .conditions import (
    ConditionReasons as R,
    ConditionStatus as S,
    ConditionTypes as T,
    get_condition,
    is_true,
    reset_status_conditions,
    set_status_condition,
)
from .requeue import (
    ReconcileResult,
    do_not_requeue,
    requeue_with_health_check_interval,
    requeue_with_long_interval,
    requeue_with_short_interval,
)
from .resource import ImageBasedUpgrade, ResourceClient, Stages

log = logging.getLogger("lca")

_CLEANUP_PENDING = (R.ABORTING, R.ABORT_FAILED, R.FINALIZING, R.FINALIZE_FAILED)

_IN_PROGRESS_TYPE = {
    Stages.PREP: T.PREP_IN_PROGRESS,
    Stages.UPGRADE: T.UPGRADE_IN_PROGRESS,
    Stages.ROLLBACK: T.ROLLBACK_IN_PROGRESS,
}


@dataclass
class UpgradeActions:
    """Host side effects driven by the Prep/Upgrade/Rollback handlers."""

    # (seed image, version) -> new stateroot name
    setup_stateroot: Callable[[str, str], str]
    backup_application_data: Callable[[], None]
    # target stateroot name
    export_seed_reconfiguration: Callable[[str], None]
    export_network_config: Callable[[str], None]
    reboot: Callable[[], None]


def current_stage(ibu: ImageBasedUpgrade) -> str:
    conds = ibu.status.conditions
    if get_condition(conds, T.ROLLBACK_IN_PROGRESS) or get_condition(conds, T.ROLLBACK_COMPLETED):
        return Stages.ROLLBACK
    if get_condition(conds, T.UPGRADE_IN_PROGRESS) or get_condition(conds, T.UPGRADE_COMPLETED):
        return Stages.UPGRADE
    if get_condition(conds, T.PREP_IN_PROGRESS) or get_condition(conds, T.PREP_COMPLETED):
        return Stages.PREP
    return Stages.IDLE


class StageStateMachine:
    def __init__(
        self,
        client: ResourceClient,
        *,
        cleanup: CleanupCoordinator,
        health_check: Callable[[], None],
        stateroots: StaterootManager,
        precache: PrecacheController,
        task: PrecacheTask,
        actions: UpgradeActions,
        config: Optional[AgentConfig] = None,
        bus: Optional[EventBus] = None,
    ):
        self.client = client
        self.cleanup = cleanup
        self.health_check = health_check
        self.stateroots = stateroots
        self.precache = precache
        self.task = task
        self.actions = actions
        self.config = config or AgentConfig()
        self.bus = bus or EventBus()
        self.checkpoint_dir = path_outside_chroot(
            self.config.paths.checkpoint_dir, self.config.paths.host_root
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def _requeue(self):
        return self.config.requeue

    def _manual_cleanup_hint(self) -> str:
        return (
            f"Perform cleanup manually then add '{self.config.manual_cleanup_annotation}' "
            "annotation to ibu CR to transition back to Idle"
        )

    def _set(self, ibu: ImageBasedUpgrade, cond_type: str, reason: str, status: str, message: str) -> None:
        if set_status_condition(ibu.status.conditions, cond_type, reason, status, message, ibu.generation):
            log.info("Condition %s=%s (%s): %s", cond_type, status, reason, message)
            self.bus.emit(
                ConditionChanged(
                    type=cond_type,
                    reason=reason,
                    status=status,
                    message=message,
                    **new_ctx(env="ibu", context=ibu.metadata.name),
                )
            )

    def _leave_idle(self, ibu: ImageBasedUpgrade) -> None:
        self._set(ibu, T.IDLE, R.IN_PROGRESS, S.FALSE, "In progress")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def reconcile(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        desired = ibu.spec.stage
        if desired not in Stages.ALL:
            log.error("Unknown stage %r requested on ibu %s", desired, ibu.metadata.name)
            return do_not_requeue()

        try:
            handler = self._select_handler(ibu)
        except InvalidTransitionError as exc:
            log.warning("%s", exc)
            self._set(ibu, _IN_PROGRESS_TYPE[desired], R.INVALID_TRANSITION, S.FALSE, str(exc))
            result = do_not_requeue()
        else:
            name = getattr(handler, "__name__", str(handler))
            log.info("Reconciling ibu %s: desired stage %s, handler %s", ibu.metadata.name, desired, name)
            self.bus.emit(StageTransition(desired=desired, handler=name, **new_ctx(env="ibu", context=ibu.metadata.name)))
            result = handler(ibu)

        ibu.status.observed_generation = ibu.generation
        self.client.update_status(ibu)
        return result

    def _select_handler(self, ibu: ImageBasedUpgrade) -> Callable[[ImageBasedUpgrade], ReconcileResult]:
        desired = ibu.spec.stage
        if desired == Stages.IDLE:
            return self._select_idle_handler(ibu)
        self._validate_transition(ibu, desired)
        if desired == Stages.PREP:
            return self.handle_prep
        if desired == Stages.UPGRADE:
            return self.handle_upgrade
        return self.handle_rollback

    def _select_idle_handler(self, ibu: ImageBasedUpgrade) -> Callable[[ImageBasedUpgrade], ReconcileResult]:
        conds = ibu.status.conditions
        idle = get_condition(conds, T.IDLE)
        if idle is None or idle.status == S.TRUE:
            return self.handle_idle
        if idle.reason == R.ABORT_FAILED:
            return self.handle_abort_failure
        if idle.reason == R.FINALIZE_FAILED:
            return self.handle_finalize_failure
        if idle.reason == R.ABORTING:
            return self.handle_abort
        if idle.reason == R.FINALIZING:
            return self.handle_finalize

        # back to Idle was requested while another stage ran
        if is_true(conds, T.UPGRADE_COMPLETED) or is_true(conds, T.ROLLBACK_COMPLETED):
            self._set(ibu, T.IDLE, R.FINALIZING, S.FALSE, "Finalizing")
            return self.handle_finalize
        self._set(ibu, T.IDLE, R.ABORTING, S.FALSE, "Aborting")
        return self.handle_abort

    def _validate_transition(self, ibu: ImageBasedUpgrade, desired: str) -> None:
        conds = ibu.status.conditions
        current = current_stage(ibu)
        idle = get_condition(conds, T.IDLE)

        if idle is not None and idle.reason in _CLEANUP_PENDING:
            raise InvalidTransitionError(current, desired, f"{idle.reason} must finish first, set stage back to Idle")

        if desired == Stages.PREP:
            if current in (Stages.IDLE, Stages.PREP):
                return
            raise InvalidTransitionError(current, desired, "prep can only start from Idle")
        if desired == Stages.UPGRADE:
            if current == Stages.ROLLBACK:
                raise InvalidTransitionError(current, desired, "rollback already started")
            if is_true(conds, T.PREP_COMPLETED):
                return
            raise InvalidTransitionError(current, desired, "prep stage must complete first")
        if desired == Stages.ROLLBACK:
            if current in (Stages.UPGRADE, Stages.ROLLBACK):
                return
            raise InvalidTransitionError(current, desired, "upgrade stage must start first")

    # ------------------------------------------------------------------
    # Idle, Abort, Finalize
    # ------------------------------------------------------------------

    def reset_status_fields(self, ibu: ImageBasedUpgrade) -> None:
        reset_status_conditions(ibu.status.conditions, ibu.generation)
        self.task.reset()

    def handle_idle(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        if get_condition(ibu.status.conditions, T.IDLE) is None:
            self.reset_status_fields(ibu)
        return do_not_requeue()

    def handle_abort(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        log.info("Starting handleAbort")
        report = self.cleanup.cleanup()
        if report.successful:
            log.info("Finished handleAbort successfully")
            self.reset_status_fields(ibu)
            return do_not_requeue()

        self._set(ibu, T.IDLE, R.ABORT_FAILED, S.FALSE, report.message + self._manual_cleanup_hint())
        return requeue_with_long_interval(self._requeue)

    def handle_abort_failure(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        try:
            done = self.check_manual_cleanup(ibu)
        except ManualCleanupError as exc:
            log.error("%s", exc)
            return requeue_with_short_interval(self._requeue)
        if done:
            log.info("Manual cleanup annotation is found, removed annotation and running handleAbort again for verification")
            return self.handle_abort(ibu)
        log.info("Manual cleanup annotation is not set, requeue again")
        return requeue_with_long_interval(self._requeue)

    def handle_finalize(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        log.info("Starting handleFinalize")
        log.info("Running health check for finalize (Idle) stage")
        try:
            self.health_check()
        except LcaError as exc:
            msg = f"Waiting for system to stabilize before finalize (idle) stage can continue: {exc}"
            log.info(msg)
            self._set(ibu, T.IDLE, R.FINALIZING, S.FALSE, msg)
            return requeue_with_health_check_interval(self._requeue)

        report = self.cleanup.cleanup()
        if report.successful:
            log.info("Finished handleFinalize successfully")
            self.reset_status_fields(ibu)
            return do_not_requeue()

        self._set(ibu, T.IDLE, R.FINALIZE_FAILED, S.FALSE, report.message + self._manual_cleanup_hint())
        return requeue_with_long_interval(self._requeue)

    def handle_finalize_failure(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        try:
            done = self.check_manual_cleanup(ibu)
        except ManualCleanupError as exc:
            log.error("%s", exc)
            return requeue_with_short_interval(self._requeue)
        if done:
            log.info("Manual cleanup annotation is found, removed annotation and running handleFinalize again for verification")
            return self.handle_finalize(ibu)
        log.info("Manual cleanup annotation is not set, requeue again")
        return requeue_with_long_interval(self._requeue)

    def check_manual_cleanup(self, ibu: ImageBasedUpgrade) -> bool:
        """Consume the manual cleanup annotation; True when it was present."""
        key = self.config.manual_cleanup_annotation
        if key not in ibu.metadata.annotations:
            return False
        value = ibu.metadata.annotations.pop(key)
        try:
            self.client.update(ibu)
        except LcaError as exc:
            ibu.metadata.annotations[key] = value
            raise ManualCleanupError(f"failed to remove manual cleanup annotation from ibu: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Prep
    # ------------------------------------------------------------------

    def _prep_failed(self, ibu: ImageBasedUpgrade, msg: str) -> ReconcileResult:
        log.error(msg)
        self._set(ibu, T.PREP_IN_PROGRESS, R.FAILED, S.FALSE, msg)
        self._set(ibu, T.PREP_COMPLETED, R.FAILED, S.FALSE, msg)
        return do_not_requeue()

    def _prep_completed(self, ibu: ImageBasedUpgrade, msg: str) -> ReconcileResult:
        self._set(ibu, T.PREP_IN_PROGRESS, R.COMPLETED, S.FALSE, "Prep completed")
        self._set(ibu, T.PREP_COMPLETED, R.COMPLETED, S.TRUE, msg)
        return do_not_requeue()

    def handle_prep(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        conds = ibu.status.conditions
        completed = get_condition(conds, T.PREP_COMPLETED)
        if completed is not None and completed.reason in (R.COMPLETED, R.FAILED):
            return do_not_requeue()

        self._leave_idle(ibu)
        ref = ibu.spec.seed_image_ref
        if not ref.image or not ref.version:
            return self._prep_failed(ibu, "seedImageRef image and version must be set")

        if not self.task.active:
            self._set(ibu, T.PREP_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, "Setting up stateroot")
            try:
                run_once("setup_stateroot", self.checkpoint_dir, self.actions.setup_stateroot,
                         ref.image, ref.version, bus=self.bus)
            except (LcaError, OSError) as exc:
                return self._prep_failed(ibu, f"failed to setup stateroot: {exc}")

            cfg = self.config.precache
            if ibu.spec.precache_mode is not None:
                cfg = cfg.model_copy(update={"mode": ibu.spec.precache_mode})
            if cfg.disabled:
                return self._prep_completed(ibu, "Prep completed, precaching disabled")

            paths = self.config.paths
            try:
                images = read_precaching_list(
                    paths.image_list_file,
                    cfg.cluster_registry,
                    cfg.seed_registry,
                    cfg.override_seed_registry,
                    paths.host_root,
                )
            except (OSError, ValueError) as exc:
                return self._prep_failed(ibu, f"failed to read precaching image list: {exc}")

            self.precache.start(images, cfg, task=self.task)
            self._set(ibu, T.PREP_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, f"Precaching {len(images)} images")
            return requeue_with_short_interval(self._requeue)

        if not self.task.done:
            log.info("Precache still running, requeue")
            return requeue_with_short_interval(self._requeue)

        try:
            result = self.task.result()
        except Exception as exc:
            # any worker failure fails Prep
            return self._prep_failed(ibu, f"precaching failed: {exc}")
        finally:
            self.task.reset()

        if result.cancelled:
            return self._prep_failed(ibu, "precaching was cancelled")
        if result.failed:
            return self._prep_completed(
                ibu, f"Prep completed with precache failures: {', '.join(sorted(result.failed))}"
            )
        return self._prep_completed(ibu, f"Prep completed ({result.summary()})")

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    def upgrade_steps(self, target: str) -> List[Step]:
        a = self.actions
        return [
            Step("backup_application_data", a.backup_application_data),
            Step("export_seed_reconfiguration", lambda: a.export_seed_reconfiguration(target)),
            Step("export_network_config", lambda: a.export_network_config(target)),
            Step("set_default_deployment", lambda: self.stateroots.set_default(target)),
            Step("reboot", a.reboot),
        ]

    def _upgrade_failed(self, ibu: ImageBasedUpgrade, msg: str) -> ReconcileResult:
        log.error(msg)
        self._set(ibu, T.UPGRADE_IN_PROGRESS, R.FAILED, S.FALSE, msg)
        self._set(ibu, T.UPGRADE_COMPLETED, R.FAILED, S.FALSE, msg)
        return do_not_requeue()

    def handle_upgrade(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        completed = get_condition(ibu.status.conditions, T.UPGRADE_COMPLETED)
        if completed is not None and completed.reason in (R.COMPLETED, R.FAILED):
            return do_not_requeue()

        self._leave_idle(ibu)
        target = get_stateroot_name(ibu.spec.seed_image_ref.version)
        try:
            booted = self.stateroots.booted_stateroot()
        except QueryError as exc:
            self._set(ibu, T.UPGRADE_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, f"Waiting for deployment status: {exc}")
            return requeue_with_short_interval(self._requeue)

        if booted == target:
            # rebooted into the new stateroot
            try:
                self.health_check()
            except LcaError as exc:
                self._set(ibu, T.UPGRADE_IN_PROGRESS, R.IN_PROGRESS, S.TRUE,
                          f"Waiting for system to stabilize: {exc}")
                return requeue_with_health_check_interval(self._requeue)
            self._set(ibu, T.UPGRADE_IN_PROGRESS, R.COMPLETED, S.FALSE, "Upgrade completed")
            self._set(ibu, T.UPGRADE_COMPLETED, R.COMPLETED, S.TRUE, "Upgrade completed")
            return do_not_requeue()

        pipeline = StepPipeline(self.checkpoint_dir, self.upgrade_steps(target), bus=self.bus)
        if len(pipeline.pending()) == len(pipeline.steps):
            try:
                self.health_check()
            except LcaError as exc:
                self._set(ibu, T.UPGRADE_IN_PROGRESS, R.IN_PROGRESS, S.TRUE,
                          f"Waiting for system to stabilize before upgrade: {exc}")
                return requeue_with_health_check_interval(self._requeue)

        self._set(ibu, T.UPGRADE_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, f"Upgrading to {target}")
        try:
            pipeline.run()
        except (LcaError, OSError) as exc:
            return self._upgrade_failed(ibu, f"upgrade to {target} failed: {exc}")

        self._set(ibu, T.UPGRADE_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, f"Rebooting into {target}")
        return requeue_with_long_interval(self._requeue)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _rollback_failed(self, ibu: ImageBasedUpgrade, msg: str) -> ReconcileResult:
        log.error(msg)
        self._set(ibu, T.ROLLBACK_IN_PROGRESS, R.FAILED, S.FALSE, msg)
        self._set(ibu, T.ROLLBACK_COMPLETED, R.FAILED, S.FALSE, msg)
        return do_not_requeue()

    def handle_rollback(self, ibu: ImageBasedUpgrade) -> ReconcileResult:
        completed = get_condition(ibu.status.conditions, T.ROLLBACK_COMPLETED)
        if completed is not None and completed.reason in (R.COMPLETED, R.FAILED):
            return do_not_requeue()

        self._leave_idle(ibu)
        self._set(ibu, T.ROLLBACK_IN_PROGRESS, R.IN_PROGRESS, S.TRUE, "Rollback in progress")
        target = get_stateroot_name(ibu.spec.seed_image_ref.version)
        try:
            deployments = self.stateroots.query_deployments()
        except QueryError as exc:
            log.warning("%s", exc)
            return requeue_with_short_interval(self._requeue)

        booted = next((d.os_name for d in deployments if d.booted), "")
        if booted != target:
            # back on the original stateroot; undo a default switch that never rebooted
            try:
                self.stateroots.set_default(booted)
            except LcaError as exc:
                return self._rollback_failed(ibu, f"failed to restore default deployment {booted}: {exc}")
            self._set(ibu, T.ROLLBACK_IN_PROGRESS, R.COMPLETED, S.FALSE, "Rollback completed")
            self._set(ibu, T.ROLLBACK_COMPLETED, R.COMPLETED, S.TRUE, "Rollback completed")
            return do_not_requeue()

        original = next((d.os_name for d in deployments if d.os_name != target), None)
        if original is None:
            return self._rollback_failed(ibu, f"no stateroot other than {target} to roll back to")

        pipeline = StepPipeline(
            self.checkpoint_dir,
            [
                Step("rollback_set_default", lambda: self.stateroots.set_default(original)),
                Step("rollback_reboot", self.actions.reboot),
            ],
            bus=self.bus,
        )
        try:
            pipeline.run()
        except (LcaError, OSError) as exc:
            return self._rollback_failed(ibu, f"rollback to {original} failed: {exc}")
        return requeue_with_long_interval(self._requeue)
