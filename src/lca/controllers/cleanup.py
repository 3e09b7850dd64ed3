# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/controllers/cleanup.py
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from lca.backuprestore.velero import BackupRestore
from lca.errors import LcaError, MultiError
from lca.observers.dispatcher import EventBus
from lca.observers.events import CleanupActionFailed, CleanupSummary, new_ctx
from lca.ostree.paths import path_outside_chroot
from lca.ostree.stateroots import StaterootManager
from lca.precache.task import PrecacheController, PrecacheTask

log = logging.getLogger("lca")


@dataclass
class CleanupReport:
    successful: bool
    errors: MultiError = field(default_factory=MultiError)

    @property
    def message(self) -> str:
        return self.errors.render()


class CleanupCoordinator:
    """
    Tears down everything an upgrade left behind.

    Actions run one after another and a failing action never stops the
    ones after it. Failures are collected and reported together.
    """

    def __init__(
        self,
        *,
        task: PrecacheTask,
        stateroots: StaterootManager,
        precache: PrecacheController,
        backup_restore: BackupRestore,
        workspace: str = "/var/ibu",
        host_root: str = "/host",
        bus: Optional[EventBus] = None,
    ):
        self.task = task
        self.stateroots = stateroots
        self.precache = precache
        self.backup_restore = backup_restore
        self.workspace = workspace
        self.host_root = host_root
        self.bus = bus or EventBus()

    def remove_workspace(self) -> None:
        path = path_outside_chroot(self.workspace, self.host_root)
        if not os.path.exists(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise LcaError(f"removing {self.workspace} failed: {exc}") from exc

    def _stop_precache(self) -> None:
        log.info("Terminating precaching worker thread, will wait up to the grace period")
        self.task.stop()

    def actions(self) -> List[Tuple[str, str, Callable[[], None]]]:
        return [
            ("precache_task", "failed to stop precache task.", self._stop_precache),
            ("stateroots", "failed to cleanup stateroots.", self.stateroots.undeploy_unbooted),
            ("precache", "failed to cleanup precaching resources.", self.precache.cleanup),
            ("delete_backup_requests", "failed to cleanup DeleteBackupRequest CRs.",
             self.backup_restore.cleanup_delete_backup_requests),
            ("backups", "failed to cleanup backups", self.backup_restore.cleanup_backups),
            ("pv_reclaim_policy", "failed to restore persistentVolumeReclaimPolicy in PVs created by LVMS",
             self.backup_restore.restore_pvs_reclaim_policy),
            ("workspace", "failed to cleanup ibu files.", self.remove_workspace),
        ]

    def cleanup(self) -> CleanupReport:
        ctx = new_ctx(env="ibu", context="cleanup")
        errors = MultiError()

        for name, failure_msg, action in self.actions():
            log.info("Cleaning up %s", name)
            try:
                action()
            except Exception as exc:
                log.error("%s %s", failure_msg, exc)
                errors.add(name, exc)
                self.bus.emit(CleanupActionFailed(action=name, error=str(exc), **ctx))

        report = CleanupReport(successful=not errors, errors=errors)
        self.bus.emit(CleanupSummary(successful=report.successful, failed_actions=errors.labels(), **ctx))
        if report.successful:
            log.info("Cleanup finished successfully")
        else:
            log.warning("Cleanup finished with %d failed actions: %s", len(errors), ", ".join(errors.labels()))
        return report
