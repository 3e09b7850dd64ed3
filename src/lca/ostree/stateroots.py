# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/ostree/stateroots.py
from __future__ import annotations

import logging
import os
import shutil
from typing import List, Optional, Sequence

from lca.errors import BootedConflictError, LcaError, QueryError, StaterootRemovalError
from lca.execution.ops import HostOps
from lca.observers.dispatcher import EventBus
from lca.observers.events import StaterootRemovalFailed, StaterootRemoved, new_ctx
from .client import OstreeClient, RpmOstreeClient
from .models import Deployment
from .paths import get_stateroot_path, path_outside_chroot

log = logging.getLogger("lca")


def compute_removal_order(deployments: Sequence[Deployment], stateroot: Optional[str] = None) -> List[int]:
    """
    Indices to undeploy, highest first.

    Undeploying index k shifts every later index down by one, so walking
    from the tail keeps the remaining indices valid.

    Without *stateroot* every deployment outside the booted stateroot is
    selected. With *stateroot* only its deployments are selected and a booted
    one among them raises BootedConflictError.
    """
    if stateroot is None:
        booted = {d.os_name for d in deployments if d.booted}
        return [i for i in range(len(deployments) - 1, -1, -1) if deployments[i].os_name not in booted]

    indices: List[int] = []
    for i in range(len(deployments) - 1, -1, -1):
        d = deployments[i]
        if d.os_name != stateroot:
            continue
        if d.booted:
            raise BootedConflictError(f"failed abort: deployment {i} in stateroot {stateroot} is booted")
        indices.append(i)
    return indices


class StaterootManager:
    """
    Enumerates ostree deployments and removes every stateroot that does not
    hold the booted deployment.
    """

    def __init__(
        self,
        rpm_ostree: RpmOstreeClient,
        ostree: OstreeClient,
        ops: HostOps,
        *,
        host_root: str = "/host",
        deploy_path: str = "/ostree/deploy",
        bus: Optional[EventBus] = None,
    ):
        self.rpm_ostree = rpm_ostree
        self.ostree = ostree
        self.ops = ops
        self.host_root = host_root
        self.deploy_path = deploy_path
        self.bus = bus or EventBus()
        self.run_ctx = new_ctx(env="ibu", context="stateroots")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query_deployments(self) -> List[Deployment]:
        return list(self.rpm_ostree.query_status().deployments)

    def booted_stateroot(self) -> str:
        for d in self.query_deployments():
            if d.booted:
                return d.os_name
        raise QueryError("no booted deployment reported")

    def get_deployment_index(self, stateroot: str) -> int:
        for i, d in enumerate(self.query_deployments()):
            if d.os_name == stateroot:
                return i
        raise QueryError(f"no deployment found for stateroot {stateroot}")

    def set_default(self, stateroot: str) -> None:
        idx = self.get_deployment_index(stateroot)
        log.info("Setting default deployment to %s (index %d)", stateroot, idx)
        self.ostree.set_default(idx)

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def _host_path(self, path: str) -> str:
        return path_outside_chroot(path, self.host_root)

    def undeploy_unbooted(self) -> None:
        """
        Remove every stateroot other than the booted one, then any leftover
        stateroot directory with no deployment record (failed deploys).

        Failures are counted, never short-circuited.
        """
        deployments = self.query_deployments()

        booted_stateroot = ""
        to_remove: List[str] = []
        for i in range(len(deployments) - 1, -1, -1):
            d = deployments[i]
            if d.booted:
                booted_stateroot = d.os_name
                continue
            if d.os_name not in to_remove:
                to_remove.append(d.os_name)
        if not booted_stateroot:
            raise QueryError("no booted deployment reported, refusing to remove stateroots")

        failures = 0
        for stateroot in to_remove:
            if stateroot == booted_stateroot:
                continue
            try:
                self.remove_single_stateroot(stateroot)
            except Exception as exc:
                log.error("failed to remove stateroot %s: %s", stateroot, exc)
                self.bus.emit(StaterootRemovalFailed(stateroot=stateroot, error=str(exc), **self.run_ctx))
                failures += 1

        parent = self._host_path(get_stateroot_path("", self.deploy_path))
        try:
            entries = list(os.scandir(parent))
        except OSError as exc:
            raise LcaError(f"failed to list stateroots: {exc}") from exc

        for entry in entries:
            if not entry.is_dir(follow_symlinks=False) or entry.name == booted_stateroot:
                continue
            try:
                shutil.rmtree(entry.path)
                log.info("Removed undeployed stateroot directory %s", entry.name)
            except OSError as exc:
                log.error("failed to remove undeployed stateroot %s: %s", entry.name, exc)
                self.bus.emit(StaterootRemovalFailed(stateroot=entry.name, error=str(exc), **self.run_ctx))
                failures += 1

        if failures:
            raise StaterootRemovalError(failures)

    def remove_single_stateroot(self, stateroot: str) -> None:
        # indices may have shifted since the caller looked, query again
        try:
            deployments = self.query_deployments()
        except QueryError as exc:
            raise QueryError(f"failed to query status with rpmostree during stateroot cleanup: {exc}") from exc

        indices = compute_removal_order(deployments, stateroot)
        for idx in indices:
            try:
                self.ostree.undeploy(idx)
            except LcaError as exc:
                raise LcaError(f"failed to undeploy {stateroot} with index {idx}: {exc}") from exc

        stateroot_path = get_stateroot_path(stateroot, self.deploy_path)
        if os.path.exists(self._host_path(stateroot_path)):
            try:
                self.ops.remount_sysroot_and_remove(stateroot_path)
            except LcaError as exc:
                raise LcaError(f"removing stateroot {stateroot} failed: {exc}") from exc

        log.info("Removed stateroot %s (undeployed indices %s)", stateroot, indices)
        self.bus.emit(StaterootRemoved(stateroot=stateroot, undeployed=indices, **self.run_ctx))
