# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/ostree/client.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional, Sequence

from lca.errors import LcaError, QueryError
from lca.execution.ops import HostOps
from .models import Status

log = logging.getLogger("lca")


class RpmOstreeClient:
    """Read-only view of deployments through `rpm-ostree status --json`."""

    def __init__(self, ops: HostOps):
        self.ops = ops

    def query_status(self) -> Status:
        try:
            out = self.ops.run_in_host_namespace("rpm-ostree", "status", "-v", "--json")
        except LcaError as exc:
            raise QueryError(f"failed to query status with rpm-ostree: {exc}") from exc
        try:
            return Status.from_json(json.loads(out or "{}"))
        except (ValueError, TypeError) as exc:
            raise QueryError(f"failed to decode rpm-ostree status: {exc}") from exc

    def get_deployment_id(self, os_name: str) -> str:
        for d in self.query_status().deployments:
            if d.os_name == os_name:
                return d.id
        raise QueryError(f"no deployment found for stateroot {os_name}")

    def version(self) -> str:
        return self.ops.run_in_host_namespace("rpm-ostree", "--version")


class OstreeClient:
    """Mutating deployment operations through `ostree admin`."""

    def __init__(self, ops: HostOps, ibi: bool = False, sysroot: str = "/mnt"):
        self.ops = ops
        # during install the target disk is mounted, not booted
        self.ibi = ibi
        self.sysroot = sysroot

    def _admin(self, *args: str) -> str:
        if self.ibi:
            return self.ops.run_in_host_namespace("ostree", "admin", "--sysroot", self.sysroot, *args)
        return self.ops.run_in_host_namespace("ostree", "admin", *args)

    def undeploy(self, index: int) -> None:
        self._admin("undeploy", str(index))

    def set_default(self, index: int) -> None:
        self._admin("set-default", str(index))

    def os_init(self, os_name: str) -> None:
        self._admin("os-init", os_name)

    def pull_local(self, repo: str) -> None:
        if self.ibi:
            self.ops.run_in_host_namespace(
                "ostree", "pull-local", "--repo", f"{self.sysroot}/ostree/repo", repo
            )
            return
        self.ops.run_in_host_namespace("ostree", "pull-local", repo)

    def deploy(self, os_name: str, ref: str, kargs: Sequence[str]) -> None:
        args: List[str] = ["deploy", "--os", os_name, "--no-prune"]
        if not self.ibi:
            args += ["--retain"]
        args += list(kargs)
        args.append(ref)
        self._admin(*args)

    def get_deployment(self, os_name: str, deploy_root: Optional[str] = None) -> str:
        """
        Deployment directory name of *os_name* read from disk; used when
        rpm-ostree cannot see the target sysroot.
        """
        root = Path(deploy_root or f"{self.sysroot}/ostree/deploy") / os_name / "deploy"
        names = sorted(p.name for p in root.iterdir() if p.is_dir()) if root.is_dir() else []
        if not names:
            raise QueryError(f"no deployment directory found under {root}")
        return names[-1]
