# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/config/models.py

from enum import Enum
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


class ErrorMode(str, Enum):
    """How a multi-item operation reacts to an item failing."""

    BEST_EFFORT = "best-effort"   # record the failure, keep going
    STRICT = "strict"             # first failure aborts the rest


class PathsConfig(BaseModel):
    # Host filesystem as seen from the agent container
    host_root: str = "/host"
    ostree_deploy_path: str = "/ostree/deploy"
    sysroot: str = "/sysroot"

    # Working areas (host paths)
    workspace: str = "/var/ibu"
    backup_dir: str = "/var/tmp/backup"
    backup_checks_dir: str = "/var/tmp/checks"
    backup_certs_dir: str = "/var/tmp/backupCertsDir"
    seed_data_dir: str = "/var/seed_data"
    image_list_file: str = "/var/tmp/imageListFile"
    precache_status_file: str = "/var/tmp/precache/status.json"
    tmp_dir: str = "/var/tmp"
    # OADP Backup manifests created before the pivot, read inside the agent container
    backup_manifests_dir: Optional[str] = None

    @property
    def checkpoint_dir(self) -> str:
        """Checkpoint markers for the upgrade pipeline live inside the workspace."""
        return f"{self.workspace.rstrip('/')}/checks"


class RequeueConfig(BaseModel):
    short_seconds: float = 30.0
    long_seconds: float = 300.0
    health_check_seconds: float = 20.0


class PrecacheConfig(BaseModel):
    mode: ErrorMode = ErrorMode.STRICT
    disabled: bool = False
    auth_file: str = "/var/lib/kubelet/config.json"
    cancel_grace_seconds: float = 30.0
    pull_retries: int = 3
    pull_retry_delay_seconds: int = 5
    # rewrite seed registry -> cluster registry when the seed was built elsewhere
    override_seed_registry: bool = False
    cluster_registry: str = ""
    seed_registry: str = ""


class HealthCheckConfig(BaseModel):
    namespaces: List[str] = Field(
        default_factory=lambda: [
            "openshift-kube-apiserver",
            "openshift-etcd",
            "openshift-ingress",
            "openshift-lifecycle-agent",
        ]
    )


class SeedConfig(BaseModel):
    recert_image: str = "quay.io/edge-infrastructure/recert:latest"
    recert_skip_validation: bool = False
    container_registry: str = ""
    auth_file: str = "/var/lib/kubelet/config.json"
    format_version: int = 3
    format_label: str = "com.openshift.lifecycle-agent.seed_format_version"


class AgentConfig(BaseModel):
    environment: Literal["ibu", "ibi", "seed"] = "ibu"
    context: Optional[str] = None          # kube context, None = in-cluster / default
    namespace: str = "openshift-lifecycle-agent"
    resource_name: str = "upgrade"
    manual_cleanup_annotation: str = "lca.openshift.io/manual-cleanup-done"
    dry_run: bool = False

    paths: PathsConfig = Field(default_factory=PathsConfig)
    requeue: RequeueConfig = Field(default_factory=RequeueConfig)
    precache: PrecacheConfig = Field(default_factory=PrecacheConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    seed: SeedConfig = Field(default_factory=SeedConfig)

    model_config = {
        "extra": "forbid"
    }
