# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/ibi/prepare.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from lca.config.models import AgentConfig, PathsConfig
from lca.errors import LcaError
from lca.execution.ops import HostOps
from lca.observers.dispatcher import EventBus
from lca.ostree.client import OstreeClient, RpmOstreeClient
from lca.ostree.paths import path_outside_chroot
from lca.precache.workload import PrecacheResult, precache_images
from lca.prep.prep import read_precaching_list, setup_stateroot

log = logging.getLogger("lca")

IBI_SYSROOT = "/mnt"


@dataclass
class IBIOptions:
    seed_image: str
    seed_version: str
    auth_file: str
    pull_secret_file: str
    installation_disk: str
    skip_shutdown: bool = False
    create_extra_partition: bool = True
    extra_partition_number: int = 5
    extra_partition_start: str = "40G"
    extra_partition_label: str = "varlibcontainers"


class IBIPrepare:
    """
    Writes RHCOS to the installation disk and lays the seed stateroot on it,
    so the host boots straight into the seed cluster.
    """

    def __init__(
        self,
        ops: HostOps,
        ostree: OstreeClient,
        rpm_ostree: Optional[RpmOstreeClient],
        options: IBIOptions,
        config: Optional[AgentConfig] = None,
        bus: Optional[EventBus] = None,
    ):
        self.ops = ops
        self.ostree = ostree
        self.rpm_ostree = rpm_ostree
        self.options = options
        self.config = config or AgentConfig(environment="ibi")
        self.bus = bus or EventBus()
        # stateroots live on the freshly written disk, mounted at /mnt
        self.paths: PathsConfig = self.config.paths.model_copy(
            update={"ostree_deploy_path": f"{IBI_SYSROOT}/ostree/deploy"}
        )

    def run(self) -> Optional[PrecacheResult]:
        try:
            self.disk_preparation()
        except LcaError as exc:
            raise LcaError(f"failed to prepare disk: {exc}") from exc

        log.info("Pulling seed image")
        try:
            self.ops.pull_image(self.options.seed_image, self.options.auth_file)
        except LcaError as exc:
            raise LcaError(f"failed to pull image: {exc}") from exc

        try:
            setup_stateroot(
                self.ops,
                self.ostree,
                self.rpm_ostree,
                self.options.seed_image,
                self.options.seed_version,
                self.paths.image_list_file,
                ibi=True,
                paths=self.paths,
            )
        except LcaError as exc:
            raise LcaError(f"failed to setup stateroot: {exc}") from exc

        result = self.precache_flow()
        self.shutdown()
        return result

    # ------------------------------------------------------------------
    # Precache
    # ------------------------------------------------------------------

    def precache_flow(self) -> Optional[PrecacheResult]:
        cfg = self.config.precache
        if cfg.disabled:
            log.info("Precache disabled, skipping it")
            return None

        log.info("Precaching images")
        try:
            images = read_precaching_list(self.paths.image_list_file, host_root=self.paths.host_root)
        except OSError as exc:
            raise LcaError(
                f"failed to read pre-caching image file: "
                f"{path_outside_chroot(self.paths.image_list_file, self.paths.host_root)}, {exc}"
            ) from exc

        # runs to completion here, nothing else is waiting on this host
        return precache_images(
            images,
            ops=self.ops,
            auth_file=self.options.pull_secret_file,
            mode=cfg.mode,
            status_path=path_outside_chroot(self.paths.precache_status_file, self.paths.host_root),
            retries=cfg.pull_retries,
            retry_delay=cfg.pull_retry_delay_seconds,
            bus=self.bus,
        )

    def shutdown(self) -> None:
        if self.options.skip_shutdown:
            log.info("Skipping shutdown")
            return
        log.info("Shutting down the host")
        try:
            self.ops.shutdown()
        except LcaError as exc:
            raise LcaError(f"failed to shutdown the host: {exc}") from exc

    # ------------------------------------------------------------------
    # Disk
    # ------------------------------------------------------------------

    def disk_cleanup(self) -> None:
        disk = self.options.installation_disk
        log.info("Start cleaning up disk %s", disk)
        self.ops.run_in_host_namespace("wipefs", "--all", "--force", disk)
        self.ops.run_in_host_namespace("sgdisk", "--zap-all", disk)
        log.info("Disk was successfully cleaned up")

    def get_extra_partition_path(self) -> str:
        o = self.options
        out = self.ops.run_in_host_namespace("lsblk", o.installation_disk, "--json", "-O")
        try:
            disks = json.loads(out)
        except ValueError as exc:
            raise LcaError(f"failed to unmarshal lsblk output: {exc}") from exc

        devices = disks.get("blockdevices") or []
        children = (devices[0].get("children") or []) if devices else []
        if len(children) < o.extra_partition_number:
            raise LcaError(f"not enough partitions in {o.installation_disk}")
        return children[o.extra_partition_number - 1]["path"]

    def create_extra_partition(self) -> None:
        o = self.options
        self.ops.run_bash_in_host_namespace("sfdisk", o.installation_disk, "<<<", "write")
        self.ops.run_in_host_namespace(
            "sgdisk",
            "--new", f"{o.extra_partition_number}:{o.extra_partition_start}",
            "--change-name", f"{o.extra_partition_number}:{o.extra_partition_label}",
            o.installation_disk,
        )
        self.ops.run_in_host_namespace("mkfs.xfs", "-f", self.get_extra_partition_path())

    def setup_containers_folder_commands(self) -> List[Sequence[str]]:
        log.info("Setting up containers folder")
        return [
            ("chattr", "-i", f"{IBI_SYSROOT}/"),
            ("mkdir", "-p", f"{IBI_SYSROOT}/containers"),
            ("chattr", "+i", f"{IBI_SYSROOT}/"),
            ("mount", "-o", "bind", f"{IBI_SYSROOT}/containers", "/var/lib/containers"),
        ]

    def disk_environment_commands(self) -> List[Sequence[str]]:
        o = self.options
        cmds: List[Sequence[str]] = [
            ("growpart", o.installation_disk, "4"),
            ("mount", "/dev/disk/by-partlabel/root", IBI_SYSROOT),
            ("mount", "/dev/disk/by-partlabel/boot", f"{IBI_SYSROOT}/boot"),
            ("xfs_growfs", "/dev/disk/by-partlabel/root"),
        ]
        if o.create_extra_partition:
            cmds.append(
                ("mount", f"/dev/disk/by-partlabel/{o.extra_partition_label}", f"{IBI_SYSROOT}/var/lib/containers")
            )
        else:
            cmds += self.setup_containers_folder_commands()
        cmds.append(("restorecon", "-R", f"{IBI_SYSROOT}/var/lib/containers"))
        return cmds

    def disk_preparation(self) -> None:
        log.info("Start preparing disk")
        self.disk_cleanup()
        self.ops.run_in_host_namespace("coreos-installer", "install", self.options.installation_disk)

        if self.options.create_extra_partition:
            self.create_extra_partition()
        self.ops.run_list_of_commands(self.disk_environment_commands())
        log.info("Disk was successfully prepared")
