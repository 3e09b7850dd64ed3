# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/prep/prep.py
"""
Stateroot setup from a seed image.

The seed image is an OCI image holding tarballs of the seed host (ostree
repo, /var, changed /etc) plus metadata: rpm-ostree.json, the machine config
and the seed cluster manifest.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

import yaml

from lca.config.models import PathsConfig
from lca.errors import LcaError, VersionMismatchError
from lca.execution.ops import HostOps
from lca.ostree.client import OstreeClient, RpmOstreeClient
from lca.ostree.models import Status
from lca.ostree.paths import (
    get_deployment_dir_path,
    get_deployment_from_deployment_id,
    get_deployment_origin_path,
    get_stateroot_name,
    get_stateroot_path,
    path_outside_chroot,
)
from lca.utils.images import replace_image_registry

log = logging.getLogger("lca")

CLUSTER_INFO_FILE_NAME = "manifest.json"


def get_booted_stateroot_id_from_rpm_ostree_json(path: str | Path) -> str:
    try:
        data = json.loads(Path(path).read_text())
    except OSError as exc:
        raise LcaError(f"failed reading {path}: {exc}") from exc
    except ValueError as exc:
        raise LcaError(f"failed unmarshalling {path}: {exc}") from exc

    booted = Status.from_json(data).booted()
    if booted is None:
        raise LcaError("failed finding booted stateroot")
    return booted.id


def get_version_from_cluster_info_file(path: str | Path) -> str:
    try:
        # yaml is a superset of json, accepts both encodings
        info = yaml.safe_load(Path(path).read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise LcaError(f"failed to read and decode ClusterInfo file: {exc}") from exc
    return str(info.get("version", ""))


def build_kernel_arguments_from_mco_file(path: str | Path) -> List[str]:
    """
    --karg-append pairs for `ostree admin deploy`.

    Each karg is JSON-quoted, otherwise embedded quotes are lost after reboot.
    """
    try:
        mc = yaml.safe_load(Path(path).read_text()) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise LcaError(f"failed to read and decode machine config json file: {exc}") from exc

    args: List[str] = []
    for karg in (mc.get("spec") or {}).get("kernelArguments") or []:
        args += ["--karg-append", json.dumps(karg)]
    return args


def remove_etc_deletions(mountpoint: str, os_name: str, deployment: str, paths: PathsConfig) -> None:
    """Delete the /etc files the seed removed, listed in etc.deletions."""
    deletions = Path(path_outside_chroot(mountpoint, paths.host_root)) / "etc.deletions"
    try:
        lines = deletions.read_text().splitlines()
    except OSError as exc:
        raise LcaError(f"failed to open etc.deletions: {exc}") from exc

    deploy_dir = get_deployment_dir_path(os_name, deployment, paths.ostree_deploy_path)
    for line in lines:
        name = line.strip()
        if not name:
            continue
        target = path_outside_chroot(os.path.join(deploy_dir, name.lstrip("/")), paths.host_root)
        try:
            os.remove(target)
        except OSError as exc:
            raise LcaError(f"failed to remove {target}: {exc}") from exc


def read_precaching_list(
    image_list_file: str,
    cluster_registry: str = "",
    seed_registry: str = "",
    override_seed_registry: bool = False,
    host_root: str = "/host",
) -> List[str]:
    content = Path(path_outside_chroot(image_list_file, host_root)).read_text()
    images: List[str] = []
    for line in content.split("\n"):
        if not line.strip():
            continue
        image = line.strip()
        if override_seed_registry:
            image = replace_image_registry(image, cluster_registry, seed_registry)
        images.append(image)
    return images


def _copy_outside_chroot(src: str, dest: str, host_root: str) -> None:
    dst = Path(path_outside_chroot(dest, host_root))
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(path_outside_chroot(src, host_root), dst)


def setup_stateroot(
    ops: HostOps,
    ostree: OstreeClient,
    rpm_ostree: Optional[RpmOstreeClient],
    seed_image: str,
    expected_version: str,
    image_list_file: str,
    *,
    ibi: bool = False,
    paths: Optional[PathsConfig] = None,
) -> str:
    """
    Create a new stateroot from *seed_image* and return its name.

    The seed version must equal *expected_version*; a mismatch is a hard
    VersionMismatchError because retrying cannot fix a wrong image.
    """
    paths = paths or PathsConfig()
    log.info("Start setupstateroot")

    workspace_outside = tempfile.mkdtemp(dir=path_outside_chroot(paths.tmp_dir, paths.host_root))
    workspace = "/" + os.path.relpath(workspace_outside, paths.host_root)
    log.info("workspace: %s", workspace)

    try:
        if not ibi:
            ops.remount_sysroot()

        mountpoint = ops.mount_image(seed_image)
        mount_view = path_outside_chroot(mountpoint, paths.host_root)

        ostree_repo = os.path.join(workspace, "ostree")
        os.mkdir(path_outside_chroot(ostree_repo, paths.host_root), 0o755)
        ops.extract_tar_with_selinux(os.path.join(mountpoint, "ostree.tgz"), ostree_repo)

        # seed_booted_id:         rhcos-ed4ab3244a76...519c.1
        # seed_booted_deployment: ed4ab3244a76...519c.1
        # seed_booted_ref:        ed4ab3244a76...519c
        seed_booted_id = get_booted_stateroot_id_from_rpm_ostree_json(os.path.join(mount_view, "rpm-ostree.json"))
        seed_booted_deployment = get_deployment_from_deployment_id(seed_booted_id)
        seed_booted_ref = seed_booted_deployment.split(".")[0]

        version = get_version_from_cluster_info_file(os.path.join(mount_view, CLUSTER_INFO_FILE_NAME))
        if version != expected_version:
            raise VersionMismatchError(version, expected_version)

        os_name = get_stateroot_name(expected_version)

        ostree.pull_local(ostree_repo)
        ostree.os_init(os_name)

        kargs = build_kernel_arguments_from_mco_file(os.path.join(mount_view, "mco-currentconfig.json"))
        ostree.deploy(os_name, seed_booted_ref, kargs)

        if ibi or rpm_ostree is None:
            deployment = ostree.get_deployment(
                os_name, path_outside_chroot(paths.ostree_deploy_path, paths.host_root)
            )
        else:
            deployment = get_deployment_from_deployment_id(rpm_ostree.get_deployment_id(os_name))

        _copy_outside_chroot(
            os.path.join(mountpoint, f"ostree-{seed_booted_deployment}.origin"),
            get_deployment_origin_path(os_name, deployment, paths.ostree_deploy_path),
            paths.host_root,
        )

        ops.extract_tar_with_selinux(
            os.path.join(mountpoint, "var.tgz"),
            get_stateroot_path(os_name, paths.ostree_deploy_path),
        )
        ops.extract_tar_with_selinux(
            os.path.join(mountpoint, "etc.tgz"),
            get_deployment_dir_path(os_name, deployment, paths.ostree_deploy_path),
        )
        remove_etc_deletions(mountpoint, os_name, deployment, paths)

        _copy_outside_chroot(os.path.join(mountpoint, "containers.list"), image_list_file, paths.host_root)
        log.info("Stateroot %s set up from %s", os_name, seed_image)
        return os_name
    finally:
        ops.unmount_and_remove_image(seed_image)
        shutil.rmtree(workspace_outside, ignore_errors=True)
