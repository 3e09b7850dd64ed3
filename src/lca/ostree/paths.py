# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/ostree/paths.py

from __future__ import annotations

import os


def path_outside_chroot(path: str, host_root: str = "/host") -> str:
    """Translate a host path into the agent's view of the host filesystem."""
    return os.path.join(host_root, path.lstrip("/"))


def get_stateroot_path(stateroot: str, deploy_path: str = "/ostree/deploy") -> str:
    if not stateroot:
        return deploy_path.rstrip("/") + "/"
    return os.path.join(deploy_path, stateroot)


def get_stateroot_name(version: str) -> str:
    return "rhcos_" + version.replace("-", "_")


def get_deployment_dir_path(os_name: str, deployment: str, deploy_path: str = "/ostree/deploy") -> str:
    # /ostree/deploy/<osname>/deploy/<deployment>
    return os.path.join(get_stateroot_path(os_name, deploy_path), "deploy", deployment)


def get_deployment_origin_path(os_name: str, deployment: str, deploy_path: str = "/ostree/deploy") -> str:
    # /ostree/deploy/<osname>/deploy/<deployment>.origin
    return os.path.join(get_stateroot_path(os_name, deploy_path), "deploy", f"{deployment}.origin")


def get_deployment_from_deployment_id(deployment_id: str) -> str:
    """
    'rhcos-ed4ab32...19c.1' -> 'ed4ab32...19c.1'

    The text after the last '-' is returned; an id without '-' is rejected.
    """
    parts = deployment_id.split("-")
    if len(parts) < 2:
        raise ValueError(
            "failed to get deployment from deploymentID, "
            f"there should be a '-' in deploymentID {deployment_id}"
        )
    return parts[-1]
