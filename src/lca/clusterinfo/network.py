# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/clusterinfo/network.py
from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from lca.ostree.paths import path_outside_chroot

log = logging.getLogger("lca")

NETWORK_DIR = "network-configuration"

NETWORK_PATHS = (
    "/etc/hostname",
    "/etc/NetworkManager/system-connections",
    "/var/lib/ovnk/iface_default_hint",
)


def fetch_network_config(dest_dir: str, host_root: str = "/host") -> Path:
    """Copy the node's network identity files under <dest_dir>/network-configuration."""
    target = Path(path_outside_chroot(os.path.join(dest_dir, NETWORK_DIR), host_root))
    target.mkdir(mode=0o700, parents=True, exist_ok=True)

    log.info("Fetching node network files")
    for path in NETWORK_PATHS:
        src = Path(path_outside_chroot(path, host_root))
        dst = target / path.lstrip("/")
        log.info("Copying %s to %s", path, dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        if src.is_dir():
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dst)
    log.info("Done fetching node network files")
    return target
