# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/execution/ops.py
from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from lca.errors import CommandError
from .runner import CommandRunner

log = logging.getLogger("lca")

# enter every namespace of PID 1 so tools act on the host, not the agent container
NSENTER = ["nsenter", "--target", "1", "--cgroup", "--mount", "--ipc", "--pid", "--"]


class HostOps:
    """
    Host-level primitives used by the upgrade flows.

    Every method returns the stripped stdout and raises CommandError on a
    non-zero exit.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, in_host_namespace: bool = True):
        self.runner = runner or CommandRunner(label="ops")
        self.in_host_namespace = in_host_namespace

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def run(self, *argv: str) -> str:
        result = self.runner.run(list(argv), capture_output=True, check=False)
        if result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stderr or "", result.stdout or "")
        return (result.stdout or "").strip()

    def run_in_host_namespace(self, command: str, *args: str) -> str:
        if not self.in_host_namespace:
            return self.run(command, *args)
        return self.run(*NSENTER, command, *args)

    def run_bash_in_host_namespace(self, command: str, *args: str) -> str:
        """Run through bash so pipes and redirections in args are honoured."""
        line = " ".join([command, *args])
        if not self.in_host_namespace:
            return self.run("bash", "-c", line)
        return self.run(*NSENTER, "bash", "-c", line)

    def run_list_of_commands(self, cmds: Iterable[Sequence[str]]) -> None:
        for cmd in cmds:
            self.run_in_host_namespace(*cmd)

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def remount_sysroot(self) -> None:
        self.run_in_host_namespace("mount", "/sysroot", "-o", "remount,rw")

    def remount_sysroot_and_remove(self, path: str) -> None:
        """Delete *path* from the read-only sysroot inside a private mount namespace."""
        self.run_bash_in_host_namespace(
            "unshare", "-m", "/bin/sh", "-c",
            f"\"mount -o remount,rw /sysroot && rm -rf {path}\"",
        )

    def extract_tar_with_selinux(self, src: str, dest: str) -> None:
        self.run_in_host_namespace("tar", "xzf", src, "-C", dest, "--selinux")

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def pull_image(self, image: str, auth_file: str) -> None:
        self.run_in_host_namespace("podman", "pull", "--authfile", auth_file, image)

    def mount_image(self, image: str) -> str:
        return self.run_in_host_namespace("podman", "image", "mount", image)

    def unmount_and_remove_image(self, image: str) -> None:
        try:
            self.run_in_host_namespace("podman", "image", "unmount", image)
            self.run_in_host_namespace("podman", "rmi", image)
        except CommandError as exc:
            log.warning("failed to unmount/remove image %s: %s", image, exc)

    # ------------------------------------------------------------------
    # Services / power
    # ------------------------------------------------------------------

    def systemctl(self, action: str, unit: str) -> str:
        return self.run_in_host_namespace("systemctl", action, unit)

    def reboot(self) -> None:
        log.info("Rebooting host")
        self.run_in_host_namespace("systemctl", "reboot")

    def shutdown(self) -> None:
        log.info("Shutting down host")
        self.run_in_host_namespace("shutdown", "now")
