# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/seedcreator/seedcreator.py
"""
Seed image creation.

Runs on the seed cluster's only node: records what the host runs, removes
the node from its own cluster, stops the runtime and archives /var, /etc and
the ostree repo into one OCI image. Every destructive step is checkpointed in
the backup checks dir so a crashed run resumes where it stopped.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any, List, Optional

from kubernetes.client.exceptions import ApiException

from lca.clusterinfo.clusterinfo import (
    get_cluster_info,
    get_kubeconfig_crypto_retention,
    get_sno_master_node,
)
from lca.config.models import AgentConfig, ErrorMode
from lca.errors import CommandError, LcaError
from lca.execution.ops import HostOps
from lca.observers.dispatcher import EventBus
from lca.observers.events import SeedStepStarted, new_ctx
from lca.ostree.client import RpmOstreeClient
from lca.ostree.paths import get_deployment_from_deployment_id, path_outside_chroot
from lca.seedreconfig.models import SEED_RECONFIGURATION_FILE_NAME
from lca.utils.retry import RetryError, retry
from lca.utils.runonce import run_once

log = logging.getLogger("lca")

CONTAINER_FILE = """
FROM scratch
COPY . /
"""

# registry.redhat.io/redhat/redhat-operator-index:v4.15 and friends
DEFAULT_CATALOGS = re.compile(r"^registry\.redhat\.io/redhat/.+-index:.+")

VAR_EXCLUDES = (
    "/var/tmp/*",
    "/var/lib/log/*",
    "/var/log/*",
    "/var/lib/containers/*",
    "/var/lib/kubelet/pods/*",
    "/var/lib/cni/bin/*",
    "/var/lib/ovn-ic/etc/ovnkube-node-certs/*",
)

OVN_NODE_CERTS = "/var/lib/ovn-ic/etc/ovnkube-node-certs"
MULTUS_CERTS = "/etc/cni/multus/certs"
INSTALLATION_CONFIGURATION_FILES_DIR = "/usr/local/installation_configuration_files"


class SeedCreator:
    def __init__(
        self,
        ops: HostOps,
        rpm_ostree: RpmOstreeClient,
        core: Any,
        custom: Any,
        config: Optional[AgentConfig] = None,
        bus: Optional[EventBus] = None,
        *,
        ovn_wait_attempts: int = 30,
        ovn_wait_delay: float = 10,
    ):
        self.ops = ops
        self.rpm_ostree = rpm_ostree
        self.core = core
        self.custom = custom
        self.config = config or AgentConfig(environment="seed")
        self.bus = bus or EventBus()
        self.ovn_wait_attempts = ovn_wait_attempts
        self.ovn_wait_delay = ovn_wait_delay

        paths = self.config.paths
        self.backup_dir = paths.backup_dir
        self.checks_dir = self._host(paths.backup_checks_dir)

    def _host(self, path: str) -> str:
        return path_outside_chroot(path, self.config.paths.host_root)

    def _phase(self, name: str) -> None:
        self.bus.emit(SeedStepStarted(step=name, **new_ctx(env="seed", context=self.config.seed.container_registry)))

    def _run_once(self, name: str, action, mode: ErrorMode = ErrorMode.STRICT) -> None:
        self._phase(name)
        run_once(name, self.checks_dir, action, mode=mode, bus=self.bus)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def create_seed_image(self) -> None:
        seed = self.config.seed
        if not seed.container_registry:
            raise LcaError("seed image reference (container registry) is required")
        log.info("Creating seed image %s", seed.container_registry)

        self._phase("install_configuration_files")
        self.install_configuration_files()

        Path(self._host(self.backup_dir)).mkdir(mode=0o700, parents=True, exist_ok=True)
        Path(self.checks_dir).mkdir(mode=0o700, parents=True, exist_ok=True)

        self._run_once("create_container_list", self.create_container_list)
        self._run_once("gather_cluster_info", self.gather_cluster_info)

        if seed.recert_skip_validation:
            log.info("Skipping seed certificates backing up.")
        else:
            self._phase("backup_kubeconfig_crypto")
            self.backup_kubeconfig_crypto()

        self._run_once("delete_node", self.delete_node)
        self._run_once("wait_for_ovn_to_go_down", self.wait_till_ovnkube_node_is_down, mode=ErrorMode.BEST_EFFORT)

        self._phase("stop_services")
        self.stop_services()

        if seed.recert_skip_validation:
            log.info("Skipping recert validation.")
        else:
            self._run_once("recert", self.force_expire_seed_crypto)

        self._phase("remove_ovn_certs_folders")
        self.remove_ovn_certs_folders()

        self._run_once("backup_var", self.backup_var)
        self._run_once("backup_etc", self.backup_etc)
        self._run_once("backup_ostree", self.backup_ostree)
        self._run_once("backup_rpmostree", self.backup_rpmostree)
        self._run_once("backup_mco_config", self.backup_mco_config)

        self._phase("build_and_push")
        self.create_and_push_seed_image()
        log.info("Seed image %s created", seed.container_registry)

    # ------------------------------------------------------------------
    # Configuration files
    # ------------------------------------------------------------------

    def install_configuration_files(self) -> None:
        """Copy post-pivot scripts and enable their systemd units on the seed host."""
        base = Path(self._host(INSTALLATION_CONFIGURATION_FILES_DIR))
        scripts = base / "scripts"
        if scripts.is_dir():
            log.info("Copying installation_configuration_files/scripts to local/bin")
            dest = Path(self._host("/var/usrlocal/bin"))
            dest.mkdir(parents=True, exist_ok=True)
            for script in sorted(scripts.iterdir()):
                target = dest / script.name
                shutil.copy2(script, target)
                target.chmod(0o777)

        services = base / "services"
        if services.is_dir():
            for unit in sorted(services.iterdir()):
                log.info("Creating service %s", unit.name)
                shutil.copy2(unit, Path(self._host("/etc/systemd/system")) / unit.name)
                log.info("Enabling service %s", unit.name)
                self.ops.systemctl("enable", unit.name)

    # ------------------------------------------------------------------
    # Cluster side
    # ------------------------------------------------------------------

    def filter_catalog_images(self, images: List[str]) -> List[str]:
        """
        Drop catalog source images; they are always pulled so precaching them
        is pointless. Known default catalogs are dropped even when their
        CatalogSource no longer exists.
        """
        log.info("Searching for catalog sources")
        try:
            resp = self.custom.list_cluster_custom_object("operators.coreos.com", "v1alpha1", "catalogsources")
        except ApiException as exc:
            raise LcaError(f"failed to list all catalogueSources: {exc.reason}") from exc

        catalog_images = {
            (item.get("spec") or {}).get("image")
            for item in resp.get("items") or []
        }
        catalog_images.discard(None)
        log.info("Removing catalog images from full image list: %s", sorted(catalog_images))
        return [i for i in images if i not in catalog_images and not DEFAULT_CATALOGS.match(i)]

    def create_container_list(self) -> None:
        log.info("Saving list of running containers and catalogsources.")
        # never add -a, unused images must stay
        self.ops.run_bash_in_host_namespace("podman", "image", "prune", "-f")

        output = self.ops.run_bash_in_host_namespace(
            "crictl", "images", "-o", "json", "|", "jq", "-r",
            "'.images[] | if .repoTags | length > 0 then .repoTags[] else .repoDigests[] end'",
        )
        images = [line.strip() for line in output.split("\n") if line.strip()]
        images = self.filter_catalog_images(images)
        log.info("Adding recert %s image to image list", self.config.seed.recert_image)
        images.append(self.config.seed.recert_image)

        target = Path(self._host(os.path.join(self.backup_dir, "containers.list")))
        target.write_text("\n".join(images))
        target.chmod(0o600)
        log.info("List of containers saved successfully.")

    def gather_cluster_info(self) -> None:
        log.info("Saving seed cluster configuration")
        info = get_cluster_info(self.core, self.custom)
        manifest = info.to_manifest()
        manifest["recert_image_pull_spec"] = self.config.seed.recert_image

        seed_data = Path(self._host(self.config.paths.seed_data_dir))
        seed_data.mkdir(parents=True, exist_ok=True)
        dest = seed_data / SEED_RECONFIGURATION_FILE_NAME
        dest.write_text(json.dumps(manifest, indent=2))

        # a copy outside var.tgz lets prep check the version without unpacking
        shutil.copy2(dest, Path(self._host(self.backup_dir)) / SEED_RECONFIGURATION_FILE_NAME)

    def backup_kubeconfig_crypto(self) -> None:
        log.info("Backing up seed cluster certificates for recert tool")
        crypto = get_kubeconfig_crypto_retention(self.core)
        serving = crypto.kube_api_crypto.serving_crypto
        files = {
            "localhost-serving-signer.key": serving.localhost_signer_private_key,
            "service-network-serving-signer.key": serving.service_network_signer_private_key,
            "loadbalancer-serving-signer.key": serving.loadbalancer_signer_private_key,
            "admin-kubeconfig-client-ca.crt": crypto.kube_api_crypto.client_auth_crypto.admin_ca_certificate,
            "ingresskey-ingress-operator.key": crypto.ingress_crypto.ingress_ca,
        }
        certs_dir = Path(self._host(self.config.paths.backup_certs_dir))
        certs_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        for name, content in files.items():
            p = certs_dir / name
            p.write_text(content)
            p.chmod(0o600)
        log.info("Seed cluster certificates backed up successfully for recert tool")

    def delete_node(self) -> None:
        log.info("Deleting node")
        try:
            node = get_sno_master_node(self.core)
            log.info("Deleting node %s", node.metadata.name)
            self.core.delete_node(node.metadata.name)
        except ApiException as exc:
            raise LcaError(f"failed to delete node: {exc.reason}") from exc

    def wait_till_ovnkube_node_is_down(self) -> None:
        log.info("Waiting for ovnkube-node to stop in order to give ovn to cleanup network")

        @retry(retries=self.ovn_wait_attempts, delay=self.ovn_wait_delay, retry_on=(LcaError,))
        def _gone() -> None:
            try:
                pods = self.core.list_namespaced_pod("openshift-ovn-kubernetes").items
            except ApiException as exc:
                raise LcaError(f"failed to list ovn pods: {exc.reason}") from exc
            if any(p.metadata.name.startswith("ovnkube-node") for p in pods):
                raise LcaError("ovnkube-node still running")

        try:
            _gone()
        except RetryError as exc:
            raise LcaError(f"ovnkube-node did not stop in time: {exc}") from exc

    # ------------------------------------------------------------------
    # Host side
    # ------------------------------------------------------------------

    def stop_services(self) -> None:
        log.info("Stop kubelet service")
        self.ops.systemctl("stop", "kubelet.service")
        log.info("Disabling kubelet service")
        self.ops.systemctl("disable", "kubelet.service")

        log.info("Stopping containers and CRI-O runtime.")
        try:
            crio_status = self.ops.systemctl("is-active", "crio")
        except CommandError as exc:
            # exit code 3 means the unit is simply not running
            if exc.returncode != 3:
                raise
            crio_status = exc.stdout.strip()
        log.info("crio status is %s", crio_status)

        if crio_status != "active":
            log.info("Skipping running containers and CRI-O engine already stopped.")
            return

        stop_containers = retry(retries=5, delay=1, retry_on=(CommandError,))(self.ops.run_bash_in_host_namespace)
        try:
            stop_containers(
                "crictl", "ps", "-q", "|", "xargs", "--no-run-if-empty", "--max-args", "1",
                "--max-procs", "10", "crictl", "stop", "--timeout", "5",
            )
        except RetryError as exc:
            log.warning("failed to stop running containers, stopping crio anyway: %s", exc)

        log.debug("Stopping CRI-O engine")
        self.ops.systemctl("stop", "crio.service")
        log.info("Running containers and CRI-O engine stopped successfully.")

    def force_expire_seed_crypto(self) -> None:
        """Run recert in validation mode so the seed carries expired certificates."""
        seed = self.config.seed
        self.ops.run_in_host_namespace(
            "podman", "run", "--rm", "--network=host", "--privileged",
            "--authfile", seed.auth_file,
            "-v", "/etc:/host-etc", "-v", "/var/lib/kubelet:/kubelet",
            "-v", "/etc/kubernetes:/kubernetes",
            "-e", "DRY_RUN=true",
            seed.recert_image,
            "--force-expire",
        )

    def remove_ovn_certs_folders(self) -> None:
        log.info("Removing ovn certs folders")
        for folder in (OVN_NODE_CERTS, MULTUS_CERTS):
            p = self._host(folder)
            if os.path.isdir(p):
                shutil.rmtree(p)
                log.info("Removed %s", folder)

    def backup_var(self) -> None:
        tar_args = ["czf", os.path.join(self.backup_dir, "var.tgz")]
        for pattern in VAR_EXCLUDES:
            # single quoted so bash does not expand the pattern
            tar_args += ["--exclude", f"'{pattern}'"]
        tar_args += ["--selinux", "/var"]
        self.ops.run_bash_in_host_namespace("tar", *tar_args)
        log.info("Backup of /var created successfully.")

    def backup_etc(self) -> None:
        log.info("Backing up /etc")
        self.ops.run_bash_in_host_namespace(
            "ostree", "admin", "config-diff", "|", "awk", "'$1 == \"D\" {print \"/etc/\" $2}'",
            ">", os.path.join(self.backup_dir, "etc.deletions"),
        )
        self.ops.run_bash_in_host_namespace(
            "ostree", "admin", "config-diff", "|", "grep", "-v", "'cni/multus'",
            "|", "awk", "'$1 != \"D\" {print \"/etc/\" $2}'",
            "|", "tar", "czf", os.path.join(self.backup_dir, "etc.tgz"), "--selinux", "-T", "-",
        )
        log.info("Backup of /etc created successfully.")

    def backup_ostree(self) -> None:
        log.info("Backing up ostree")
        self.ops.run_bash_in_host_namespace(
            "tar", "czf", os.path.join(self.backup_dir, "ostree.tgz"), "--selinux", "-C", "/ostree/repo", "."
        )

    def backup_rpmostree(self) -> None:
        self.ops.run_bash_in_host_namespace(
            "rpm-ostree", "status", "-v", "--json", ">", os.path.join(self.backup_dir, "rpm-ostree.json")
        )
        log.info("Backup of rpm-ostree.json created successfully.")

    def backup_mco_config(self) -> None:
        self.ops.run_bash_in_host_namespace(
            "cp", "/etc/machine-config-daemon/currentconfig", os.path.join(self.backup_dir, "mco-currentconfig.json")
        )
        log.info("Backup of mco-currentconfig created successfully.")

    # ------------------------------------------------------------------
    # Image
    # ------------------------------------------------------------------

    def backup_ostree_origin(self) -> None:
        booted = self.rpm_ostree.query_status().booted()
        if booted is None:
            raise LcaError("rpm-ostree reported no booted deployment")
        deployment = get_deployment_from_deployment_id(booted.id)

        origin = os.path.join(self.backup_dir, f"ostree-{deployment}.origin")
        if os.path.exists(self._host(origin)):
            return
        self.ops.run_in_host_namespace(
            "cp", f"/ostree/deploy/{booted.os_name}/deploy/{deployment}.origin", origin
        )
        log.info("Backup of .origin created successfully.")

    def create_and_push_seed_image(self) -> None:
        seed = self.config.seed
        log.info("Build and push OCI image to %s", seed.container_registry)
        log.debug(self.rpm_ostree.version())

        self.backup_ostree_origin()

        tmp_dir = self._host(self.config.paths.tmp_dir)
        fd, container_file = tempfile.mkstemp(dir=tmp_dir, prefix="dockerfile-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(CONTAINER_FILE)
            host_container_file = "/" + os.path.relpath(container_file, self.config.paths.host_root)
            try:
                self.ops.run_in_host_namespace(
                    "podman", "build",
                    "--file", host_container_file,
                    "--tag", seed.container_registry,
                    "--label", f"{seed.format_label}={seed.format_version}",
                    self.backup_dir,
                )
            except CommandError as exc:
                raise LcaError(f"failed to build seed image: {exc}") from exc
        finally:
            os.remove(container_file)

        try:
            self.ops.run_in_host_namespace("podman", "push", "--authfile", seed.auth_file, seed.container_registry)
        except CommandError as exc:
            raise LcaError(f"failed to push seed image: {exc}") from exc
