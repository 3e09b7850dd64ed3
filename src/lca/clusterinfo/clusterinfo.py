# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/clusterinfo/clusterinfo.py
from __future__ import annotations

import base64
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict

import yaml
from kubernetes.client.exceptions import ApiException

from lca.errors import LcaError
from lca.seedreconfig.models import (
    ClientAuthCrypto,
    IngressCrypto,
    KubeAPICrypto,
    KubeconfigCryptoRetention,
    SeedReconfiguration,
    ServingCrypto,
)
from lca.seedreconfig.models import write as write_seed_reconfiguration
from lca.utils.images import split_registry

log = logging.getLogger("lca")

INSTALL_CONFIG_CM = "cluster-config-v1"
INSTALL_CONFIG_NAMESPACE = "kube-system"
PULL_SECRET_NAME = "pull-secret"
CONFIG_NAMESPACE = "openshift-config"
KUBE_APISERVER_OPERATOR_NAMESPACE = "openshift-kube-apiserver-operator"
INGRESS_OPERATOR_NAMESPACE = "openshift-ingress-operator"
MASTER_SELECTOR = "node-role.kubernetes.io/master"


@dataclass
class ClusterInfo:
    version: str
    base_domain: str
    cluster_name: str
    cluster_id: str
    node_ip: str
    hostname: str
    release_registry: str
    ssh_key: str = ""

    def to_manifest(self) -> Dict[str, Any]:
        return asdict(self)


def _decode(data: Dict[str, str], key: str, what: str) -> str:
    if not data or key not in data:
        raise LcaError(f"{what} has no {key}")
    return base64.b64decode(data[key]).decode()


def get_sno_master_node(core: Any) -> Any:
    nodes = core.list_node(label_selector=MASTER_SELECTOR).items
    if len(nodes) != 1:
        raise LcaError(f"expected exactly one master node, found {len(nodes)}")
    return nodes[0]


def get_cluster_info(core: Any, custom: Any) -> ClusterInfo:
    try:
        cm = core.read_namespaced_config_map(INSTALL_CONFIG_CM, INSTALL_CONFIG_NAMESPACE)
        install_config = yaml.safe_load((cm.data or {}).get("install-config", "")) or {}

        cv = custom.get_cluster_custom_object("config.openshift.io", "v1", "clusterversions", "version")
        node = get_sno_master_node(core)
    except ApiException as exc:
        raise LcaError(f"failed to gather cluster info: {exc.reason}") from exc

    node_ip = next(
        (a.address for a in (node.status.addresses or []) if a.type == "InternalIP"),
        "",
    )
    desired = (cv.get("status") or {}).get("desired") or {}
    registry, _ = split_registry(desired.get("image", ""))

    return ClusterInfo(
        version=desired.get("version", ""),
        base_domain=install_config.get("baseDomain", ""),
        cluster_name=(install_config.get("metadata") or {}).get("name", ""),
        cluster_id=(cv.get("spec") or {}).get("clusterID", ""),
        node_ip=node_ip,
        hostname=node.metadata.name,
        release_registry=registry,
        ssh_key=install_config.get("sshKey", ""),
    )


def get_pull_secret(core: Any) -> str:
    try:
        secret = core.read_namespaced_secret(PULL_SECRET_NAME, CONFIG_NAMESPACE)
    except ApiException as exc:
        raise LcaError(f"failed to read pull secret: {exc.reason}") from exc
    return _decode(secret.data, ".dockerconfigjson", "pull secret")


def get_kubeconfig_crypto_retention(core: Any) -> KubeconfigCryptoRetention:
    """Signer keys and CAs that keep existing kubeconfigs valid after recert."""

    def signer_key(name: str) -> str:
        secret = core.read_namespaced_secret(name, KUBE_APISERVER_OPERATOR_NAMESPACE)
        return _decode(secret.data, "tls.key", name)

    try:
        serving = ServingCrypto(
            localhost_signer_private_key=signer_key("localhost-serving-signer"),
            service_network_signer_private_key=signer_key("service-network-serving-signer"),
            loadbalancer_signer_private_key=signer_key("loadbalancer-serving-signer"),
        )
        admin_ca = core.read_namespaced_config_map("admin-kubeconfig-client-ca", CONFIG_NAMESPACE)
        router_ca = core.read_namespaced_secret("router-ca", INGRESS_OPERATOR_NAMESPACE)
    except ApiException as exc:
        raise LcaError(f"failed to gather kubeconfig crypto: {exc.reason}") from exc

    return KubeconfigCryptoRetention(
        kube_api_crypto=KubeAPICrypto(
            serving_crypto=serving,
            client_auth_crypto=ClientAuthCrypto(
                admin_ca_certificate=(admin_ca.data or {}).get("ca-bundle.crt", ""),
            ),
        ),
        ingress_crypto=IngressCrypto(ingress_ca=_decode(router_ca.data, "tls.key", "router-ca")),
    )


def build_seed_reconfiguration(
    info: ClusterInfo,
    crypto: KubeconfigCryptoRetention,
    pull_secret: str,
) -> SeedReconfiguration:
    return SeedReconfiguration(
        base_domain=info.base_domain,
        cluster_name=info.cluster_name,
        cluster_id=info.cluster_id,
        node_ip=info.node_ip,
        release_registry=info.release_registry,
        hostname=info.hostname,
        kubeconfig_crypto_retention=crypto,
        ssh_key=info.ssh_key,
        pull_secret=pull_secret,
    )


def export_seed_reconfiguration(core: Any, custom: Any, path: str | Path) -> Path:
    """Snapshot this cluster's identity and crypto into a SeedReconfiguration file."""
    info = get_cluster_info(core, custom)
    cfg = build_seed_reconfiguration(info, get_kubeconfig_crypto_retention(core), get_pull_secret(core))
    written = write_seed_reconfiguration(cfg, path)
    log.info("Wrote seed reconfiguration for %s.%s to %s", info.cluster_name, info.base_domain, written)
    return written
