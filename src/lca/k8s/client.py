# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/k8s/client.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from kubernetes import client, config


@dataclass
class KubeClients:
    core: client.CoreV1Api
    apps: client.AppsV1Api
    custom: client.CustomObjectsApi


def load_kube(kube_context: Optional[str] = None) -> None:
    """
    In-cluster config when running as the agent pod, kubeconfig otherwise.
    An explicit context always means kubeconfig.
    """
    if kube_context:
        config.load_kube_config(context=kube_context)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def get_clients(kube_context: Optional[str] = None) -> KubeClients:
    load_kube(kube_context)
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )
