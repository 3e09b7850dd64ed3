# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/healthcheck/healthcheck.py
from __future__ import annotations

import logging
from typing import Any, List, Sequence

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from lca.errors import HealthCheckError

log = logging.getLogger("lca")


class HealthChecker:
    """
    Yes/no readiness gate: every node Ready and every Deployment in the
    watched namespaces fully available.
    """

    def __init__(self, core: Any, apps: Any, namespaces: Sequence[str]):
        self.core = core
        self.apps = apps
        self.namespaces = list(namespaces)

    def _not_ready_nodes(self) -> List[str]:
        bad = []
        for node in self.core.list_node().items:
            ready = next((c for c in (node.status.conditions or []) if c.type == "Ready"), None)
            if ready is None or ready.status != "True":
                bad.append(node.metadata.name)
        return bad

    def _unavailable_deployments(self) -> List[str]:
        bad = []
        for ns in self.namespaces:
            for d in self.apps.list_namespaced_deployment(namespace=ns).items:
                desired = d.spec.replicas or 0
                available = d.status.available_replicas or 0
                if available < desired:
                    bad.append(f"{ns}/{d.metadata.name}")
        return bad

    def check(self) -> None:
        try:
            nodes = self._not_ready_nodes()
            deployments = self._unavailable_deployments()
        except ApiException as exc:
            raise HealthCheckError(f"health check could not query the cluster: {exc.reason}") from exc
        except HTTPError as exc:
            # API server unreachable, e.g. right after the pivot reboot
            raise HealthCheckError(f"health check could not reach the API server: {exc}") from exc

        problems = []
        if nodes:
            problems.append(f"nodes not ready: {', '.join(nodes)}")
        if deployments:
            problems.append(f"deployments not available: {', '.join(deployments)}")
        if problems:
            raise HealthCheckError("; ".join(problems))
        log.debug("health check passed")

    __call__ = check
