# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/controllers/resource.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from kubernetes.client.exceptions import ApiException
from pydantic import BaseModel, Field

from lca.config.models import ErrorMode
from lca.errors import LcaError
from .conditions import Condition

log = logging.getLogger("lca")

IBU_GROUP = "lca.openshift.io"
IBU_VERSION = "v1alpha1"
IBU_PLURAL = "imagebasedupgrades"


class Stages:
    IDLE = "Idle"
    PREP = "Prep"
    UPGRADE = "Upgrade"
    ROLLBACK = "Rollback"

    ALL = (IDLE, PREP, UPGRADE, ROLLBACK)


class _Kube(BaseModel):
    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


class ObjectMeta(_Kube):
    name: str = "upgrade"
    generation: int = 0
    resource_version: Optional[str] = Field(None, alias="resourceVersion")
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)


class SeedImageRef(_Kube):
    image: str = ""
    version: str = ""


class IBUSpec(_Kube):
    stage: str = Stages.IDLE
    seed_image_ref: SeedImageRef = Field(default_factory=SeedImageRef, alias="seedImageRef")
    # overrides the agent-wide precache mode for this upgrade
    precache_mode: Optional[ErrorMode] = Field(None, alias="precacheMode")


class IBUStatus(_Kube):
    conditions: List[Condition] = Field(default_factory=list)
    observed_generation: int = Field(0, alias="observedGeneration")


class ImageBasedUpgrade(_Kube):
    api_version: str = Field(f"{IBU_GROUP}/{IBU_VERSION}", alias="apiVersion")
    kind: str = "ImageBasedUpgrade"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: IBUSpec = Field(default_factory=IBUSpec)
    status: IBUStatus = Field(default_factory=IBUStatus)

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.annotations

    def to_body(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ResourceClient(Protocol):
    def update(self, ibu: ImageBasedUpgrade) -> None: ...
    def update_status(self, ibu: ImageBasedUpgrade) -> None: ...


class IBUClient:
    """Cluster scoped ImageBasedUpgrade access through CustomObjectsApi."""

    def __init__(self, custom_api: Any, name: str = "upgrade"):
        self.custom = custom_api
        self.name = name

    def get(self) -> ImageBasedUpgrade:
        try:
            obj = self.custom.get_cluster_custom_object(IBU_GROUP, IBU_VERSION, IBU_PLURAL, self.name)
        except ApiException as exc:
            raise LcaError(f"failed to get ibu {self.name}: {exc.reason}") from exc
        return ImageBasedUpgrade.model_validate(obj)

    def _track(self, ibu: ImageBasedUpgrade, resp: Any) -> None:
        # keep resourceVersion current so the next write does not conflict
        if isinstance(resp, dict):
            rv = (resp.get("metadata") or {}).get("resourceVersion")
            if rv:
                ibu.metadata.resource_version = rv

    def update(self, ibu: ImageBasedUpgrade) -> None:
        try:
            resp = self.custom.replace_cluster_custom_object(
                IBU_GROUP, IBU_VERSION, IBU_PLURAL, ibu.metadata.name, ibu.to_body()
            )
        except ApiException as exc:
            raise LcaError(f"failed to update ibu {ibu.metadata.name}: {exc.reason}") from exc
        self._track(ibu, resp)

    def update_status(self, ibu: ImageBasedUpgrade) -> None:
        try:
            resp = self.custom.replace_cluster_custom_object_status(
                IBU_GROUP, IBU_VERSION, IBU_PLURAL, ibu.metadata.name, ibu.to_body()
            )
        except ApiException as exc:
            raise LcaError(f"failed to update ibu status {ibu.metadata.name}: {exc.reason}") from exc
        self._track(ibu, resp)
        log.debug("Updated status of ibu %s", ibu.metadata.name)
