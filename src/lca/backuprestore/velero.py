# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/backuprestore/velero.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import yaml
from kubernetes.client.exceptions import ApiException

from lca.errors import LcaError

log = logging.getLogger("lca")

VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"
OADP_NAMESPACE = "openshift-adp"

BACKUP_LABEL = "lca.openshift.io/backup"
ORIGINAL_RECLAIM_POLICY_ANNOTATION = "lca.openshift.io/original-reclaim-policy"
LVMS_CSI_DRIVER = "topolvm.io"


class BackupRestore(Protocol):
    def start_backups(self) -> None: ...
    def cleanup_delete_backup_requests(self) -> None: ...
    def cleanup_backups(self) -> None: ...
    def restore_pvs_reclaim_policy(self) -> None: ...


class VeleroBackupRestore:
    """
    Backup bookkeeping through OADP/Velero custom resources.

    Only the objects the agent creates (labelled BACKUP_LABEL) are touched;
    the storage side is Velero's business.
    """

    def __init__(
        self,
        custom_api: Any,
        core_api: Any,
        *,
        namespace: str = OADP_NAMESPACE,
        manifests_dir: Optional[str | Path] = None,
    ):
        self.custom = custom_api
        self.core = core_api
        self.namespace = namespace
        self.manifests_dir = Path(manifests_dir) if manifests_dir else None

    # ------------------------------------------------------------------
    def _list(self, plural: str, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        try:
            resp = self.custom.list_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.namespace, plural, **kwargs
            )
        except ApiException as exc:
            if exc.status == 404:
                return []
            raise LcaError(f"failed to list {plural}: {exc.reason}") from exc
        return list(resp.get("items") or [])

    def _delete(self, plural: str, name: str) -> None:
        try:
            self.custom.delete_namespaced_custom_object(
                VELERO_GROUP, VELERO_VERSION, self.namespace, plural, name
            )
        except ApiException as exc:
            if exc.status == 404:
                return
            raise LcaError(f"failed to delete {plural}/{name}: {exc.reason}") from exc

    def _load_backups(self) -> List[Dict[str, Any]]:
        if self.manifests_dir is None or not self.manifests_dir.is_dir():
            return []
        docs: List[Dict[str, Any]] = []
        for path in sorted(self.manifests_dir.glob("*.yaml")):
            for doc in yaml.safe_load_all(path.read_text()):
                if isinstance(doc, dict) and doc.get("kind") == "Backup":
                    docs.append(doc)
        return docs

    # ------------------------------------------------------------------
    def start_backups(self) -> None:
        """Create the configured Backup CRs, then pin LVMS volumes to Retain."""
        for doc in self._load_backups():
            meta = doc.setdefault("metadata", {})
            meta.setdefault("labels", {})[BACKUP_LABEL] = "true"
            meta["namespace"] = self.namespace
            name = meta.get("name", "<unnamed>")
            try:
                self.custom.create_namespaced_custom_object(
                    VELERO_GROUP, VELERO_VERSION, self.namespace, "backups", doc
                )
                log.info("Created backup %s", name)
            except ApiException as exc:
                if exc.status != 409:
                    raise LcaError(f"failed to create backup {name}: {exc.reason}") from exc
                log.info("Backup %s already exists", name)
        self.retain_pvs_reclaim_policy()

    def cleanup_delete_backup_requests(self) -> None:
        for dbr in self._list("deletebackuprequests"):
            name = dbr["metadata"]["name"]
            self._delete("deletebackuprequests", name)
            log.info("Deleted DeleteBackupRequest %s", name)

    def cleanup_backups(self) -> None:
        for backup in self._list("backups", label_selector=BACKUP_LABEL):
            name = backup["metadata"]["name"]
            self._delete("backups", name)
            log.info("Deleted backup %s", name)

    # ------------------------------------------------------------------
    def _lvms_pvs(self) -> List[Any]:
        try:
            pvs = self.core.list_persistent_volume().items
        except ApiException as exc:
            raise LcaError(f"failed to list persistent volumes: {exc.reason}") from exc
        return [pv for pv in pvs if pv.spec and pv.spec.csi and pv.spec.csi.driver == LVMS_CSI_DRIVER]

    def retain_pvs_reclaim_policy(self) -> None:
        for pv in self._lvms_pvs():
            policy = pv.spec.persistent_volume_reclaim_policy
            if policy == "Retain":
                continue
            body = {
                "metadata": {"annotations": {ORIGINAL_RECLAIM_POLICY_ANNOTATION: policy}},
                "spec": {"persistentVolumeReclaimPolicy": "Retain"},
            }
            try:
                self.core.patch_persistent_volume(pv.metadata.name, body)
            except ApiException as exc:
                raise LcaError(f"failed to set Retain on pv {pv.metadata.name}: {exc.reason}") from exc

    def restore_pvs_reclaim_policy(self) -> None:
        for pv in self._lvms_pvs():
            annotations = pv.metadata.annotations or {}
            original = annotations.get(ORIGINAL_RECLAIM_POLICY_ANNOTATION)
            if not original:
                continue
            body = {
                "metadata": {"annotations": {ORIGINAL_RECLAIM_POLICY_ANNOTATION: None}},
                "spec": {"persistentVolumeReclaimPolicy": original},
            }
            try:
                self.core.patch_persistent_volume(pv.metadata.name, body)
            except ApiException as exc:
                raise LcaError(f"failed to restore reclaim policy on pv {pv.metadata.name}: {exc.reason}") from exc
            log.info("Restored reclaim policy %s on pv %s", original, pv.metadata.name)
