# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/ostree/models.py

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Deployment:
    """
    One bootable OS tree revision.

    id is '<osname>-<ref>.<serial>', e.g. 'rhcos-ed4ab32...19c.1'
    """
    os_name: str
    id: str
    booted: bool = False

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "Deployment":
        return cls(
            os_name=raw.get("osname", ""),
            id=raw.get("id", ""),
            booted=bool(raw.get("booted", False)),
        )


@dataclass
class Status:
    """Ordered deployment list as reported by rpm-ostree; order is significant."""
    deployments: List[Deployment] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "Status":
        return cls(deployments=[Deployment.from_json(d) for d in raw.get("deployments") or []])

    def booted(self) -> Optional[Deployment]:
        return next((d for d in self.deployments if d.booted), None)
