# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/controllers/requeue.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from lca.config.models import RequeueConfig

_DEFAULTS = RequeueConfig()


@dataclass(frozen=True)
class ReconcileResult:
    """requeue_after is None when the stage is done and nothing should follow."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


def do_not_requeue() -> ReconcileResult:
    return ReconcileResult()


def requeue_with_short_interval(cfg: Optional[RequeueConfig] = None) -> ReconcileResult:
    return ReconcileResult((cfg or _DEFAULTS).short_seconds)


def requeue_with_long_interval(cfg: Optional[RequeueConfig] = None) -> ReconcileResult:
    return ReconcileResult((cfg or _DEFAULTS).long_seconds)


def requeue_with_health_check_interval(cfg: Optional[RequeueConfig] = None) -> ReconcileResult:
    return ReconcileResult((cfg or _DEFAULTS).health_check_seconds)
