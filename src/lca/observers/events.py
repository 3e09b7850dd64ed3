# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events of one agent invocation
    env: str          # ibu / ibi / seed
    context: Optional[str]  # resource name or host

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str]) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ---------------------------------------------------------------------
# Idempotent steps
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    step: str

@dataclass(frozen=True)
class StepCompleted(BaseEvent):
    step: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    step: str
    error: str
    best_effort: bool = False


# ---------------------------------------------------------------------
# Stateroots
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StaterootRemoved(BaseEvent):
    stateroot: str
    undeployed: List[int]

@dataclass(frozen=True)
class StaterootRemovalFailed(BaseEvent):
    stateroot: str
    error: str


# ---------------------------------------------------------------------
# Precache
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PrecacheStarted(BaseEvent):
    total: int
    mode: str

@dataclass(frozen=True)
class PrecacheProgress(BaseEvent):
    image: str
    ok: bool
    error: Optional[str] = None

@dataclass(frozen=True)
class PrecacheFinished(BaseEvent):
    pulled: int
    failed: int

@dataclass(frozen=True)
class PrecacheCancelled(BaseEvent):
    stopped: bool     # False when the worker outlived the grace period


# ---------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CleanupActionFailed(BaseEvent):
    action: str
    error: str

@dataclass(frozen=True)
class CleanupSummary(BaseEvent):
    successful: bool
    failed_actions: List[str]


# ---------------------------------------------------------------------
# Stage state machine
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StageTransition(BaseEvent):
    desired: str
    handler: str

@dataclass(frozen=True)
class ConditionChanged(BaseEvent):
    type: str
    reason: str
    status: str
    message: str


# ---------------------------------------------------------------------
# Seed creation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SeedStepStarted(BaseEvent):
    step: str
