# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/controllers/conditions.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class ConditionTypes:
    IDLE = "Idle"
    PREP_IN_PROGRESS = "PrepInProgress"
    PREP_COMPLETED = "PrepCompleted"
    UPGRADE_IN_PROGRESS = "UpgradeInProgress"
    UPGRADE_COMPLETED = "UpgradeCompleted"
    ROLLBACK_IN_PROGRESS = "RollbackInProgress"
    ROLLBACK_COMPLETED = "RollbackCompleted"

    ALL = (
        IDLE,
        PREP_IN_PROGRESS,
        PREP_COMPLETED,
        UPGRADE_IN_PROGRESS,
        UPGRADE_COMPLETED,
        ROLLBACK_IN_PROGRESS,
        ROLLBACK_COMPLETED,
    )


class ConditionReasons:
    IDLE = "Idle"
    ABORTING = "Aborting"
    ABORT_FAILED = "AbortFailed"
    FINALIZING = "Finalizing"
    FINALIZE_FAILED = "FinalizeFailed"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    INVALID_TRANSITION = "InvalidTransition"


class ConditionStatus:
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class Condition(BaseModel):
    type: str
    status: str = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    observed_generation: int = Field(0, alias="observedGeneration")
    last_transition_time: str = Field(default_factory=_now, alias="lastTransitionTime")

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


def get_condition(conditions: List[Condition], cond_type: str) -> Optional[Condition]:
    for c in conditions:
        if c.type == cond_type:
            return c
    return None


def is_true(conditions: List[Condition], cond_type: str) -> bool:
    c = get_condition(conditions, cond_type)
    return c is not None and c.status == ConditionStatus.TRUE


def set_status_condition(
    conditions: List[Condition],
    cond_type: str,
    reason: str,
    status: str,
    message: str,
    generation: int,
) -> bool:
    """
    Insert or update the condition of *cond_type* in place.

    lastTransitionTime only moves when the status flips. Returns True when
    anything about the condition changed.
    """
    existing = get_condition(conditions, cond_type)
    if existing is None:
        conditions.append(
            Condition(
                type=cond_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=generation,
            )
        )
        return True

    changed = (existing.status, existing.reason, existing.message, existing.observed_generation) != (
        status,
        reason,
        message,
        generation,
    )
    if existing.status != status:
        existing.last_transition_time = _now()
    existing.status = status
    existing.reason = reason
    existing.message = message
    existing.observed_generation = generation
    return changed


def reset_status_conditions(conditions: List[Condition], generation: int) -> None:
    """Drop every condition and mark the resource Idle."""
    conditions.clear()
    set_status_condition(
        conditions,
        ConditionTypes.IDLE,
        ConditionReasons.IDLE,
        ConditionStatus.TRUE,
        "Idle",
        generation,
    )
