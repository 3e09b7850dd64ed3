# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/observers/interface.py
from __future__ import annotations
from typing import Protocol, Tuple, Type
from .events import (
    BaseEvent,
    CleanupActionFailed,
    PrecacheCancelled,
    StaterootRemovalFailed,
    StepFailed,
)

# events an operator should notice even without --debug
WARNING_EVENTS: Tuple[Type[BaseEvent], ...] = (
    StepFailed,
    StaterootRemovalFailed,
    CleanupActionFailed,
    PrecacheCancelled,
)


class Observer(Protocol):
    def notify(self, event: BaseEvent) -> None: ...
