# src/lca/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import List
from .events import BaseEvent

log = logging.getLogger("lca")


class EventBus:
    def __init__(self, observers: List = None):
        self._observers = observers or []

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception as exc:  # observers must not break reconciliation
                log.debug("observer %s failed: %s", ob.__class__.__name__, exc)
