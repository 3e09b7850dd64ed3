# src/lca/observers/logger.py
from __future__ import annotations
import logging
from .events import BaseEvent
from .interface import WARNING_EVENTS


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id"))

        level = logging.WARNING if isinstance(event, WARNING_EVENTS) else logging.INFO
        self.logger.log(level, f"[EVENT] {etype}: {msg}")
