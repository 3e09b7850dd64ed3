# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/utils/runonce.py
from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from lca.config.models import ErrorMode
from lca.observers.dispatcher import EventBus
from lca.observers.events import StepCompleted, StepFailed, StepSkipped, new_ctx

log = logging.getLogger("lca")


class CheckpointStore:
    """
    One marker file per completed step. Presence means done.

    Markers are written to a temporary file, fsynced and renamed into place
    so a crash never leaves a half-written marker behind. A single pipeline
    is expected to own a directory at a time.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _marker(self, step_name: str) -> Path:
        if not step_name or "/" in step_name or step_name in (".", ".."):
            raise ValueError(f"invalid step name {step_name!r}")
        return self.directory / step_name

    def is_done(self, step_name: str) -> bool:
        return self._marker(step_name).exists()

    def mark_done(self, step_name: str) -> None:
        marker = self._marker(step_name)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{step_name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{time.time()}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, marker)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        dir_fd = os.open(self.directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def completed(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_file() and not p.name.startswith("."))

    def clear(self) -> None:
        for name in self.completed():
            (self.directory / name).unlink()


def run_once(
    step_name: str,
    checkpoint_dir: str | Path,
    action: Callable[..., Any],
    *args: Any,
    mode: ErrorMode = ErrorMode.STRICT,
    bus: Optional[EventBus] = None,
    **kwargs: Any,
) -> None:
    """
    Run *action* unless a checkpoint marker for *step_name* already exists.

    The marker is written only after the action returns, so a failed action
    stays eligible for the next invocation. In BEST_EFFORT mode a failure is
    logged and swallowed instead of raised.
    """
    store = CheckpointStore(checkpoint_dir)
    ctx = new_ctx(env="step", context=str(checkpoint_dir))

    if store.is_done(step_name):
        log.info("Skipping step %s, already completed", step_name)
        if bus:
            bus.emit(StepSkipped(step=step_name, **ctx))
        return

    log.info("Running step %s", step_name)
    t0 = time.time()
    try:
        action(*args, **kwargs)
    except Exception as exc:
        best_effort = mode == ErrorMode.BEST_EFFORT
        if bus:
            bus.emit(StepFailed(step=step_name, error=str(exc), best_effort=best_effort, **ctx))
        if best_effort:
            log.warning("Step %s failed (best effort, continuing): %s", step_name, exc)
            return
        log.error("Step %s failed: %s", step_name, exc)
        raise

    store.mark_done(step_name)
    duration_ms = int((time.time() - t0) * 1000)
    log.info("Step %s completed", step_name)
    if bus:
        bus.emit(StepCompleted(step=step_name, duration_ms=duration_ms, **ctx))


@dataclass
class Step:
    name: str
    action: Callable[[], Any]
    mode: ErrorMode = ErrorMode.STRICT


class StepPipeline:
    """Fixed ordered sequence of run_once steps sharing one checkpoint directory."""

    def __init__(self, checkpoint_dir: str | Path, steps: Sequence[Step], bus: Optional[EventBus] = None):
        names = [s.name for s in steps]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate step names: {', '.join(dupes)}")
        self.checkpoint_dir = Path(checkpoint_dir)
        self.steps = list(steps)
        self.bus = bus

    def run(self) -> None:
        for step in self.steps:
            run_once(step.name, self.checkpoint_dir, step.action, mode=step.mode, bus=self.bus)

    def pending(self) -> List[str]:
        store = CheckpointStore(self.checkpoint_dir)
        return [s.name for s in self.steps if not store.is_done(s.name)]
