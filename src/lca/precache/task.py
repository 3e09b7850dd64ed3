# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/precache/task.py
from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional, Sequence

from lca.config.models import PathsConfig, PrecacheConfig
from lca.execution.ops import HostOps
from lca.observers.dispatcher import EventBus
from lca.observers.events import PrecacheCancelled, new_ctx
from lca.ostree.paths import path_outside_chroot
from .workload import PrecacheResult, precache_images

log = logging.getLogger("lca")


class PrecacheTask:
    """
    Handle on one background precache run.

    active is False whenever cancel is None; start() sets both, reset()
    clears both.
    """

    def __init__(self) -> None:
        self.active: bool = False
        self.cancel: Optional[Callable[[], bool]] = None
        self._future: Optional[concurrent.futures.Future] = None

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def result(self) -> PrecacheResult:
        """Result of a finished run; re-raises the worker's exception."""
        if self._future is None:
            raise RuntimeError("precache task was never started")
        return self._future.result(timeout=0)

    def reset(self) -> None:
        self.active = False
        self.cancel = None
        self._future = None

    def stop(self) -> None:
        if self.active and self.cancel is not None:
            self.cancel()
        self.reset()


class PrecacheController:
    def __init__(
        self,
        ops: HostOps,
        config: Optional[PrecacheConfig] = None,
        paths: Optional[PathsConfig] = None,
        bus: Optional[EventBus] = None,
    ):
        self.ops = ops
        self.config = config or PrecacheConfig()
        self.paths = paths or PathsConfig()
        self.bus = bus or EventBus()

    def _host_path(self, path: str) -> str:
        return path_outside_chroot(path, self.paths.host_root)

    def start(
        self,
        image_list: Sequence[str],
        config: Optional[PrecacheConfig] = None,
        task: Optional[PrecacheTask] = None,
    ) -> PrecacheTask:
        """Launch the pull worker; an existing *task* handle is reused in place."""
        cfg = config or self.config
        task = task or PrecacheTask()
        cancel_event = threading.Event()
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="precache")

        future = executor.submit(
            precache_images,
            list(image_list),
            ops=self.ops,
            auth_file=cfg.auth_file,
            mode=cfg.mode,
            cancel_event=cancel_event,
            status_path=self._host_path(self.paths.precache_status_file),
            retries=cfg.pull_retries,
            retry_delay=cfg.pull_retry_delay_seconds,
            bus=self.bus,
        )
        # the worker thread is released once the single job finishes
        executor.shutdown(wait=False)

        def cancel() -> bool:
            cancel_event.set()
            log.info("Waiting up to %ss for precache worker to stop", cfg.cancel_grace_seconds)
            finished, _ = concurrent.futures.wait([future], timeout=cfg.cancel_grace_seconds)
            stopped = bool(finished)
            if not stopped:
                log.warning("Precache worker still running after %ss, continuing", cfg.cancel_grace_seconds)
            self.bus.emit(PrecacheCancelled(stopped=stopped, **new_ctx(env="ibu", context="precache")))
            return stopped

        task._future = future
        task.cancel = cancel
        task.active = True
        log.info("Started precache of %d images", len(image_list))
        return task

    def cancel(self, task: PrecacheTask) -> bool:
        if not task.active or task.cancel is None:
            return True
        return task.cancel()

    def reset(self, task: PrecacheTask) -> None:
        task.reset()

    def cleanup(self) -> None:
        """Remove precache bookkeeping from the host."""
        for path in (self.paths.precache_status_file, self.paths.image_list_file):
            p = Path(self._host_path(path))
            if p.exists():
                os.remove(p)
                log.info("Removed %s", path)
