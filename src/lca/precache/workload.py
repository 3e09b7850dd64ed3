# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/precache/workload.py
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from lca.config.models import ErrorMode
from lca.errors import CommandError, PrecacheError
from lca.execution.ops import HostOps
from lca.observers.dispatcher import EventBus
from lca.observers.events import PrecacheFinished, PrecacheProgress, PrecacheStarted, new_ctx
from lca.utils.retry import RetryError, retry

log = logging.getLogger("lca")


@dataclass
class PrecacheResult:
    total: int
    pulled: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def state(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.failed:
            return "failed"
        if len(self.pulled) == self.total:
            return "succeeded"
        return "running"

    def summary(self) -> str:
        return f"pulled={len(self.pulled)} failed={len(self.failed)} total={self.total}"


def write_status(path: Optional[str | Path], result: PrecacheResult) -> None:
    if not path:
        return
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(json.dumps({
        "state": result.state,
        "total": result.total,
        "pulled": len(result.pulled),
        "failed": sorted(result.failed),
        "updated": time.time(),
    }))
    os.replace(tmp, p)


def precache_images(
    images: Sequence[str],
    *,
    ops: HostOps,
    auth_file: str,
    mode: ErrorMode = ErrorMode.STRICT,
    cancel_event: Optional[threading.Event] = None,
    status_path: Optional[str | Path] = None,
    retries: int = 3,
    retry_delay: float = 5,
    bus: Optional[EventBus] = None,
) -> PrecacheResult:
    """
    Pull every image so it is on disk before the upgrade needs it.

    Cancellation is checked between images and during retry backoff; once
    cancelled the status file is no longer written. STRICT raises
    PrecacheError on the first image that still fails after retries;
    BEST_EFFORT records the failure and moves on.
    """
    bus = bus or EventBus()

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def report(res: PrecacheResult) -> None:
        # cleanup may already have removed it
        if not cancelled():
            write_status(status_path, res)

    ctx = new_ctx(env="ibu", context="precache")
    result = PrecacheResult(total=len(images))

    pull = retry(
        retries=retries,
        delay=retry_delay,
        backoff=2.0,
        max_delay=60,
        retry_on=(CommandError,),
        on_retry=lambda attempt, exc: log.debug("pull attempt %d failed: %s", attempt, exc),
        stop_event=cancel_event,
    )(ops.pull_image)

    log.info("Precaching %d images (%s)", len(images), mode.value)
    bus.emit(PrecacheStarted(total=len(images), mode=mode.value, **ctx))
    report(result)

    for image in images:
        if cancelled():
            log.info("Precache cancelled after %s", result.summary())
            result.cancelled = True
            break

        try:
            pull(image, auth_file)
        except RetryError as exc:
            if cancelled():
                log.info("Precache cancelled while pulling %s", image)
                result.cancelled = True
                break
            result.failed[image] = str(exc)
            bus.emit(PrecacheProgress(image=image, ok=False, error=str(exc), **ctx))
            report(result)
            if mode == ErrorMode.STRICT:
                raise PrecacheError(f"failed to pull image {image}: {exc}", [image]) from exc
            log.warning("failed to pull %s, continuing: %s", image, exc)
            continue

        result.pulled.append(image)
        bus.emit(PrecacheProgress(image=image, ok=True, **ctx))
        report(result)

    report(result)
    bus.emit(PrecacheFinished(pulled=len(result.pulled), failed=len(result.failed), **ctx))
    if result.failed:
        log.warning("Precache finished with failures: %s", ", ".join(sorted(result.failed)))
    else:
        log.info("Precache finished: %s", result.summary())
    return result
