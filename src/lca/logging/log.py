# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/lca/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid

# client libraries that log every request at DEBUG
NOISY_LOGGERS = ("kubernetes", "urllib3")


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "lca",
    verbose: bool = False,
    environment: str | None = None,
) -> tuple[logging.Logger, str, Path]:
    """
    Set up the agent logger for one invocation.

    Every record goes to ``<base_dir>/<name>-<ts>-<run_id>.log`` (default
    ``~/.lca/logs``); the console gets INFO, or DEBUG with ``verbose``.
    Returns the logger, the run id shared with the observers, and the log path.
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".lca" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    tag = f"[{environment}] " if environment else ""
    formatter = logging.Formatter(
        f"%(asctime)s | %(levelname)-7s | %(threadName)s | {tag}%(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)

    logger.info("=== lca %s run started ===", environment or "agent")
    logger.info("run_id=%s", run_id)
    logger.info("log_file=%s", log_path)

    return logger, run_id, log_path
