# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/execution/runner.py
from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Union

Cmd = Sequence[Union[str, "os.PathLike[str]"]]

log = logging.getLogger("lca")


@dataclass
class CommandRunner:
    logger: Optional[logging.Logger] = None
    dry_run: bool = False
    label: Optional[str] = None

    def _log(self, msg: str) -> None:
        (self.logger or log).debug(msg)

    def run(
        self,
        cmd: Cmd,
        *,
        capture_output: bool = True,
        check: bool = False,
        text: bool = True,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        stdin_text: str | None = None,
    ) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        cmd_str = " ".join(map(str, cmd))

        self._log(f"[{label}] $ {cmd_str}")

        if self.dry_run:
            self._log(f"[{label}] dry-run: skipped execution")
            return subprocess.CompletedProcess(
                args=list(cmd),
                returncode=0,
                stdout="",
                stderr="",
            )

        start = time.time()

        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                capture_output=capture_output,
                check=check,
                text=text,
                cwd=cwd,
                env=env,
                input=stdin_text,
            )

        except subprocess.CalledProcessError as e:
            self._log(f"[{label}][exit {e.returncode}]")
            if e.stdout:
                self._log(f"[{label}][stdout]\n{e.stdout.rstrip()}")
            if e.stderr:
                self._log(f"[{label}][stderr]\n{e.stderr.rstrip()}")
            raise

        duration = time.time() - start

        if result.stdout:
            self._log(f"[{label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            self._log(f"[{label}][stderr]\n{result.stderr.rstrip()}")
        self._log(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")

        return result
