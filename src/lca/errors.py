# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/errors.py
from __future__ import annotations

from typing import Iterator, List, Optional, Sequence, Tuple


class LcaError(RuntimeError):
    """Base class for lifecycle agent failures."""


class CommandError(LcaError):
    """Raised when a host tool exits non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout or "").strip()
        super().__init__(
            f"command '{' '.join(map(str, self.argv))}' exited with {returncode}"
            + (f": {detail}" if detail else "")
        )


class QueryError(LcaError):
    """Deployment query mechanism unavailable."""


class BootedConflictError(LcaError):
    """Refusing to remove the booted deployment or stateroot."""


class StaterootRemovalError(LcaError):
    def __init__(self, failures: int):
        self.failures = failures
        super().__init__(f"failed to remove {failures} stateroots")


class VersionMismatchError(LcaError):
    def __init__(self, seed_version: str, expected_version: str):
        self.seed_version = seed_version
        self.expected_version = expected_version
        super().__init__(
            f"version specified in seed image ({seed_version}) differs from version in spec ({expected_version})"
        )


class SeedReconfigVersionError(LcaError):
    """SeedReconfiguration api_version missing or newer than supported."""


class HealthCheckError(LcaError):
    """Cluster is not ready yet."""


class ManualCleanupError(LcaError):
    """Manual cleanup marker could not be consumed."""


class PrecacheError(LcaError):
    def __init__(self, message: str, failed_images: Optional[List[str]] = None):
        self.failed_images = list(failed_images or [])
        super().__init__(message)


class InvalidTransitionError(LcaError):
    def __init__(self, current: str, desired: str, reason: str = ""):
        self.current = current
        self.desired = desired
        msg = f"transition from {current} to {desired} is not allowed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class MultiError(LcaError):
    """
    Ordered collection of independent failures.

    Kept structured while collecting; rendered to a single operator facing
    string only at the status boundary.
    """

    def __init__(self, errors: Optional[List[Tuple[str, BaseException]]] = None):
        self.errors: List[Tuple[str, BaseException]] = list(errors or [])
        super().__init__(self.render())

    def add(self, label: str, exc: BaseException) -> None:
        self.errors.append((label, exc))
        self.args = (self.render(),)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self) -> Iterator[Tuple[str, BaseException]]:
        return iter(self.errors)

    def labels(self) -> List[str]:
        return [label for label, _ in self.errors]

    def render(self) -> str:
        # each failure text is followed by a space so a remediation hint can be appended
        return "".join(f"{exc} " for _, exc in self.errors)
