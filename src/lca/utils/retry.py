# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/lca/utils/retry.py
import functools
import logging
import threading
import time
from typing import Callable, Optional

from lca.errors import LcaError

log = logging.getLogger("lca")


class RetryError(LcaError):
    """Every attempt failed; ``attempts`` and ``last_error`` describe the last one."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


def retry(
    *,
    retries: int,
    delay: float,
    backoff: float = 1.0,
    max_delay: Optional[float] = None,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Callable[[int, Exception], None] | None = None,
    stop_event: Optional[threading.Event] = None,
):
    """
    Retry decorator for idempotent host and API calls.

    retries: total attempts, at least one
    delay: seconds before the second attempt
    backoff: delay multiplier applied after every failed attempt
    max_delay: upper bound for the delay, None for unbounded
    retry_on: exception types that trigger another attempt; others propagate
    on_retry: callback(attempt, exception) after each failed attempt
    stop_event: when set during a backoff wait, give up without further attempts
    """
    attempts = max(1, retries)

    def decorator(fn):
        name = getattr(fn, "__name__", repr(fn))

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            wait = delay
            last_exc = None
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == attempts:
                        break
                    log.debug("%s attempt %d/%d failed, retrying in %ss", name, attempt, attempts, wait)
                    if stop_event is None:
                        time.sleep(wait)
                    elif stop_event.wait(wait):
                        raise RetryError(
                            f"{name} stopped after {attempt} attempts: {last_exc}", attempt, last_exc
                        ) from last_exc
                    wait = wait * backoff
                    if max_delay is not None:
                        wait = min(wait, max_delay)
            raise RetryError(f"{name} failed after {attempts} attempts: {last_exc}", attempts, last_exc) from last_exc
        return wrapper
    return decorator
