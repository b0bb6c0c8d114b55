# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/utils/wait.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

log = logging.getLogger("sqlconverge")


class WaitTimeout(TimeoutError):
    def __init__(self, attempts: int, interval: float):
        self.attempts = attempts
        self.interval = interval
        super().__init__(f"condition not met after {attempts} attempts at {interval:g}s intervals")


def wait_until(
    predicate: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    on_attempt: Optional[Callable[[int, bool], None]] = None,
) -> int:
    """
    Poll predicate until it returns True, at most `attempts` times, sleeping
    `interval` seconds between tries. Returns the attempt that succeeded.
    Raises WaitTimeout once the budget is spent. Exceptions from predicate
    propagate unchanged.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        ok = predicate()
        if on_attempt:
            on_attempt(attempt, ok)
        if ok:
            return attempt
        if attempt < attempts:
            sleep(interval)
    raise WaitTimeout(attempts, interval)


def pause(seconds: float, *, reason: str, sleep: Callable[[float], None] = time.sleep) -> None:
    """
    Fixed delay. Only for waits with no observable readiness signal,
    e.g. a reboot that drops the management session.
    """
    if seconds <= 0:
        return
    log.warning("fixed pause of %ss: %s", seconds, reason)
    sleep(seconds)
