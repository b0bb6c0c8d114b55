# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/deploy/barrier.py
from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Dict, Iterable, Optional

from ..resources.models import ResourceRef

if TYPE_CHECKING:
    from .executor import ExecutionResult


class BarrierBoard:
    """
    Final results shared between node threads. A declaration that refers
    to a resource on another node blocks in wait_for() until that result
    is published. Only the waiting node's thread blocks.
    """

    def __init__(self):
        self._results: Dict[ResourceRef, "ExecutionResult"] = {}
        self._cond = threading.Condition()

    def publish(self, result: "ExecutionResult") -> None:
        with self._cond:
            self._results[result.ref] = result
            self._cond.notify_all()

    def get(self, ref: ResourceRef) -> Optional["ExecutionResult"]:
        with self._cond:
            return self._results.get(ref)

    def wait_for(self, ref: ResourceRef, timeout: Optional[float] = None) -> Optional["ExecutionResult"]:
        """Block until `ref` has a final result. None if the timeout ran out first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while ref not in self._results:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
            return self._results[ref]

    def fail_missing(self, refs: Iterable[ResourceRef], make_result) -> None:
        """Publish a result for every ref that never got one (node never ran)."""
        with self._cond:
            for ref in refs:
                if ref not in self._results:
                    self._results[ref] = make_result(ref)
            self._cond.notify_all()
