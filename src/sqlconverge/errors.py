# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/errors.py
from __future__ import annotations

from typing import List, Sequence


class ConvergeError(RuntimeError):
    """Base class for every failure the engine reports."""

    kind = "Error"


class UnreachableNode(ConvergeError):
    """The remote transport could not reach the node."""

    kind = "UnreachableNode"


class PreconditionNotMet(ConvergeError):
    """A dependency failed or never converged."""

    kind = "PreconditionNotMet"


class TransientFailure(ConvergeError):
    """Retryable apply failure (disk not visible yet, cluster not formed yet)."""

    kind = "TransientFailure"


class PermanentFailure(ConvergeError):
    """Non-retryable apply failure, or a retry budget that ran out."""

    kind = "PermanentFailure"


class CycleDetected(ConvergeError):
    kind = "CycleDetected"

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__("Cyclic dependency detected: " + " -> ".join(self.cycle))


class UnknownDependencyError(ConvergeError):
    kind = "UnknownDependency"


class DuplicateResourceError(ConvergeError):
    kind = "DuplicateResource"


class UnknownResourceType(ConvergeError):
    kind = "UnknownResourceType"


class ValidationFailure(ConvergeError):
    """Pre-flight validation failed. Carries every failed check, not just the first."""

    kind = "ValidationFailure"

    def __init__(self, problems: Sequence[str]):
        self.problems: List[str] = list(problems)
        super().__init__("Validation failed: " + "; ".join(self.problems))
