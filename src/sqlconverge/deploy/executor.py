# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import ConvergeError, PermanentFailure, PreconditionNotMet, TransientFailure, UnreachableNode
from ..resources import registry
from ..resources.base import Resource
from ..resources.models import ResourceDeclaration, ResourceRef
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from ..utils.wait import WaitTimeout, wait_until
from .barrier import BarrierBoard

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    BarrierReleased,
    BarrierWaiting,
    ResourceApplied,
    ResourceApplyAttempt,
    ResourceFailed,
    ResourceProbed,
    ResourceSkipped,
    ResourceStarted,
    ResourceUnchanged,
)

log = logging.getLogger("sqlconverge")


class ResourceState(str, Enum):
    PENDING = "Pending"
    PROBING = "Probing"
    CONVERGED = "Converged"
    APPLYING = "Applying"
    APPLIED = "Applied"
    FAILED = "Failed"


class Outcome(str, Enum):
    UNCHANGED = "Unchanged"
    APPLIED = "Applied"
    FAILED = "Failed"


@dataclass
class ExecutionResult:
    node: str
    name: str
    type: str
    status: Outcome
    attempts: int = 0
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0
    dry_run: bool = False

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.node, self.name)

    @property
    def failed(self) -> bool:
        return self.status == Outcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class ExecutorOptions:
    fail_fast: bool = False
    barrier_timeout_seconds: Optional[float] = None


def failed_result(decl: ResourceDeclaration, kind: str, error: str, attempts: int = 0) -> ExecutionResult:
    return ExecutionResult(
        node=decl.node,
        name=decl.name,
        type=decl.type,
        status=Outcome.FAILED,
        attempts=attempts,
        error_kind=kind,
        error=error,
    )


class NodeExecutor:
    """
    Drives one node's ordered declarations through
    Pending -> Probing -> {Converged | Applying} -> {Applied | Failed}.

    Strictly sequential. A failed declaration fails its dependents with
    PreconditionNotMet and independent declarations still run, unless
    options.fail_fast is set. Every final result is published to the
    barrier board so other nodes waiting on it can proceed.
    """

    def __init__(
        self,
        session: Session,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        ctx: Optional[ExecutionContext] = None,
        options: Optional[ExecutorOptions] = None,
        board: Optional[BarrierBoard] = None,
        lookup: Callable[[str], Resource] = registry.get,
    ):
        self.session = session
        self.bus = bus or EventBus([])
        self.run_ctx = run_ctx or new_ctx(env="default", context=None)
        self.ctx = ctx or ExecutionContext()
        self.options = options or ExecutorOptions()
        self.board = board
        self.lookup = lookup
        self.states: Dict[str, ResourceState] = {}

    # ------------------------------------------------------------------ #

    def execute(self, node: str, ordered: Sequence[ResourceDeclaration]) -> List[ExecutionResult]:
        results: Dict[str, ExecutionResult] = {}
        out: List[ExecutionResult] = []
        abort: Optional[tuple] = None  # (kind, message) once the node stops

        for decl in ordered:
            self.states[decl.name] = ResourceState.PENDING
            if abort:
                result = self._fail(decl, *abort)
            else:
                result = self._run_one(decl, results)

            results[decl.name] = result
            out.append(result)
            if self.board:
                self.board.publish(result)

            if result.failed and not abort:
                if result.error_kind == UnreachableNode.kind:
                    abort = (UnreachableNode.kind, f"node {node} unreachable: {result.error}")
                elif self.options.fail_fast:
                    abort = (PreconditionNotMet.kind, f"aborted after {decl.label} failed")

        return out

    # ------------------------------------------------------------------ #

    def _fail(self, decl: ResourceDeclaration, kind: str, error: str, attempts: int = 0) -> ExecutionResult:
        self.states[decl.name] = ResourceState.FAILED
        log.error("[%s] %s failed (%s): %s", decl.node, decl.label, kind, error)
        self.bus.emit(
            ResourceFailed(node=decl.node, name=decl.name, kind=kind, attempts=attempts, error=error, **self.run_ctx)
        )
        return failed_result(decl, kind, error, attempts)

    def _wait_remote(self, decl: ResourceDeclaration, ref: ResourceRef) -> Optional[ExecutionResult]:
        result = self.board.get(ref)
        if result is not None:
            return result
        self.bus.emit(BarrierWaiting(node=decl.node, name=decl.name, waiting_on=str(ref), **self.run_ctx))
        log.info("[%s] %s waiting on %s", decl.node, decl.label, ref)
        result = self.board.wait_for(ref, timeout=self.options.barrier_timeout_seconds)
        self.bus.emit(
            BarrierReleased(
                node=decl.node,
                name=decl.name,
                waiting_on=str(ref),
                status=result.status.value if result else None,
                **self.run_ctx,
            )
        )
        return result

    def _dependencies(self, decl: ResourceDeclaration, local: Dict[str, ExecutionResult]):
        """Results of everything decl depends on, or a (kind, message) precondition failure."""
        deps: List[ExecutionResult] = []
        for ref in decl.depends_on:
            if ref.node == decl.node:
                dep = local.get(ref.name)
            elif self.board is None:
                return None, f"cross-node dependency {ref} cannot be resolved without a barrier board"
            else:
                dep = self._wait_remote(decl, ref)
                if dep is None:
                    return None, f"timed out waiting for {ref}"
            if dep is None:
                return None, f"dependency {ref} has not run"
            if dep.failed:
                return None, f"dependency {ref} failed"
            deps.append(dep)
        return deps, None

    def _run_one(self, decl: ResourceDeclaration, local: Dict[str, ExecutionResult]) -> ExecutionResult:
        self.bus.emit(ResourceStarted(node=decl.node, name=decl.name, type=decl.type, **self.run_ctx))

        deps, problem = self._dependencies(decl, local)
        if problem:
            return self._fail(decl, PreconditionNotMet.kind, problem)

        resource = self.lookup(decl.type)

        if resource.skip_when_dependencies_unchanged and deps and all(
            d.status == Outcome.UNCHANGED for d in deps
        ):
            self.states[decl.name] = ResourceState.CONVERGED
            self.bus.emit(
                ResourceSkipped(node=decl.node, name=decl.name, reason="no dependency changed", **self.run_ctx)
            )
            return ExecutionResult(node=decl.node, name=decl.name, type=decl.type, status=Outcome.UNCHANGED)

        # --- probe ---
        self.states[decl.name] = ResourceState.PROBING
        try:
            desired = resource.desired(decl)
            converged = resource.is_converged(resource.probe(self.session, decl), desired)
        except ConvergeError as e:
            return self._fail(decl, e.kind, str(e))
        except Exception as e:
            log.exception("[%s] probe of %s raised", decl.node, decl.label)
            return self._fail(decl, PermanentFailure.kind, f"probe error: {e}")

        self.bus.emit(ResourceProbed(node=decl.node, name=decl.name, converged=converged, **self.run_ctx))

        if converged:
            self.states[decl.name] = ResourceState.CONVERGED
            log.debug("[%s] %s unchanged", decl.node, decl.label)
            self.bus.emit(ResourceUnchanged(node=decl.node, name=decl.name, **self.run_ctx))
            return ExecutionResult(node=decl.node, name=decl.name, type=decl.type, status=Outcome.UNCHANGED)

        if self.ctx.dry_run:
            self.states[decl.name] = ResourceState.APPLIED
            log.info("[%s] %s would change (dry run)", decl.node, decl.label)
            self.bus.emit(
                ResourceApplied(node=decl.node, name=decl.name, attempts=0, duration_ms=0, dry_run=True, **self.run_ctx)
            )
            return ExecutionResult(
                node=decl.node, name=decl.name, type=decl.type, status=Outcome.APPLIED, dry_run=True
            )

        return self._apply(resource, decl, desired)

    def _apply(self, resource: Resource, decl: ResourceDeclaration, desired: Dict[str, Any]) -> ExecutionResult:
        self.states[decl.name] = ResourceState.APPLYING
        policy = resource.retry_policy(decl)
        attempts = 0
        last_error = "not converged after apply"

        def attempt() -> bool:
            nonlocal attempts, last_error
            attempts += 1
            self.bus.emit(ResourceApplyAttempt(node=decl.node, name=decl.name, attempt=attempts, **self.run_ctx))
            try:
                resource.apply(self.session, decl, self.ctx)
            except TransientFailure as e:
                last_error = str(e)
                log.warning("[%s] %s attempt %d/%d: %s", decl.node, decl.label, attempts, policy.attempts, e)
                return False
            if not resource.verify_after_apply:
                return True
            ok = resource.is_converged(resource.probe(self.session, decl), desired)
            if not ok:
                last_error = "not converged after apply"
                log.warning(
                    "[%s] %s attempt %d/%d: not converged after apply",
                    decl.node, decl.label, attempts, policy.attempts,
                )
            return ok

        t0 = time.monotonic()
        try:
            wait_until(attempt, attempts=policy.attempts, interval=policy.interval_seconds, sleep=self.ctx.sleep)
        except WaitTimeout:
            return self._fail(
                decl,
                PermanentFailure.kind,
                f"retry budget exhausted after {attempts} attempts: {last_error}",
                attempts,
            )
        except ConvergeError as e:
            return self._fail(decl, e.kind, str(e), attempts)
        except Exception as e:
            log.exception("[%s] apply of %s raised", decl.node, decl.label)
            return self._fail(decl, PermanentFailure.kind, f"apply error: {e}", attempts)

        duration_ms = int((time.monotonic() - t0) * 1000)
        self.states[decl.name] = ResourceState.APPLIED
        log.info("[%s] %s applied in %d attempt(s)", decl.node, decl.label, attempts)
        self.bus.emit(
            ResourceApplied(
                node=decl.node, name=decl.name, attempts=attempts, duration_ms=duration_ms, **self.run_ctx
            )
        )
        return ExecutionResult(
            node=decl.node,
            name=decl.name,
            type=decl.type,
            status=Outcome.APPLIED,
            attempts=attempts,
            duration_ms=duration_ms,
        )
