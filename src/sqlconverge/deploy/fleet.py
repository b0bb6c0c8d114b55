# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from ..config.models import DeploymentConfig, TargetNode
from ..config.validation import validate_config
from ..errors import PreconditionNotMet, UnreachableNode, ValidationFailure
from ..resources import registry
from ..resources.base import Resource
from ..resources.models import ResourceDeclaration, ResourceRef
from ..transport.session import Transport
from ..utils.execution import ExecutionContext
from .artifacts import RunArtifacts
from .barrier import BarrierBoard
from .executor import ExecutionResult, ExecutorOptions, NodeExecutor, Outcome, failed_result
from .planner import RunPlan, build_run_plan

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    NodeUnreachable,
    PlanFailed,
    ResourceFailed,
    RunSummary,
    SessionOpened,
    ValidationFailed,
)

log = logging.getLogger("sqlconverge")


@dataclass
class RunReport:
    run_id: str
    results: List[ExecutionResult] = field(default_factory=list)

    def extend(self, results: Sequence[ExecutionResult]) -> None:
        self.results.extend(results)

    def counts(self) -> Dict[str, int]:
        out = {o.value: 0 for o in Outcome}
        for r in self.results:
            out[r.status.value] += 1
        return out

    @property
    def ok(self) -> bool:
        return not any(r.failed for r in self.results)

    def failures(self) -> List[ExecutionResult]:
        return [r for r in self.results if r.failed]

    def for_node(self, node: str) -> List[ExecutionResult]:
        return [r for r in self.results if r.node == node]

    def summary(self) -> str:
        c = self.counts()
        return f"Unchanged={c['Unchanged']} Applied={c['Applied']} Failed={c['Failed']}"

    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def render(self) -> str:
        lines = []
        for r in self.results:
            status = r.status.value + (" (dry run)" if r.dry_run else "")
            line = f"{r.node:<16} [{r.type}]{r.name:<28} {status}"
            if r.attempts:
                line += f"  attempts={r.attempts}"
            if r.failed:
                line += f"  {r.error_kind}: {r.error}"
            lines.append(line)
        lines.append(self.summary())
        return "\n".join(lines)


def _primary_first_problems(plan: RunPlan) -> List[str]:
    # A Primary declaration waiting on a Secondary would never be released
    # when the Secondary group only starts after the Primary group.
    primaries = {n.name for n in plan.nodes if n.is_primary}
    problems = []
    for node in primaries:
        for d in plan.steps.get(node, []):
            for r in d.remote_dependencies():
                if r.node not in primaries:
                    problems.append(f"{d.node}:{d.name} depends on {r}, which cannot run before the Primary group")
    return problems


def _worker_problems(groups: List[List[TargetNode]], plan: RunPlan, max_workers: Optional[int]) -> List[str]:
    # A node blocked on a barrier holds its pool slot; the node it waits on
    # must not be queued behind it in the same pool.
    problems = []
    for group in groups:
        if not max_workers or max_workers >= len(group):
            continue
        names = {n.name for n in group}
        for node in group:
            for d in plan.steps.get(node.name, []):
                for r in d.remote_dependencies():
                    if r.node in names:
                        problems.append(
                            f"{d.node}:{d.name} waits on {r} in the same group; "
                            f"max_workers={max_workers} cannot run all {len(group)} nodes at once"
                        )
    return problems


class FleetCoordinator:
    """
    Validate, plan, then run every node's executor in parallel.
    Validation and planning failures abort before any node is contacted.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        observers: Optional[List] = None,
        ctx: Optional[ExecutionContext] = None,
        lookup: Callable[[str], Resource] = registry.get,
        path_exists: Callable[[str], bool] = os.path.exists,
        run_id: Optional[str] = None,
    ):
        self.transport = transport
        self.observers = observers or []
        self.ctx = ctx or ExecutionContext()
        self.lookup = lookup
        self.path_exists = path_exists
        self.run_id = run_id

    def run(self, cfg: DeploymentConfig) -> RunReport:
        bus = EventBus(self.observers)
        run_ctx = new_ctx(env=cfg.environment, context=cfg.name, run_id=self.run_id)

        # 1) Pre-flight
        try:
            validate_config(cfg, path_exists=self.path_exists)
        except ValidationFailure as e:
            bus.emit(ValidationFailed(problems=e.problems, **run_ctx))
            raise

        # 2) Plan (planner emits PlanComputed/PlanFailed)
        plan = build_run_plan(cfg, bus=bus, run_ctx=run_ctx, lookup=self.lookup)

        opts = cfg.options
        if opts.primary_first:
            groups = [[n for n in plan.nodes if n.is_primary], [n for n in plan.nodes if not n.is_primary]]
        else:
            groups = [list(plan.nodes)]

        problems = _worker_problems(groups, plan, opts.max_workers)
        if opts.primary_first:
            problems += _primary_first_problems(plan)
        if problems:
            err = ValidationFailure(problems)
            bus.emit(PlanFailed(error=str(err), **run_ctx))
            raise err

        ctx = ExecutionContext(
            dry_run=opts.dry_run or self.ctx.dry_run,
            sleep=self.ctx.sleep,
            run_id=run_ctx["run_id"],
        )
        executor_options = ExecutorOptions(
            fail_fast=opts.fail_fast,
            barrier_timeout_seconds=opts.barrier_timeout_seconds,
        )
        board = BarrierBoard()
        report = RunReport(run_id=run_ctx["run_id"])

        # 3) Artifacts live for the duration of the run only
        with RunArtifacts(opts.artifacts_dir, run_ctx["run_id"], keep=opts.keep_artifacts) as artifacts:
            artifacts.write_plan(plan)

            for group in groups:
                if not group:
                    continue
                log.info("running %s", ", ".join(n.name for n in group))
                workers = opts.max_workers or len(group)
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="node") as pool:
                    futures = [
                        pool.submit(
                            self._run_node,
                            node,
                            plan.steps.get(node.name, []),
                            cfg,
                            bus,
                            run_ctx,
                            ctx,
                            executor_options,
                            board,
                        )
                        for node in group
                    ]
                    # keep report order stable: node order, then step order
                    for fut in futures:
                        report.extend(fut.result())

        counts = report.counts()
        bus.emit(
            RunSummary(
                unchanged=counts["Unchanged"],
                applied=counts["Applied"],
                failed=counts["Failed"],
                **run_ctx,
            )
        )
        log.info("run %s finished: %s", report.run_id, report.summary())
        return report

    def _run_node(
        self,
        node: TargetNode,
        decls: List[ResourceDeclaration],
        cfg: DeploymentConfig,
        bus: EventBus,
        run_ctx: dict,
        ctx: ExecutionContext,
        options: ExecutorOptions,
        board: BarrierBoard,
    ) -> List[ExecutionResult]:
        by_ref = {d.ref: d for d in decls}

        def _never_ran(ref: ResourceRef) -> ExecutionResult:
            return failed_result(by_ref[ref], PreconditionNotMet.kind, f"node {node.name} stopped before {ref.name}")

        try:
            try:
                session = self.transport.open_session(node, cfg.credential)
            except UnreachableNode as e:
                log.error("node %s unreachable: %s", node.name, e)
                bus.emit(NodeUnreachable(node=node.name, error=str(e), **run_ctx))
                results = []
                for d in decls:
                    r = failed_result(d, UnreachableNode.kind, str(e))
                    bus.emit(
                        ResourceFailed(node=d.node, name=d.name, kind=r.error_kind, attempts=0, error=r.error, **run_ctx)
                    )
                    board.publish(r)
                    results.append(r)
                return results

            bus.emit(SessionOpened(node=node.name, **run_ctx))
            try:
                executor = NodeExecutor(
                    session,
                    bus=bus,
                    run_ctx=run_ctx,
                    ctx=ctx,
                    options=options,
                    board=board,
                    lookup=self.lookup,
                )
                return executor.execute(node.name, decls)
            finally:
                session.close()
        finally:
            # release anyone still waiting on this node, whatever happened
            board.fail_missing(by_ref, _never_ran)
