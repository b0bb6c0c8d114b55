# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config.models import ConfigurationSpec, DeploymentConfig, RetryPolicy, ResourceSpec, TargetNode
from ..config.templating import TemplateRenderer, TemplateRenderError, node_context
from ..errors import (
    CycleDetected,
    DuplicateResourceError,
    UnknownDependencyError,
    ValidationFailure,
)
from ..resources import registry
from ..resources.base import Resource
from ..resources.models import ResourceDeclaration, ResourceRef
from .configurations import builtin_configurations

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx

PRIMARY_ALIAS = "primary"


@dataclass
class RunPlan:
    run_id: str
    nodes: List[TargetNode]
    steps: Dict[str, List[ResourceDeclaration]] = field(default_factory=dict)

    def declarations(self) -> List[ResourceDeclaration]:
        return [d for n in self.nodes for d in self.steps.get(n.name, [])]

    def order(self) -> Dict[str, List[str]]:
        return {n: [d.name for d in decls] for n, decls in self.steps.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "nodes": [n.model_dump(mode="json") for n in self.nodes],
            "steps": {n: [d.to_dict() for d in decls] for n, decls in self.steps.items()},
        }


def _stable_toposort(keys: Sequence[str], deps: Dict[str, Sequence[str]]) -> List[str]:
    """
    Kahn's algorithm with a ready-queue ordered by declaration index, so
    unconstrained items keep their authored order.
    """
    index = {k: i for i, k in enumerate(keys)}
    indeg: Dict[str, int] = {k: 0 for k in keys}
    dependents: Dict[str, List[str]] = {k: [] for k in keys}

    for k in keys:
        for d in deps.get(k, ()):
            if d not in index:
                raise UnknownDependencyError(f"'{k}' depends on unknown resource '{d}'")
            indeg[k] += 1
            dependents[d].append(k)

    ready = [index[k] for k in keys if indeg[k] == 0]
    heapq.heapify(ready)
    order: List[str] = []

    while ready:
        k = keys[heapq.heappop(ready)]
        order.append(k)
        for m in dependents[k]:
            indeg[m] -= 1
            if indeg[m] == 0:
                heapq.heappush(ready, index[m])

    if len(order) != len(keys):
        raise CycleDetected(_find_cycle([k for k in keys if indeg[k] > 0], deps))
    return order


def _find_cycle(remaining: List[str], deps: Dict[str, Sequence[str]]) -> List[str]:
    # Every remaining item still waits on another remaining item, so
    # following dependency edges from any of them must loop.
    left = set(remaining)
    path: List[str] = []
    seen: Dict[str, int] = {}
    k = remaining[0]
    while k not in seen:
        seen[k] = len(path)
        path.append(k)
        k = next(d for d in deps.get(k, ()) if d in left)
    return path[seen[k]:] + [k]


def order_declarations(decls: Sequence[ResourceDeclaration]) -> List[ResourceDeclaration]:
    """
    Stable topological order of one node's declarations. Cross-node
    references are barriers and are not part of the local order.
    """
    by_name: Dict[str, ResourceDeclaration] = {}
    for d in decls:
        if d.name in by_name:
            raise DuplicateResourceError(f"resource '{d.name}' declared twice on node '{d.node}'")
        by_name[d.name] = d

    keys = [d.name for d in decls]
    deps = {d.name: [r.name for r in d.local_dependencies()] for d in decls}
    return [by_name[k] for k in _stable_toposort(keys, deps)]


def parse_ref(raw: str, node: TargetNode, cfg: DeploymentConfig) -> ResourceRef:
    """
    "Name"          -> same node
    "primary:Name"  -> the Primary node
    "<node>:Name"   -> a named node
    """
    if ":" in raw:
        prefix, name = raw.split(":", 1)
        if prefix.lower() == PRIMARY_ALIAS:
            primary = cfg.primary()
            if primary is None:
                raise UnknownDependencyError(f"'{raw}' refers to the Primary node but none is defined")
            return ResourceRef(primary.name, name)
        if prefix in cfg.by_name():
            return ResourceRef(prefix, name)
    return ResourceRef(node.name, raw)


def _attribute(cfg: DeploymentConfig, node: TargetNode, key: str) -> Any:
    if key in TargetNode.model_fields:
        return getattr(node, key)
    if key in type(cfg.features).model_fields:
        return getattr(cfg.features, key)
    return None


def matches(conf: ConfigurationSpec, cfg: DeploymentConfig, node: TargetNode) -> bool:
    if conf.roles and node.role not in conf.roles:
        return False
    return all(_attribute(cfg, node, k) == v for k, v in conf.only_if.items())


def _retry_for(spec: ResourceSpec, resource: Resource, cfg: DeploymentConfig) -> RetryPolicy:
    if isinstance(spec.retry, RetryPolicy):
        return spec.retry
    name = spec.retry or resource.default_retry
    try:
        return cfg.policy(name)
    except KeyError:
        raise ValidationFailure([f"{spec.name}: unknown retry policy '{name}'"]) from None


def instantiate(
    cfg: DeploymentConfig,
    node: TargetNode,
    configurations: Sequence[ConfigurationSpec],
    *,
    renderer: Optional[TemplateRenderer] = None,
    lookup: Callable[[str], Resource] = registry.get,
) -> List[ResourceDeclaration]:
    """Declarations of every configuration that matches the node, properties rendered."""
    renderer = renderer or TemplateRenderer()
    context = node_context(cfg, node)
    out: List[ResourceDeclaration] = []
    problems: List[str] = []

    for conf in configurations:
        if not matches(conf, cfg, node):
            continue
        for spec in conf.resources:
            resource = lookup(spec.type)
            try:
                props = renderer.render(spec.properties, context)
            except TemplateRenderError as exc:
                problems.append(f"{conf.name}/{spec.name} on {node.name}: {exc}")
                continue
            decl = ResourceDeclaration(
                type=spec.type,
                name=spec.name,
                node=node.name,
                properties=props,
                depends_on=tuple(parse_ref(r, node, cfg) for r in spec.depends_on),
                retry=_retry_for(spec, resource, cfg),
                configuration=conf.name,
            )
            problems.extend(resource.validate(decl))
            out.append(decl)

    if problems:
        raise ValidationFailure(problems)
    return out


def _check_cross_node(steps: Dict[str, List[ResourceDeclaration]]) -> None:
    known = {str(d.ref) for decls in steps.values() for d in decls}
    keys: List[str] = []
    deps: Dict[str, List[str]] = {}
    for decls in steps.values():
        for d in decls:
            key = str(d.ref)
            keys.append(key)
            deps[key] = []
            for r in d.depends_on:
                if str(r) not in known:
                    raise UnknownDependencyError(
                        f"'{d.name}' on node '{d.node}' depends on unknown resource '{r}'"
                    )
                deps[key].append(str(r))
    _stable_toposort(keys, deps)


def build_run_plan(
    cfg: DeploymentConfig,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
    *,
    lookup: Callable[[str], Resource] = registry.get,
) -> RunPlan:
    """
    Instantiate configurations per node and order them.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    Nothing is contacted; a failure here aborts the run up front.
    """
    ctx = run_ctx or new_ctx(env=cfg.environment, context=cfg.name)
    try:
        configurations = list(builtin_configurations(cfg)) if cfg.use_builtin else []
        configurations.extend(cfg.configurations)

        renderer = TemplateRenderer()
        plan = RunPlan(run_id=ctx["run_id"], nodes=list(cfg.nodes))
        for node in cfg.nodes:
            decls = instantiate(cfg, node, configurations, renderer=renderer, lookup=lookup)
            plan.steps[node.name] = order_declarations(decls)

        _check_cross_node(plan.steps)

        if bus:
            bus.emit(PlanComputed(order=plan.order(), **ctx))
        return plan

    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise


def describe(plan: RunPlan) -> List[Tuple[str, int, ResourceDeclaration]]:
    """Flat (node, step, declaration) rows for display."""
    return [(node, i + 1, d) for node, decls in plan.steps.items() for i, d in enumerate(decls)]
