# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/config/validation.py
"""
Pre-flight checks. Every check runs and every problem is collected;
the run is aborted once, before any node is contacted, if any failed.
"""
from __future__ import annotations

import logging
import os
from collections import Counter
from typing import Callable, List

from ..errors import ValidationFailure
from ..resources import registry
from .layouts import SUPPORTED_DRIVE_COUNTS
from .models import DeploymentConfig, NodeRole

log = logging.getLogger("sqlconverge")


def collect_problems(
    cfg: DeploymentConfig,
    *,
    path_exists: Callable[[str], bool] = os.path.exists,
) -> List[str]:
    problems: List[str] = []

    # --- nodes ---
    if not cfg.nodes:
        problems.append("no target nodes given")
    dupes = [name for name, count in Counter(n.name.lower() for n in cfg.nodes).items() if count > 1]
    for name in dupes:
        problems.append(f"node '{name}' listed more than once")
    primaries = [n.name for n in cfg.nodes if n.role == NodeRole.PRIMARY]
    if cfg.nodes and len(primaries) != 1:
        problems.append(f"exactly one Primary node required, found {len(primaries)}: {primaries}")
    if not cfg.features.skip_drive_config:
        for n in cfg.nodes:
            if n.drive_count not in SUPPORTED_DRIVE_COUNTS:
                problems.append(
                    f"node '{n.name}': drive_count {n.drive_count} not in {SUPPORTED_DRIVE_COUNTS}"
                )

    # --- credential ---
    if cfg.credential is None or not cfg.credential.username:
        problems.append("no installation credential given")
    elif cfg.credential.key_path and not path_exists(str(cfg.credential.key_path)):
        problems.append(f"SSH key not found: {cfg.credential.key_path}")

    # --- install source ---
    if cfg.use_builtin and not cfg.features.skip_install:
        if not cfg.install_source:
            problems.append("install source is required unless skip_install is set")
        elif not path_exists(cfg.install_source):
            problems.append(f"install source not reachable: {cfg.install_source}")
        if not cfg.sql.admin_accounts:
            problems.append("sql.admin_accounts is empty; the instance would have no sysadmin login")
        for script in cfg.sql.post_install_scripts:
            if not path_exists(str(script)):
                problems.append(f"post-install script not found: {script}")

    # --- availability group ---
    if cfg.use_builtin and cfg.features.in_availability_group:
        ag = cfg.availability_group
        for n in cfg.nodes:
            if not (n.listener_port or ag.listener_port):
                problems.append(f"node '{n.name}': availability group configuration requires a listener port")
        if ag.listener_name and not ag.listener_ip:
            problems.append(f"listener '{ag.listener_name}' requires listener_ip")
        if not cfg.cluster.name and not any(n.cluster_name for n in cfg.nodes):
            problems.append("availability group configuration requires a cluster name")
        if len(cfg.nodes) < 2:
            problems.append("availability group configuration requires at least two nodes")

    # --- declared configurations ---
    policies = set(cfg.policy_names())
    for conf in cfg.configurations:
        for spec in conf.resources:
            if not registry.has(spec.type):
                problems.append(f"configuration '{conf.name}': unknown resource type '{spec.type}'")
            if isinstance(spec.retry, str) and spec.retry not in policies:
                problems.append(
                    f"configuration '{conf.name}': {spec.name} uses unknown retry policy '{spec.retry}'"
                )

    return problems


def validate_config(
    cfg: DeploymentConfig,
    *,
    path_exists: Callable[[str], bool] = os.path.exists,
) -> None:
    """Raise ValidationFailure listing every failed check."""
    problems = collect_problems(cfg, path_exists=path_exists)
    for p in problems:
        log.error("validation: %s", p)
    if problems:
        raise ValidationFailure(problems)
