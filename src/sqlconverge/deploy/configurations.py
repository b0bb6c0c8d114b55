# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/deploy/configurations.py
"""
Built-in configurations for a SQL Server host and, optionally, a
Failover Cluster with an Availability Group on top.

Properties are Jinja2 templates rendered per node by the planner
(see config.templating.node_context for the variables).
"""
from __future__ import annotations

from typing import List

from ..config.layouts import DRIVE_LAYOUTS
from ..config.models import ConfigurationSpec, DeploymentConfig, NodeRole, ResourceSpec
from ..resources.sqlserver import agent_service_name

INSTANCE = "{{ node.name }}{% if sql.instance_name != 'MSSQLSERVER' %}\\{{ sql.instance_name }}{% endif %}"
PRIMARY_INSTANCE = "{{ primary }}{% if sql.instance_name != 'MSSQLSERVER' %}\\{{ sql.instance_name }}{% endif %}"
CLUSTER_NAME = "{{ node.cluster_name or cluster.name }}"


def _base_os(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    resources: List[ResourceSpec] = []
    if cfg.features.time_zone:
        resources.append(ResourceSpec(type="TimeZone", name="TimeZone", properties={"id": cfg.features.time_zone}))
    if cfg.features.configure_power_plan:
        resources.append(ResourceSpec(type="PowerPlan", name="PowerPlan", properties={"name": "High performance"}))

    confs = [ConfigurationSpec(name="BaseOS", resources=resources)]
    confs.append(
        ConfigurationSpec(
            name="OpticalDrive",
            only_if={"has_optical_drive": True},
            resources=[ResourceSpec(type="OpticalDiskDriveLetter", name="OpticalDrive", properties={"drive_letter": "Z"})],
        )
    )
    return confs


def disk_names(cfg: DeploymentConfig, drive_count: int, azure: bool) -> List[str]:
    if cfg.features.skip_drive_config:
        return []
    return [f"Disk{d.disk_id}Volume" for d in DRIVE_LAYOUTS.get((drive_count, azure), ())]


def _drives(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    if cfg.features.skip_drive_config:
        return []

    # one configuration per layout in use; only_if picks the node's layout
    confs = []
    for count, azure, optical in sorted({(n.drive_count, n.azure, n.has_optical_drive) for n in cfg.nodes}):
        layout = DRIVE_LAYOUTS.get((count, azure))
        if layout is None:
            continue
        resources = [
            ResourceSpec(
                type="Disk",
                name=f"Disk{d.disk_id}Volume",
                properties={
                    "disk_id": d.disk_id,
                    "drive_letter": d.letter,
                    "label": d.label,
                    "allocation_unit": 65536,
                },
                # the optical drive must give up its letter first
                depends_on=["OpticalDrive"] if optical else [],
            )
            for d in layout
        ]
        confs.append(
            ConfigurationSpec(
                name=f"Drives{count}{'Azure' if azure else ''}{'Optical' if optical else ''}",
                only_if={"drive_count": count, "azure": azure, "has_optical_drive": optical},
                resources=resources,
            )
        )
    return confs


def _firewall(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    if not cfg.features.configure_firewall:
        return []
    rules = [
        ResourceSpec(
            type="FirewallRule",
            name="SqlEngineFirewall",
            properties={"name": "SQL-Engine-TCP", "display_name": "SQL Server Engine", "local_port": cfg.sql.port},
        ),
    ]
    if cfg.features.in_availability_group:
        ag = cfg.availability_group
        rules.append(
            ResourceSpec(
                type="FirewallRule",
                name="HadrEndpointFirewall",
                properties={"name": "SQL-HADR-Endpoint", "display_name": "SQL Server HADR Endpoint", "local_port": ag.endpoint_port},
            )
        )
        rules.append(
            ResourceSpec(
                type="FirewallRule",
                name="ListenerFirewall",
                properties={
                    "name": "SQL-AG-Listener",
                    "display_name": "SQL Server AG Listener",
                    "local_port": "{{ node.listener_port or ag.listener_port }}",
                },
            )
        )
    return [ConfigurationSpec(name="Firewall", resources=rules)]


def _sql_server(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    if cfg.features.skip_install:
        return []
    sql = cfg.sql
    media = sql.media_path + "\\{{ sql.version }}"

    resources = [
        ResourceSpec(
            type="DirectoryCopy",
            name="InstallMedia",
            properties={"source": "{{ install_source }}", "destination": media},
        ),
    ]

    # per-layout SqlSetup so it can depend on the node's disks
    confs = []
    layouts = sorted({(n.drive_count, n.azure) for n in cfg.nodes})
    for count, azure in layouts:
        setup = ResourceSpec(
            type="SqlSetup",
            name="SqlSetup",
            properties={
                "version": "{{ sql.version }}",
                "instance_name": "{{ sql.instance_name }}",
                "source_path": media,
                "features": list(sql.features),
                "collation": "{{ sql.collation }}",
                "root_path": "{{ paths.root }}",
                "data_path": "{{ paths.data }}",
                "log_path": "{{ paths.log }}",
                "tempdb_path": "{{ paths.tempdb }}",
                "backup_path": "{{ paths.backup }}",
                "admin_accounts": list(sql.admin_accounts),
                "port": sql.port,
            },
            depends_on=["InstallMedia"] + disk_names(cfg, count, azure),
        )
        only_if = {} if cfg.features.skip_drive_config else {"drive_count": count, "azure": azure}
        confs.append(
            ConfigurationSpec(name=f"SqlSetup{count}{'Azure' if azure else ''}", only_if=only_if, resources=[setup])
        )
        if cfg.features.skip_drive_config:
            break

    post = [
        ResourceSpec(
            type="WindowsService",
            name="SqlAgentService",
            properties={"name": agent_service_name(sql.instance_name), "start_mode": "Automatic", "state": "Running"},
            depends_on=["SqlSetup"],
        )
    ]
    previous = "SqlAgentService"
    for i, script in enumerate(sql.post_install_scripts, start=1):
        name = f"PostInstall{i}"
        post.append(
            ResourceSpec(
                type="SqlScript",
                name=name,
                properties={"file": str(script), "instance": INSTANCE, "marker": script.name},
                depends_on=[previous],
            )
        )
        previous = name

    return [ConfigurationSpec(name="InstallMedia", resources=resources)] + confs + [
        ConfigurationSpec(name="SqlPostInstall", resources=post)
    ]


def _availability_group(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    if not cfg.features.in_availability_group:
        return []
    ag = cfg.availability_group
    installed = [] if cfg.features.skip_install else ["SqlAgentService"]

    ag_props = {
        "ag_name": "{{ ag.name }}",
        "instance": INSTANCE,
        "endpoint_port": ag.endpoint_port,
        "availability_mode": ag.availability_mode,
        "failover_mode": ag.failover_mode,
        "seeding_mode": ag.seeding_mode,
        "service_account": cfg.sql.service_account,
    }

    primary: List[ResourceSpec] = [
        ResourceSpec(
            type="ClusterNode",
            name="CreateCluster",
            properties={"cluster_name": CLUSTER_NAME, "create": True, "static_address": cfg.cluster.static_address},
            depends_on=installed,
        ),
    ]
    secondary: List[ResourceSpec] = [
        ResourceSpec(
            type="WaitForCluster",
            name="WaitForCluster",
            properties={"cluster_name": CLUSTER_NAME},
            depends_on=installed + ["primary:CreateCluster"],
        ),
        ResourceSpec(
            type="ClusterNode",
            name="JoinCluster",
            properties={"cluster_name": CLUSTER_NAME, "create": False},
            depends_on=["WaitForCluster"],
        ),
    ]

    primary_ag_deps = ["CreateCluster"]
    secondary_ag_deps = ["JoinCluster", "primary:AGPrimary"]
    if cfg.cluster.settle_seconds > 0:
        reason = "cluster and HADR changes restart services; no readiness signal"
        primary.append(
            ResourceSpec(
                type="Pause",
                name="ClusterSettle",
                properties={"seconds": cfg.cluster.settle_seconds, "reason": reason},
                depends_on=["CreateCluster"],
            )
        )
        secondary.append(
            ResourceSpec(
                type="Pause",
                name="ClusterSettle",
                properties={"seconds": cfg.cluster.settle_seconds, "reason": reason},
                depends_on=["JoinCluster"],
            )
        )
        primary_ag_deps = ["ClusterSettle"]
        secondary_ag_deps = ["ClusterSettle", "primary:AGPrimary"]

    primary.append(
        ResourceSpec(
            type="AvailabilityGroupReplica",
            name="AGPrimary",
            properties={
                **ag_props,
                "role": "primary",
                "listener_name": ag.listener_name,
                "listener_ip": ag.listener_ip,
                "listener_port": "{{ node.listener_port or ag.listener_port }}",
            },
            depends_on=primary_ag_deps,
        )
    )
    secondary.append(
        ResourceSpec(
            type="AvailabilityGroupReplica",
            name="AGReplica",
            properties={**ag_props, "role": "secondary", "primary_instance": PRIMARY_INSTANCE},
            depends_on=secondary_ag_deps,
        )
    )

    return [
        ConfigurationSpec(name="ClusterPrimary", roles=[NodeRole.PRIMARY], resources=primary),
        ConfigurationSpec(name="ClusterSecondary", roles=[NodeRole.SECONDARY], resources=secondary),
    ]


def _marker(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    deps = [] if cfg.features.skip_install else ["SqlAgentService"]
    return [
        ConfigurationSpec(
            name="InstallMarker",
            resources=[
                ResourceSpec(
                    type="InstallMarker",
                    name="InstallMarker",
                    properties={"version": "{{ sql.version }}"},
                    depends_on=deps,
                )
            ],
        )
    ]


def builtin_configurations(cfg: DeploymentConfig) -> List[ConfigurationSpec]:
    """Configurations in authored order; the planner keeps this order where dependencies allow."""
    return (
        _base_os(cfg)
        + _drives(cfg)
        + _firewall(cfg)
        + _sql_server(cfg)
        + _availability_group(cfg)
        + _marker(cfg)
    )
