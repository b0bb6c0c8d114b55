# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/config/models.py

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NodeRole(str, Enum):
    PRIMARY = "Primary"
    SECONDARY = "Secondary"


class TargetNode(BaseModel):
    """A machine the run converges. Immutable for the lifetime of a run."""

    model_config = ConfigDict(frozen=True)

    name: str                             # computer name, also the default address
    address: Optional[str] = None         # IP or DNS to connect to
    role: Optional[NodeRole] = None       # first node is Primary when unset
    port: int = 22
    drive_count: int = 5                  # 1 or 5 data disks
    azure: bool = False                   # temp disk takes D:, shift letters by one
    has_optical_drive: bool = False
    cluster_name: Optional[str] = None
    listener_port: Optional[int] = None

    @property
    def host(self) -> str:
        return self.address or self.name

    @property
    def is_primary(self) -> bool:
        return self.role == NodeRole.PRIMARY


class Credential(BaseModel):
    username: str
    password: Optional[str] = None
    key_path: Optional[Path] = None


class RetryPolicy(BaseModel):
    attempts: int = Field(1, ge=1)
    interval_seconds: float = Field(0.0, ge=0)


DEFAULT_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "default": RetryPolicy(attempts=1, interval_seconds=0),
    # disks can take minutes to attach
    "disk_wait": RetryPolicy(attempts=60, interval_seconds=60),
    # cluster formation on the Primary
    "cluster_wait": RetryPolicy(attempts=60, interval_seconds=10),
    "install": RetryPolicy(attempts=2, interval_seconds=30),
}


class ResourceSpec(BaseModel):
    type: str                                               # registered resource type, e.g. Disk
    name: str                                               # unique per node
    properties: Dict[str, Any] = Field(default_factory=dict)
    # "Name" (same node), "primary:Name" or "<node>:Name"
    depends_on: List[str] = Field(default_factory=list)
    retry: Optional[Union[str, RetryPolicy]] = None         # policy name or inline policy


class ConfigurationSpec(BaseModel):
    name: str
    roles: List[NodeRole] = Field(default_factory=list)     # empty = every node
    only_if: Dict[str, Any] = Field(default_factory=dict)   # node attribute / feature toggle matches
    resources: List[ResourceSpec] = Field(default_factory=list)


class FeatureToggles(BaseModel):
    skip_drive_config: bool = False
    skip_install: bool = False
    in_availability_group: bool = False
    configure_firewall: bool = True
    configure_power_plan: bool = True
    time_zone: Optional[str] = None


class SqlSettings(BaseModel):
    version: str = "2019"
    instance_name: str = "MSSQLSERVER"
    features: List[str] = Field(default_factory=lambda: ["Engine"])
    collation: str = "SQL_Latin1_General_CP1_CI_AS"
    port: int = 1433
    media_path: str = "C:\\SQLInstall"
    service_account: Optional[str] = None
    agent_service_account: Optional[str] = None
    admin_accounts: List[str] = Field(default_factory=list)
    post_install_scripts: List[Path] = Field(default_factory=list)


class ClusterSettings(BaseModel):
    name: Optional[str] = None
    static_address: Optional[str] = None
    # fixed pause after HADR is enabled; the service restart drops visibility
    settle_seconds: int = 300


class AvailabilityGroupSettings(BaseModel):
    name: str = "AG1"
    listener_name: Optional[str] = None
    listener_ip: Optional[str] = None
    listener_port: Optional[int] = None
    endpoint_port: int = 5022
    availability_mode: Literal["SynchronousCommit", "AsynchronousCommit"] = "SynchronousCommit"
    failover_mode: Literal["Automatic", "Manual"] = "Automatic"
    seeding_mode: Literal["Automatic", "Manual"] = "Automatic"


class RunOptions(BaseModel):
    fail_fast: bool = False              # abort a node on its first failure
    primary_first: bool = False          # Primary group completes before Secondaries start
    dry_run: bool = False
    keep_artifacts: bool = False
    artifacts_dir: Optional[Path] = None
    barrier_timeout_seconds: Optional[float] = None
    max_workers: Optional[int] = None


class DeploymentConfig(BaseModel):
    name: str = "sqlconverge"
    environment: Literal["dev", "staging", "prod"] = "dev"
    nodes: List[TargetNode] = Field(default_factory=list)
    credential: Optional[Credential] = None
    install_source: Optional[str] = None
    features: FeatureToggles = FeatureToggles()
    sql: SqlSettings = SqlSettings()
    cluster: ClusterSettings = ClusterSettings()
    availability_group: AvailabilityGroupSettings = AvailabilityGroupSettings()
    retry_policies: Dict[str, RetryPolicy] = Field(default_factory=dict)
    use_builtin: bool = True             # include the built-in SQL Server configurations
    configurations: List[ConfigurationSpec] = Field(default_factory=list)
    options: RunOptions = RunOptions()

    @model_validator(mode="after")
    def _assign_roles(self) -> "DeploymentConfig":
        # The first machine in the operator's list is Primary unless roles are explicit.
        if not self.nodes:
            return self
        explicit = any(n.role is not None for n in self.nodes)
        assigned = []
        for i, n in enumerate(self.nodes):
            if n.role is None:
                role = NodeRole.PRIMARY if (i == 0 and not explicit) else NodeRole.SECONDARY
                n = n.model_copy(update={"role": role})
            assigned.append(n)
        self.nodes = assigned
        return self

    def by_name(self) -> Dict[str, TargetNode]:
        return {n.name: n for n in self.nodes}

    def primary(self) -> Optional[TargetNode]:
        return next((n for n in self.nodes if n.role == NodeRole.PRIMARY), None)

    def secondaries(self) -> List[TargetNode]:
        return [n for n in self.nodes if n.role == NodeRole.SECONDARY]

    def policy(self, name: str) -> RetryPolicy:
        """
        Resolve a named retry policy, config overrides first.
        Raises KeyError for an unknown name.
        """
        if name in self.retry_policies:
            return self.retry_policies[name]
        return DEFAULT_RETRY_POLICIES[name]

    def policy_names(self) -> List[str]:
        return sorted(set(DEFAULT_RETRY_POLICIES) | set(self.retry_policies))
