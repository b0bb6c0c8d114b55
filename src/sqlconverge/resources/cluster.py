# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/resources/cluster.py
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from ..errors import TransientFailure
from ..transport.powershell import invoke, ps_quote, query
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from .base import Resource
from .models import ResourceDeclaration
from .registry import register


_CLUSTER_PROBE = """
$cluster = Get-Cluster -Name %(cluster)s -ErrorAction SilentlyContinue
if (-not $cluster) { return @{ exists = $false; member = $false } }
$me = Get-ClusterNode -Cluster %(cluster)s -Name $env:COMPUTERNAME -ErrorAction SilentlyContinue
@{
    exists = $true
    member = [bool]$me
    node_state = if ($me) { [string]$me.State } else { $null }
}
"""

_CLUSTER_CREATE = """
New-Cluster -Name %(cluster)s -Node $env:COMPUTERNAME %(address)s -NoStorage -Force | Out-Null
"""

_CLUSTER_JOIN = """
Add-ClusterNode -Cluster %(cluster)s -Name $env:COMPUTERNAME -NoStorage | Out-Null
"""


def _probe_cluster(session: Session, name: str) -> Dict[str, Any]:
    return query(session, _CLUSTER_PROBE % {"cluster": ps_quote(name)}) or {"exists": False, "member": False}


@register
class ClusterNode(Resource):
    """
    Failover cluster membership for this node.

    create=True forms the cluster (Primary). Otherwise the node joins an
    existing cluster and a missing cluster is a transient condition,
    retried under the cluster_wait policy.
    """

    type_name = "ClusterNode"
    required = ("cluster_name",)
    defaults = {"create": False, "static_address": None}
    default_retry = "cluster_wait"

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        return (self.type_name, decl.node, decl.properties["cluster_name"].lower())

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return _probe_cluster(session, decl.properties["cluster_name"])

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current and current.get("exists") and current.get("member"))

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        current = self.probe(session, decl)
        cluster = ps_quote(d["cluster_name"])

        if not current.get("exists"):
            if not d["create"]:
                raise TransientFailure(f"cluster {d['cluster_name']} does not exist yet")
            address = f"-StaticAddress {ps_quote(d['static_address'])}" if d["static_address"] else ""
            invoke(session, _CLUSTER_CREATE % {"cluster": cluster, "address": address})
            return

        if not current.get("member"):
            invoke(session, _CLUSTER_JOIN % {"cluster": cluster})


@register
class WaitForCluster(Resource):
    """
    Polling barrier: converged once the named cluster exists and answers.
    Makes no changes.
    """

    type_name = "WaitForCluster"
    required = ("cluster_name",)
    default_retry = "cluster_wait"

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return _probe_cluster(session, decl.properties["cluster_name"])

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current and current.get("exists"))

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        if not self.probe(session, decl).get("exists"):
            raise TransientFailure(f"cluster {decl.properties['cluster_name']} is not reachable yet")
