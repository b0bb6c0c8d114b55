# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/resources/sqlserver.py
"""
SQL Server resources. Installation, queries and Availability Group wiring
are delegated to the dbatools module on the target node.
"""
from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import PermanentFailure, TransientFailure
from ..transport.powershell import invoke, ps_array, ps_literal, ps_quote, ps_text, query
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from .base import Resource
from .models import ResourceDeclaration
from .registry import register
from .windows import MARKER_KEY

log = logging.getLogger("sqlconverge")


def service_name(instance_name: str) -> str:
    if instance_name.upper() == "MSSQLSERVER":
        return "MSSQLSERVER"
    return f"MSSQL${instance_name}"


def agent_service_name(instance_name: str) -> str:
    if instance_name.upper() == "MSSQLSERVER":
        return "SQLSERVERAGENT"
    return f"SQLAgent${instance_name}"


_SETUP_PROBE = r"""
$svc = Get-Service -Name %(service)s -ErrorAction SilentlyContinue
$version = $null
$names = Get-ItemProperty -LiteralPath 'HKLM:\SOFTWARE\Microsoft\Microsoft SQL Server\Instance Names\SQL' -ErrorAction SilentlyContinue
if ($names) {
    $id = $names.(%(instance)s)
    if ($id) {
        $setup = Get-ItemProperty -LiteralPath "HKLM:\SOFTWARE\Microsoft\Microsoft SQL Server\$id\Setup" -ErrorAction SilentlyContinue
        if ($setup) { $version = [string]$setup.Version }
    }
}
@{ installed = [bool]$svc; version = $version }
"""

_SETUP_APPLY = r"""
Import-Module dbatools
$params = @{
%(params)s
}
$result = Install-DbaInstance @params
if (-not $result.Successful) { throw ("SQL Server setup failed: " + ($result.Notes -join '; ')) }
if ($result.Restarted -eq $false -and $result.RestartNeeded) { Write-Warning 'SQL Server setup requires a restart' }
"""

# property -> Install-DbaInstance parameter
_SETUP_PARAMS = (
    ("version", "Version"),
    ("instance_name", "InstanceName"),
    ("source_path", "Path"),
    ("features", "Feature"),
    ("collation", "SqlCollation"),
    ("root_path", "InstancePath"),
    ("data_path", "DataPath"),
    ("log_path", "LogPath"),
    ("tempdb_path", "TempPath"),
    ("backup_path", "BackupPath"),
    ("admin_accounts", "AdminAccount"),
    ("port", "Port"),
    ("restart", "Restart"),
)


@register
class SqlSetup(Resource):
    """Install a SQL Server instance with Install-DbaInstance. Skipped when the instance service exists."""

    type_name = "SqlSetup"
    required = ("version", "source_path")
    defaults = {"instance_name": "MSSQLSERVER", "features": ["Engine"], "restart": False}
    default_retry = "install"

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        return (self.type_name, decl.node, self.desired(decl)["instance_name"].upper())

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        instance = self.desired(decl)["instance_name"]
        return query(
            session,
            _SETUP_PROBE % {"service": ps_quote(service_name(instance)), "instance": ps_quote(instance)},
        ) or {"installed": False}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current and current.get("installed"))

    def render_params(self, decl: ResourceDeclaration) -> str:
        d = self.desired(decl)
        lines = ["    SqlInstance = $env:COMPUTERNAME"]
        for key, param in _SETUP_PARAMS:
            value = d.get(key)
            if value in (None, "", []):
                continue
            if key in ("features", "admin_accounts"):
                value = list(value) if isinstance(value, (list, tuple)) else [value]
                lines.append(f"    {param} = {ps_array(value)}")
            else:
                lines.append(f"    {param} = {ps_literal(value)}")
        lines.append("    AuthenticationMode = 'Windows'")
        lines.append("    Confirm = $false")
        return "\n".join(lines)

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        log.info("installing SQL Server %s on %s", decl.properties["version"], decl.node)
        invoke(session, _SETUP_APPLY % {"params": self.render_params(decl)})


_SCRIPT_PROBE = """
$item = Get-ItemProperty -LiteralPath %(key)s -Name %(name)s -ErrorAction SilentlyContinue
@{ checksum = if ($item) { [string]$item.%(name)s } else { $null } }
"""

_SCRIPT_APPLY = """
Import-Module dbatools
$query = %(query)s
Invoke-DbaQuery -SqlInstance %(instance)s -Database %(database)s -Query $query -QueryTimeout %(timeout)d -EnableException | Out-Null
if (-not (Test-Path -LiteralPath %(key)s)) { New-Item -Path %(key)s -Force | Out-Null }
New-ItemProperty -LiteralPath %(key)s -Name %(name)s -Value %(checksum)s -PropertyType String -Force | Out-Null
"""


@register
class SqlScript(Resource):
    """
    Run a T-SQL script once (server audit, maintenance solution setup,
    permission hardening). A marker value holding the script's SHA-256
    makes re-runs no-ops until the script text changes.
    """

    type_name = "SqlScript"
    defaults = {
        "instance": "localhost",
        "database": "master",
        "timeout": 600,
        "key": MARKER_KEY + "\\Scripts",
    }

    def validate(self, decl: ResourceDeclaration) -> List[str]:
        p = decl.properties
        if not p.get("script") and not p.get("file"):
            return [f"{decl.label} on {decl.node}: needs 'script' or 'file'"]
        return []

    def desired(self, decl: ResourceDeclaration) -> Dict[str, Any]:
        d = super().desired(decl)
        if not d.get("script"):
            try:
                d["script"] = Path(d["file"]).read_text(encoding="utf-8-sig")
            except OSError as exc:
                raise PermanentFailure(f"cannot read script {d['file']}: {exc}") from exc
        d["checksum"] = hashlib.sha256(d["script"].encode("utf-8")).hexdigest()
        d.setdefault("marker", decl.name)
        return d

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        d = self.desired(decl)
        return query(session, _SCRIPT_PROBE % {"key": ps_quote(d["key"]), "name": ps_quote(d["marker"])}) or {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current) and current.get("checksum") == desired["checksum"]

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        invoke(
            session,
            _SCRIPT_APPLY
            % {
                "query": ps_text(d["script"]),
                "instance": ps_quote(d["instance"]),
                "database": ps_quote(d["database"]),
                "timeout": int(d["timeout"]),
                "key": ps_quote(d["key"]),
                "name": ps_quote(d["marker"]),
                "checksum": ps_quote(d["checksum"]),
            },
        )


_AG_PROBE = """
Import-Module dbatools
$inst = %(instance)s
$hadr = Get-DbaAgHadr -SqlInstance $inst -EnableException
$endpoint = Get-DbaEndpoint -SqlInstance $inst -Type DatabaseMirroring -EnableException | Select-Object -First 1
$ag = Get-DbaAvailabilityGroup -SqlInstance $inst -AvailabilityGroup %(ag)s -EnableException
@{
    hadr_enabled = [bool]$hadr.IsHadrEnabled
    endpoint = [bool]$endpoint
    ag_exists = [bool]$ag
    local_role = if ($ag) { [string]$ag.LocalReplicaRole } else { $null }
}
"""

_AG_PRIMARY_READY = """
Import-Module dbatools
$ag = Get-DbaAvailabilityGroup -SqlInstance %(primary)s -AvailabilityGroup %(ag)s -EnableException
@{ ready = [bool]$ag }
"""

_AG_COMMON = """
Import-Module dbatools
$inst = %(instance)s
if (-not (Get-DbaEndpoint -SqlInstance $inst -Type DatabaseMirroring)) {
    New-DbaEndpoint -SqlInstance $inst -Name 'hadr_endpoint' -Type DatabaseMirroring -Port %(port)d -EnableException |
        Start-DbaEndpoint | Out-Null
}
%(grant)s
if (-not (Get-DbaAgHadr -SqlInstance $inst).IsHadrEnabled) {
    Enable-DbaAgHadr -SqlInstance $inst -Force -Confirm:$false -EnableException | Out-Null
}
"""

_AG_GRANT = """
if (-not (Get-DbaLogin -SqlInstance $inst -Login %(account)s)) {
    New-DbaLogin -SqlInstance $inst -Login %(account)s -EnableException | Out-Null
}
Grant-DbaAgPermission -SqlInstance $inst -Login %(account)s -Type Endpoint -Permission Connect -Confirm:$false | Out-Null
"""

_AG_CREATE = """
if (-not (Get-DbaAvailabilityGroup -SqlInstance $inst -AvailabilityGroup %(ag)s)) {
    New-DbaAvailabilityGroup -Primary $inst -Name %(ag)s -ClusterType Wsfc -AvailabilityMode %(mode)s `
        -FailoverMode %(failover)s -SeedingMode %(seeding)s -Confirm:$false -EnableException | Out-Null
}
"""

_AG_LISTENER = """
if (-not (Get-DbaAgListener -SqlInstance $inst -AvailabilityGroup %(ag)s)) {
    Add-DbaAgListener -SqlInstance $inst -AvailabilityGroup %(ag)s -Name %(listener)s -IPAddress %(ip)s `
        -Port %(port)d -Confirm:$false -EnableException | Out-Null
}
"""

_AG_JOIN = """
$ag = Get-DbaAvailabilityGroup -SqlInstance %(primary)s -AvailabilityGroup %(ag)s -EnableException
$replica = Get-DbaAgReplica -SqlInstance %(primary)s -AvailabilityGroup %(ag)s | Where-Object { $_.Name -eq $inst }
if (-not $replica) {
    $ag | Add-DbaAgReplica -SqlInstance $inst -AvailabilityMode %(mode)s -FailoverMode %(failover)s `
        -SeedingMode %(seeding)s -Confirm:$false -EnableException | Out-Null
}
Join-DbaAvailabilityGroup -SqlInstance $inst -AvailabilityGroup %(ag)s -Confirm:$false -EnableException | Out-Null
if (%(seeding)s -eq 'Automatic') {
    Grant-DbaAgPermission -SqlInstance $inst -Type AvailabilityGroup -AvailabilityGroup %(ag)s `
        -Permission CreateAnyDatabase -Confirm:$false | Out-Null
}
"""


@register
class AvailabilityGroupReplica(Resource):
    """
    Availability Group membership for one SQL instance: HADR endpoint,
    endpoint CONNECT permission for the service account, HADR enabled,
    then either the AG itself (role=primary) or a joined replica.
    A secondary retries until the AG exists on the primary.
    """

    type_name = "AvailabilityGroupReplica"
    required = ("ag_name", "instance")
    defaults = {
        "role": "secondary",
        "endpoint_port": 5022,
        "availability_mode": "SynchronousCommit",
        "failover_mode": "Automatic",
        "seeding_mode": "Automatic",
        "service_account": None,
        "listener_name": None,
        "listener_ip": None,
        "listener_port": None,
    }
    default_retry = "cluster_wait"

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        d = self.desired(decl)
        return (self.type_name, d["ag_name"].lower(), d["instance"].lower())

    def validate(self, decl: ResourceDeclaration) -> List[str]:
        problems = super().validate(decl)
        d = self.desired(decl)
        if d["role"] not in ("primary", "secondary"):
            problems.append(f"{decl.label} on {decl.node}: role must be 'primary' or 'secondary'")
        if d["role"] == "secondary" and not d.get("primary_instance"):
            problems.append(f"{decl.label} on {decl.node}: secondary replica needs 'primary_instance'")
        if d["listener_name"] and not d["listener_port"]:
            problems.append(f"{decl.label} on {decl.node}: listener '{d['listener_name']}' needs a port")
        return problems

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        d = self.desired(decl)
        return query(session, _AG_PROBE % {"instance": ps_quote(d["instance"]), "ag": ps_quote(d["ag_name"])}) or {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if not current:
            return False
        return (
            bool(current.get("hadr_enabled"))
            and bool(current.get("endpoint"))
            and bool(current.get("ag_exists"))
            and current.get("local_role") in ("Primary", "Secondary")
        )

    def render_script(self, d: Dict[str, Any]) -> str:
        ag = ps_quote(d["ag_name"])
        grant = ""
        if d["service_account"]:
            grant = _AG_GRANT % {"account": ps_quote(d["service_account"])}
        parts = [_AG_COMMON % {"instance": ps_quote(d["instance"]), "port": int(d["endpoint_port"]), "grant": grant}]
        modes = {
            "ag": ag,
            "mode": ps_quote(d["availability_mode"]),
            "failover": ps_quote(d["failover_mode"]),
            "seeding": ps_quote(d["seeding_mode"]),
        }
        if d["role"] == "primary":
            parts.append(_AG_CREATE % modes)
            if d["listener_name"]:
                parts.append(
                    _AG_LISTENER
                    % {
                        "ag": ag,
                        "listener": ps_quote(d["listener_name"]),
                        "ip": ps_literal(d["listener_ip"]),
                        "port": int(d["listener_port"]),
                    }
                )
        else:
            parts.append(_AG_JOIN % {**modes, "primary": ps_quote(d["primary_instance"])})
        return "\n".join(parts)

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        if d["role"] == "secondary":
            ready = query(
                session,
                _AG_PRIMARY_READY % {"primary": ps_quote(d["primary_instance"]), "ag": ps_quote(d["ag_name"])},
            ) or {}
            if not ready.get("ready"):
                raise TransientFailure(f"availability group {d['ag_name']} not found on {d['primary_instance']} yet")
        invoke(session, self.render_script(d))
