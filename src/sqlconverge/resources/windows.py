# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/resources/windows.py
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from ..errors import PermanentFailure
from ..transport.powershell import invoke, ps_array, ps_literal, ps_quote, query
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from ..utils.wait import pause
from .base import Resource, _norm
from .models import ResourceDeclaration
from .registry import register

MARKER_KEY = "HKLM:\\SOFTWARE\\sqlconverge"


_SERVICE_PROBE = """
$svc = Get-Service -Name %(name)s -ErrorAction SilentlyContinue
if (-not $svc) { return @{ exists = $false } }
@{ exists = $true; state = [string]$svc.Status; start_mode = [string]$svc.StartType }
"""

_SERVICE_APPLY = """
Set-Service -Name %(name)s -StartupType %(start_mode)s
$svc = Get-Service -Name %(name)s
if (%(state)s -eq 'Running' -and $svc.Status -ne 'Running') { Start-Service -Name %(name)s }
if (%(state)s -eq 'Stopped' -and $svc.Status -ne 'Stopped') { Stop-Service -Name %(name)s -Force }
"""


@register
class WindowsService(Resource):
    type_name = "WindowsService"
    required = ("name",)
    defaults = {"start_mode": "Automatic", "state": "Running"}
    compare_keys = ("state", "start_mode")

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _SERVICE_PROBE % {"name": ps_quote(decl.properties["name"])}) or {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current and current.get("exists")) and super().is_converged(current, desired)

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        if not self.probe(session, decl).get("exists"):
            raise PermanentFailure(f"service {d['name']} is not installed on {decl.node}")
        invoke(
            session,
            _SERVICE_APPLY
            % {
                "name": ps_quote(d["name"]),
                "start_mode": ps_quote(d["start_mode"]),
                "state": ps_quote(d["state"]),
            },
        )


_FIREWALL_PROBE = """
$rule = Get-NetFirewallRule -Name %(name)s -ErrorAction SilentlyContinue
if (-not $rule) { return @{ exists = $false } }
$ports = $rule | Get-NetFirewallPortFilter
@{
    exists = $true
    enabled = ([string]$rule.Enabled -eq 'True')
    direction = [string]$rule.Direction
    action = [string]$rule.Action
    protocol = [string]$ports.Protocol
    local_port = (@($ports.LocalPort) -join ',')
}
"""

_FIREWALL_APPLY = """
$rule = Get-NetFirewallRule -Name %(name)s -ErrorAction SilentlyContinue
if ($rule) {
    Set-NetFirewallRule -Name %(name)s -Enabled %(enabled)s -Direction %(direction)s -Action %(action)s `
        -Protocol %(protocol)s -LocalPort %(ports)s
} else {
    New-NetFirewallRule -Name %(name)s -DisplayName %(display_name)s -Enabled %(enabled)s `
        -Direction %(direction)s -Action %(action)s -Protocol %(protocol)s -LocalPort %(ports)s | Out-Null
}
"""


def _ports(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    return tuple(p.strip() for p in str(value).split(",") if p.strip())


@register
class FirewallRule(Resource):
    type_name = "FirewallRule"
    required = ("name", "local_port")
    defaults = {"direction": "Inbound", "action": "Allow", "protocol": "TCP", "enabled": True}

    def desired(self, decl: ResourceDeclaration) -> Dict[str, Any]:
        d = super().desired(decl)
        d.setdefault("display_name", d["name"])
        d["local_port"] = ",".join(_ports(d["local_port"]))
        return d

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _FIREWALL_PROBE % {"name": ps_quote(decl.properties["name"])}) or {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if not current or not current.get("exists"):
            return False
        return (
            bool(current.get("enabled")) == bool(desired["enabled"])
            and _norm(current.get("direction")) == _norm(desired["direction"])
            and _norm(current.get("action")) == _norm(desired["action"])
            and _norm(current.get("protocol")) == _norm(desired["protocol"])
            and set(_ports(current.get("local_port") or "")) == set(_ports(desired["local_port"]))
        )

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        invoke(
            session,
            _FIREWALL_APPLY
            % {
                "name": ps_quote(d["name"]),
                "display_name": ps_quote(d["display_name"]),
                "enabled": ps_quote("True" if d["enabled"] else "False"),
                "direction": ps_quote(d["direction"]),
                "action": ps_quote(d["action"]),
                "protocol": ps_quote(d["protocol"]),
                "ports": ps_array(_ports(d["local_port"])),
            },
        )


_REGISTRY_PROBE = """
if (-not (Test-Path -LiteralPath %(key)s)) { return @{ exists = $false } }
$item = Get-ItemProperty -LiteralPath %(key)s -Name %(value_name)s -ErrorAction SilentlyContinue
if ($null -eq $item) { return @{ exists = $false } }
@{ exists = $true; value_data = [string]$item.%(prop)s }
"""

_REGISTRY_APPLY = """
if (-not (Test-Path -LiteralPath %(key)s)) { New-Item -Path %(key)s -Force | Out-Null }
New-ItemProperty -LiteralPath %(key)s -Name %(value_name)s -Value %(value_data)s `
    -PropertyType %(value_type)s -Force | Out-Null
"""


@register
class RegistryValue(Resource):
    type_name = "RegistryValue"
    required = ("key", "value_name")
    defaults = {"value_type": "String", "value_data": ""}

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        p = decl.properties
        return (self.type_name, decl.node, _norm(p["key"]), _norm(p["value_name"]))

    def _params(self, d: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "key": ps_quote(d["key"]),
            "value_name": ps_quote(d["value_name"]),
            # property access on the returned object, quoted for names with spaces
            "prop": ps_quote(d["value_name"]),
            "value_data": ps_literal(d["value_data"]),
            "value_type": ps_quote(d["value_type"]),
        }

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _REGISTRY_PROBE % self._params(self.desired(decl))) or {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if not current or not current.get("exists"):
            return False
        return str(current.get("value_data")) == str(desired["value_data"])

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        invoke(session, _REGISTRY_APPLY % self._params(self.desired(decl)))


_POWER_PROBE = """
$plan = Get-CimInstance -Namespace root\\cimv2\\power -ClassName Win32_PowerPlan -Filter 'IsActive = True'
@{ name = [string]$plan.ElementName }
"""

_POWER_APPLY = """
$plan = Get-CimInstance -Namespace root\\cimv2\\power -ClassName Win32_PowerPlan |
    Where-Object { $_.ElementName -eq %(name)s } | Select-Object -First 1
if (-not $plan) { throw "power plan not found: " + %(name)s }
$guid = $plan.InstanceID.Split('{')[1].TrimEnd('}')
powercfg.exe /setactive $guid
if ($LASTEXITCODE -ne 0) { throw "powercfg failed with exit code $LASTEXITCODE" }
"""


@register
class PowerPlan(Resource):
    type_name = "PowerPlan"
    defaults = {"name": "High performance"}
    compare_keys = ("name",)

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _POWER_PROBE) or {}

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        invoke(session, _POWER_APPLY % {"name": ps_quote(self.desired(decl)["name"])})


@register
class TimeZone(Resource):
    type_name = "TimeZone"
    required = ("id",)
    compare_keys = ("id",)

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, "@{ id = (Get-TimeZone).Id }") or {}

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        invoke(session, f"Set-TimeZone -Id {ps_quote(decl.properties['id'])}")


_MARKER_PROBE = """
$item = Get-ItemProperty -LiteralPath %(key)s -ErrorAction SilentlyContinue
if (-not $item) { return @{ version = $null } }
@{ version = [string]$item.Version; install_date = [string]$item.InstallDate }
"""

_MARKER_APPLY = """
if (-not (Test-Path -LiteralPath %(key)s)) { New-Item -Path %(key)s -Force | Out-Null }
New-ItemProperty -LiteralPath %(key)s -Name 'Version' -Value %(version)s -PropertyType String -Force | Out-Null
New-ItemProperty -LiteralPath %(key)s -Name 'InstallDate' -Value (Get-Date -Format o) -PropertyType String -Force | Out-Null
"""


@register
class InstallMarker(Resource):
    """
    Audit marker recording the deployed version and when it was installed.
    Convergence compares the version only; the date is written once per change.
    """

    type_name = "InstallMarker"
    required = ("version",)
    defaults = {"key": MARKER_KEY}
    compare_keys = ("version",)

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _MARKER_PROBE % {"key": ps_quote(self.desired(decl)["key"])}) or {}

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        invoke(session, _MARKER_APPLY % {"key": ps_quote(d["key"]), "version": ps_quote(d["version"])})


@register
class Pause(Resource):
    """
    Fixed delay with no readiness signal behind it, e.g. waiting out a
    reboot that drops the management session. Prefer a polling resource
    (WaitForCluster) whenever one exists. Skipped when nothing it depends
    on changed during the run.
    """

    type_name = "Pause"
    required = ("seconds",)
    defaults = {"reason": "no readiness signal available"}
    verify_after_apply = False
    skip_when_dependencies_unchanged = True

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return {}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return False

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        d = self.desired(decl)
        pause(float(d["seconds"]), reason=f"{decl.node} {decl.label}: {d['reason']}", sleep=ctx.sleep)
