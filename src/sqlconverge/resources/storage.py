# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/resources/storage.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from ..errors import TransientFailure, PermanentFailure
from ..transport.powershell import invoke, ps_quote, query
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from .base import Resource, _norm
from .models import ResourceDeclaration
from .registry import register

log = logging.getLogger("sqlconverge")


_DISK_PROBE = """
$disk = Get-Disk -Number %(disk_id)d -ErrorAction SilentlyContinue
if (-not $disk) { return @{ visible = $false } }
$part = Get-Partition -DiskNumber %(disk_id)d -ErrorAction SilentlyContinue |
    Where-Object { [string]$_.DriveLetter -eq %(letter)s } | Select-Object -First 1
$vol = $null
if ($part) { $vol = $part | Get-Volume }
@{
    visible = $true
    online = -not $disk.IsOffline
    partition_style = [string]$disk.PartitionStyle
    drive_letter = if ($part) { [string]$part.DriveLetter } else { $null }
    label = if ($vol) { $vol.FileSystemLabel } else { $null }
    file_system = if ($vol) { $vol.FileSystem } else { $null }
    allocation_unit = if ($vol) { $vol.AllocationUnitSize } else { $null }
}
"""

_DISK_APPLY = """
$disk = Get-Disk -Number %(disk_id)d
if ($disk.IsOffline) { Set-Disk -Number %(disk_id)d -IsOffline $false }
if ($disk.IsReadOnly) { Set-Disk -Number %(disk_id)d -IsReadOnly $false }
if ([string]$disk.PartitionStyle -eq 'RAW') { Initialize-Disk -Number %(disk_id)d -PartitionStyle GPT }
$part = Get-Partition -DiskNumber %(disk_id)d -ErrorAction SilentlyContinue |
    Where-Object { [string]$_.DriveLetter -eq %(letter)s } | Select-Object -First 1
if (-not $part) {
    $free = Get-Partition -DiskNumber %(disk_id)d -ErrorAction SilentlyContinue |
        Where-Object { $_.Type -eq 'Basic' -and -not $_.DriveLetter } | Select-Object -First 1
    if ($free) {
        $free | Set-Partition -NewDriveLetter %(letter)s
    } else {
        New-Partition -DiskNumber %(disk_id)d -UseMaximumSize -DriveLetter %(letter)s | Out-Null
    }
}
$vol = Get-Volume -DriveLetter %(letter)s
if (-not $vol.FileSystem) {
    Format-Volume -DriveLetter %(letter)s -FileSystem %(file_system)s -AllocationUnitSize %(allocation_unit)d `
        -NewFileSystemLabel %(label)s -Confirm:$false | Out-Null
} elseif ($vol.FileSystemLabel -ne %(label)s) {
    Set-Volume -DriveLetter %(letter)s -NewFileSystemLabel %(label)s
}
"""


@register
class Disk(Resource):
    """
    Bring a data disk online, partition it and format it once.

    Waits for the disk to appear (cloud disks attach late). An already
    formatted volume is never reformatted; only its label is corrected.
    """

    type_name = "Disk"
    required = ("disk_id", "drive_letter")
    defaults = {"allocation_unit": 65536, "file_system": "NTFS", "label": ""}
    default_retry = "disk_wait"

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        return (self.type_name, decl.node, int(decl.properties["disk_id"]))

    def _params(self, decl: ResourceDeclaration) -> Dict[str, Any]:
        d = self.desired(decl)
        return {
            "disk_id": int(d["disk_id"]),
            "letter": ps_quote(str(d["drive_letter"]).rstrip(":").upper()),
            "label": ps_quote(d["label"]),
            "file_system": ps_quote(d["file_system"]),
            "allocation_unit": int(d["allocation_unit"]),
        }

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _DISK_PROBE % self._params(decl)) or {"visible": False}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if not current or not current.get("visible") or not current.get("online"):
            return False
        unit = current.get("allocation_unit")
        if unit and int(unit) != int(desired["allocation_unit"]):
            # never reformat a volume that may hold data
            log.warning(
                "volume %s: allocation unit is %s, expected %s; not reformatting",
                desired["drive_letter"],
                unit,
                desired["allocation_unit"],
            )
        return (
            _norm(current.get("drive_letter")) == _norm(str(desired["drive_letter"]).rstrip(":"))
            and _norm(current.get("label") or "") == _norm(desired.get("label") or "")
            and _norm(current.get("file_system")) == _norm(desired["file_system"])
        )

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        current = self.probe(session, decl)
        if not current.get("visible"):
            raise TransientFailure(f"disk {decl.properties['disk_id']} is not visible on {decl.node} yet")
        invoke(session, _DISK_APPLY % self._params(decl))


_COPY_PROBE = """
$exists = Test-Path -LiteralPath %(dst)s
$sourceOk = Test-Path -LiteralPath %(src)s
$listing = $null
if ($exists -and $sourceOk) {
    $lines = @(robocopy %(src)s %(dst)s /E /L /XX /NJH /NJS /NDL /NC /NS /NP /R:0 /W:0)
    $code = $LASTEXITCODE
    if ($code -ge 8) { throw "robocopy listing failed with exit code $code" }
    $listing = @($lines | Where-Object { $_.Trim() } | ForEach-Object { $_.Trim() })
}
@{ exists = $exists; source_available = $sourceOk; listing = $listing }
"""

_COPY_APPLY = """
robocopy %(src)s %(dst)s /E /R:3 /W:10 /NP /NFL /NDL | Out-Null
$code = $LASTEXITCODE
if ($code -ge 8) { throw "robocopy failed with exit code $code" }
exit 0
"""


@register
class DirectoryCopy(Resource):
    """Mirror a directory tree (install media), copying files that differ."""

    type_name = "DirectoryCopy"
    required = ("source", "destination")

    def _params(self, decl: ResourceDeclaration) -> Dict[str, str]:
        return {
            "src": ps_quote(decl.properties["source"]),
            "dst": ps_quote(decl.properties["destination"]),
        }

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        current = query(session, _COPY_PROBE % self._params(decl)) or {}
        listing = current.pop("listing", None)
        if listing is None:
            current["pending"] = None
        else:
            if isinstance(listing, str):
                listing = [listing]
            # files only present in the destination are not work to do
            current["pending"] = sum(1 for line in listing if not line.startswith("*EXTRA"))
        return current

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        return bool(current) and bool(current.get("exists")) and current.get("pending") == 0

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        current = self.probe(session, decl)
        if not current.get("source_available"):
            raise TransientFailure(f"source {decl.properties['source']} is not reachable from {decl.node}")
        invoke(session, _COPY_APPLY % self._params(decl))


_OPTICAL_PROBE = """
$cd = Get-CimInstance -ClassName Win32_Volume -Filter 'DriveType = 5' | Select-Object -First 1
if (-not $cd) { return @{ present = $false } }
@{ present = $true; drive_letter = ([string]$cd.DriveLetter).TrimEnd(':') }
"""

_OPTICAL_APPLY = """
$cd = Get-CimInstance -ClassName Win32_Volume -Filter 'DriveType = 5' | Select-Object -First 1
if ($cd) { $cd | Set-CimInstance -Property @{ DriveLetter = %(letter)s } }
"""


@register
class OpticalDiskDriveLetter(Resource):
    """Move the optical drive out of the way of the data disk letters."""

    type_name = "OpticalDiskDriveLetter"
    defaults = {"drive_letter": "Z"}

    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        return query(session, _OPTICAL_PROBE) or {"present": False}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if current is None:
            return False
        if not current.get("present"):
            return True
        return _norm(current.get("drive_letter")) == _norm(str(desired["drive_letter"]).rstrip(":"))

    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        letter = str(self.desired(decl)["drive_letter"]).rstrip(":").upper()
        if len(letter) != 1:
            raise PermanentFailure(f"invalid drive letter {letter!r}")
        invoke(session, _OPTICAL_APPLY % {"letter": ps_quote(letter + ":")})
