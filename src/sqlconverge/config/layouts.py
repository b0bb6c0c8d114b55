# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/config/layouts.py
"""
Drive layouts for SQL Server hosts.

Pure lookup data keyed by (drive_count, azure). On Azure the temporary
disk takes D:, so every letter moves up by one.
"""
from __future__ import annotations

from typing import Dict, List, NamedTuple, Tuple

ROLES = ("system", "data", "log", "tempdb", "backup")


class DriveAssignment(NamedTuple):
    disk_id: int
    letter: str
    label: str
    roles: Tuple[str, ...]


DRIVE_LAYOUTS: Dict[Tuple[int, bool], List[DriveAssignment]] = {
    (1, False): [
        DriveAssignment(1, "E", "SQL", ROLES),
    ],
    (1, True): [
        DriveAssignment(1, "F", "SQL", ROLES),
    ],
    (5, False): [
        DriveAssignment(1, "E", "SQLSystem", ("system",)),
        DriveAssignment(2, "F", "SQLData", ("data",)),
        DriveAssignment(3, "G", "SQLLogs", ("log",)),
        DriveAssignment(4, "H", "SQLTempDB", ("tempdb",)),
        DriveAssignment(5, "I", "SQLBackup", ("backup",)),
    ],
    (5, True): [
        DriveAssignment(1, "F", "SQLSystem", ("system",)),
        DriveAssignment(2, "G", "SQLData", ("data",)),
        DriveAssignment(3, "H", "SQLLogs", ("log",)),
        DriveAssignment(4, "I", "SQLTempDB", ("tempdb",)),
        DriveAssignment(5, "J", "SQLBackup", ("backup",)),
    ],
}

SUPPORTED_DRIVE_COUNTS = sorted({count for count, _ in DRIVE_LAYOUTS})

# Letter used when the system drive hosts everything (skip_drive_config).
SYSTEM_DRIVE = "C"


def drive_layout(drive_count: int, azure: bool = False) -> List[DriveAssignment]:
    try:
        return DRIVE_LAYOUTS[(drive_count, bool(azure))]
    except KeyError:
        raise ValueError(
            f"Unsupported drive count {drive_count}; expected one of {SUPPORTED_DRIVE_COUNTS}"
        ) from None


def role_letters(drive_count: int, azure: bool = False) -> Dict[str, str]:
    """Map each SQL role (data, log, ...) to its drive letter."""
    letters: Dict[str, str] = {}
    for d in drive_layout(drive_count, azure):
        for role in d.roles:
            letters[role] = d.letter
    return letters


def sql_paths(letters: Dict[str, str], instance_name: str) -> Dict[str, str]:
    """Directory layout handed to the SQL Server installer."""
    return {
        "root": f"{letters['system']}:\\Program Files\\Microsoft SQL Server",
        "data": f"{letters['data']}:\\MSSQL\\{instance_name}\\Data",
        "log": f"{letters['log']}:\\MSSQL\\{instance_name}\\Log",
        "tempdb": f"{letters['tempdb']}:\\MSSQL\\{instance_name}\\TempDB",
        "backup": f"{letters['backup']}:\\MSSQL\\{instance_name}\\Backup",
    }
