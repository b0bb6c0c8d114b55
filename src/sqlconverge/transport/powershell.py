# src/sqlconverge/transport/powershell.py
"""
Helpers for building PowerShell and reading its output.

Scripts are sent as -EncodedCommand (UTF-16LE, base64). Structured
results come back as compact JSON via ConvertTo-Json.
"""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Iterable, Optional

from ..errors import PermanentFailure
from .session import Session

log = logging.getLogger("sqlconverge")

PREAMBLE = "$ErrorActionPreference = 'Stop'\n$ProgressPreference = 'SilentlyContinue'\n"


def ps_quote(value: Any) -> str:
    """Single-quoted PowerShell literal; single quotes are doubled."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_literal(value: Any) -> str:
    if value is None:
        return "$null"
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return ps_array(value)
    return ps_quote(value)


def ps_array(values: Iterable[Any]) -> str:
    return "@(" + ", ".join(ps_literal(v) for v in values) + ")"


def ps_text(value: str) -> str:
    """
    Arbitrary text (T-SQL, file contents) as an expression that survives
    any quoting: decoded from base64 on the remote side.
    """
    b64 = base64.b64encode(value.encode("utf-8")).decode("ascii")
    return f"[Text.Encoding]::UTF8.GetString([Convert]::FromBase64String('{b64}'))"


def encode_command(script: str) -> str:
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def wrap_json(script: str) -> str:
    return (
        PREAMBLE
        + "$result = & {\n"
        + script
        + "\n}\n"
        + "if ($null -ne $result) { $result | ConvertTo-Json -Compress -Depth 5 }\n"
    )


def invoke(session: Session, script: str, *, timeout: Optional[float] = None) -> str:
    """
    Run a script for its side effects. A non-zero exit is a PermanentFailure;
    resources that know a failure is retryable raise TransientFailure themselves.
    """
    res = session.run(PREAMBLE + script, timeout=timeout)
    if not res.ok:
        detail = (res.stderr or res.stdout).strip()
        raise PermanentFailure(f"{session.node.name}: exit {res.rc}: {detail}")
    return res.stdout


def query(session: Session, script: str, *, timeout: Optional[float] = None) -> Any:
    """Run a script whose last expression is a value and return it decoded from JSON."""
    res = session.run(wrap_json(script), timeout=timeout)
    if not res.ok:
        detail = (res.stderr or res.stdout).strip()
        raise PermanentFailure(f"{session.node.name}: exit {res.rc}: {detail}")
    out = res.stdout.strip()
    if not out:
        return None
    try:
        return json.loads(out)
    except json.JSONDecodeError as exc:
        log.debug("non-JSON output from %s: %s", session.node.name, out)
        raise PermanentFailure(f"{session.node.name}: unreadable probe output: {exc}") from exc
