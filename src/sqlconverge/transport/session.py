# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ..config.models import Credential, TargetNode


@dataclass(frozen=True)
class CommandResult:
    rc: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.rc == 0


class Session(Protocol):
    node: TargetNode

    def run(self, script: str, *, timeout: Optional[float] = None) -> CommandResult: ...

    def close(self) -> None: ...


class Transport(Protocol):
    def open_session(self, node: TargetNode, credential: Optional[Credential]) -> Session: ...
