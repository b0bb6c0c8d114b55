# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ..config.models import RetryPolicy


@dataclass(frozen=True)
class ResourceRef:
    """Typed handle to a declaration on a given node."""

    node: str
    name: str

    def __str__(self) -> str:
        return f"{self.node}:{self.name}"


@dataclass(frozen=True)
class ResourceDeclaration:
    """
    One resource instantiated for one node: (type, name, properties, depends_on).
    Properties are already rendered for the node.
    """

    type: str
    name: str
    node: str
    properties: Dict[str, Any] = field(default_factory=dict, hash=False)
    depends_on: Tuple[ResourceRef, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy, hash=False)
    configuration: Optional[str] = None

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.node, self.name)

    @property
    def label(self) -> str:
        return f"[{self.type}]{self.name}"

    def local_dependencies(self) -> Tuple[ResourceRef, ...]:
        return tuple(r for r in self.depends_on if r.node == self.node)

    def remote_dependencies(self) -> Tuple[ResourceRef, ...]:
        return tuple(r for r in self.depends_on if r.node != self.node)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "node": self.node,
            "configuration": self.configuration,
            "properties": self.properties,
            "depends_on": [str(r) for r in self.depends_on],
            "retry": self.retry.model_dump(),
        }
