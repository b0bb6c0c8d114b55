# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from ..config.models import RetryPolicy
from ..transport.session import Session
from ..utils.execution import ExecutionContext
from .models import ResourceDeclaration


def _norm(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class Resource(ABC):
    """
    A resource type: how to read live state and how to converge it.

    Subclasses set type_name and register with @register. probe() must be
    side-effect free; apply() may raise TransientFailure (retried under the
    declaration's retry policy) or PermanentFailure.
    """

    type_name: ClassVar[str]
    required: ClassVar[Tuple[str, ...]] = ()
    compare_keys: ClassVar[Tuple[str, ...]] = ()
    defaults: ClassVar[Dict[str, Any]] = {}
    default_retry: ClassVar[str] = "default"
    # re-probe after apply and retry until converged
    verify_after_apply: ClassVar[bool] = True
    # nothing to do when every dependency came back Unchanged
    skip_when_dependencies_unchanged: ClassVar[bool] = False

    def identity(self, decl: ResourceDeclaration) -> Tuple[Any, ...]:
        return (self.type_name, decl.node, decl.name)

    def validate(self, decl: ResourceDeclaration) -> List[str]:
        return [
            f"{decl.label} on {decl.node}: missing property '{key}'"
            for key in self.required
            if decl.properties.get(key) in (None, "")
        ]

    def retry_policy(self, decl: ResourceDeclaration) -> RetryPolicy:
        # resolved at plan time from the declaration or default_retry
        return decl.retry

    def desired(self, decl: ResourceDeclaration) -> Dict[str, Any]:
        return {**self.defaults, **decl.properties}

    def is_converged(self, current: Optional[Dict[str, Any]], desired: Dict[str, Any]) -> bool:
        if not current:
            return False
        keys = self.compare_keys or tuple(desired)
        return all(_norm(current.get(k)) == _norm(desired.get(k)) for k in keys)

    @abstractmethod
    def probe(self, session: Session, decl: ResourceDeclaration) -> Dict[str, Any]:
        ...

    @abstractmethod
    def apply(self, session: Session, decl: ResourceDeclaration, ctx: ExecutionContext) -> None:
        ...
