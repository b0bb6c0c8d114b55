# src/sqlconverge/resources/registry.py
from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Dict, List, Type

from ..errors import UnknownResourceType

if TYPE_CHECKING:
    from .base import Resource

# Resource types by name. Built-in types register themselves on import.
_RESOURCES: Dict[str, "Resource"] = {}

_BUILTIN_MODULES = ("storage", "windows", "cluster", "sqlserver")
_loaded = False


def register(cls: Type["Resource"]) -> Type["Resource"]:
    """Class decorator that registers a resource type under its type_name."""
    _RESOURCES[cls.type_name] = cls()
    return cls


def _ensure_builtin() -> None:
    global _loaded
    if _loaded:
        return
    for mod in _BUILTIN_MODULES:
        importlib.import_module(f"{__package__}.{mod}")
    _loaded = True


def get(type_name: str) -> "Resource":
    """Fetch a resource type by name. Raises UnknownResourceType if not registered."""
    _ensure_builtin()
    try:
        return _RESOURCES[type_name]
    except KeyError:
        raise UnknownResourceType(f"Unknown resource type '{type_name}'") from None


def has(type_name: str) -> bool:
    _ensure_builtin()
    return type_name in _RESOURCES


def names() -> List[str]:
    _ensure_builtin()
    return sorted(_RESOURCES)
