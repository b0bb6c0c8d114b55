# tests/conftest.py
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

import pytest

from sqlconverge.config.models import DeploymentConfig
from sqlconverge.errors import PermanentFailure, TransientFailure, UnreachableNode
from sqlconverge.resources.base import Resource
from sqlconverge.resources.registry import register
from sqlconverge.transport.session import CommandResult


# ---- Fakes: a transport whose "machines" are dicts ----

class FakeSession:
    def __init__(self, node, journal: List, lock: threading.Lock):
        self.node = node
        self.state: Dict[str, Any] = {}
        self.calls: Dict[str, int] = {}
        self.applied: List[str] = []
        self.scripts: List[str] = []
        self.closed = False
        self._journal = journal
        self._lock = lock

    def record(self, name: str) -> None:
        self.applied.append(name)
        with self._lock:
            self._journal.append((self.node.name, name))

    def run(self, script, *, timeout=None):
        self.scripts.append(script)
        return CommandResult(0, "", "")

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, unreachable=(), preset: Optional[Dict[str, Dict[str, Any]]] = None):
        self.unreachable = set(unreachable)
        self.preset = preset or {}
        self.opened: List[str] = []
        self.sessions: Dict[str, FakeSession] = {}
        self.journal: List = []
        self._lock = threading.Lock()

    def open_session(self, node, credential):
        with self._lock:
            self.opened.append(node.name)
        if node.name in self.unreachable:
            raise UnreachableNode(f"{node.name}: connection refused")
        s = FakeSession(node, self.journal, self._lock)
        s.state.update(self.preset.get(node.name, {}))
        self.sessions[node.name] = s
        return s


@register
class FakeValue(Resource):
    """
    In-memory setting on a FakeSession.

    settle_after: apply must run this many times before the value sticks
    transient_failures: first N applies raise TransientFailure
    permanent: apply raises PermanentFailure
    remote: name of a resource on another node that must already be set
    """

    type_name = "FakeValue"
    required = ("value",)
    compare_keys = ("value",)

    def probe(self, session, decl):
        return {"value": session.state.get(decl.name)}

    def apply(self, session, decl, ctx):
        p = decl.properties
        n = session.calls[decl.name] = session.calls.get(decl.name, 0) + 1
        session.record(decl.name)
        if p.get("permanent"):
            raise PermanentFailure(f"{decl.name} cannot be applied")
        if n <= int(p.get("transient_failures", 0)):
            raise TransientFailure(f"{decl.name} not ready")
        if n >= int(p.get("settle_after", 1)):
            session.state[decl.name] = p["value"]


@register
class FakeUnreachable(Resource):
    type_name = "FakeUnreachable"

    def probe(self, session, decl):
        raise UnreachableNode(f"{session.node.name}: connection reset")

    def apply(self, session, decl, ctx):
        raise AssertionError("never applied")


# ---- Fixtures ----

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def transport_factory():
    return FakeTransport


@pytest.fixture
def session_factory():
    def _make(node):
        return FakeSession(node, [], threading.Lock())
    return _make


@pytest.fixture
def sleeps():
    return []


def make_cfg(nodes, configurations, **extra) -> DeploymentConfig:
    data = {
        "environment": "dev",
        "nodes": nodes,
        "credential": {"username": "CONTOSO\\installer", "password": "x"},
        "use_builtin": False,
        "configurations": configurations,
    }
    data.update(extra)
    return DeploymentConfig.model_validate(data)


@pytest.fixture
def cfg_factory():
    return make_cfg
