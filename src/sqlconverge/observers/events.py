from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid

@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single run
    env: str          # dev/staging/prod
    context: Optional[str]  # deployment name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ----- Validation & planning -----

@dataclass(frozen=True)
class ValidationFailed(BaseEvent):
    problems: List[str]

@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: Dict[str, List[str]]   # node -> declaration names in execution order

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ----- Sessions -----

@dataclass(frozen=True)
class SessionOpened(BaseEvent):
    node: str

@dataclass(frozen=True)
class NodeUnreachable(BaseEvent):
    node: str
    error: str


# ----- Per-resource lifecycle -----

@dataclass(frozen=True)
class ResourceStarted(BaseEvent):
    node: str
    name: str
    type: str

@dataclass(frozen=True)
class ResourceProbed(BaseEvent):
    node: str
    name: str
    converged: bool

@dataclass(frozen=True)
class ResourceApplyAttempt(BaseEvent):
    node: str
    name: str
    attempt: int

@dataclass(frozen=True)
class ResourceApplied(BaseEvent):
    node: str
    name: str
    attempts: int
    duration_ms: int
    dry_run: bool = False

@dataclass(frozen=True)
class ResourceUnchanged(BaseEvent):
    node: str
    name: str

@dataclass(frozen=True)
class ResourceFailed(BaseEvent):
    node: str
    name: str
    kind: str
    attempts: int
    error: str

@dataclass(frozen=True)
class ResourceSkipped(BaseEvent):
    node: str
    name: str
    reason: str


# ----- Barriers -----

@dataclass(frozen=True)
class BarrierWaiting(BaseEvent):
    node: str
    name: str
    waiting_on: str

@dataclass(frozen=True)
class BarrierReleased(BaseEvent):
    node: str
    name: str
    waiting_on: str
    status: Optional[str]   # None when the wait timed out


# ----- Summary -----

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    unchanged: int
    applied: int
    failed: int
