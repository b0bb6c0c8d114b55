import json
import threading

import pytest

from sqlconverge.deploy.barrier import BarrierBoard
from sqlconverge.deploy.executor import ExecutionResult, Outcome
from sqlconverge.deploy.fleet import FleetCoordinator
from sqlconverge.errors import CycleDetected, ValidationFailure
from sqlconverge.observers.events import (
    BarrierReleased,
    NodeUnreachable,
    RunSummary,
    SessionOpened,
    ValidationFailed,
)
from sqlconverge.resources.models import ResourceRef
from sqlconverge.utils.execution import ExecutionContext


class Capture:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()
    def notify(self, ev):
        with self._lock:
            self.events.append(ev)


def _res(name, deps=(), **props):
    props.setdefault("value", name)
    return {"type": "FakeValue", "name": name, "properties": props, "depends_on": list(deps)}


def _cluster_configs(create_props=None):
    create = _res("ClusterCreate", **(create_props or {}))
    create["retry"] = {"attempts": 3, "interval_seconds": 10}
    return [
        {"name": "Primary", "roles": ["Primary"], "resources": [_res("DiskAttach", value="D:"), create]},
        {"name": "Secondary", "roles": ["Secondary"], "resources": [_res("ClusterJoin", ["primary:ClusterCreate"])]},
    ]


def _coordinator(transport, sleeps, cap=None):
    return FleetCoordinator(
        transport,
        observers=[cap] if cap else [],
        ctx=ExecutionContext(sleep=sleeps.append),
        path_exists=lambda p: True,
    )


def test_end_to_end_primary_and_secondary(cfg_factory, transport, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}, {"name": "NodeB"}], _cluster_configs({"settle_after": 2}))
    cap = Capture()

    report = _coordinator(transport, sleeps, cap).run(cfg)

    by_name = {r.name: r for r in report.results}
    assert by_name["DiskAttach"].status == Outcome.APPLIED
    assert by_name["ClusterCreate"].status == Outcome.APPLIED
    assert by_name["ClusterCreate"].attempts == 2
    assert by_name["ClusterJoin"].status == Outcome.APPLIED
    assert report.ok and report.exit_code() == 0
    assert report.counts()["Failed"] == 0
    assert sleeps == [10]

    # the join only ran once the create had converged
    journal = transport.journal
    last_create = max(i for i, e in enumerate(journal) if e == ("NodeA", "ClusterCreate"))
    assert journal.index(("NodeB", "ClusterJoin")) > last_create

    assert all(s.closed for s in transport.sessions.values())
    summary = next(e for e in cap.events if isinstance(e, RunSummary))
    assert (summary.applied, summary.failed) == (3, 0)
    assert sum(isinstance(e, SessionOpened) for e in cap.events) == 2


def test_second_run_changes_nothing(cfg_factory, transport_factory, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}, {"name": "NodeB"}], _cluster_configs())
    transport = transport_factory(
        preset={"NodeA": {"DiskAttach": "D:", "ClusterCreate": "ClusterCreate"}, "NodeB": {"ClusterJoin": "ClusterJoin"}}
    )
    report = _coordinator(transport, sleeps).run(cfg)
    assert {r.status for r in report.results} == {Outcome.UNCHANGED}
    assert transport.journal == []


def test_secondaries_never_attempt_join_when_create_fails(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}, {"name": "NodeC"}],
        _cluster_configs({"permanent": True}),
    )
    cap = Capture()
    report = _coordinator(transport, sleeps, cap).run(cfg)

    joins = [r for r in report.results if r.name == "ClusterJoin"]
    assert len(joins) == 2
    assert all(r.error_kind == "PreconditionNotMet" for r in joins)
    assert ("NodeB", "ClusterJoin") not in transport.journal
    assert ("NodeC", "ClusterJoin") not in transport.journal
    assert report.exit_code() == 1
    assert "Failed=3" in report.summary()


def test_join_attempted_on_every_secondary_once_create_converges(cfg_factory, transport, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}, {"name": "NodeB"}, {"name": "NodeC"}], _cluster_configs())
    cap = Capture()
    report = _coordinator(transport, sleeps, cap).run(cfg)
    assert report.ok
    assert ("NodeB", "ClusterJoin") in transport.journal
    assert ("NodeC", "ClusterJoin") in transport.journal
    released = [e for e in cap.events if isinstance(e, BarrierReleased)]
    assert all(e.status == "Applied" for e in released)


def test_validation_runs_before_any_node_is_contacted(cfg_factory, transport, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}], [], use_builtin=True, install_source=None)
    cap = Capture()
    with pytest.raises(ValidationFailure) as err:
        _coordinator(transport, sleeps, cap).run(cfg)
    assert any("install source" in p for p in err.value.problems)
    assert transport.opened == []
    assert any(isinstance(e, ValidationFailed) for e in cap.events)


def test_cycle_aborts_before_any_node_is_contacted(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}],
        [{"name": "Loop", "resources": [_res("a", ["b"]), _res("b", ["a"])]}],
    )
    with pytest.raises(CycleDetected):
        _coordinator(transport, sleeps).run(cfg)
    assert transport.opened == []


def test_unreachable_node_is_isolated(cfg_factory, transport_factory, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}],
        [{"name": "Base", "resources": [_res("x"), _res("y", ["x"])]}],
    )
    transport = transport_factory(unreachable={"NodeB"})
    cap = Capture()
    report = _coordinator(transport, sleeps, cap).run(cfg)

    assert [r.status for r in report.for_node("NodeA")] == [Outcome.APPLIED, Outcome.APPLIED]
    assert [r.error_kind for r in report.for_node("NodeB")] == ["UnreachableNode", "UnreachableNode"]
    assert any(isinstance(e, NodeUnreachable) and e.node == "NodeB" for e in cap.events)


def test_unreachable_primary_fails_secondary_barriers(cfg_factory, transport_factory, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}, {"name": "NodeB"}], _cluster_configs())
    transport = transport_factory(unreachable={"NodeA"})
    report = _coordinator(transport, sleeps).run(cfg)
    [join] = report.for_node("NodeB")
    assert join.error_kind == "PreconditionNotMet"


def test_primary_first_finishes_primary_before_secondaries(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}],
        [{"name": "Base", "resources": [_res("one"), _res("two")]}],
        options={"primary_first": True},
    )
    _coordinator(transport, sleeps).run(cfg)
    nodes = [node for node, _ in transport.journal]
    assert nodes == ["NodeA", "NodeA", "NodeB", "NodeB"]


def test_primary_first_rejects_primary_waiting_on_secondary(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}],
        [
            {"name": "P", "roles": ["Primary"], "resources": [_res("a", ["NodeB:b"])]},
            {"name": "S", "roles": ["Secondary"], "resources": [_res("b")]},
        ],
        options={"primary_first": True},
    )
    with pytest.raises(ValidationFailure):
        _coordinator(transport, sleeps).run(cfg)
    assert transport.opened == []


def test_small_pool_rejects_waits_inside_the_group(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}],
        [
            {"name": "P", "roles": ["Primary"], "resources": [_res("x", ["NodeB:y"])]},
            {"name": "S", "roles": ["Secondary"], "resources": [_res("y")]},
        ],
        options={"max_workers": 1},
    )
    with pytest.raises(ValidationFailure) as err:
        _coordinator(transport, sleeps).run(cfg)
    assert err.value.problems == [
        "NodeA:x waits on NodeB:y in the same group; max_workers=1 cannot run all 2 nodes at once"
    ]
    assert transport.opened == []


def test_small_pool_runs_when_waits_cross_groups(cfg_factory, transport, sleeps):
    cfg = cfg_factory(
        [{"name": "NodeA"}, {"name": "NodeB"}, {"name": "NodeC"}],
        [
            {"name": "P", "roles": ["Primary"], "resources": [_res("x")]},
            {"name": "S", "roles": ["Secondary"], "resources": [_res("y", ["primary:x"])]},
        ],
        options={"max_workers": 1, "primary_first": True},
    )
    report = _coordinator(transport, sleeps).run(cfg)
    assert report.ok
    assert report.counts()["Applied"] == 3


def test_artifacts_removed_unless_kept(cfg_factory, transport, sleeps, tmp_path):
    configs = [{"name": "Base", "resources": [_res("x")]}]

    cfg = cfg_factory([{"name": "NodeA"}], configs, options={"artifacts_dir": str(tmp_path)})
    _coordinator(transport, sleeps).run(cfg)
    assert list(tmp_path.iterdir()) == []

    cfg = cfg_factory([{"name": "NodeA"}], configs, options={"artifacts_dir": str(tmp_path), "keep_artifacts": True})
    report = _coordinator(transport, sleeps).run(cfg)
    [run_dir] = list(tmp_path.iterdir())
    doc = json.loads((run_dir / "NodeA.json").read_text())
    assert doc["run_id"] == report.run_id
    assert [s["name"] for s in doc["steps"]] == ["x"]


def test_dry_run_option_applies_nothing(cfg_factory, transport, sleeps):
    cfg = cfg_factory([{"name": "NodeA"}], [{"name": "Base", "resources": [_res("x")]}], options={"dry_run": True})
    report = _coordinator(transport, sleeps).run(cfg)
    [r] = report.results
    assert r.status == Outcome.APPLIED and r.dry_run
    assert transport.journal == []
    assert "(dry run)" in report.render()


def test_barrier_board_wait_and_timeout():
    board = BarrierBoard()
    ref = ResourceRef("NodeA", "create")
    assert board.wait_for(ref, timeout=0.01) is None

    result = ExecutionResult(node="NodeA", name="create", type="FakeValue", status=Outcome.APPLIED)
    t = threading.Timer(0.05, board.publish, args=(result,))
    t.start()
    assert board.wait_for(ref, timeout=5) is result
    t.join()
