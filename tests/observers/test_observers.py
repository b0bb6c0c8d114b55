import json
import logging

from sqlconverge.observers.console import ConsoleObserver
from sqlconverge.observers.dispatcher import EventBus
from sqlconverge.observers.events import ResourceApplied, ResourceFailed, RunSummary, new_ctx
from sqlconverge.observers.jsonfile import JsonFileObserver
from sqlconverge.observers.logger import LoggerObserver


class Capture:
    def __init__(self):
        self.events = []
    def notify(self, e):
        self.events.append(e)


class Broken:
    def notify(self, e):
        raise RuntimeError("observer down")


def _ctx():
    return new_ctx("prod", "sql2019", run_id="run-1")


def test_new_ctx_fills_run_id_and_timestamp():
    ctx = new_ctx("dev", None)
    assert ctx["run_id"]
    assert ctx["ts"].endswith("Z")
    assert _ctx()["run_id"] == "run-1"


def test_bus_keeps_going_when_an_observer_fails():
    cap = Capture()
    bus = EventBus([Broken(), cap])
    event = RunSummary(**_ctx(), unchanged=3, applied=1, failed=0)
    bus.emit(event)
    assert cap.events == [event]


def test_json_file_observer_appends_lines(tmp_path):
    path = tmp_path / "logs" / "run-1.jsonl"
    ob = JsonFileObserver(path)
    ob.notify(ResourceApplied(**_ctx(), node="SQL01", name="Disk1Volume", attempts=2, duration_ms=1500))
    ob.notify(RunSummary(**_ctx(), unchanged=0, applied=1, failed=0))

    lines = [json.loads(l) for l in path.read_text().splitlines()]
    assert [l["type"] for l in lines] == ["ResourceApplied", "RunSummary"]
    assert lines[0]["attempts"] == 2
    assert lines[0]["dry_run"] is False
    assert lines[0]["run_id"] == "run-1"


def test_logger_observer_levels(caplog):
    logger = logging.getLogger("test.observers")
    ob = LoggerObserver(logger)
    with caplog.at_level(logging.INFO, logger="test.observers"):
        ob.notify(ResourceFailed(**_ctx(), node="SQL02", name="AGReplica", kind="PermanentFailure",
                                 attempts=1, error="endpoint missing"))
        ob.notify(RunSummary(**_ctx(), unchanged=1, applied=0, failed=1))

    failed, summary = caplog.records
    assert failed.levelno == logging.WARNING
    assert "ResourceFailed" in failed.getMessage() and "error=endpoint missing" in failed.getMessage()
    assert "run_id" not in failed.getMessage()
    assert summary.levelno == logging.INFO


def test_console_observer(capsys):
    ConsoleObserver().notify(RunSummary(**_ctx(), unchanged=2, applied=0, failed=0))
    out = capsys.readouterr().out
    assert "RunSummary run=run-1 env=prod" in out
    assert "unchanged=2" in out
