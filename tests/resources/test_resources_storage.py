import json

import pytest

from sqlconverge.config.models import TargetNode
from sqlconverge.errors import PermanentFailure, TransientFailure
from sqlconverge.resources import registry
from sqlconverge.resources.models import ResourceDeclaration
from sqlconverge.transport.session import CommandResult
from sqlconverge.utils.execution import ExecutionContext


class ScriptedSession:
    """Replies to run() from a queue; JSON-able replies are encoded for query()."""
    def __init__(self, *replies):
        self.node = TargetNode(name="SQL01")
        self.replies = list(replies)
        self.scripts = []
    def run(self, script, *, timeout=None):
        self.scripts.append(script)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, CommandResult):
            return reply
        return CommandResult(0, reply if isinstance(reply, str) else json.dumps(reply), "")
    def close(self):
        pass


def _decl(type_, **props):
    return ResourceDeclaration(type=type_, name=type_ + "1", node="SQL01", properties=props)


def test_disk_converged_only_with_letter_label_and_filesystem():
    disk = registry.get("Disk")
    d = _decl("Disk", disk_id=2, drive_letter="F", label="SQLData")
    desired = disk.desired(d)
    good = {"visible": True, "online": True, "drive_letter": "F", "label": "SQLData", "file_system": "NTFS"}
    assert disk.is_converged(good, desired)
    assert not disk.is_converged({**good, "online": False}, desired)
    assert not disk.is_converged({**good, "label": "Data"}, desired)
    assert not disk.is_converged({"visible": False}, desired)


def test_disk_not_visible_is_transient():
    disk = registry.get("Disk")
    session = ScriptedSession({"visible": False})
    with pytest.raises(TransientFailure):
        disk.apply(session, _decl("Disk", disk_id=3, drive_letter="G"), ExecutionContext())
    assert len(session.scripts) == 1


def test_disk_apply_formats_with_allocation_unit():
    disk = registry.get("Disk")
    session = ScriptedSession({"visible": True, "online": False}, "")
    disk.apply(session, _decl("Disk", disk_id=3, drive_letter="g:", label="SQLLogs"), ExecutionContext())
    script = session.scripts[-1]
    assert "Get-Disk -Number 3" in script
    assert "-AllocationUnitSize 65536" in script
    assert "'G'" in script and "'SQLLogs'" in script
    assert disk.identity(_decl("Disk", disk_id=3, drive_letter="G")) == ("Disk", "SQL01", 3)


def test_directory_copy_pending_files_and_unreachable_source():
    copy = registry.get("DirectoryCopy")
    d = _decl("DirectoryCopy", source="\\\\files\\SQL2019", destination="C:\\SQLInstall\\2019")
    assert copy.is_converged({"exists": True, "pending": 0}, copy.desired(d))
    assert not copy.is_converged({"exists": True, "pending": 12}, copy.desired(d))

    with pytest.raises(TransientFailure):
        copy.apply(ScriptedSession({"source_available": False}), d, ExecutionContext())

    session = ScriptedSession({"source_available": True, "exists": False}, "")
    copy.apply(session, d, ExecutionContext())
    assert "robocopy '\\\\files\\SQL2019' 'C:\\SQLInstall\\2019' /E" in session.scripts[-1]


def test_robocopy_failure_is_permanent():
    copy = registry.get("DirectoryCopy")
    d = _decl("DirectoryCopy", source="a", destination="b")
    session = ScriptedSession({"source_available": True}, CommandResult(1, "", "robocopy failed with exit code 16"))
    with pytest.raises(PermanentFailure):
        copy.apply(session, d, ExecutionContext())


def test_optical_drive():
    optical = registry.get("OpticalDiskDriveLetter")
    d = _decl("OpticalDiskDriveLetter")
    desired = optical.desired(d)
    assert optical.is_converged({"present": False}, desired)
    assert optical.is_converged({"present": True, "drive_letter": "z"}, desired)
    assert not optical.is_converged({"present": True, "drive_letter": "E"}, desired)

    session = ScriptedSession("")
    optical.apply(session, d, ExecutionContext())
    assert "'Z:'" in session.scripts[0]

    with pytest.raises(PermanentFailure):
        optical.apply(session, _decl("OpticalDiskDriveLetter", drive_letter="ZZ"), ExecutionContext())


def test_directory_copy_ignores_files_only_in_destination():
    copy = registry.get("DirectoryCopy")
    d = _decl("DirectoryCopy", source="\\\\files\\SQL2019", destination="C:\\SQLInstall\\2019")
    listing = ["*EXTRA File  C:\\SQLInstall\\2019\\setup.log"]
    session = ScriptedSession({"exists": True, "source_available": True, "listing": listing})

    current = copy.probe(session, d)
    assert current["pending"] == 0
    assert copy.is_converged(current, copy.desired(d))
    assert "/L /XX " in session.scripts[0]

    session = ScriptedSession(
        {"exists": True, "source_available": True, "listing": [*listing, "x64\\setup.exe"]}
    )
    assert copy.probe(session, d)["pending"] == 1
    session = ScriptedSession({"exists": False, "source_available": True, "listing": None})
    assert copy.probe(session, d)["pending"] is None


def test_disk_allocation_unit_mismatch_warns_but_converges(caplog):
    disk = registry.get("Disk")
    desired = disk.desired(_decl("Disk", disk_id=2, drive_letter="F", label="SQLData"))
    current = {"visible": True, "online": True, "drive_letter": "F", "label": "SQLData",
               "file_system": "NTFS", "allocation_unit": 4096}
    with caplog.at_level("WARNING", logger="sqlconverge"):
        assert disk.is_converged(current, desired)
    assert "allocation unit is 4096, expected 65536" in caplog.text
