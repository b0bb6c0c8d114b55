import base64
import hashlib
import json
import re

import pytest

from sqlconverge.config.models import TargetNode
from sqlconverge.errors import TransientFailure
from sqlconverge.resources import registry
from sqlconverge.resources.models import ResourceDeclaration
from sqlconverge.resources.sqlserver import agent_service_name, service_name
from sqlconverge.transport.session import CommandResult
from sqlconverge.utils.execution import ExecutionContext


class ScriptedSession:
    def __init__(self, *replies):
        self.node = TargetNode(name="SQL02")
        self.replies = list(replies)
        self.scripts = []
    def run(self, script, *, timeout=None):
        self.scripts.append(script)
        reply = self.replies.pop(0) if self.replies else ""
        return CommandResult(0, reply if isinstance(reply, str) else json.dumps(reply), "")
    def close(self):
        pass


def _decl(type_, **props):
    return ResourceDeclaration(type=type_, name=type_ + "1", node="SQL02", properties=props)


def test_service_names():
    assert service_name("MSSQLSERVER") == "MSSQLSERVER"
    assert service_name("PROD") == "MSSQL$PROD"
    assert agent_service_name("mssqlserver") == "SQLSERVERAGENT"
    assert agent_service_name("PROD") == "SQLAgent$PROD"


def test_sql_setup_parameters():
    setup = registry.get("SqlSetup")
    d = _decl(
        "SqlSetup",
        version="2019",
        source_path="C:\\SQLInstall\\2019",
        features=["Engine", "FullText"],
        data_path="F:\\MSSQL\\MSSQLSERVER\\Data",
        admin_accounts="CONTOSO\\DBAs",
        port=1433,
        collation="",
    )
    params = setup.render_params(d)
    assert "Version = '2019'" in params
    assert "Feature = @('Engine', 'FullText')" in params
    assert "AdminAccount = @('CONTOSO\\DBAs')" in params
    assert "Port = 1433" in params
    assert "Restart = $false" in params
    assert "SqlCollation" not in params

    session = ScriptedSession("")
    setup.apply(session, d, ExecutionContext())
    assert "Install-DbaInstance @params" in session.scripts[0]


def test_sql_setup_converged_when_instance_installed():
    setup = registry.get("SqlSetup")
    assert setup.is_converged({"installed": True, "version": "15.0"}, {})
    assert not setup.is_converged({"installed": False}, {})
    session = ScriptedSession({"installed": True})
    assert setup.probe(session, _decl("SqlSetup", version="2019", source_path="x", instance_name="PROD"))["installed"]
    assert "'MSSQL$PROD'" in session.scripts[0]


def test_sql_script_runs_until_checksum_matches(tmp_path):
    script = tmp_path / "audit.sql"
    script.write_text("CREATE SERVER AUDIT [Audit] TO APPLICATION_LOG;", encoding="utf-8")
    runner = registry.get("SqlScript")
    d = _decl("SqlScript", file=str(script), marker="audit.sql")
    desired = runner.desired(d)

    digest = hashlib.sha256(script.read_text().encode("utf-8")).hexdigest()
    assert desired["checksum"] == digest
    assert runner.is_converged({"checksum": digest}, desired)
    assert not runner.is_converged({"checksum": None}, desired)

    session = ScriptedSession("")
    runner.apply(session, d, ExecutionContext())
    body = session.scripts[0]
    assert "Invoke-DbaQuery -SqlInstance 'localhost' -Database 'master'" in body
    encoded = re.search(r"FromBase64String\('([^']+)'\)", body).group(1)
    assert base64.b64decode(encoded).decode("utf-8").startswith("CREATE SERVER AUDIT")
    assert f"-Value '{digest}'" in body


def test_sql_script_needs_text_or_file():
    runner = registry.get("SqlScript")
    assert runner.validate(_decl("SqlScript")) == ["[SqlScript]SqlScript1 on SQL02: needs 'script' or 'file'"]
    assert runner.validate(_decl("SqlScript", script="SELECT 1")) == []


def _ag(**props):
    base = {"ag_name": "AG1", "instance": "SQL02", "service_account": "CONTOSO\\sqlsvc"}
    base.update(props)
    return _decl("AvailabilityGroupReplica", **base)


def test_secondary_waits_for_the_group_on_the_primary():
    ag = registry.get("AvailabilityGroupReplica")
    session = ScriptedSession({"ready": False})
    with pytest.raises(TransientFailure):
        ag.apply(session, _ag(primary_instance="SQL01"), ExecutionContext())
    assert len(session.scripts) == 1

    session = ScriptedSession({"ready": True}, "")
    ag.apply(session, _ag(primary_instance="SQL01"), ExecutionContext())
    join = session.scripts[1]
    assert "Add-DbaAgReplica" in join and "Join-DbaAvailabilityGroup" in join
    assert "Grant-DbaAgPermission -SqlInstance $inst -Login 'CONTOSO\\sqlsvc'" in join


def test_primary_creates_group_and_listener():
    ag = registry.get("AvailabilityGroupReplica")
    d = _ag(role="primary", listener_name="SQLAG", listener_ip="10.0.0.50", listener_port="1433")
    assert ag.validate(d) == []
    session = ScriptedSession("")
    ag.apply(session, d, ExecutionContext())
    body = session.scripts[0]
    assert "New-DbaAvailabilityGroup -Primary $inst -Name 'AG1'" in body
    assert "Add-DbaAgListener" in body and "-Port 1433" in body


def test_replica_validation():
    ag = registry.get("AvailabilityGroupReplica")
    problems = ag.validate(_ag(role="witness"))
    assert any("role must be" in p for p in problems)
    assert any("primary_instance" in p for p in ag.validate(_ag(role="secondary")))


def test_replica_converged_needs_every_piece():
    ag = registry.get("AvailabilityGroupReplica")
    current = {"hadr_enabled": True, "endpoint": True, "ag_exists": True, "local_role": "Secondary"}
    assert ag.is_converged(current, {})
    assert not ag.is_converged({**current, "hadr_enabled": False}, {})
    assert not ag.is_converged({**current, "local_role": None}, {})


def test_cluster_join_waits_for_cluster_and_create_forms_it():
    node = registry.get("ClusterNode")
    join = _decl("ClusterNode", cluster_name="SQLCLU", create=False)
    with pytest.raises(TransientFailure):
        node.apply(ScriptedSession({"exists": False, "member": False}), join, ExecutionContext())

    session = ScriptedSession({"exists": True, "member": False}, "")
    node.apply(session, join, ExecutionContext())
    assert "Add-ClusterNode -Cluster 'SQLCLU'" in session.scripts[1]

    create = _decl("ClusterNode", cluster_name="SQLCLU", create=True, static_address="10.0.0.40")
    session = ScriptedSession({"exists": False, "member": False}, "")
    node.apply(session, create, ExecutionContext())
    assert "New-Cluster -Name 'SQLCLU'" in session.scripts[1]
    assert "-StaticAddress '10.0.0.40'" in session.scripts[1]


def test_wait_for_cluster_is_a_polling_barrier():
    wait = registry.get("WaitForCluster")
    d = _decl("WaitForCluster", cluster_name="SQLCLU")
    assert wait.is_converged({"exists": True, "member": False}, {})
    with pytest.raises(TransientFailure):
        wait.apply(ScriptedSession({"exists": False}), d, ExecutionContext())
    assert wait.default_retry == "cluster_wait"
