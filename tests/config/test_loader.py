from pathlib import Path
import textwrap

import pytest

from sqlconverge.config.loader import apply_overrides, load_config
from sqlconverge.config.models import NodeRole, RetryPolicy


def _write(tmp_path: Path, text: str) -> Path:
    f = tmp_path / "deployment.yaml"
    f.write_text(textwrap.dedent(text))
    return f


def test_load_config_minimal_ok(tmp_path: Path):
    f = _write(tmp_path, """
        environment: dev
        nodes:
          - name: SQL01
          - name: SQL02
            drive_count: 1
        credential:
          username: CONTOSO\\installer
        install_source: \\\\fileserver\\media\\SQL2019
    """)
    cfg = load_config(f)
    assert cfg.environment == "dev"
    assert [n.name for n in cfg.nodes] == ["SQL01", "SQL02"]
    assert cfg.primary().name == "SQL01"
    assert cfg.nodes[1].role == NodeRole.SECONDARY
    assert cfg.nodes[1].drive_count == 1
    assert cfg.install_source == "\\\\fileserver\\media\\SQL2019"


def test_load_config_expands_env_vars(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SQL_MEDIA", "D:/media")
    f = _write(tmp_path, """
        nodes: [{name: SQL01}]
        install_source: ${SQL_MEDIA}
    """)
    assert load_config(f).install_source == "D:/media"


def test_explicit_roles_are_kept(tmp_path: Path):
    f = _write(tmp_path, """
        nodes:
          - name: SQL01
          - name: SQL02
            role: Primary
    """)
    cfg = load_config(f)
    assert cfg.primary().name == "SQL02"
    assert [n.name for n in cfg.secondaries()] == ["SQL01"]


def test_retry_policy_overrides(tmp_path: Path):
    f = _write(tmp_path, """
        nodes: [{name: SQL01}]
        retry_policies:
          disk_wait: {attempts: 5, interval_seconds: 1}
          patient: {attempts: 100, interval_seconds: 30}
    """)
    cfg = load_config(f)
    assert cfg.policy("disk_wait") == RetryPolicy(attempts=5, interval_seconds=1)
    assert cfg.policy("cluster_wait").attempts == 60
    assert "patient" in cfg.policy_names()
    with pytest.raises(KeyError):
        cfg.policy("nope")


def test_apply_overrides_replaces_nodes_and_toggles(tmp_path: Path):
    f = _write(tmp_path, """
        nodes: [{name: OLD01}]
        credential: {username: someone}
    """)
    cfg = apply_overrides(
        load_config(f),
        nodes=["SQL01", "SQL02", "SQL03"],
        install_source="C:/media",
        username="CONTOSO\\admin",
        password="secret",
        features={"skip_install": True, "in_availability_group": True},
        options={"fail_fast": True},
    )
    assert [n.name for n in cfg.nodes] == ["SQL01", "SQL02", "SQL03"]
    assert cfg.primary().name == "SQL01"
    assert cfg.credential.username == "CONTOSO\\admin"
    assert cfg.credential.password == "secret"
    assert cfg.features.skip_install and cfg.features.in_availability_group
    assert cfg.options.fail_fast


def test_password_without_username_rejected(tmp_path: Path):
    f = _write(tmp_path, "nodes: [{name: SQL01}]\n")
    with pytest.raises(ValueError):
        apply_overrides(load_config(f), password="secret")
