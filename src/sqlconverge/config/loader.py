# src/sqlconverge/config/loader.py

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import DeploymentConfig, TargetNode


def load_config(path: str | Path) -> DeploymentConfig:
    raw = Path(path).read_text()

    # expand environment variables like ${SQL_INSTALL_SHARE}
    expanded = os.path.expandvars(raw)

    data = yaml.safe_load(expanded) or {}
    return DeploymentConfig.model_validate(data)


def apply_overrides(
    cfg: DeploymentConfig,
    *,
    nodes: Optional[List[str]] = None,
    install_source: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    features: Optional[Dict[str, Any]] = None,
    options: Optional[Dict[str, Any]] = None,
) -> DeploymentConfig:
    """
    Layer command-line values over a loaded config.
    A node list replaces the file's nodes; roles are reassigned from list order.
    """
    data = cfg.model_dump()

    if nodes:
        data["nodes"] = [TargetNode(name=n).model_dump() for n in nodes]
    if install_source:
        data["install_source"] = install_source
    if username:
        cred = data.get("credential") or {}
        cred["username"] = username
        data["credential"] = cred
    if password is not None:
        if not data.get("credential"):
            raise ValueError("--password given without a username")
        data["credential"]["password"] = password
    if features:
        data["features"].update(features)
    if options:
        data["options"].update(options)

    return DeploymentConfig.model_validate(data)
