# src/sqlconverge/config/templating.py
from __future__ import annotations

import os
import re
from typing import Any, Dict

from jinja2 import Environment, StrictUndefined, TemplateError

from .layouts import SYSTEM_DRIVE, ROLES, role_letters, sql_paths
from .models import DeploymentConfig, TargetNode


class TemplateRenderError(ValueError):
    pass


def expand_env_vars(value: str) -> str:
    return re.sub(r"\$\{([^}^{]+)\}", lambda m: os.getenv(m.group(1), m.group(0)), value)


class TemplateRenderer:
    """
    Renders declaration properties per node. Undefined names fail loudly,
    so a typo in a configuration never reaches a machine.
    """

    def __init__(self):
        # None renders as empty so an unset setting reads as missing downstream
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            finalize=lambda v: "" if v is None else v,
        )

    def render(self, value: Any, context: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self._render_str(value, context)
        if isinstance(value, dict):
            return {k: self.render(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render(v, context) for v in value]
        return value

    def _render_str(self, value: str, context: Dict[str, Any]) -> str:
        value = expand_env_vars(value)
        if "{{" not in value and "{%" not in value:
            return value
        try:
            return self.env.from_string(value).render(**context)
        except TemplateError as exc:
            raise TemplateRenderError(f"cannot render {value!r}: {exc}") from exc


def node_context(cfg: DeploymentConfig, node: TargetNode) -> Dict[str, Any]:
    """Variables visible to templates for one node."""
    if cfg.features.skip_drive_config:
        letters = {role: SYSTEM_DRIVE for role in ROLES}
    else:
        letters = role_letters(node.drive_count, node.azure)

    primary = cfg.primary()
    return {
        "node": node.model_dump(mode="json"),
        "primary": primary.name if primary else None,
        "nodes": [n.name for n in cfg.nodes],
        "sql": cfg.sql.model_dump(mode="json"),
        "cluster": cfg.cluster.model_dump(mode="json"),
        "ag": cfg.availability_group.model_dump(mode="json"),
        "drives": letters,
        "paths": sql_paths(letters, cfg.sql.instance_name),
        "install_source": cfg.install_source,
        "env": cfg.environment,
    }
