# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/deploy/artifacts.py
from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from .planner import RunPlan

log = logging.getLogger("sqlconverge")


class RunArtifacts:
    """
    Transient working directory holding one JSON execution plan per node.
    Removed when the run ends, whether it succeeded or not, unless keep=True.
    """

    def __init__(self, base_dir: Optional[Path] = None, run_id: str = "run", keep: bool = False):
        self.base_dir = Path(base_dir) if base_dir else None
        self.run_id = run_id
        self.keep = keep
        self.path: Optional[Path] = None

    def __enter__(self) -> "RunArtifacts":
        if self.base_dir:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"sqlconverge-{self.run_id}-", dir=self.base_dir))
        log.debug("artifacts directory: %s", self.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path is None:
            return
        if self.keep:
            log.info("artifacts kept at %s", self.path)
            return
        shutil.rmtree(self.path, ignore_errors=True)
        self.path = None

    def write_plan(self, plan: RunPlan) -> None:
        if self.path is None:
            raise RuntimeError("artifacts directory is not open")
        for node in plan.nodes:
            target = self.path / f"{node.name}.json"
            doc = {
                "run_id": plan.run_id,
                "node": node.model_dump(mode="json"),
                "steps": [d.to_dict() for d in plan.steps.get(node.name, [])],
            }
            target.write_text(json.dumps(doc, indent=2, default=str))
            log.debug("wrote %s", target)
