# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how resources are applied
    """

    dry_run: bool = False
    sleep: Callable[[float], None] = time.sleep
    run_id: Optional[str] = None
