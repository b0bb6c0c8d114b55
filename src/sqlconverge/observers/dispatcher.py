# src/sqlconverge/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import List, Optional
from .events import BaseEvent

log = logging.getLogger("sqlconverge")

class EventBus:
    def __init__(self, observers: Optional[List] = None):
        self._observers = observers or []

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception:
                # observers must not break runs
                log.debug("observer %r failed on %s", ob, event.__class__.__name__, exc_info=True)
