"""agentflow.storage.in_memory

In-memory event ledger (testing/dev).
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List

from ..core.models import RunEvent
from .base import EventStore


class InMemoryEventStore(EventStore):
    def __init__(self):
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def append(self, event: RunEvent) -> None:
        with self._lock:
            self._events.setdefault(event.run_id, []).append(event.to_dict())

    def list(self, run_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events.get(run_id, []))

    def run_ids(self) -> List[str]:
        with self._lock:
            return list(self._events)
