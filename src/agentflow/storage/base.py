"""agentflow.storage.base

Event ledger interface.

Every `RunEvent` emitted during a run is appended to the configured store;
stores are append-only and keyed by run id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..core.models import RunEvent


class EventStore(ABC):
    """Append-only run event journal."""

    @abstractmethod
    def append(self, event: RunEvent) -> None: ...

    @abstractmethod
    def list(self, run_id: str) -> List[Dict[str, Any]]: ...
