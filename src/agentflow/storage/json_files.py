"""agentflow.storage.json_files

File-based event ledger: one JSON line per event in `run_<run_id>.jsonl`.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Union

from ..core.models import RunEvent
from .base import EventStore


class JsonlEventStore(EventStore):
    def __init__(self, base_dir: Union[str, Path]):
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, run_id: str) -> Path:
        return self._base / f"run_{run_id}.jsonl"

    def append(self, event: RunEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            with self._path(event.run_id).open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")

    def list(self, run_id: str) -> List[Dict[str, Any]]:
        p = self._path(run_id)
        if not p.exists():
            return []
        out: List[Dict[str, Any]] = []
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                out.append(json.loads(line))
        return out
