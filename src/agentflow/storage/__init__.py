"""agentflow.storage

Event ledger backends.
"""

from .base import EventStore
from .in_memory import InMemoryEventStore
from .json_files import JsonlEventStore

__all__ = ["EventStore", "InMemoryEventStore", "JsonlEventStore"]
