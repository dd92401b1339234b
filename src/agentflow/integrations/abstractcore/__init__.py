"""agentflow.integrations.abstractcore

AbstractCore-backed model providers and tool registry. AbstractCore itself is
imported lazily, on first use.
"""

from .llm_client import (
    AbstractCoreProvider,
    RemoteAbstractCoreProvider,
    normalize_abstractcore_response,
    normalize_tool_calls,
)
from .tool_registry import AbstractCoreToolRegistry

__all__ = [
    "AbstractCoreProvider",
    "RemoteAbstractCoreProvider",
    "AbstractCoreToolRegistry",
    "normalize_abstractcore_response",
    "normalize_tool_calls",
]
