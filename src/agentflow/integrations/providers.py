"""agentflow.integrations.providers

Model providers (the external language-model collaborator).

The engine only needs `complete(request) -> ModelResponse` (sync or async).
`ScriptedProvider` replays canned replies in order and is what the tests and
offline demos run against.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Protocol, Union, runtime_checkable

from ..core.errors import ProviderError
from ..core.models import ModelRequest, ModelResponse, ToolCall


@runtime_checkable
class ModelProvider(Protocol):
    def complete(self, request: ModelRequest) -> Any:
        """Return a `ModelResponse` (or an awaitable of one)."""
        ...


@dataclass
class ScriptedReply:
    """A scripted entry with an optional delay before it is returned (or raised)."""

    reply: Any
    delay_s: float = 0.0


ScriptEntry = Union[str, ModelResponse, Dict[str, Any], BaseException, ScriptedReply, Callable[[ModelRequest], Any]]


def tool_call_reply(name: str, arguments: Optional[Dict[str, Any]] = None, *, content: str = "", call_id: Optional[str] = None) -> ModelResponse:
    """Convenience for scripting a response that requests one tool call."""
    call = ToolCall(name=name, arguments=dict(arguments or {})) if call_id is None else ToolCall(name=name, arguments=dict(arguments or {}), id=call_id)
    return ModelResponse(content=content, tool_calls=[call])


class ScriptedProvider:
    """Deterministic provider.

    `script` is either a list (one shared queue, consumed in call order) or a
    mapping of agent id -> list (one queue per agent; `"*"` is the fallback
    queue). Entries may be strings, `ModelResponse`s, dicts, exceptions (raised),
    callables of the request, or `ScriptedReply` wrappers adding a delay.
    """

    def __init__(self, script: Union[Iterable[ScriptEntry], Mapping[str, Iterable[ScriptEntry]]]):
        self._queues: Dict[str, Deque[ScriptEntry]] = {}
        if isinstance(script, Mapping):
            for key, entries in script.items():
                self._queues[str(key)] = deque(entries)
        else:
            self._queues["*"] = deque(script)
        self.calls: List[ModelRequest] = []

    def _queue_for(self, request: ModelRequest) -> Deque[ScriptEntry]:
        if request.agent_id is not None and request.agent_id in self._queues:
            return self._queues[request.agent_id]
        if "*" in self._queues:
            return self._queues["*"]
        raise ProviderError(f"No script for agent '{request.agent_id}'", node_id=request.node_id)

    def remaining(self, agent_id: str = "*") -> int:
        return len(self._queues.get(agent_id, ()))

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.calls.append(request)
        queue = self._queue_for(request)
        if not queue:
            raise ProviderError(f"Scripted provider exhausted (agent '{request.agent_id}')", node_id=request.node_id)
        entry = queue.popleft()
        if isinstance(entry, ScriptedReply):
            if entry.delay_s > 0:
                await asyncio.sleep(entry.delay_s)
            entry = entry.reply
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry) and not isinstance(entry, (str, dict, ModelResponse)):
            entry = entry(request)
            if inspect.isawaitable(entry):
                entry = await entry
        return ModelResponse.from_any(entry)

    def calls_for(self, agent_id: str) -> List[ModelRequest]:
        return [c for c in self.calls if c.agent_id == agent_id]
