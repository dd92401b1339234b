"""agentflow.core.tool_dispatcher

Thin adapter between the engine and the external tool registry.

The dispatcher resolves a tool id to its document definition, marshals the
arguments (literal defaults first, call arguments on top), applies the tool's
own timeout and retry policy, and returns a `ToolResult`. Failures surface as
`ToolExecutionError`, never as provider errors. Without a retry policy on the
definition a tool is attempted exactly once.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import asdict, is_dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..graph.models import FlowDocument, ToolDefinition
from ..integrations.tools import ToolRegistry
from ..logging import get_logger
from .errors import ToolExecutionError
from .models import ToolResult, new_id
from .policy import NO_RETRY, RetryPolicy, call_with_retry

logger = get_logger(__name__)


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    if is_dataclass(value) and not isinstance(value, type):
        return jsonable(asdict(value))

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return jsonable(model_dump())

    return str(value)


def error_from_output(value: Any) -> Optional[str]:
    """Detect failures reported as string outputs instead of exceptions."""
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.startswith("Error:"):
        cleaned = text[len("Error:") :].strip()
        return cleaned or text
    return None


def _empty_schema(definition: Optional[ToolDefinition], tool_id: str) -> Dict[str, Any]:
    return {
        "name": tool_id,
        "description": (definition.description if definition else None) or f"Tool {tool_id}",
        "parameters": {"type": "object", "properties": {}},
    }


class ToolDispatcher:
    def __init__(self, document: FlowDocument, registry: Optional[ToolRegistry]):
        self._document = document
        self._registry = registry

    def definition(self, tool_id: str) -> Optional[ToolDefinition]:
        return self._document.tool(tool_id)

    def schemas(self, tool_ids: List[str]) -> List[Dict[str, Any]]:
        """Model-facing tool descriptors; the exposed name is always the tool id."""
        out: List[Dict[str, Any]] = []
        for tool_id in tool_ids:
            definition = self.definition(tool_id)
            name = definition.registry_name if definition else tool_id
            schema = None
            describe = getattr(self._registry, "describe", None)
            if callable(describe):
                schema = describe(name)
            schema = dict(schema) if schema else _empty_schema(definition, tool_id)
            schema["name"] = tool_id
            if definition and definition.description:
                schema["description"] = definition.description
            out.append(schema)
        return out

    async def invoke(
        self,
        tool_id: str,
        arguments: Mapping[str, Any],
        *,
        node_id: Optional[str] = None,
        call_id: Optional[str] = None,
        defaults: Optional[Mapping[str, Any]] = None,
        on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
    ) -> ToolResult:
        if self._registry is None:
            raise ToolExecutionError(f"No tool registry configured for tool '{tool_id}'", tool_id=tool_id, node_id=node_id)

        definition = self.definition(tool_id)
        name = definition.registry_name if definition else tool_id
        args: Dict[str, Any] = dict(defaults or {})
        args.update(arguments or {})
        policy = RetryPolicy.from_settings(definition.retry) if definition and definition.retry else NO_RETRY
        registry = self._registry
        attempts = [0]

        async def _attempt() -> Any:
            attempts[0] += 1
            output = await asyncio.to_thread(registry.invoke, name, dict(args))
            if inspect.isawaitable(output):
                output = await output
            error = error_from_output(output)
            if error is not None:
                raise ToolExecutionError(error, tool_id=tool_id, node_id=node_id)
            return output

        output = await call_with_retry(
            _attempt,
            policy=policy,
            timeout_s=definition.timeout_s if definition else None,
            on_timeout=lambda timeout, attempt: ToolExecutionError(
                f"Tool '{tool_id}' timed out after {timeout}s", tool_id=tool_id, node_id=node_id, attempts=attempt
            ),
            on_exhausted=lambda err, attempts: ToolExecutionError(
                f"Tool '{tool_id}' failed: {err}",
                tool_id=tool_id,
                node_id=node_id,
                attempts=attempts,
                cause=err,
            ),
            on_retry=on_retry,
        )
        logger.debug("Tool executed", tool_id=tool_id, node_id=node_id)
        return ToolResult(
            call_id=call_id or new_id(),
            tool_id=tool_id,
            success=True,
            output=jsonable(output),
            attempts=attempts[0],
            node_id=node_id,
        )
