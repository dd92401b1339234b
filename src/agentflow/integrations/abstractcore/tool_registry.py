"""agentflow.integrations.abstractcore.tool_registry

Tool registry backed by AbstractCore's global tool registry
(`abstractcore.tools.registry.execute_tool`).
"""

from __future__ import annotations

from typing import Any, Dict

from ...core.tool_dispatcher import jsonable


class AbstractCoreToolRegistry:
    def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> Any:
        from abstractcore.tools.core import ToolCall
        from abstractcore.tools.registry import execute_tool

        result = execute_tool(ToolCall(name=tool_id, arguments=dict(arguments or {})))
        if result is None:
            return None
        if not bool(getattr(result, "success", True)):
            # The dispatcher treats an "Error:" prefix as a failed call.
            return f"Error: {getattr(result, 'error', None) or 'tool execution failed'}"
        return jsonable(getattr(result, "output", None))

