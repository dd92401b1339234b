"""agentflow.integrations.tools

Tool registries (the external tool collaborator).

- `ToolRegistry`: the protocol the engine consumes (`invoke`, optional `describe`).
- `MappingToolRegistry`: an explicit {tool name -> callable} mapping held by
  the host process.
- `CompositeToolRegistry`: first registry that knows a name wins.
- `build_tool_registry`: registry for a document (HTTP tools it declares plus
  host functions).
"""

from __future__ import annotations

import inspect
import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from ..graph.models import FlowDocument
from ..logging import get_logger
from .http_tool import HttpToolRegistry

logger = get_logger(__name__)


@runtime_checkable
class ToolRegistry(Protocol):
    def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> Any:
        """Run a tool; may return a value or an awaitable. Raise on failure."""
        ...


def _loads_dict_like(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, dict):
        return dict(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _unwrap_wrapper_args(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap shapes like {"name": ..., "arguments": {...}} that models sometimes emit.

    Inner arguments take precedence over fields found next to the wrapper.
    """
    current: Dict[str, Any] = dict(kwargs or {})
    wrapper_keys = {"name", "arguments", "call_id", "id"}
    for _ in range(4):
        inner_dict = _loads_dict_like(current.get("arguments"))
        if not isinstance(inner_dict, dict):
            break
        extras = {k: v for k, v in current.items() if k not in wrapper_keys}
        merged = dict(inner_dict)
        for k, v in extras.items():
            merged.setdefault(k, v)
        current = merged
    return current


def _filter_kwargs(func: Callable[..., Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return kwargs
    params = list(sig.parameters.values())
    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in params):
        return kwargs
    allowed = {
        p.name
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_OR_KEYWORD, inspect.Parameter.KEYWORD_ONLY)
    }
    return {k: v for k, v in kwargs.items() if k in allowed}


_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean", list: "array", dict: "object"}


def schema_from_callable(name: str, func: Callable[..., Any]) -> Dict[str, Any]:
    """Derive a JSON-schema tool descriptor from a function signature."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        sig = None
    if sig is not None:
        for p in sig.parameters.values():
            if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue
            prop: Dict[str, Any] = {}
            json_type = _JSON_TYPES.get(p.annotation) if p.annotation is not inspect.Parameter.empty else None
            if json_type is None and isinstance(p.annotation, str):
                json_type = {"str": "string", "int": "integer", "float": "number", "bool": "boolean"}.get(p.annotation)
            if json_type:
                prop["type"] = json_type
            if p.default is inspect.Parameter.empty:
                required.append(p.name)
            else:
                prop["default"] = p.default
            properties[p.name] = prop
    doc = inspect.getdoc(func) or ""
    return {
        "name": name,
        "description": doc.splitlines()[0] if doc else f"Tool {name}",
        "parameters": {"type": "object", "properties": properties, "required": required},
    }


ToolLike = Union[Callable[..., Any], Tuple[str, Callable[..., Any]]]


class MappingToolRegistry:
    """Invokes tools from an explicit {tool_name -> callable} mapping."""

    def __init__(self, tool_map: Mapping[str, Callable[..., Any]]):
        self._tool_map: Dict[str, Callable[..., Any]] = dict(tool_map)

    @classmethod
    def from_tools(cls, tools: Iterable[ToolLike]) -> "MappingToolRegistry":
        tool_map: Dict[str, Callable[..., Any]] = {}
        for t in tools:
            if isinstance(t, tuple):
                name, func = t
            else:
                tool_def = getattr(t, "_tool_definition", None)
                if tool_def is not None:
                    name = str(getattr(tool_def, "name", "") or "")
                    func = getattr(tool_def, "function", None) or t
                else:
                    name = str(getattr(t, "__name__", "") or "")
                    func = t
            if not name:
                raise ValueError("Tool is missing a name")
            if not callable(func):
                raise ValueError(f"Tool '{name}' is not callable")
            if name in tool_map:
                raise ValueError(f"Duplicate tool name '{name}'")
            tool_map[name] = func
        return cls(tool_map)

    def names(self) -> List[str]:
        return list(self._tool_map)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tool_map

    def describe(self, tool_id: str) -> Optional[Dict[str, Any]]:
        func = self._tool_map.get(tool_id)
        return schema_from_callable(tool_id, func) if func is not None else None

    def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> Any:
        func = self._tool_map.get(tool_id)
        if func is None:
            raise KeyError(f"Tool '{tool_id}' not found")
        try:
            return func(**arguments)
        except TypeError:
            # Retry once with sanitized kwargs for wrapper/extra-arg failures.
            filtered = _filter_kwargs(func, _unwrap_wrapper_args(arguments))
            if filtered != arguments:
                return func(**filtered)
            raise


class CompositeToolRegistry:
    def __init__(self, registries: Sequence[Any]):
        self._registries = [r for r in registries if r is not None]

    def _owner(self, tool_id: str) -> Any:
        for registry in self._registries:
            try:
                if tool_id in registry:
                    return registry
            except TypeError:
                continue
        # Registries without membership checks (e.g. AbstractCore's global registry) go last.
        for registry in self._registries:
            if not hasattr(registry, "__contains__"):
                return registry
        raise KeyError(f"Tool '{tool_id}' not found")

    def __contains__(self, tool_id: object) -> bool:
        try:
            self._owner(str(tool_id))
        except KeyError:
            return False
        return True

    def describe(self, tool_id: str) -> Optional[Dict[str, Any]]:
        try:
            owner = self._owner(tool_id)
        except KeyError:
            return None
        describe = getattr(owner, "describe", None)
        return describe(tool_id) if callable(describe) else None

    def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> Any:
        return self._owner(tool_id).invoke(tool_id, arguments)


def coerce_tool_registry(tools: Any) -> Optional[Any]:
    """Accept a registry, a mapping of callables, or a list of callables."""
    if tools is None:
        return None
    if isinstance(tools, Mapping):
        return MappingToolRegistry(tools)
    if isinstance(tools, (list, tuple)):
        return MappingToolRegistry.from_tools(tools)
    if callable(getattr(tools, "invoke", None)):
        return tools
    raise TypeError(f"Unsupported tool registry type: {type(tools).__name__}")


def build_tool_registry(
    document: FlowDocument,
    functions: Any = None,
    *,
    base_dir: Optional[Union[str, Path]] = None,
    http_transport: Any = None,
) -> Optional[Any]:
    """Registry for `document`: its `http` tools plus the host's functions."""

    host = coerce_tool_registry(functions)
    http = HttpToolRegistry.from_document(
        document,
        base_dir=base_dir if base_dir is not None else document.base_dir,
        transport=http_transport,
    )
    if not len(http):
        return host
    return CompositeToolRegistry([http, host])
