"""agentflow.integrations.http_tool

HTTP tools declared in a flow document (`kind: http`).

A tool's `spec` is either an inline mapping or a path (relative to the
document) to a JSON file describing the request:

    {
      "name": "weather",
      "description": "Current weather for a city",
      "method": "GET",
      "url": "https://api.example.com/weather/{city}",
      "auth": {"type": "bearer", "env": "WEATHER_TOKEN"},
      "query": {"units": {"type": "string", "enum": ["metric", "imperial"], "default": "metric"}},
      "body": {}
    }

`{name}` placeholders in the URL are filled from the call arguments. Calls
return `{"status": <int>, "body": <json or text>}`; HTTP error statuses raise.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..graph.models import FlowDocument
from ..logging import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class HttpAuth(BaseModel):
    type: Literal["none", "bearer", "header"] = "none"
    env: Optional[str] = None
    token: Optional[str] = None
    header: Optional[str] = None
    value: Optional[str] = None


class HttpParam(BaseModel):
    type: str = "string"
    description: Optional[str] = None
    required: bool = False
    default: Any = None
    enum: Optional[List[Any]] = None


class HttpToolSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    auth: Optional[HttpAuth] = None
    query: Dict[str, HttpParam] = Field(default_factory=dict)
    body: Dict[str, HttpParam] = Field(default_factory=dict)
    timeout_s: float = 30.0

    def path_params(self) -> List[str]:
        return _PLACEHOLDER.findall(self.url)

    def tool_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name in self.path_params():
            properties[name] = {"type": "string"}
            required.append(name)
        for name, param in {**self.query, **self.body}.items():
            prop: Dict[str, Any] = {"type": param.type}
            if param.description:
                prop["description"] = param.description
            if param.enum:
                prop["enum"] = list(param.enum)
            if param.default is not None:
                prop["default"] = param.default
            properties[name] = prop
            if param.required:
                required.append(name)
        return {
            "name": self.name,
            "description": self.description or f"HTTP {self.method.upper()} {self.url}",
            "parameters": {"type": "object", "properties": properties, "required": required},
        }


def _expand_env(text: str, environ: Mapping[str, str]) -> str:
    return _ENV_REF.sub(lambda m: environ.get(m.group(1), ""), text)


def _collect(params: Mapping[str, HttpParam], arguments: Mapping[str, Any], where: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, param in params.items():
        if name in arguments and arguments[name] is not None:
            value = arguments[name]
        elif param.default is not None:
            value = param.default
        elif param.required:
            raise ValueError(f"missing required {where} parameter '{name}'")
        else:
            continue
        if param.enum and value not in param.enum:
            raise ValueError(f"{where} parameter '{name}' must be one of {param.enum}, got {value!r}")
        out[name] = value
    return out


class HttpTool:
    def __init__(
        self,
        spec: HttpToolSpec,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.spec = spec
        self._transport = transport
        self._environ = os.environ if environ is None else environ

    def _headers(self) -> Dict[str, str]:
        headers = {k: _expand_env(v, self._environ) for k, v in self.spec.headers.items()}
        auth = self.spec.auth
        if auth is None or auth.type == "none":
            return headers
        if auth.type == "bearer":
            token = auth.token or (self._environ.get(auth.env) if auth.env else None)
            if not token:
                raise ValueError(f"bearer token for tool '{self.spec.name}' is not set (env {auth.env!r})")
            headers["Authorization"] = f"Bearer {token}"
        elif auth.type == "header":
            if not auth.header:
                raise ValueError(f"header auth for tool '{self.spec.name}' needs a header name")
            headers[auth.header] = _expand_env(auth.value or "", self._environ)
        return headers

    def _url(self, arguments: Mapping[str, Any]) -> str:
        def _fill(m: "re.Match[str]") -> str:
            name = m.group(1)
            if name not in arguments:
                raise ValueError(f"missing path parameter '{name}'")
            return str(arguments[name])

        return _PLACEHOLDER.sub(_fill, self.spec.url)

    async def __call__(self, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        method = self.spec.method.upper()
        url = self._url(arguments)
        params = _collect(self.spec.query, arguments, "query")
        body = _collect(self.spec.body, arguments, "body")
        request_kwargs: Dict[str, Any] = {"params": params or None, "headers": self._headers()}
        if body and method not in ("GET", "HEAD", "DELETE"):
            request_kwargs["json"] = body

        async with httpx.AsyncClient(transport=self._transport, timeout=self.spec.timeout_s) as client:
            response = await client.request(method, url, **request_kwargs)

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        logger.debug("HTTP tool call", tool=self.spec.name, method=method, status=response.status_code)
        if response.status_code >= 400:
            raise RuntimeError(f"HTTP {response.status_code} from {method} {url}: {payload}")
        return {"status": response.status_code, "body": payload}


def load_http_tool_spec(ref: Any, *, base_dir: Optional[Union[str, Path]] = None, name: Optional[str] = None) -> HttpToolSpec:
    if isinstance(ref, HttpToolSpec):
        return ref
    if isinstance(ref, Mapping):
        data = dict(ref)
    else:
        path = Path(str(ref))
        if not path.is_absolute() and base_dir is not None:
            path = Path(base_dir) / path
        data = json.loads(path.read_text(encoding="utf-8"))
    if name and not data.get("name"):
        data["name"] = name
    return HttpToolSpec.model_validate(data)


class HttpToolRegistry:
    def __init__(self, tools: Optional[Mapping[str, HttpTool]] = None):
        self._tools: Dict[str, HttpTool] = dict(tools or {})

    @classmethod
    def from_document(
        cls,
        document: FlowDocument,
        *,
        base_dir: Optional[Union[str, Path]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "HttpToolRegistry":
        tools: Dict[str, HttpTool] = {}
        for definition in document.tools:
            if definition.kind != "http":
                continue
            if definition.spec is None:
                raise ValueError(f"http tool '{definition.id}' has no spec")
            spec = load_http_tool_spec(definition.spec, base_dir=base_dir, name=definition.id)
            tools[definition.registry_name] = HttpTool(spec, transport=transport, environ=environ)
        return cls(tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def describe(self, tool_id: str) -> Optional[Dict[str, Any]]:
        tool = self._tools.get(tool_id)
        return tool.spec.tool_schema() if tool else None

    async def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        tool = self._tools.get(tool_id)
        if tool is None:
            raise KeyError(f"HTTP tool '{tool_id}' not found")
        return await tool(arguments)
