"""agentflow.integrations.abstractcore.llm_client

Model providers backed by AbstractCore.

- `AbstractCoreProvider`: in-process, via `abstractcore.create_llm(...)`. The
  import is lazy so AbstractCore stays an optional dependency; the blocking
  `generate()` call runs in a worker thread.
- `RemoteAbstractCoreProvider`: calls an AbstractCore server's
  OpenAI-compatible `/v1/chat/completions` endpoint over httpx.

Both return `ModelResponse` objects normalized by
`normalize_abstractcore_response`.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ...core.errors import ProviderError
from ...core.models import ModelRequest, ModelResponse, ToolCall
from ...core.tool_dispatcher import jsonable
from ...logging import get_logger

logger = get_logger(__name__)


def normalize_tool_calls(tool_calls: Any) -> List[ToolCall]:
    """Accept AbstractCore, OpenAI (`function` wrapper) and plain dict shapes."""
    if not isinstance(tool_calls, list):
        return []
    out: List[ToolCall] = []
    for tc in tool_calls:
        call = ToolCall.from_any(tc if isinstance(tc, dict) else tc)
        if call.name.strip():
            out.append(call)
    return out


def normalize_abstractcore_response(resp: Any) -> ModelResponse:
    """Normalize a `generate()` result (object or dict) into a `ModelResponse`."""
    if isinstance(resp, ModelResponse):
        return resp
    if isinstance(resp, str):
        return ModelResponse(content=resp)
    if isinstance(resp, dict):
        data = jsonable(resp)
        get = data.get
    else:
        get = lambda key: getattr(resp, key, None)  # noqa: E731

    metadata = get("metadata")
    metadata = dict(jsonable(metadata)) if isinstance(metadata, dict) else {}
    trace_id = get("trace_id") or metadata.get("trace_id")
    if trace_id is not None:
        metadata["trace_id"] = str(trace_id)

    usage = get("usage")
    return ModelResponse(
        content=get("content"),
        tool_calls=normalize_tool_calls(jsonable(get("tool_calls"))),
        usage=jsonable(usage) if usage is not None else None,
        model=get("model"),
        finish_reason=get("finish_reason"),
        metadata=metadata,
    )


class AbstractCoreProvider:
    """In-process provider; one AbstractCore LLM instance per model."""

    def __init__(self, provider: str, model: Optional[str] = None, *, llm_kwargs: Optional[Dict[str, Any]] = None):
        self._provider = provider
        self._model = model
        self._llm_kwargs = dict(llm_kwargs or {})
        self._llms: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _llm_for(self, model: str) -> Any:
        with self._lock:
            llm = self._llms.get(model)
            if llm is None:
                from abstractcore import create_llm

                llm = create_llm(self._provider, model=model, **self._llm_kwargs)
                self._llms[model] = llm
                logger.info("AbstractCore LLM created", provider=self._provider, model=model)
            return llm

    async def complete(self, request: ModelRequest) -> ModelResponse:
        model = request.model or self._model
        if not model:
            raise ProviderError(f"No model configured for agent '{request.agent_id}'", node_id=request.node_id)
        llm = self._llm_for(model)
        params = request.settings.generation_params()

        def _generate() -> Any:
            return llm.generate(
                prompt="",
                messages=request.messages,
                system_prompt=request.system_prompt,
                tools=request.tools,
                stream=False,
                **params,
            )

        resp = await asyncio.to_thread(_generate)
        return normalize_abstractcore_response(resp)


class RemoteAbstractCoreProvider:
    """Provider calling an AbstractCore server (OpenAI-compatible API)."""

    def __init__(
        self,
        server_base_url: str,
        *,
        model: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = server_base_url.rstrip("/")
        self._model = model
        self._headers = dict(headers or {})
        self._timeout_s = timeout_s
        self._transport = transport

    def _body(self, request: ModelRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(request.messages)
        body: Dict[str, Any] = {
            "model": request.model or self._model,
            "messages": messages,
            "stream": False,
        }
        body.update(request.settings.generation_params())
        if request.tools:
            body["tools"] = [{"type": "function", "function": t} for t in request.tools]
        return body

    async def complete(self, request: ModelRequest) -> ModelResponse:
        url = f"{self._base_url}/v1/chat/completions"
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s) as client:
            resp = await client.post(url, headers=self._headers, json=self._body(request))
        if resp.status_code >= 400:
            raise ProviderError(
                f"AbstractCore server returned HTTP {resp.status_code}: {resp.text[:200]}",
                node_id=request.node_id,
            )
        payload = resp.json()
        try:
            choice0 = (payload.get("choices") or [])[0]
        except IndexError:
            raise ProviderError("AbstractCore server returned no choices", node_id=request.node_id) from None
        msg = choice0.get("message") or {}
        trace_id = resp.headers.get("x-abstractcore-trace-id") or resp.headers.get("x-trace-id")
        return normalize_abstractcore_response(
            {
                "content": msg.get("content"),
                "tool_calls": msg.get("tool_calls"),
                "usage": payload.get("usage"),
                "model": payload.get("model"),
                "finish_reason": choice0.get("finish_reason"),
                "trace_id": trace_id,
            }
        )
