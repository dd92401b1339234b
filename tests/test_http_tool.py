from __future__ import annotations

import json
from pathlib import Path
from typing import List

import httpx
import pytest

from agentflow import CallSettings, EngineConfig, FlowEngine, RetrySettings, ScriptedProvider, ToolExecutionError, load_flow_document
from agentflow.integrations.http_tool import HttpToolRegistry

WEATHER_SPEC = {
    "description": "Current weather for a city",
    "method": "GET",
    "url": "https://api.example.com/weather/{city}",
    "auth": {"type": "bearer", "env": "WEATHER_TOKEN"},
    "query": {"units": {"type": "string", "enum": ["metric", "imperial"], "default": "metric"}},
}


def _doc(spec, arguments=None) -> dict:
    return {
        "tools": [{"id": "weather", "kind": "http", "spec": spec}],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [
                    {"id": "in", "type": "input"},
                    {"id": "call", "type": "tool", "tool": "weather", "arguments": arguments or {"city": "Paris"}},
                    {"id": "out", "type": "output"},
                ],
                "edges": [{"from": "in", "to": "call"}, {"from": "call", "to": "out"}],
            }
        ],
    }


def _engine(handler, **kwargs) -> FlowEngine:
    config = EngineConfig(call_settings=CallSettings(timeout_s=5.0, retry=RetrySettings(max_attempts=1)))
    return FlowEngine(
        provider=ScriptedProvider([]),
        config=config,
        http_transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_http_tool_fills_path_query_and_auth(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEATHER_TOKEN", "s3cret")
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"temp": 21})

    result = _engine(handler).run(_doc(WEATHER_SPEC, {"city": "Paris", "units": "imperial"}))

    assert result.final_output == {"status": 200, "body": {"temp": 21}}
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/weather/Paris"
    assert request.url.params["units"] == "imperial"
    assert request.headers["Authorization"] == "Bearer s3cret"


def test_http_tool_spec_file_is_resolved_next_to_the_document(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEATHER_TOKEN", "s3cret")
    (tmp_path / "weather.json").write_text(json.dumps(WEATHER_SPEC), encoding="utf-8")
    doc_path = tmp_path / "flow.json"
    doc_path.write_text(json.dumps(_doc("weather.json")), encoding="utf-8")

    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="sunny")

    result = _engine(handler).run(str(doc_path))
    assert result.final_output == {"status": 200, "body": "sunny"}
    assert seen[0].url.params["units"] == "metric"


def test_http_error_status_fails_the_tool(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEATHER_TOKEN", "s3cret")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "upstream down"})

    with pytest.raises(ToolExecutionError) as excinfo:
        _engine(handler).run(_doc(WEATHER_SPEC))
    assert excinfo.value.tool_id == "weather"
    assert "HTTP 500" in str(excinfo.value)


def test_missing_bearer_token_fails_the_tool(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WEATHER_TOKEN", raising=False)

    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("request must not be sent")

    with pytest.raises(ToolExecutionError):
        _engine(handler).run(_doc(WEATHER_SPEC))


def test_http_tool_schema_describes_parameters() -> None:
    registry = HttpToolRegistry.from_document(load_flow_document(_doc(WEATHER_SPEC)))
    assert "weather" in registry

    schema = registry.describe("weather")
    assert schema is not None
    assert schema["name"] == "weather"
    assert schema["description"] == "Current weather for a city"
    params = schema["parameters"]
    assert params["required"] == ["city"]
    assert params["properties"]["units"] == {"type": "string", "enum": ["metric", "imperial"], "default": "metric"}
    assert registry.describe("unknown") is None
