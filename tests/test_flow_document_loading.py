from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentflow.core.errors import FlowValidationError
from agentflow.graph.models import (
    AgentNodeSpec,
    CallSettings,
    LoopSpec,
    NodeKind,
    RetrySettings,
    load_flow_document,
)


def _doc() -> dict:
    return {
        "version": 2,
        "metadata": {"name": "demo", "tags": ["a", "b"]},
        "agents": [
            {"id": "writer", "instructions": "Write.", "defaults": {"temperature": 0.2, "timeout_ms": 1500}},
        ],
        "tools": [{"id": "search", "retry": {"max": 3, "backoff_ms": 250}}],
        "prompts": [{"id": "tone", "text": "Be brief."}],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [
                    {"id": "in", "type": "input"},
                    {
                        "id": "draft",
                        "type": "agent",
                        "agent": "writer",
                        "prompt": "tone",
                        "orchestration": {"strategy": "plan-execute", "participants": ["writer"]},
                    },
                    {"id": "rev", "type": "loop", "max_iterations": 2, "outputs": ["body", "done"]},
                    {"id": "out", "type": "output", "layout": {"x": 10, "y": 20}},
                ],
                "edges": [
                    {"from": "in", "to": "draft"},
                    {"from": "draft", "to": "rev"},
                    {"from": "rev/done", "to": "out"},
                ],
            }
        ],
    }


def test_load_from_dict_builds_typed_nodes() -> None:
    doc = load_flow_document(_doc())
    assert doc.version == "2"
    assert doc.metadata.tags == ("a", "b")

    flow = doc.flow("main")
    assert flow is not None
    draft = flow.node("draft")
    assert draft.kind is NodeKind.AGENT
    assert isinstance(draft.spec, AgentNodeSpec)
    assert draft.spec.orchestration is not None
    assert draft.spec.orchestration.strategy == "magentic"

    loop = flow.node("rev")
    assert isinstance(loop.spec, LoopSpec)
    assert loop.output_labels == ("body", "done")
    assert flow.node("out").layout == {"x": 10, "y": 20}


def test_edges_default_to_single_output_label() -> None:
    flow = load_flow_document(_doc()).flow("main")
    assert flow is not None
    assert [e.selector for e in flow.edges] == ["in/out", "draft/out", "rev/done"]
    assert [e.index for e in flow.edges] == [0, 1, 2]


def test_settings_units_are_normalized() -> None:
    doc = load_flow_document(_doc())
    agent = doc.agent("writer")
    assert agent is not None
    assert agent.defaults.timeout_s == pytest.approx(1.5)
    assert agent.defaults.temperature == pytest.approx(0.2)

    tool = doc.tool("search")
    assert tool is not None and tool.retry is not None
    assert tool.retry.max_attempts == 3
    assert tool.retry.backoff_s == pytest.approx(0.25)


def test_load_from_json_text_and_file(tmp_path: Path) -> None:
    text = json.dumps(_doc())
    assert load_flow_document(text).flow("main") is not None

    path = tmp_path / "flows.json"
    path.write_text(text, encoding="utf-8")
    doc = load_flow_document(str(path))
    assert doc.base_dir == tmp_path


def test_unknown_node_type_is_rejected() -> None:
    raw = _doc()
    raw["flows"][0]["nodes"].append({"id": "weird", "type": "teleport"})
    with pytest.raises(FlowValidationError) as excinfo:
        load_flow_document(raw)
    assert "teleport" in str(excinfo.value)


def test_invalid_json_and_missing_file() -> None:
    with pytest.raises(FlowValidationError):
        load_flow_document("{not json")
    with pytest.raises(FlowValidationError):
        load_flow_document("/definitely/not/here.json")


def test_call_settings_layering_prefers_earlier_layers() -> None:
    node = CallSettings(temperature=0.9)
    agent = CallSettings(temperature=0.1, model="m-agent", retry=RetrySettings(max_attempts=5))
    engine = CallSettings(model="m-engine", timeout_s=30.0, retry=RetrySettings(max_attempts=2, backoff_s=1.0))

    merged = CallSettings.layered(node, agent, engine)
    assert merged.temperature == pytest.approx(0.9)
    assert merged.model == "m-agent"
    assert merged.timeout_s == pytest.approx(30.0)
    assert merged.retry == RetrySettings(max_attempts=5, backoff_s=1.0)
    assert merged.generation_params() == {"temperature": 0.9}
