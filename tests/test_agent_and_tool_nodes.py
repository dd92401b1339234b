from __future__ import annotations

from dataclasses import replace
from typing import Dict

import pytest

from agentflow import (
    CallSettings,
    DecisionError,
    EngineConfig,
    FlowEngine,
    OrchestrationError,
    RetrySettings,
    ScriptedProvider,
    ToolExecutionError,
    ToolLoopError,
    TurnKind,
    tool_call_reply,
)


def _config(**kwargs) -> EngineConfig:
    return EngineConfig(call_settings=CallSettings(timeout_s=5.0, retry=RetrySettings(max_attempts=1)), **kwargs)


def _agent_doc(node: Dict, *, tools: list | None = None) -> dict:
    return {
        "agents": [
            {"id": "helper", "name": "Helper", "instructions": "Be helpful.", "tools": ["add"]},
            {"id": "router", "instructions": "You route requests."},
        ],
        "prompts": [{"id": "strict", "text": "Only answer with numbers."}],
        "tools": tools if tools is not None else [{"id": "add", "description": "Add two integers."}],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [{"id": "in", "type": "input"}, dict(node, id="work"), {"id": "out", "type": "output"}],
                "edges": [{"from": "in", "to": "work"}, {"from": "work", "to": "out"}],
            }
        ],
    }


def add(a: int, b: int) -> int:
    return a + b


def test_agent_runs_the_tool_loop() -> None:
    provider = ScriptedProvider([tool_call_reply("add", {"a": 2, "b": 3}), "The sum is 5."])
    engine = FlowEngine(provider=provider, tools={"add": add}, config=_config())
    result = engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="What is 2 + 3?")

    assert result.final_output == "The sum is 5."
    assert [t.kind for t in result.transcript] == [
        TurnKind.MESSAGE,
        TurnKind.TOOL_CALL,
        TurnKind.TOOL_RESULT,
        TurnKind.MESSAGE,
    ]
    assert result.tool_results[0].output == 5
    assert result.bindings["work/out"] == "The sum is 5."

    first, second = provider.calls
    assert first.system_prompt == "Be helpful."
    assert [t["name"] for t in first.tools or []] == ["add"]
    assert first.tools[0]["description"] == "Add two integers."
    assert second.messages[-1] == {"role": "tool", "tool_call_id": second.messages[-2]["tool_calls"][0]["id"], "name": "add", "content": "5"}


def test_model_and_tool_calls_are_metered_per_agent() -> None:
    provider = ScriptedProvider(
        [
            replace(tool_call_reply("add", {"a": 2, "b": 3}), usage={"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14}),
            {"content": "The sum is 5.", "usage": {"input_tokens": 20, "output_tokens": 6}},
        ]
    )
    engine = FlowEngine(provider=provider, tools={"add": add}, config=_config())
    result = engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="What is 2 + 3?")

    usage = result.usage["helper"]
    assert (usage.model_calls, usage.attempts) == (2, 2)
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (30, 10, 40)
    assert (usage.tool_calls, usage.failed_tool_calls) == (1, 0)

    calls = [e for e in result.events if e.type == "model_call"]
    assert [e.data["purpose"] for e in calls] == ["turn", "turn"]
    assert calls[0].node_id == "work"
    assert calls[0].data["agent"] == "helper"
    assert calls[0].data["usage"] == {"prompt_tokens": 10, "completion_tokens": 4, "total_tokens": 14}
    assert all(e.data["duration_s"] >= 0 for e in calls)
    assert result.to_dict()["usage"]["helper"]["total_tokens"] == 40


def test_model_call_event_counts_retried_attempts() -> None:
    provider = ScriptedProvider([RuntimeError("flaky"), "ok"])
    config = EngineConfig(call_settings=CallSettings(timeout_s=5.0, retry=RetrySettings(max_attempts=2, backoff_s=0.0)))
    result = FlowEngine(provider=provider, config=config).run(_agent_doc({"type": "agent", "agent": "router"}), task_input="hi")

    (call,) = [e for e in result.events if e.type == "model_call"]
    assert call.data["attempts"] == 2
    assert call.data["usage"] is None
    assert result.usage["router"].model_calls == 1
    assert result.usage["router"].attempts == 2
    assert result.usage["router"].total_tokens == 0


def test_node_prompt_and_parameters_override_agent() -> None:
    provider = ScriptedProvider(["7"])
    node = {"type": "agent", "agent": "helper", "prompt": "strict", "tools": [], "parameters": {"temperature": 0.0, "model": "tiny"}}
    engine = FlowEngine(provider=provider, tools={"add": add}, config=_config())
    engine.run(_agent_doc(node), task_input="3 + 4?")

    request = provider.calls[0]
    assert request.system_prompt == "Only answer with numbers."
    assert request.tools is None
    assert request.model == "tiny"
    assert request.settings.temperature == 0.0
    assert request.settings.timeout_s == 5.0


def test_tool_failures_are_reported_back_to_the_agent() -> None:
    def broken(a: int, b: int) -> int:
        raise ValueError("adder offline")

    provider = ScriptedProvider(
        [
            tool_call_reply("add", {"a": 1, "b": 1}),
            tool_call_reply("delete_everything"),
            "I could not compute it.",
        ]
    )
    engine = FlowEngine(provider=provider, tools={"add": broken}, config=_config())
    result = engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="1 + 1?")

    assert result.final_output == "I could not compute it."
    tool_turns = [t for t in result.transcript if t.kind == TurnKind.TOOL_RESULT]
    assert [t.metadata["success"] for t in tool_turns] == [False, False]
    assert "adder offline" in tool_turns[0].text
    assert "not available" in tool_turns[1].text
    assert result.tool_results[0].success is False


def test_tool_failures_can_fail_the_run() -> None:
    def broken(a: int, b: int) -> int:
        raise ValueError("adder offline")

    provider = ScriptedProvider([tool_call_reply("add", {"a": 1, "b": 1})])
    engine = FlowEngine(provider=provider, tools={"add": broken}, config=_config(tool_errors_to_agent=False))
    with pytest.raises(ToolExecutionError) as excinfo:
        engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="1 + 1?")
    assert excinfo.value.tool_id == "add"
    assert excinfo.value.node_id == "work"


def test_tool_loop_limit_forces_a_final_answer() -> None:
    call = tool_call_reply("add", {"a": 1, "b": 2})
    provider = ScriptedProvider([call, call, call, "Final: 3"])
    engine = FlowEngine(provider=provider, tools={"add": add}, config=_config(max_tool_rounds=2))
    result = engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="1 + 2?")

    assert result.final_output == "Final: 3"
    assert len(provider.calls) == 4
    assert provider.calls[-1].tools is None
    assert [e.data["max_tool_rounds"] for e in result.events if e.type == "tool_loop_limit"] == [2]
    assert len(result.tool_results) == 2


def test_tool_loop_limit_raises_when_agent_insists() -> None:
    call = tool_call_reply("add", {"a": 1, "b": 2})
    provider = ScriptedProvider([call, call, call])
    engine = FlowEngine(provider=provider, tools={"add": add}, config=_config(max_tool_rounds=1))
    with pytest.raises(ToolLoopError):
        engine.run(_agent_doc({"type": "agent", "agent": "helper"}), task_input="1 + 2?")


def test_bind_as_parses_json_replies() -> None:
    provider = ScriptedProvider(['Sure: {"category": "billing", "urgent": true}'])
    node = {"type": "agent", "agent": "router", "bind_as": "triage", "parse_json": True}
    engine = FlowEngine(provider=provider, config=_config())
    result = engine.run(_agent_doc(node), task_input="charged twice")
    assert result.final_output == 'Sure: {"category": "billing", "urgent": true}'

    with pytest.raises(OrchestrationError):
        FlowEngine(provider=ScriptedProvider(["billing"]), config=_config()).run(_agent_doc(node), task_input="x")


def _llm_decision_doc(agent: str | None) -> dict:
    decision = {"id": "route", "type": "decision", "strategy": "llm", "outputs": ["tech", "billing"]}
    if agent:
        decision["agent"] = agent
    return {
        "agents": [{"id": "router", "instructions": "You route support requests."}],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [
                    {"id": "in", "type": "input"},
                    decision,
                    {"id": "tech_out", "type": "output"},
                    {"id": "billing_out", "type": "output"},
                ],
                "edges": [
                    {"from": "in", "to": "route"},
                    {"from": "route/tech", "to": "tech_out"},
                    {"from": "route/billing", "to": "billing_out"},
                ],
            }
        ],
    }


def test_llm_decision_picks_a_declared_label() -> None:
    provider = ScriptedProvider({"router": ["Billing."]})
    result = FlowEngine(provider=provider, config=_config()).run(_llm_decision_doc("router"), task_input="refund?")

    assert result.output_node == "billing_out"
    request = provider.calls[0]
    assert request.purpose == "classification"
    assert "tech, billing" in (request.system_prompt or "")
    classification = [t for t in result.transcript if t.kind == TurnKind.CLASSIFICATION]
    assert classification[0].metadata["label"] == "billing"


def test_llm_decision_without_agent_uses_node_identity() -> None:
    provider = ScriptedProvider({"route": ['{"label": "tech"}']})
    result = FlowEngine(provider=provider, config=_config()).run(_llm_decision_doc(None), task_input="crash")
    assert result.output_node == "tech_out"


def test_llm_decision_rejects_unknown_labels() -> None:
    provider = ScriptedProvider({"router": ["sales"]})
    with pytest.raises(DecisionError) as excinfo:
        FlowEngine(provider=provider, config=_config()).run(_llm_decision_doc("router"), task_input="buy")
    # The offending reply stays in the audit trail.
    assert excinfo.value.transcript[-1].kind == TurnKind.CLASSIFICATION


def _tool_node_doc(retry: dict | None = None) -> dict:
    tool = {"id": "search", "function": "kb_search"}
    if retry:
        tool["retry"] = retry
    return {
        "tools": [tool],
        "flows": [
            {
                "id": "main",
                "entry": "in",
                "nodes": [
                    {"id": "in", "type": "input"},
                    {"id": "lookup", "type": "tool", "tool": "search", "arguments": {"query": "$value", "limit": 2}},
                    {"id": "out", "type": "output"},
                ],
                "edges": [{"from": "in", "to": "lookup"}, {"from": "lookup", "to": "out"}],
            }
        ],
    }


def test_tool_node_resolves_arguments() -> None:
    seen = {}

    def kb_search(query: str, limit: int = 5) -> list:
        seen.update(query=query, limit=limit)
        return [f"{query} #{i}" for i in range(limit)]

    engine = FlowEngine(provider=ScriptedProvider([]), tools={"kb_search": kb_search}, config=_config())
    result = engine.run(_tool_node_doc(), task_input="refund policy")

    assert seen == {"query": "refund policy", "limit": 2}
    assert result.final_output == ["refund policy #0", "refund policy #1"]
    assert result.transcript[-1].kind == TurnKind.TOOL_RESULT
    assert result.transcript[-1].metadata["tool"] == "search"


def test_tool_retry_policy_comes_from_the_tool_definition() -> None:
    calls = {"n": 0}

    def kb_search(query: str, limit: int = 5) -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            return "Error: index warming up"
        return "ok"

    engine = FlowEngine(provider=ScriptedProvider([]), tools={"kb_search": kb_search}, config=_config())
    result = engine.run(_tool_node_doc({"max_attempts": 3, "backoff_s": 0}), task_input="q")
    assert result.final_output == "ok"
    assert result.tool_results[0].attempts == 3
    assert len([e for e in result.events if e.type == "tool_retry"]) == 2

    calls["n"] = 0
    with pytest.raises(ToolExecutionError) as excinfo:
        engine.run(_tool_node_doc(), task_input="q")
    assert excinfo.value.attempts == 1
    assert calls["n"] == 1
